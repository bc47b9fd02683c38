#!/usr/bin/env -S uv run -s
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "typer>=0.12",
#   "structlog>=24.1",
#   "reportlab>=4.0",
#   "Pillow>=10.0",
# ]
# ///
"""
Make a PDF out of a sequence of JPEG images, one image per page.

The images are never decoded for layout: Pillow reads the JPEG header for the
pixel size, and reportlab embeds the original compressed bytes as the page's
DCT image stream.

Each image is scaled to fit the printable area of the page (page minus margin),
centered, then shifted by the x/y offsets. Offsets are measured from the
top-left corner of the page.

Paper size:
  -p a4 | letter | ...      named paper (case-insensitive)
  -p 210mmx297mm            explicit size, plain numbers are points
  -p 1.5                    page follows each image: size x scale + 2 x margin
  unset                     $PAPERSIZE, then $PAPERCONF or /etc/papersize, then a4

Rotation string (-r): one character per image, the last one repeats.
  0-3   quarter turns clockwise
  a     one quarter turn, landscape images only
  A     three quarter turns, landscape images only

Two-sided (-t): pages are taken as 1st, last, 2nd, second-to-last, ... which
undoes a stack scanned front sides first and back sides in reverse.

Example:
  jpegtopdf -p a4 -m 20 -r a -o scan.pdf page*.jpg
"""
from __future__ import annotations

import contextlib
import dataclasses as dc
import functools
import hashlib
import io
import json
import logging
import math
import os
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import BinaryIO, NoReturn, Optional

import click
import structlog
import typer
from PIL import Image
from reportlab import rl_config
from reportlab.graphics.shapes import mmult, nullTransform, rotate, scale, translate
from reportlab.lib import pagesizes
from reportlab.lib.units import inch, toLength
from reportlab.pdfbase import pdfdoc
from reportlab.pdfgen.canvas import Canvas

app = typer.Typer(
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)
log = structlog.get_logger("jpegtopdf")

EXIT_FAILURE = 1
STDIO = "-"
DEFAULT_PAPER = "a4"
DEFAULT_PAPER_FILE = Path("/etc/papersize")
MIN_PAGE_SIZE = 3  # points, smallest page PDF viewers accept

# ---------- paper sizes ----------

def _points(size: tuple[float, float]) -> tuple[int, int]:
    return round(size[0]), round(size[1])

PAPER_SIZES: dict[str, tuple[int, int]] = {
    **{f"a{i}": _points(getattr(pagesizes, f"A{i}")) for i in range(11)},
    **{f"b{i}": _points(getattr(pagesizes, f"B{i}")) for i in range(11)},
    **{f"c{i}": _points(getattr(pagesizes, f"C{i}")) for i in range(11)},
    "letter": _points(pagesizes.LETTER),
    "legal": _points(pagesizes.LEGAL),
    "tabloid": _points(pagesizes.ELEVENSEVENTEEN),
    "11x17": _points(pagesizes.ELEVENSEVENTEEN),
    "ledger": _points((17 * inch, 11 * inch)),
    "halfletter": _points((5.5 * inch, 8.5 * inch)),
    "statement": _points((5.5 * inch, 8.5 * inch)),
    "executive": _points((7.5 * inch, 10 * inch)),
    "folio": _points((8.5 * inch, 13 * inch)),
}

@dc.dataclass(frozen=True)
class PaperSize:
    name: str
    width: float = 0
    height: float = 0
    factor: Optional[float] = None  # set: page size follows each image

    @property
    def image_relative(self) -> bool:
        return self.factor is not None

def lookup_paper(name: str) -> Optional[PaperSize]:
    key = name.strip().lower()
    size = PAPER_SIZES.get(key)
    return PaperSize(key, *size) if size else None

def parse_paper(text: str) -> Optional[PaperSize]:
    """
    Resolve a paper spec: a table name, WxH (each side a length such as
    595, 210mm or 8.5in), or a bare positive number for image-relative pages.
    Returns None when nothing matches.
    """
    paper = lookup_paper(text)
    if paper:
        return paper
    key = text.strip().lower()
    w, sep, h = key.partition("x")
    if sep:
        try:
            width, height = toLength(w.strip()), toLength(h.strip())
        except ValueError:
            return None
        if all(MIN_PAGE_SIZE <= v and math.isfinite(v) for v in (width, height)):
            return PaperSize(key, width, height)
        return None
    try:
        factor = float(key)
    except ValueError:
        return None
    if factor > 0 and math.isfinite(factor):
        return PaperSize(key, factor=factor)
    return None

def default_paper_name(path: Optional[Path] = None) -> Optional[str]:
    # libpaper layout: first non-comment line names the paper
    if path is None:
        path = Path(os.environ.get("PAPERCONF") or DEFAULT_PAPER_FILE)
    try:
        text = path.read_text()
    except OSError:
        return None
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            return line.split()[0]
    return None

def resolve_paper(
    paper: Optional[str],
    page_width: Optional[float] = None,
    page_height: Optional[float] = None,
    paperconf: Optional[Path] = None,
) -> PaperSize:
    spec = paper or default_paper_name(paperconf)
    size = parse_paper(spec) if spec else None
    if spec and size is None:
        log.warning("paper_unknown", paper=spec, fallback=DEFAULT_PAPER)
    if size is None:
        size = lookup_paper(DEFAULT_PAPER)
    if page_width is None and page_height is None:
        return size
    # explicit page dimensions always mean a fixed page
    if size.image_relative:
        size = lookup_paper(DEFAULT_PAPER)
    return PaperSize(
        "custom",
        page_width if page_width is not None else size.width,
        page_height if page_height is not None else size.height,
    )

# ---------- config ----------

class ConfigError(ValueError):
    pass

@dc.dataclass(frozen=True)
class LayoutConfig:
    paper: PaperSize
    margin: float = 0
    xoffset: float = 0
    yoffset: float = 0
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    scale: Optional[float] = None
    rotations: str = "0"
    two_sided: bool = False
    output: str = "output.pdf"

def make_config(
    *,
    paper: Optional[str],
    margin: float = 0,
    xoffset: float = 0,
    yoffset: float = 0,
    image_width: Optional[int] = None,
    image_height: Optional[int] = None,
    scale: Optional[float] = None,
    page_width: Optional[float] = None,
    page_height: Optional[float] = None,
    rotations: str = "0",
    two_sided: bool = False,
    output: str = "output.pdf",
    paperconf: Optional[Path] = None,
) -> LayoutConfig:
    for flag, value in (
        ("-l", image_width), ("-a", image_height), ("-s", scale),
        ("-w", page_width), ("-e", page_height),
    ):
        if value is not None and not value > 0:
            raise ConfigError(f"{flag} must be greater than zero")
    if margin < 0:
        raise ConfigError("margin must not be negative")
    if not rotations:
        raise ConfigError("empty rotation string")

    size = resolve_paper(paper, page_width, page_height, paperconf)
    if not size.image_relative and min(size.width, size.height) < MIN_PAGE_SIZE:
        raise ConfigError(f"page {size.width:g}x{size.height:g} is smaller than {MIN_PAGE_SIZE}pt")
    if not size.image_relative and (2 * margin >= size.width or 2 * margin >= size.height):
        raise ConfigError(f"margin {margin:g} leaves no room on a {size.width:g}x{size.height:g} page")

    return LayoutConfig(
        paper=size,
        margin=margin,
        xoffset=xoffset,
        yoffset=yoffset,
        image_width=image_width,
        image_height=image_height,
        scale=scale,
        rotations=rotations,
        two_sided=two_sided,
        output=output,
    )

# ---------- layout ----------

@dc.dataclass
class ImageRecord:
    name: str
    data: bytes
    width: int = 0
    height: int = 0
    rotation: int = 0
    rotated_width: int = 0
    rotated_height: int = 0
    page_width: float = 0
    page_height: float = 0
    scale: float = 1
    x: float = 0
    y: float = 0

def two_sided_index(i: int, n: int) -> int:
    """Input index for output page i: front sides in order, back sides reversed."""
    return i // 2 if i % 2 == 0 else n - i // 2 - 1

def rotation_code(rotations: str, index: int, width: int, height: int) -> int:
    c = rotations[min(index, len(rotations) - 1)]
    if c in "0123":
        return int(c)
    if c == "a":
        return 1 if width > height else 0
    if c == "A":
        return 3 if width > height else 0
    return 0

def rotated_size(width: int, height: int, rotation: int) -> tuple[int, int]:
    return (height, width) if rotation % 2 else (width, height)

def fit_scale(width: float, height: float, page_width: float, page_height: float, margin: float) -> float:
    return 1 / max(width / (page_width - 2 * margin), height / (page_height - 2 * margin))

def image_relative_page(width: float, height: float, factor: float, margin: float) -> tuple[float, float]:
    return width * factor + 2 * margin, height * factor + 2 * margin

def layout_image(rec: ImageRecord, position: int, cfg: LayoutConfig) -> ImageRecord:
    """Fill in rotation, page size, scale and placement of the image on page `position`."""
    rec.rotation = rotation_code(cfg.rotations, position, rec.width, rec.height)
    rec.rotated_width, rec.rotated_height = rotated_size(rec.width, rec.height, rec.rotation)

    paper = cfg.paper
    if paper.image_relative:
        rec.scale = (cfg.scale or 1) * paper.factor
        rec.page_width, rec.page_height = image_relative_page(
            rec.rotated_width, rec.rotated_height, rec.scale, cfg.margin
        )
        if min(rec.page_width, rec.page_height) < MIN_PAGE_SIZE:
            raise ValueError(f"page {rec.page_width:g}x{rec.page_height:g} is smaller than {MIN_PAGE_SIZE}pt")
    else:
        rec.page_width, rec.page_height = paper.width, paper.height
        rec.scale = cfg.scale or fit_scale(
            rec.rotated_width, rec.rotated_height, rec.page_width, rec.page_height, cfg.margin
        )

    rec.x = cfg.xoffset + (rec.page_width - rec.rotated_width * rec.scale) / 2
    rec.y = cfg.yoffset + (rec.page_height - rec.rotated_height * rec.scale) / 2
    return rec

def placement_transform(rec: ImageRecord) -> tuple[float, ...]:
    """
    Affine matrix taking reportlab's image box (0,0)-(width,height) to its
    place on the page. Placement is worked out top-down (x right, y down),
    then flipped into PDF space.
    """
    steps = (
        translate(0, rec.page_height), scale(1, -1),
        translate(rec.x, rec.y),
        scale(rec.scale, rec.scale),
        translate(rec.rotated_width / 2, rec.rotated_height / 2),
        rotate(rec.rotation * 90),
        translate(-rec.width / 2, -rec.height / 2),
        # first image row at the top
        translate(0, rec.height), scale(1, -1),
    )
    return functools.reduce(mmult, steps, nullTransform())

# ---------- io ----------

def read_input(name: str, stdin: Optional[BinaryIO] = None) -> bytes:
    if name == STDIO:
        return (stdin or click.get_binary_stream("stdin")).read()
    with open(name, "rb") as f:
        return f.read()

def jpeg_size(data: bytes) -> tuple[int, int]:
    # Image.open only parses the header
    with Image.open(io.BytesIO(data)) as im:
        if im.format != "JPEG":
            raise ValueError(f"not a JPEG image ({im.format})")
        return im.size

def load_image(name: str, data: bytes, cfg: LayoutConfig) -> ImageRecord:
    if cfg.image_width and cfg.image_height:
        if not data.startswith(b"\xff\xd8"):
            raise ValueError("not a JPEG image")
        width, height = cfg.image_width, cfg.image_height
    else:
        width, height = jpeg_size(data)
        width = cfg.image_width or width
        height = cfg.image_height or height
    return ImageRecord(name=name, data=data, width=width, height=height)

def open_output(name: str) -> BinaryIO:
    if name == STDIO:
        return click.get_binary_stream("stdout")
    return open(name, "wb")

@contextlib.contextmanager
def _raw_streams():
    saved = rl_config.useA85
    rl_config.useA85 = 0
    try:
        yield
    finally:
        rl_config.useA85 = saved

def register_jpeg(canvas: Canvas, data: bytes) -> str:
    """
    Add the JPEG to the document as an image XObject holding the original
    DCT stream, once per distinct file content. Only the header is read.
    Returns the form name to draw it with.
    """
    name = hashlib.sha1(data).hexdigest()
    if canvas.hasForm(name):
        return name
    image = pdfdoc.PDFImageXObject(name)
    # store the stream as is, without an ASCII85 wrapper
    with _raw_streams():
        if not image.loadImageFromJPEG(io.BytesIO(data)):
            raise ValueError("unsupported JPEG header")
    canvas._doc.addForm(name, image)
    return name

def emit_page(canvas: Canvas, rec: ImageRecord) -> None:
    name = register_jpeg(canvas, rec.data)
    canvas.setPageSize((rec.page_width, rec.page_height))
    canvas.saveState()
    canvas.transform(*placement_transform(rec))
    # an image XObject fills the unit square
    canvas.scale(rec.width, rec.height)
    canvas.doForm(name)
    canvas.restoreState()
    canvas._currentPageHasImages = 1  # image entries in the page ProcSet
    canvas.showPage()

def build_pdf(files: list[str], cfg: LayoutConfig, out: BinaryIO) -> tuple[int, int]:
    """Write one page per readable JPEG. Returns (pages, skipped)."""
    first = cfg.paper if not cfg.paper.image_relative else lookup_paper(DEFAULT_PAPER)
    canvas = Canvas(out, pagesize=(first.width, first.height))
    n = len(files)
    pages = skipped = 0
    stdin_used = False

    for i in range(n):
        name = files[two_sided_index(i, n) if cfg.two_sided else i]
        if name == STDIO:
            if stdin_used:
                log.warning("image_skipped", file=name, reason="standard input already read")
                skipped += 1
                continue
            stdin_used = True

        try:
            data = read_input(name)
            rec = load_image(name, data, cfg)
            log.info("image_loaded", file=name, page=i + 1, bytes=len(data), width=rec.width, height=rec.height)
            layout_image(rec, i, cfg)
            log.debug(
                "image_placed", file=name,
                page_width=rec.page_width, page_height=rec.page_height,
                rotation=rec.rotation, scale=rec.scale, x=rec.x, y=rec.y,
            )
            emit_page(canvas, rec)
        except (OSError, ValueError, Image.DecompressionBombError, MemoryError) as e:
            log.warning("image_skipped", file=name, reason=str(e))
            skipped += 1
            continue
        pages += 1

    canvas.save()
    return pages, skipped

# ---------- logging setup ----------

def configure_logging(verbosity: int) -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            {-1: logging.WARNING, 0: logging.INFO}.get(verbosity, logging.DEBUG)
        ),
        # stdout may be the PDF
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )

# ---------- CLI ----------

def _usage_error(ctx: typer.Context, message: str) -> NoReturn:
    log.error("usage_error", error=message)
    typer.echo(ctx.get_usage(), err=True)
    raise typer.Exit(EXIT_FAILURE)

@app.command()
def convert(
    ctx: typer.Context,
    files: Optional[list[str]] = typer.Argument(None, metavar="FILE.jpg...", help="JPEG images, '-' for stdin"),
    margin: float = typer.Option(0, "-m", "--margin", help="Space around images, points"),
    xoffset: float = typer.Option(0, "-x", "--xoffset", help="Shift right from centered, points"),
    yoffset: float = typer.Option(0, "-y", "--yoffset", help="Shift down from centered, points"),
    image_width: Optional[int] = typer.Option(None, "-l", "--image-width", help="Width of the JPEG images, pixels"),
    image_height: Optional[int] = typer.Option(None, "-a", "--image-height", help="Height of the JPEG images, pixels"),
    scale_: Optional[float] = typer.Option(None, "-s", "--scale", help="Points per pixel instead of fit to page"),
    paper: Optional[str] = typer.Option(
        None, "-p", "--paper", envvar="PAPERSIZE",
        help="Paper name, WxH, or a bare scale for pages sized to each image",
    ),
    page_width: Optional[float] = typer.Option(None, "-w", "--page-width", help="Page width, points"),
    page_height: Optional[float] = typer.Option(None, "-e", "--page-height", help="Page height, points"),
    rotations: str = typer.Option("0", "-r", "--rotate", help="Rotation per image: 0-3 quarter turns, a/A landscape only"),
    output: str = typer.Option("output.pdf", "-o", "--output", help="Output PDF, '-' for stdout"),
    two_sided: bool = typer.Option(False, "-t", "--two-sided", help="Reconstruct a two-sided document"),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="-v for layout details"),
    quiet: bool = typer.Option(False, "-q", "--quiet", help="Only warnings and errors"),
):
    """Make a PDF out of a sequence of JPEG images, one per page."""
    configure_logging(-1 if quiet else verbose)

    if not files:
        _usage_error(ctx, "no input file")
    try:
        cfg = make_config(
            paper=paper,
            margin=margin,
            xoffset=xoffset,
            yoffset=yoffset,
            image_width=image_width,
            image_height=image_height,
            scale=scale_,
            page_width=page_width,
            page_height=page_height,
            rotations=rotations,
            two_sided=two_sided,
            output=output,
        )
    except ConfigError as e:
        _usage_error(ctx, str(e))

    try:
        out = open_output(cfg.output)
    except OSError as e:
        log.error("output_failed", output=cfg.output, error=str(e))
        raise typer.Exit(EXIT_FAILURE)
    log.info("output_opened", output=cfg.output, paper=cfg.paper.name, two_sided=cfg.two_sided)

    try:
        pages, skipped = build_pdf(list(files), cfg, out)
    finally:
        if cfg.output != STDIO:
            out.close()

    log.info("done", output=cfg.output, pages=pages, skipped=skipped)

# ---------- entry ----------

def main() -> None:
    try:
        rc = app(standalone_mode=False)
    except click.UsageError as e:
        e.show()
        rc = EXIT_FAILURE
    except click.Abort:
        rc = EXIT_FAILURE
    except Exception as e:
        # last-ditch, logging may not be configured
        print(json.dumps({
            "ts": datetime.now(UTC).isoformat(),
            "level": "error",
            "event": "fatal",
            "error": str(e),
        }), file=sys.stderr)
        rc = EXIT_FAILURE
    sys.exit(rc or 0)

if __name__ == "__main__":
    main()
