import io

import pytest
import structlog
from PIL import Image
from PyPDF2 import PdfReader
from typer.testing import CliRunner


@pytest.fixture(autouse=True)
def no_system_paper(monkeypatch, tmp_path):
    monkeypatch.delenv("PAPERSIZE", raising=False)
    monkeypatch.setenv("PAPERCONF", str(tmp_path / "no-papersize"))


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    # the CLI binds structlog to the stderr CliRunner swaps in and closes
    structlog.reset_defaults()


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def make_jpeg(tmp_path):
    def make(name, size, color="white"):
        path = tmp_path / name
        Image.new("RGB", size, color).save(path, "JPEG")
        return path
    return make


def read_pdf(data: bytes) -> PdfReader:
    return PdfReader(io.BytesIO(data))


def page_size(page) -> tuple[float, float]:
    return float(page.mediabox.width), float(page.mediabox.height)


def page_images(page) -> list:
    xobjects = page["/Resources"]["/XObject"]
    return [xobjects[key] for key in xobjects]
