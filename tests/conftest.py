"""
Shared fixtures for my-tools backend tests.
"""

import io
import zipfile

import httpx
import pytest

from mytools_backend.client import RemoteTransformClient
from mytools_backend.models import InputFile


PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
PDF_BYTES = b"%PDF-1.4\n%fake\n"


def make_zip(entries: dict, dirs: tuple = ()) -> bytes:
    """Build an in-memory ZIP from ``{name: bytes}`` (insertion order kept)."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for d in dirs:
            zf.writestr(zipfile.ZipInfo(d.rstrip("/") + "/"), b"")
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


def make_remote(handler) -> RemoteTransformClient:
    """RemoteTransformClient whose transport is the given (sync or async) handler."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteTransformClient(
        base_url="http://convert.test",
        generate_url="http://generate.test/predict",
        api_key="k-test",
        timeout_seconds=5,
        http_client=http,
    )


@pytest.fixture
def png_file():
    def _make(name: str = "photo.png") -> InputFile:
        return InputFile(name=name, payload=PNG_BYTES, media_type="image/png")
    return _make


@pytest.fixture
def pdf_file():
    def _make(name: str = "report.pdf") -> InputFile:
        return InputFile(name=name, payload=PDF_BYTES, media_type="application/pdf")
    return _make


@pytest.fixture
def requests_seen():
    """List that handlers append captured httpx.Request objects to."""
    return []


@pytest.fixture
def zip_remote(requests_seen):
    """Remote that always answers with the given archive."""
    def _make(entries: dict) -> RemoteTransformClient:
        payload = make_zip(entries)

        def handler(request: httpx.Request) -> httpx.Response:
            requests_seen.append(request)
            return httpx.Response(200, content=payload, headers={"content-type": "application/zip"})

        return make_remote(handler)
    return _make
