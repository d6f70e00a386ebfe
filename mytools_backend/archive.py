from __future__ import annotations

import io
import zipfile
import zlib
from enum import Enum
from typing import Iterable, Iterator, Optional

from .errors import DecodeError


class ResultKind(str, Enum):
    SINGLE = "single"
    ARCHIVE = "archive"
    # Decide per response from Content-Type / magic bytes.
    AUTO = "auto"


_ZIP_CONTENT_TYPES = {"application/zip", "application/x-zip-compressed", "application/x-zip"}
_ZIP_MAGIC = (b"PK\x03\x04", b"PK\x05\x06")


def sniff_kind(data: bytes, content_type: Optional[str] = None) -> ResultKind:
    """Resolve an AUTO result kind for one response body."""
    ct = (content_type or "").split(";")[0].strip().lower()
    if ct in _ZIP_CONTENT_TYPES:
        return ResultKind.ARCHIVE
    if isinstance(data, (bytes, bytearray)) and bytes(data[:4]) in _ZIP_MAGIC:
        return ResultKind.ARCHIVE
    return ResultKind.SINGLE


def decode(buffer: bytes, declared_kind: ResultKind, *, name: str = "result") -> Iterator[tuple[str, bytes]]:
    """Yield ``(name, bytes)`` entries for a conversion response.

    SINGLE yields exactly one entry named ``name``. ARCHIVE yields one entry
    per non-directory ZIP member, in central-directory order, reading each
    member only when the iterator reaches it. Directory members are skipped;
    an archive with no eligible members yields nothing.

    Raises DecodeError (reason ``malformed``) for a structurally invalid
    archive, ``unreadable-entry`` when a member's bytes cannot be read, and
    ``unreadable`` when the buffer is not bytes at all.
    """
    if not isinstance(buffer, (bytes, bytearray, memoryview)):
        raise DecodeError("Response payload is not readable", reason="unreadable")

    kind = ResultKind(declared_kind)
    if kind is ResultKind.AUTO:
        kind = sniff_kind(bytes(buffer))

    if kind is ResultKind.SINGLE:
        return iter([(name, bytes(buffer))])
    return _iter_archive(bytes(buffer))


def _iter_archive(data: bytes) -> Iterator[tuple[str, bytes]]:
    # Parse the directory eagerly so a malformed archive fails at decode() time,
    # not on first iteration.
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
        members = zf.infolist()
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, ValueError) as e:
        raise DecodeError(f"Invalid ZIP: {e}", reason="malformed") from e

    def _entries() -> Iterator[tuple[str, bytes]]:
        with zf:
            for info in members:
                if info.is_dir():
                    continue
                try:
                    payload = zf.read(info)
                except (zipfile.BadZipFile, NotImplementedError, RuntimeError, OSError, zlib.error) as e:
                    raise DecodeError(
                        f"Unreadable ZIP entry {info.filename!r}: {e}",
                        reason="unreadable-entry",
                    ) from e
                yield info.filename, payload

    return _entries()


def build_export_zip(entries: Iterable[tuple[str, bytes]]) -> bytes:
    """Bundle ``(filename, bytes)`` pairs into a ZIP, de-duplicating names."""
    buf = io.BytesIO()
    seen: set[str] = set()
    with zipfile.ZipFile(buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for filename, data in entries:
            arcname = _unique_name(filename or "file", seen)
            zf.writestr(arcname, data)
    return buf.getvalue()


def _unique_name(filename: str, seen: set[str]) -> str:
    candidate = filename
    n = 1
    while candidate.lower() in seen:
        if "." in filename:
            stem, ext = filename.rsplit(".", 1)
            candidate = f"{stem}-{n}.{ext}"
        else:
            candidate = f"{filename}-{n}"
        n += 1
    seen.add(candidate.lower())
    return candidate
