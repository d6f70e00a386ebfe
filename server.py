from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import quote

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from mytools_backend.archive import build_export_zip
from mytools_backend.client import RemoteTransformClient
from mytools_backend.config import CLEANUP_INTERVAL_SECONDS, MAX_UPLOAD_BYTES, MAX_UPLOAD_FILES
from mytools_backend.errors import SessionClosedError, ValidationError
from mytools_backend.models import InputFile, SessionSnapshot, SessionStatus
from mytools_backend.presets import PRESETS
from mytools_backend.security import entry_basename, is_safe_basename, normalize_token_id
from mytools_backend.session import ConversionSession
from mytools_backend.workspace import SessionNotFound, SessionRegistry


logger = logging.getLogger(__name__)

registry = SessionRegistry(RemoteTransformClient())


class NewSessionRequest(BaseModel):
    preset: str


class PromptRequest(BaseModel):
    prompt: str


class SubmitRequest(BaseModel):
    options: dict[str, str] = {}


class PruneSessionsRequest(BaseModel):
    keep_session_id: str


async def _cleanup_worker() -> None:
    # Periodically tear down idle sessions so their previews are released.
    while True:
        try:
            registry.cleanup_expired_sessions()
        except Exception:
            logger.exception("Session cleanup pass failed")
        await asyncio.sleep(max(30, CLEANUP_INTERVAL_SECONDS))


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(_cleanup_worker())
    app.state._cleanup_task = task
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        registry.delete_all_sessions()
        await registry.client.aclose()


app = FastAPI(lifespan=lifespan)

# Allow the browser forms to call the API from another origin (or file://).
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _session_or_404(session_id: str) -> ConversionSession:
    try:
        return registry.get_session(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")


def _attachment(filename: str, disposition: str = "attachment") -> str:
    # RFC 5987 encoding keeps user-supplied names from breaking the header.
    ascii_name = filename.encode("ascii", "ignore").decode("ascii").replace('"', "") or "download"
    return f"{disposition}; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


@app.get("/api/presets")
async def list_presets() -> JSONResponse:
    return JSONResponse(
        {
            "presets": [
                {
                    "name": p.name,
                    "title": p.title,
                    "mode": p.mode,
                    "multiple": p.multiple,
                    "result_kind": p.result_kind.value,
                    "options": {k: {"default": o.default, "choices": list(o.choices)} for k, o in p.options.items()},
                }
                for p in PRESETS.values()
            ]
        }
    )


@app.post("/api/session/new")
async def new_session(payload: NewSessionRequest) -> JSONResponse:
    try:
        session = registry.create_session(payload.preset)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse({"session_id": session.session_id})


@app.get("/api/session/{session_id}", response_model=SessionSnapshot)
async def get_session(session_id: str) -> SessionSnapshot:
    return _session_or_404(session_id).snapshot()


@app.post("/api/session/{session_id}/inputs", response_model=SessionSnapshot)
async def select_inputs(session_id: str, files: list[UploadFile] = File(...)) -> SessionSnapshot:
    """Stage uploaded files; supersedes any previous inputs, outputs or in-flight submission."""
    session = _session_or_404(session_id)
    if len(files) > MAX_UPLOAD_FILES:
        raise HTTPException(status_code=413, detail="Too many files")

    selected: list[InputFile] = []
    for upload in files:
        # Limit read to prevent accidental huge uploads.
        data = await upload.read(MAX_UPLOAD_BYTES + 1)
        if len(data) > MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=413, detail=f"File too large: {upload.filename}")
        selected.append(InputFile(name=upload.filename or "upload", payload=data, media_type=upload.content_type))

    try:
        session.select_inputs(selected)
    except SessionClosedError:
        raise HTTPException(status_code=404, detail="Session not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return session.snapshot()


@app.post("/api/session/{session_id}/prompt", response_model=SessionSnapshot)
async def select_prompt(session_id: str, payload: PromptRequest) -> SessionSnapshot:
    session = _session_or_404(session_id)
    try:
        session.select_prompt(payload.prompt)
    except SessionClosedError:
        raise HTTPException(status_code=404, detail="Session not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return session.snapshot()


@app.post("/api/session/{session_id}/submit", response_model=SessionSnapshot)
async def submit(session_id: str, payload: Optional[SubmitRequest] = None) -> SessionSnapshot:
    """Run the conversion and return the resulting snapshot.

    Remote and decode failures come back as status=failed with an error body,
    not as HTTP errors; only invalid requests are rejected with 400.
    """
    session = _session_or_404(session_id)
    options = payload.options if payload is not None else {}
    try:
        await session.submit(options)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except SessionClosedError:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.snapshot()


@app.post("/api/session/{session_id}/reset", response_model=SessionSnapshot)
async def reset_session(session_id: str) -> SessionSnapshot:
    session = _session_or_404(session_id)
    session.reset()
    return session.snapshot()


@app.post("/api/session/{session_id}/delete")
async def delete_session_api(session_id: str) -> JSONResponse:
    # Idempotent: deleting a missing/invalid session is treated as success.
    registry.delete_session(session_id)
    return JSONResponse({"ok": True})


def _require_localhost(request: Request) -> None:
    # These endpoints are destructive; restrict to local use.
    host = getattr(request.client, "host", "") if request.client else ""
    if host not in {"127.0.0.1", "::1", "localhost"}:
        raise HTTPException(status_code=403, detail="Forbidden")


@app.post("/api/sessions/delete-all")
async def delete_all(request: Request) -> JSONResponse:
    _require_localhost(request)
    deleted = registry.delete_all_sessions(except_session_ids=None)
    return JSONResponse({"ok": True, "deleted": deleted})


@app.post("/api/sessions/prune")
async def prune_sessions(payload: PruneSessionsRequest, request: Request) -> JSONResponse:
    _require_localhost(request)
    try:
        keep = normalize_token_id(payload.keep_session_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid session")
    deleted = registry.delete_all_sessions(except_session_ids=[keep])
    return JSONResponse({"ok": True, "deleted": deleted, "kept": keep})


@app.get("/s/{session_id}/p/{handle_id}")
async def get_preview(session_id: str, handle_id: str, download: bool = False) -> Response:
    """Serve a preview by handle.

    Revoked handles are indistinguishable from unknown ones: both are 404.
    """
    session = _session_or_404(session_id)
    try:
        hid = normalize_token_id(handle_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Not found")

    entry = session.ledger.resolve(hid)
    if entry is None:
        raise HTTPException(status_code=404, detail="Not found")

    filename = session.download_name(hid) or entry_basename(entry.name)
    if not is_safe_basename(filename):
        filename = "download"
    headers = {
        "Cache-Control": "no-store",
        "X-Content-Type-Options": "nosniff",
        "Content-Disposition": _attachment(filename, "attachment" if download else "inline"),
    }
    return Response(content=entry.payload, media_type=entry.media_type, headers=headers)


@app.get("/api/session/{session_id}/export-zip")
async def export_zip(session_id: str) -> Response:
    """Bundle every output of a ready session into one ZIP."""
    session = _session_or_404(session_id)
    if session.status != SessionStatus.READY:
        raise HTTPException(status_code=409, detail="No results to export")

    if session.bundle is not None:
        # The service already sent an archive; hand it back untouched.
        zip_bytes = session.bundle.payload
        filename = session.bundle.default_filename
    else:
        zip_bytes = build_export_zip(session.export_entries())
        filename = "converted.zip"

    headers = {
        "Content-Disposition": _attachment(filename),
        "Cache-Control": "no-store",
        "X-Content-Type-Options": "nosniff",
    }
    return Response(content=zip_bytes, media_type="application/zip", headers=headers)


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    port = int(os.environ.get("PORT", "8010"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
