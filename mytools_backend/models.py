from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from .errors import ConversionError
from .ledger import PreviewHandle


class SessionStatus(str, Enum):
    IDLE = "idle"
    STAGED = "staged"
    SUBMITTING = "submitting"
    DECODING = "decoding"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class InputFile:
    """A user-selected file before staging."""

    name: str
    payload: bytes
    media_type: Optional[str] = None


@dataclass(frozen=True)
class InputArtifact:
    identity: str
    display_name: str
    payload: bytes
    media_type: str
    preview_handle: PreviewHandle


@dataclass(frozen=True)
class OutputArtifact:
    identity: str
    display_name: str
    payload: bytes
    preview_handle: PreviewHandle
    mime_hint: str
    default_filename: str


class SessionError(BaseModel):
    """Terminal error carried by the ``failed`` state."""

    kind: str
    reason: str
    message: str
    status: Optional[int] = None

    @classmethod
    def from_exception(cls, exc: ConversionError) -> "SessionError":
        return cls(
            kind=exc.kind,
            reason=exc.reason,
            message=exc.message,
            status=getattr(exc, "status", None),
        )


class ArtifactView(BaseModel):
    name: str
    handle_id: str
    url: str
    media_type: str
    default_filename: Optional[str] = None


class SessionSnapshot(BaseModel):
    session_id: str
    preset: str
    status: SessionStatus
    submission: int
    error: Optional[SessionError] = None
    rejected: list[str] = []
    inputs: list[ArtifactView] = []
    outputs: list[ArtifactView] = []
    bundle: Optional[ArtifactView] = None
