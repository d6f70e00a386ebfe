"""Conversion session state machine.

    idle --select--> staged --submit--> submitting --> decoding --> ready
                                            |              |
                                            +--> failed <--+

Re-selection is legal from every state and always wins: each submission
captures the current sequence number, and every resumption point after an
``await`` compares it against the session's latest one. A result arriving for
an older submission is dropped before it can touch state or the ledger.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Iterable, Optional

from .archive import ResultKind, decode
from .client import RemoteResult, RemoteTransformClient
from .config import PREVIEW_ROUTE_PREFIX
from .errors import ConversionError, RemoteError, SessionClosedError, ValidationError
from .ledger import PreviewHandle, ResourceLedger
from .models import (
    ArtifactView,
    InputArtifact,
    InputFile,
    OutputArtifact,
    SessionError,
    SessionSnapshot,
    SessionStatus,
)
from .presets import MODE_GENERATE, Preset, guess_media_type
from .security import new_token_id


logger = logging.getLogger(__name__)


class ConversionSession:
    def __init__(
        self,
        preset: Preset,
        client: RemoteTransformClient,
        *,
        session_id: Optional[str] = None,
        ledger: Optional[ResourceLedger] = None,
    ):
        self.session_id = session_id or new_token_id()
        self.preset = preset
        self.ledger = ledger if ledger is not None else ResourceLedger()
        self._client = client

        self.status = SessionStatus.IDLE
        self.error: Optional[SessionError] = None
        self.rejected: list[str] = []
        self.inputs: tuple[InputArtifact, ...] = ()
        self.outputs: tuple[OutputArtifact, ...] = ()
        self.bundle: Optional[OutputArtifact] = None
        self.submission = 0
        self.closed = False
        self.last_activity = time.time()

    # ------------------------------------------------------------------ staging

    def select_inputs(self, files: Iterable[InputFile]) -> SessionStatus:
        """Stage a new input set, superseding everything that came before."""
        self._ensure_open()
        if self.preset.mode == MODE_GENERATE:
            raise ValueError(f"Preset {self.preset.name} takes a prompt, not files")
        files = list(files)
        accepted: list[InputFile] = []
        rejected: list[str] = []
        for f in files:
            if self.preset.accept(f.name, f.media_type):
                accepted.append(f)
            else:
                rejected.append(f.name)

        if not self.preset.multiple and len(accepted) > 1:
            rejected.extend(f.name for f in accepted[1:])
            accepted = accepted[:1]

        if rejected:
            logger.info("Session %s: rejected %d file(s) for %s", self.session_id, len(rejected), self.preset.name)
        return self._stage(accepted, rejected, empty_message="None of the selected files can be used for this conversion.")

    def select_prompt(self, prompt: str) -> SessionStatus:
        """Stage a text prompt as the single input of a generate preset."""
        self._ensure_open()
        if self.preset.mode != MODE_GENERATE:
            raise ValueError(f"Preset {self.preset.name} does not take a prompt")
        text = (prompt or "").strip()
        accepted = [InputFile(name=text, payload=text.encode("utf-8"), media_type="text/plain")] if text else []
        return self._stage(accepted, [], empty_message="Please enter a prompt to generate an image.")

    def _stage(self, accepted: list[InputFile], rejected: list[str], *, empty_message: str) -> SessionStatus:
        self._touch()
        self.submission += 1
        self._discard_outputs()
        self._discard_inputs()
        self.rejected = rejected

        if not accepted:
            self._fail(ValidationError(empty_message, reason="noValidInput"))
            return self.status

        staged = []
        for f in accepted:
            identity = new_token_id()
            media_type = guess_media_type(f.name, f.media_type)
            handle = self.ledger.register(identity, f.payload, media_type=media_type, name=f.name)
            staged.append(
                InputArtifact(
                    identity=identity,
                    display_name=f.name,
                    payload=bytes(f.payload),
                    media_type=media_type,
                    preview_handle=handle,
                )
            )
        self.inputs = tuple(staged)
        self.error = None
        self._set_status(SessionStatus.STAGED)
        return self.status

    # --------------------------------------------------------------- submission

    async def submit(self, options: Optional[dict] = None) -> SessionStatus:
        """Run one remote conversion for the staged inputs.

        Raises ValidationError (state unchanged) when nothing is staged or an
        option is invalid. Remote and decode failures never raise; they land
        on the ``failed`` state.
        """
        self._ensure_open()
        if not self.inputs:
            raise ValidationError("Please select an input first.", reason="noInput")
        resolved = self.preset.resolve_options(options)

        self._touch()
        self.submission += 1
        token = self.submission
        inputs = list(self.inputs)
        self._discard_outputs()
        self.error = None
        self._set_status(SessionStatus.SUBMITTING)
        logger.info("Session %s: submission #%d (%s)", self.session_id, token, self.preset.name)

        try:
            result = await self._call_remote(inputs, resolved)
            if self._is_stale(token):
                return self._drop_stale(token)

            self._set_status(SessionStatus.DECODING)
            single_name = self.preset.default_filename(inputs, "result", resolved)
            entries = await asyncio.to_thread(_materialize, result, single_name)
            if self._is_stale(token):
                return self._drop_stale(token)
        except asyncio.CancelledError:
            if not self._is_stale(token):
                self._fail_submission(RemoteError("Request was cancelled.", reason="cancelled"))
            raise
        except ConversionError as e:
            if self._is_stale(token):
                return self._drop_stale(token)
            logger.warning("Session %s: submission #%d failed: %s", self.session_id, token, e.message)
            self._fail_submission(e)
            return self.status
        except Exception as e:
            if self._is_stale(token):
                return self._drop_stale(token)
            logger.exception("Session %s: submission #%d crashed", self.session_id, token)
            self._fail_submission(ConversionError(f"Unexpected error: {e}", reason="unexpected"))
            return self.status

        self._publish(inputs, result, entries, resolved)
        return self.status

    async def _call_remote(self, inputs: list[InputArtifact], options: dict) -> RemoteResult:
        if self.preset.mode == MODE_GENERATE:
            return await self._client.generate(inputs[0].display_name, self.preset.parameters, preset=self.preset)
        return await self._client.transform(inputs, options, preset=self.preset)

    def _publish(
        self,
        inputs: list[InputArtifact],
        result: RemoteResult,
        entries: list[tuple[str, bytes]],
        options: dict,
    ) -> None:
        # No awaits below: consumers see either the old state or the full set.
        outputs = []
        for name, data in entries:
            filename = self.preset.default_filename(inputs, name, options)
            if result.kind is ResultKind.SINGLE:
                mime = guess_media_type(filename, result.content_type)
            else:
                mime = guess_media_type(name)
            outputs.append(self._register_output(name, data, mime, filename))

        if self.preset.keep_bundle and result.kind is ResultKind.ARCHIVE:
            bundle_name = self.preset.bundle_filename(inputs)
            self.bundle = self._register_output(bundle_name, result.payload, "application/zip", bundle_name)
        self.outputs = tuple(outputs)
        self._set_status(SessionStatus.READY)
        logger.info("Session %s: ready with %d output(s)", self.session_id, len(outputs))

    def _register_output(self, name: str, data: bytes, mime: str, filename: str) -> OutputArtifact:
        identity = new_token_id()
        handle = self.ledger.register(identity, data, media_type=mime, name=name)
        return OutputArtifact(
            identity=identity,
            display_name=name,
            payload=data,
            preview_handle=handle,
            mime_hint=mime,
            default_filename=filename,
        )

    # ---------------------------------------------------------------- lifecycle

    def reset(self) -> SessionStatus:
        """Release every preview and return to idle. Legal from any state."""
        self._touch()
        self.submission += 1
        self._discard_outputs()
        self._discard_inputs()
        # Catch-all; everything should already be released above.
        self.ledger.revoke_all()
        self.rejected = []
        self.error = None
        self._set_status(SessionStatus.IDLE)
        return self.status

    def close(self) -> None:
        """Teardown: reset and refuse further mutation. Idempotent."""
        if self.closed:
            return
        self.reset()
        self.closed = True
        logger.debug("Session %s: closed", self.session_id)

    async def __aenter__(self) -> "ConversionSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ----------------------------------------------------------------- display

    def preview_url(self, handle: PreviewHandle) -> str:
        return f"{PREVIEW_ROUTE_PREFIX}/{self.session_id}/p/{handle.handle_id}"

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            preset=self.preset.name,
            status=self.status,
            submission=self.submission,
            error=self.error,
            rejected=list(self.rejected),
            inputs=[self._view(a.display_name, a.preview_handle, a.media_type) for a in self.inputs],
            outputs=[
                self._view(o.display_name, o.preview_handle, o.mime_hint, o.default_filename)
                for o in self.outputs
            ],
            bundle=(
                self._view(self.bundle.display_name, self.bundle.preview_handle, self.bundle.mime_hint, self.bundle.default_filename)
                if self.bundle is not None
                else None
            ),
        )

    def download_name(self, handle_id: str) -> Optional[str]:
        """Default filename for a live output/bundle handle, or None."""
        candidates = list(self.outputs)
        if self.bundle is not None:
            candidates.append(self.bundle)
        for artifact in candidates:
            if artifact.preview_handle.handle_id == handle_id:
                return artifact.default_filename
        return None

    def export_entries(self) -> list[tuple[str, bytes]]:
        """``(default_filename, bytes)`` for every output of a ready session."""
        if self.status != SessionStatus.READY:
            return []
        return [(o.default_filename, o.payload) for o in self.outputs]

    def _view(self, name: str, handle: PreviewHandle, media_type: str, filename: Optional[str] = None) -> ArtifactView:
        return ArtifactView(
            name=name,
            handle_id=handle.handle_id,
            url=self.preview_url(handle),
            media_type=media_type,
            default_filename=filename,
        )

    # ---------------------------------------------------------------- internals

    def _fail(self, exc: ConversionError) -> None:
        self._discard_outputs()
        self.error = SessionError.from_exception(exc)
        self._set_status(SessionStatus.FAILED)

    def _fail_submission(self, exc: ConversionError) -> None:
        self._fail(exc)
        if self.preset.failure_prefix:
            self.error = self.error.model_copy(update={"message": self.preset.failure_prefix + self.error.message})

    def _discard_outputs(self) -> None:
        for artifact in self.outputs:
            self.ledger.revoke(artifact.preview_handle)
        if self.bundle is not None:
            self.ledger.revoke(self.bundle.preview_handle)
        self.outputs = ()
        self.bundle = None

    def _discard_inputs(self) -> None:
        for artifact in self.inputs:
            self.ledger.revoke(artifact.preview_handle)
        self.inputs = ()

    def _is_stale(self, token: int) -> bool:
        return self.closed or token != self.submission

    def _drop_stale(self, token: int) -> SessionStatus:
        logger.warning(
            "Session %s: dropping stale result for submission #%d (current #%d)",
            self.session_id,
            token,
            self.submission,
        )
        return self.status

    def _set_status(self, status: SessionStatus) -> None:
        if status != self.status:
            logger.debug("Session %s: %s -> %s", self.session_id, self.status.value, status.value)
        self.status = status

    def _touch(self) -> None:
        self.last_activity = time.time()

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosedError()


def _materialize(result: RemoteResult, single_name: str) -> list[tuple[str, bytes]]:
    # Drain the lazy decoder fully; one bad entry fails the whole batch.
    return list(decode(result.payload, result.kind, name=single_name))
