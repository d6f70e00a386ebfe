from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Union

from .security import new_token_id


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreviewHandle:
    """Opaque, revocable reference to an artifact's bytes.

    Holding a handle never keeps the bytes alive: once the ledger revokes it,
    resolving it returns None.
    """

    handle_id: str
    artifact_id: str


@dataclass(frozen=True)
class PreviewEntry:
    handle: PreviewHandle
    name: str
    media_type: str
    payload: bytes


class ResourceLedger:
    """Per-session registry of live preview handles.

    Every handle registered here is released exactly once, either by
    supersession (re-registering the same artifact id), an explicit revoke, or
    revoke_all() at teardown.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PreviewEntry] = {}
        # artifact id -> handle id of its current (live) preview
        self._by_artifact: dict[str, str] = {}
        self._revoked_total = 0

    def register(
        self,
        artifact_id: str,
        payload: bytes,
        *,
        media_type: str = "application/octet-stream",
        name: str = "",
    ) -> PreviewHandle:
        previous = self._by_artifact.get(artifact_id)
        if previous is not None:
            self._release(previous)

        handle = PreviewHandle(handle_id=new_token_id(), artifact_id=artifact_id)
        self._entries[handle.handle_id] = PreviewEntry(
            handle=handle,
            name=name,
            media_type=media_type,
            payload=bytes(payload),
        )
        self._by_artifact[artifact_id] = handle.handle_id
        return handle

    def resolve(self, handle: Union[PreviewHandle, str]) -> Optional[PreviewEntry]:
        """Return the entry for a live handle, or None once it is revoked."""
        return self._entries.get(_handle_id(handle))

    def revoke(self, handle: Union[PreviewHandle, str]) -> bool:
        """Release one handle. Returns False if it was not live (no error)."""
        return self._release(_handle_id(handle))

    def revoke_all(self) -> int:
        """Release every live handle. Safe on an empty ledger."""
        released = 0
        for handle_id in list(self._entries):
            if self._release(handle_id):
                released += 1
        if released:
            logger.debug("Released %d preview handle(s)", released)
        return released

    def live_handles(self) -> list[PreviewHandle]:
        return [entry.handle for entry in self._entries.values()]

    @property
    def revoked_total(self) -> int:
        return self._revoked_total

    def _release(self, handle_id: str) -> bool:
        entry = self._entries.pop(handle_id, None)
        if entry is None:
            return False
        if self._by_artifact.get(entry.handle.artifact_id) == handle_id:
            del self._by_artifact[entry.handle.artifact_id]
        self._revoked_total += 1
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, handle: object) -> bool:
        if not isinstance(handle, (PreviewHandle, str)):
            return False
        return _handle_id(handle) in self._entries


def _handle_id(handle: Union[PreviewHandle, str]) -> str:
    if isinstance(handle, PreviewHandle):
        return handle.handle_id
    return str(handle)
