from __future__ import annotations

import logging
import time
from typing import Iterable, Optional

from .client import RemoteTransformClient
from .config import TTL_HOURS
from .presets import get_preset
from .security import new_token_id, normalize_token_id
from .session import ConversionSession


logger = logging.getLogger(__name__)


class SessionNotFound(KeyError):
    pass


class SessionRegistry:
    """Owns the lifetime of every live ConversionSession.

    Sessions are independent; the registry is the only thing that tears them
    down (explicit delete, TTL expiry, or shutdown), and teardown always goes
    through ConversionSession.close() so every preview is released.
    """

    def __init__(self, client: RemoteTransformClient, *, ttl_hours: float = TTL_HOURS):
        self.client = client
        self.ttl_hours = ttl_hours
        self._sessions: dict[str, ConversionSession] = {}

    def create_session(self, preset_name: str) -> ConversionSession:
        preset = get_preset(preset_name)
        session = ConversionSession(preset, self.client, session_id=new_token_id())
        self._sessions[session.session_id] = session
        logger.debug("Created session %s (%s)", session.session_id, preset.name)
        return session

    def get_session(self, session_id: str) -> ConversionSession:
        try:
            sid = normalize_token_id(session_id)
        except ValueError:
            raise SessionNotFound(session_id) from None
        session = self._sessions.get(sid)
        if session is None:
            raise SessionNotFound(sid)
        return session

    def delete_session(self, session_id: str) -> bool:
        """Close and forget a session. Missing/invalid ids are not an error."""
        try:
            sid = normalize_token_id(session_id)
        except ValueError:
            return False
        session = self._sessions.pop(sid, None)
        if session is None:
            return False
        session.close()
        return True

    def cleanup_expired_sessions(self, now: Optional[float] = None) -> int:
        """Close sessions idle for longer than the TTL.

        Returns the number of closed sessions.
        """
        ttl_seconds = max(0.0, self.ttl_hours) * 3600.0
        if not ttl_seconds:
            return 0
        now = time.time() if now is None else now

        expired = [sid for sid, s in self._sessions.items() if (now - s.last_activity) > ttl_seconds]
        for sid in expired:
            self.delete_session(sid)
        if expired:
            logger.info("Expired %d idle session(s)", len(expired))
        return len(expired)

    def delete_all_sessions(self, except_session_ids: Iterable[str] | None = None) -> int:
        """Close every session except the given ids (invalid ids are ignored)."""
        keep: set[str] = set()
        for sid in except_session_ids or ():
            try:
                keep.add(normalize_token_id(str(sid)))
            except ValueError:
                continue

        deleted = 0
        for sid in list(self._sessions):
            if sid in keep:
                continue
            if self.delete_session(sid):
                deleted += 1
        return deleted

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
