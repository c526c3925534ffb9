"""
Session registry for spotting conflicting logins on one device.

Browser tabs on the same device share credentials, so a tab signed in as
one account while another tab signs in as a different account ends up
acting for the wrong person. The registry reports such conflicts and can
log the other sessions out, pushing the invalidation to their open
connections. This is a usability aid: credential checks must still call
is_active().
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from donorlink.errors import Forbidden, NotFound, ValidationError
from donorlink.models import Session, utcnow
from donorlink.realtime import RealtimeCoordinator

logger = logging.getLogger(__name__)

SESSION_WINDOW_SECONDS = 30.0


class SessionGuard:
    def __init__(
        self,
        coordinator: RealtimeCoordinator | None = None,
        window_seconds: float = SESSION_WINDOW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._coordinator = coordinator
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._by_user: dict[str, set[str]] = {}

    def _get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        return session

    def register(
        self, user_id: str, device_id: str, session_id: str | None = None
    ) -> Session:
        if not user_id or not device_id:
            raise ValidationError("user_id and device_id are required")
        now = self._clock()
        fields = {"user_id": user_id, "device_id": device_id, "created_at": now, "last_seen": now}
        if session_id:
            fields["session_id"] = session_id
        session = Session(**fields)
        self._sessions[session.session_id] = session
        self._by_user.setdefault(user_id, set()).add(session.session_id)
        logger.debug("Session %s registered for user %s", session.session_id, user_id)
        return session

    def owned_by(self, session_id: str, user_id: str) -> Session:
        """Return the session, provided it belongs to user_id."""
        session = self._get(session_id)
        if session.user_id != user_id:
            raise Forbidden("This session belongs to another user")
        return session

    def touch(self, session_id: str) -> Session:
        session = self._get(session_id)
        session.last_seen = self._clock()
        return session

    def is_active(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.active

    def sessions_for_user(self, user_id: str) -> list[Session]:
        return [
            self._sessions[sid]
            for sid in self._by_user.get(user_id, ())
            if self._sessions[sid].active
        ]

    def _others_on_device(self, session: Session) -> list[Session]:
        return [
            other
            for other in self._sessions.values()
            if other.session_id != session.session_id
            and other.device_id == session.device_id
            and other.active
        ]

    def conflict(self, session_id: str) -> list[Session]:
        """
        Other sessions on the same device, signed in as a different account
        and seen within the recency window.
        """
        session = self._get(session_id)
        cutoff = self._clock() - self._window
        return [
            other
            for other in self._others_on_device(session)
            if other.user_id != session.user_id and other.last_seen >= cutoff
        ]

    async def end(self, session_id: str) -> None:
        session = self._get(session_id)
        await self._invalidate(session)

    async def force_logout_others(self, session_id: str) -> list[Session]:
        """Deactivate every other session on this device and tell their clients."""
        session = self._get(session_id)
        if not session.active:
            raise ValidationError(f"Session {session_id} is no longer active")

        invalidated = self._others_on_device(session)
        for other in invalidated:
            await self._invalidate(other)
        logger.info(
            "Session %s logged out %d other sessions on device %s",
            session_id,
            len(invalidated),
            session.device_id,
        )
        return invalidated

    async def _invalidate(self, session: Session) -> None:
        session.active = False
        self._by_user.get(session.user_id, set()).discard(session.session_id)
        if self._coordinator is not None:
            await self._coordinator.invalidate_session(session.session_id)
