"""Session operations on the remote store.

Sessions live under ``sessions/<token>``; ``deviceSessions/<uid>`` records
the token of the session each identity owns. Every call is retried after a
credential refresh when the store reports a permission failure, and every
write is logged with its duration.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from anchorwatch.alarms.models import AlarmEvent
from anchorwatch.errors import PermissionDeniedError, SessionAccessDeniedError
from anchorwatch.pairing.models import DeviceRole, PairingSession
from anchorwatch.pairing.tokens import is_valid_token_format
from anchorwatch.remote.base import RemoteStore, join_path
from anchorwatch.remote.documents import (
    SessionView,
    decode_alarm,
    decode_session,
    decode_session_view,
    encode_alarm,
    encode_device,
    from_ms,
    new_session_document,
    session_from_document,
)

logger = logging.getLogger(__name__)

SESSIONS_ROOT = "sessions"
DEVICE_SESSIONS_ROOT = "deviceSessions"

T = TypeVar("T")


def session_path(token: str, *children: str) -> str:
    return join_path(SESSIONS_ROOT, token, *children)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionRepository:
    def __init__(
        self,
        store: RemoteStore,
        ttl: timedelta = timedelta(hours=24),
        max_auth_retries: int = 2,
        auth_retry_delay: float = 2.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.max_auth_retries = max_auth_retries
        self.auth_retry_delay = auth_retry_delay
        self.clock = clock

    @property
    def uid(self) -> str | None:
        return self.store.uid

    async def authenticate(self) -> str:
        return await self.store.ensure_authenticated()

    async def with_auth_retry(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func``, refreshing credentials and retrying on permission failures."""
        attempt = 0
        while True:
            try:
                return await func()
            except PermissionDeniedError:
                if attempt >= self.max_auth_retries:
                    raise
                attempt += 1
                logger.warning(
                    "%s: permission denied, refreshing credentials (retry %d/%d)",
                    operation,
                    attempt,
                    self.max_auth_retries,
                )
                await self.store.refresh_credentials()
                await asyncio.sleep(self.auth_retry_delay)

    async def _logged(self, operation: str, path: str, func: Callable[[], Awaitable[T]]) -> T:
        started = time.perf_counter()
        try:
            result = await self.with_auth_retry(operation, func)
        except Exception as e:
            elapsed = (time.perf_counter() - started) * 1000
            logger.warning("Remote %s %s failed after %.0fms: %s", operation, path, elapsed, e)
            raise
        elapsed = (time.perf_counter() - started) * 1000
        logger.debug("Remote %s %s ok (%.0fms)", operation, path, elapsed)
        return result

    async def _read(self, path: str) -> Any:
        return await self.with_auth_retry(f"read {path}", lambda: self.store.read(path))

    async def _write(self, path: str, value: Any) -> None:
        await self._logged("write", path, lambda: self.store.write(path, value))

    async def _update(self, path: str, fields: dict[str, Any]) -> None:
        await self._logged("update", path, lambda: self.store.update(path, fields))

    async def _remove(self, path: str) -> None:
        await self._logged("remove", path, lambda: self.store.remove(path))

    # Sessions

    async def create_session(self, token: str) -> PairingSession:
        """Write a new active session owned by the caller and index it."""
        uid = await self.authenticate()
        document = new_session_document(uid, self.clock(), self.ttl)
        await self._write(session_path(token), document)
        await self.set_owned_session_token(token)
        session = session_from_document(token, document)
        logger.info("Session %s created by %s", token, uid)
        return session

    async def get_session(self, token: str) -> PairingSession | None:
        await self.authenticate()
        return decode_session(token, await self._read(session_path(token)))

    async def get_session_view(self, token: str) -> SessionView | None:
        await self.authenticate()
        return decode_session_view(token, await self._read(session_path(token)))

    async def check_session_access(self, token: str) -> bool:
        """Cheap existence check for a session: True if it exists, False if not.

        Raises SessionAccessDeniedError when the store refuses the read, so a
        permission problem is not mistaken for a missing session.
        """
        await self.authenticate()
        try:
            value = await self._read(session_path(token, "isActive"))
        except PermissionDeniedError as e:
            raise SessionAccessDeniedError(token) from e
        return value is not None

    async def update_session_data(self, token: str, fields: dict[str, Any]) -> None:
        await self._update(session_path(token), fields)

    async def add_device(self, token: str, role: DeviceRole = DeviceRole.secondary) -> None:
        uid = await self.authenticate()
        await self._update(
            session_path(token),
            {f"devices/{uid}": encode_device(uid, role, self.clock())},
        )

    async def remove_device(self, token: str) -> None:
        uid = await self.authenticate()
        await self._update(session_path(token), {f"devices/{uid}": None})

    async def delete_session(self, token: str) -> None:
        await self._remove(session_path(token))

    async def session_count(self) -> int:
        await self.authenticate()
        sessions = await self._read(SESSIONS_ROOT)
        return len(sessions) if isinstance(sessions, dict) else 0

    async def delete_expired_sessions(self) -> int:
        """Delete expired sessions owned by the caller. Best-effort; returns the count."""
        uid = await self.authenticate()
        sessions = await self._read(SESSIONS_ROOT)
        if not isinstance(sessions, dict):
            return 0

        now = self.clock()
        deleted = 0
        for token, raw in sessions.items():
            if not isinstance(raw, dict) or raw.get("primaryUserId") != uid:
                continue
            expires_at = raw.get("expiresAt")
            if not isinstance(expires_at, int | float) or from_ms(expires_at) > now:
                continue
            try:
                await self.delete_session(token)
                deleted += 1
            except Exception as e:
                logger.warning("Could not delete expired session %s: %s", token, e)
        if deleted:
            logger.info("Deleted %d expired session(s)", deleted)
        return deleted

    # Alarm slot

    async def set_alarm(self, token: str, event: AlarmEvent) -> None:
        await self._write(session_path(token, "alarm"), encode_alarm(event))

    async def clear_alarm(self, token: str) -> None:
        await self._write(session_path(token, "alarm"), None)

    # Owned-session index

    async def get_owned_session_token(self) -> str | None:
        uid = await self.authenticate()
        token = await self._read(join_path(DEVICE_SESSIONS_ROOT, uid))
        return token if is_valid_token_format(token) else None

    async def set_owned_session_token(self, token: str) -> None:
        uid = await self.authenticate()
        await self._write(join_path(DEVICE_SESSIONS_ROOT, uid), token)

    async def remove_owned_session_token(self) -> None:
        uid = await self.authenticate()
        await self._remove(join_path(DEVICE_SESSIONS_ROOT, uid))

    # Streams

    async def _watch(
        self, token: str, path: str, decode: Callable[[str, Any], T]
    ) -> AsyncIterator[T]:
        await self.authenticate()
        async with aclosing(self.store.watch(path)) as values:
            async for raw in values:
                yield decode(token, raw)

    def stream_session(self, token: str) -> AsyncIterator[PairingSession | None]:
        return self._watch(token, session_path(token), decode_session)

    def stream_session_view(self, token: str) -> AsyncIterator[SessionView | None]:
        return self._watch(token, session_path(token), decode_session_view)

    def stream_alarm(self, token: str) -> AsyncIterator[AlarmEvent | None]:
        return self._watch(token, session_path(token, "alarm"), decode_alarm)
