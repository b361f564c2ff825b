"""Pairing session manager: session identity, role and token lifecycle.

Every device is primary of its own session, created lazily the first time
it is needed. Joining another device's session makes this device a
secondary until it disconnects, is disconnected automatically because the
session died, or joins somewhere else.
"""

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from anchorwatch.errors import (
    NotSessionOwnerError,
    QuotaExceededError,
    RemoteStoreError,
    SessionCorruptedError,
    SessionCreationThrottledError,
    SessionError,
    SessionExpiredError,
    SessionInactiveError,
    SessionNotFoundError,
)
from anchorwatch.pairing.models import PairingSession, PairingSessionState
from anchorwatch.pairing.tokens import generate_token, join_link, require_valid_token
from anchorwatch.remote.sessions import SessionRepository
from anchorwatch.streams import ValueStream

logger = logging.getLogger(__name__)


class LeaveReason(enum.StrEnum):
    ended = "ended"  # primary ended its own session
    disconnected = "disconnected"  # secondary left by choice
    auto_disconnected = "auto_disconnected"  # joined session died
    session_lost = "session_lost"  # own session expired, vanished or is unreadable


# Awaited before the state changes, so services bound to the token stop first.
LeaveHook = Callable[[str, LeaveReason], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PairingManager:
    def __init__(
        self,
        repository: SessionRepository,
        initial: PairingSessionState | None = None,
        persist: Callable[[PairingSessionState], None] | None = None,
        min_create_interval: float = 5.0,
        check_interval: float = 15.0,
        reconnect_delay: float = 5.0,
        link_scheme: str = "anchorwatch",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.persist = persist
        self.min_create_interval = min_create_interval
        self.check_interval = check_interval
        self.reconnect_delay = reconnect_delay
        self.link_scheme = link_scheme
        self.clock = clock

        self.states: ValueStream[PairingSessionState] = ValueStream(
            initial or PairingSessionState(), name="pairing"
        )
        self.leave_hooks: list[LeaveHook] = []
        self.local_only = False

        self._create_lock = asyncio.Lock()
        self._last_create_at: float | None = None
        self._own_task: asyncio.Task[None] | None = None
        self._joined_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> PairingSessionState:
        return self.states.current

    def _set_state(self, state: PairingSessionState) -> None:
        if not self.states.set(state):
            return
        logger.info(
            "Pairing state: role=%s local=%s remote=%s",
            state.role,
            state.local_token,
            state.remote_token,
        )
        if self.persist is not None:
            try:
                self.persist(state)
            except Exception:
                logger.exception("Could not save pairing state")

    # Startup / shutdown

    async def restore(self) -> None:
        """Check the saved sessions against the remote store and resume watching."""
        state = self.state
        if state.local_token:
            try:
                session = await self.repository.get_session(state.local_token)
            except SessionCorruptedError:
                session = None
            except RemoteStoreError as e:
                logger.warning("Cannot verify local session, keeping it: %s", e)
                self.local_only = True
            else:
                if session is None or not session.is_usable(self.clock()):
                    await self._drop_own_session(state.local_token)
                else:
                    self._watch_own(state.local_token)
        if state.remote_token:
            self._watch_joined(state.remote_token)

    async def close(self) -> None:
        for task in (self._own_task, self._joined_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._own_task, self._joined_task) if t is not None),
            return_exceptions=True,
        )
        self._own_task = None
        self._joined_task = None

    # Primary side

    async def ensure_local_session(self) -> str:
        """Return this device's own session token, creating the session if needed."""
        if self.state.local_token:
            return self.state.local_token
        return await self.create_session()

    async def create_session(self) -> str:
        """Create (or reuse) this device's own session and return its token.

        Raises SessionCreationThrottledError when called again within the
        minimum interval and QuotaExceededError when the store is full. Other
        remote failures leave the device with a local-only session.
        """
        async with self._create_lock:
            now = time.monotonic()
            if (
                self._last_create_at is not None
                and now - self._last_create_at < self.min_create_interval
            ):
                if self.state.local_token:
                    return self.state.local_token
                raise SessionCreationThrottledError(
                    f"Session creation is limited to once every {self.min_create_interval:g}s"
                )
            self._last_create_at = now

            try:
                token = await self._reuse_owned_session()
                if token is None:
                    try:
                        await self.repository.delete_expired_sessions()
                    except Exception as e:
                        logger.warning("Expired-session cleanup failed: %s", e)
                    token = generate_token()
                    await self.repository.create_session(token)
                self.local_only = False
            except QuotaExceededError:
                raise
            except RemoteStoreError as e:
                logger.warning("Remote store unavailable, using a local-only session: %s", e)
                token = generate_token()
                self.local_only = True

            self._set_state(self.state.with_local_token(token))
            if not self.local_only:
                self._watch_own(token)
            return token

    async def _reuse_owned_session(self) -> str | None:
        uid = await self.repository.authenticate()
        token = await self.repository.get_owned_session_token()
        if token is None:
            return None
        try:
            existing = await self.repository.get_session(token)
        except SessionCorruptedError:
            existing = None
        if (
            existing is not None
            and existing.primary_user_id == uid
            and existing.is_usable(self.clock())
        ):
            logger.info("Reusing existing session %s", token)
            return token

        logger.info("Discarding stale session %s", token)
        try:
            if existing is not None or await self.repository.check_session_access(token):
                await self.repository.delete_session(token)
            await self.repository.remove_owned_session_token()
        except Exception as e:
            logger.warning("Could not discard stale session %s: %s", token, e)
        return None

    async def end_session(self) -> None:
        """End this device's own session. Only the primary may do this."""
        if self.state.is_secondary:
            raise NotSessionOwnerError(
                "A secondary device cannot end the session; disconnect instead"
            )
        token = self.state.local_token
        if token is None:
            return

        self._cancel_own_watch()
        await self._run_leave_hooks(token, LeaveReason.ended)
        try:
            await self.repository.update_session_data(
                token, {"isActive": False, "monitoringActive": False}
            )
            await self.repository.remove_owned_session_token()
        except Exception as e:
            logger.warning("Could not mark session %s inactive: %s", token, e)
        self._set_state(self.state.with_local_token(None))
        logger.info("Session %s ended", token)

    def join_link(self) -> str | None:
        token = self.state.local_token
        return join_link(token, self.link_scheme) if token else None

    # Secondary side

    async def join_session(self, token: str) -> PairingSession:
        """Join another device's session as a secondary observer."""
        token = require_valid_token(token)
        if token == self.state.local_token:
            raise SessionError("Cannot join this device's own session")

        if not await self.repository.check_session_access(token):
            raise SessionNotFoundError(token)
        session = await self.repository.get_session(token)
        if session is None:
            raise SessionNotFoundError(token)
        if session.is_expired(self.clock()):
            raise SessionExpiredError(token)
        if not session.is_active:
            raise SessionInactiveError(token)

        if self.state.is_secondary and self.state.remote_token != token:
            await self.disconnect()

        await self.repository.add_device(token)
        self._set_state(self.state.joined(token, session.primary_user_id))
        self._watch_joined(token)
        logger.info("Joined session %s as secondary", token)
        return session

    async def disconnect(self) -> None:
        """Leave the joined session. A primary device has nothing to leave."""
        token = self.state.remote_token
        if token is None:
            return
        await self._leave_joined(token, LeaveReason.disconnected, remove_device=True)

    async def _leave_joined(self, token: str, reason: LeaveReason, remove_device: bool) -> None:
        if self._joined_task is not None and self._joined_task is not asyncio.current_task():
            self._joined_task.cancel()
            await asyncio.gather(self._joined_task, return_exceptions=True)
        self._joined_task = None

        await self._run_leave_hooks(token, reason)
        if remove_device:
            try:
                await self.repository.remove_device(token)
            except Exception as e:
                logger.warning("Could not remove device from session %s: %s", token, e)
        if self.state.remote_token == token:
            self._set_state(self.state.left())
        logger.info("Left session %s (%s)", token, reason)

    # Watchers

    def _watch_own(self, token: str) -> None:
        self._cancel_own_watch()
        self._own_task = asyncio.create_task(self._watch(token, self._own_session_ended))

    def _cancel_own_watch(self) -> None:
        if self._own_task is not None and self._own_task is not asyncio.current_task():
            self._own_task.cancel()
        self._own_task = None

    def _watch_joined(self, token: str) -> None:
        if self._joined_task is not None:
            self._joined_task.cancel()
        self._joined_task = asyncio.create_task(self._watch(token, self._joined_session_ended))

    async def _own_session_ended(self, token: str, why: str) -> None:
        if self.state.local_token != token:
            return
        logger.warning("Own session %s is %s; a new one will be created on demand", token, why)
        await self._drop_own_session(token)

    async def _drop_own_session(self, token: str) -> None:
        await self._run_leave_hooks(token, LeaveReason.session_lost)
        try:
            await self.repository.delete_session(token)
            await self.repository.remove_owned_session_token()
        except Exception as e:
            logger.warning("Could not delete session %s: %s", token, e)
        if self.state.local_token == token:
            self._set_state(self.state.with_local_token(None))

    async def _joined_session_ended(self, token: str, why: str) -> None:
        if self.state.remote_token != token:
            return
        logger.warning("Joined session %s is %s; disconnecting", token, why)
        await self._leave_joined(token, LeaveReason.auto_disconnected, remove_device=False)

    async def _watch(self, token: str, on_end: Callable[[str, str], Awaitable[None]]) -> None:
        """Follow a session until it dies, then hand it to ``on_end``.

        Transient stream failures resubscribe after ``reconnect_delay``.
        """
        while True:
            queue: asyncio.Queue[tuple[str, object]] = asyncio.Queue()
            pump = asyncio.create_task(self._pump(token, queue))
            try:
                why = await self._wait_for_end(token, queue)
            finally:
                pump.cancel()
                await asyncio.gather(pump, return_exceptions=True)
            if why is not None:
                await on_end(token, why)
                return
            await asyncio.sleep(self.reconnect_delay)

    async def _pump(self, token: str, queue: asyncio.Queue[tuple[str, object]]) -> None:
        try:
            async for session in self.repository.stream_session(token):
                queue.put_nowait(("session", session))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            queue.put_nowait(("error", e))
            return
        queue.put_nowait(("error", RemoteStoreError("session stream closed")))

    async def _wait_for_end(
        self, token: str, queue: asyncio.Queue[tuple[str, object]]
    ) -> str | None:
        """Return why the session is gone, or None to resubscribe."""
        last: PairingSession | None = None
        while True:
            try:
                kind, value = await asyncio.wait_for(queue.get(), timeout=self.check_interval)
            except TimeoutError:
                # Expiry does not change the document, so check it on a timer
                if last is not None and last.is_expired(self.clock()):
                    return "expired"
                continue

            if kind == "error":
                if isinstance(value, SessionCorruptedError):
                    return "corrupted"
                logger.warning("Session %s stream interrupted: %s", token, value)
                return None

            if not isinstance(value, PairingSession):
                return "deleted"
            if not value.is_active:
                return "inactive"
            if value.is_expired(self.clock()):
                return "expired"
            last = value

    async def _run_leave_hooks(self, token: str, reason: LeaveReason) -> None:
        for hook in self.leave_hooks:
            try:
                await hook(token, reason)
            except Exception:
                logger.exception("Leave hook failed for session %s", token)
