"""Session validator and refresher for long-running API clients.

``SessionManager`` answers "is the session usable, and should it be
refreshed soon?" and performs refreshes single-flight: however many callers
ask at once, only one refresh call goes out and everyone awaits its result.
Network-classified failures are retried (3 attempts total, 2s apart); any
other failure is final for that call.

``SessionRefreshLoop`` drives the manager periodically and reports a
terminal expiry once through a callback.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_fixed
from tenacity.wait import wait_base

from src.crm_connect.session.identity import Session

logger = structlog.get_logger(__name__)

REFRESH_THRESHOLD = timedelta(minutes=5)
MAX_REFRESH_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = 2
REFRESH_WAIT_TIMEOUT = 30.0
CHECK_INTERVAL_SECONDS = 300

SESSION_ERROR_MARKERS = (
    "session expired",
    "invalid session",
    "no session",
    "jwt expired",
    "invalid jwt",
    "refresh_token_not_found",
    "invalid_grant",
    "could not validate credentials",
)

NETWORK_ERROR_MARKERS = ("network", "fetch", "timeout", "connection")


class IdentityClient(Protocol):
    async def get_session(self) -> Session | None: ...

    async def refresh_session(self) -> Session: ...


@dataclass
class SessionValidation:
    is_valid: bool
    needs_refresh: bool = False
    expires_at: datetime | None = None
    error: str | None = None


def is_session_error(exc: BaseException | str) -> bool:
    """True for errors that mean the session itself is gone or invalid."""
    message = str(exc).lower()
    return any(marker in message for marker in SESSION_ERROR_MARKERS)


def is_network_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in NETWORK_ERROR_MARKERS)


class SessionManager:
    """Validate and refresh the API session held by an identity client.

    Args:
        identity: Identity client holding the session.
        retry_wait: tenacity wait between network retries (2s fixed).
        max_attempts: Refresh attempts per call, including the first.
        wait_timeout: Upper bound for awaiting an in-flight refresh.
    """

    def __init__(
        self,
        identity: IdentityClient,
        retry_wait: wait_base | None = None,
        max_attempts: int = MAX_REFRESH_ATTEMPTS,
        wait_timeout: float = REFRESH_WAIT_TIMEOUT,
    ) -> None:
        self._identity = identity
        self._retry_wait = retry_wait or wait_fixed(RETRY_BACKOFF_SECONDS)
        self._max_attempts = max_attempts
        self._wait_timeout = wait_timeout
        self._lock = asyncio.Lock()
        self._inflight: asyncio.Task[bool] | None = None

    async def validate(self) -> SessionValidation:
        """Never raises; a missing session is simply not valid.

        A session that is present but already past ``expires_at`` is still
        valid: the refresh token can renew it, so it only needs a refresh.
        """
        try:
            session = await self._identity.get_session()
        except Exception as exc:
            logger.warning("session.validate_failed", error=str(exc))
            return SessionValidation(is_valid=False, error=str(exc))

        if session is None:
            return SessionValidation(is_valid=False, error="No active session")

        remaining = session.expires_at - datetime.now(timezone.utc)
        return SessionValidation(
            is_valid=True,
            needs_refresh=remaining < REFRESH_THRESHOLD,
            expires_at=session.expires_at,
        )

    async def refresh(self, attempt: int = 1) -> bool:
        """Refresh the session, joining an in-flight refresh if one exists.

        Args:
            attempt: Attempt number this call starts at; fewer retries remain
                for later attempts.

        Returns:
            True if the session was refreshed.
        """
        async with self._lock:
            task = self._inflight
            if task is None or task.done():
                task = asyncio.create_task(self._refresh_with_retry(attempt))
                self._inflight = task

        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._wait_timeout)
        except asyncio.TimeoutError:
            logger.warning("session.refresh_wait_timeout", timeout=self._wait_timeout)
            return False

    async def ensure_valid_session(self) -> bool:
        validation = await self.validate()
        if not validation.is_valid:
            return False
        if not validation.needs_refresh:
            return True
        return await self.refresh()

    async def _refresh_with_retry(self, first_attempt: int) -> bool:
        attempts = max(self._max_attempts - first_attempt + 1, 1)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=self._retry_wait,
                retry=retry_if_exception(is_network_error),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "session.refresh_retry",
                            attempt=first_attempt + attempt.retry_state.attempt_number - 1,
                        )
                    session = await self._identity.refresh_session()
        except Exception as exc:
            logger.warning(
                "session.refresh_failed",
                error=str(exc),
                network_error=is_network_error(exc),
                session_error=is_session_error(exc),
            )
            return False

        logger.info("session.refreshed", expires_at=session.expires_at.isoformat())
        return True


class SessionRefreshLoop:
    """Check the session every ``interval`` seconds and refresh when close.

    Args:
        manager: SessionManager to drive.
        on_expired: Called once (sync or async) when the session cannot be
            kept alive; the loop stops afterwards.
        interval: Seconds between checks.
    """

    def __init__(
        self,
        manager: SessionManager,
        on_expired: Callable[[], Awaitable[None] | None],
        interval: float = CHECK_INTERVAL_SECONDS,
    ) -> None:
        self._manager = manager
        self._on_expired = on_expired
        self._interval = interval
        self._task: asyncio.Task[None] | None = None
        self._expired_notified = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> bool:
        """One validate + conditional refresh. Returns False once expired."""
        ok = await self._manager.ensure_valid_session()
        if not ok and not self._expired_notified:
            self._expired_notified = True
            logger.warning("session.expired")
            result = self._on_expired()
            if inspect.isawaitable(result):
                await result
        return ok

    def start(self) -> bool:
        if self.running:
            return False
        self._expired_notified = False
        self._task = asyncio.create_task(self._run())
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            if not await self.run_once():
                return
            await asyncio.sleep(self._interval)
