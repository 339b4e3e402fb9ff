"""
Rate-limited outbound call layer.

Every marketplace call goes through RateLimitedCaller.call, which

- holds one slot of a global concurrency ceiling while the call is in flight,
- spaces calls for the same account by a minimum interval,
- retries RateLimited / ServerError / Transient failures with exponential
  backoff under an explicit RetryPolicy,
- refreshes the access credential once on AuthCallError and retries once,
- raises ClientCallError (and every exhausted failure) to the caller.

Price updates are absolute replacements, so a retried submission can only
ever land the same price.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Optional, TypeVar

from pricedrop.core.config import Settings
from pricedrop.core.exceptions import (
    AuthCallError,
    CallError,
    RateLimitedError,
    RetryExhaustedError,
    TransientCallError,
)
from pricedrop.services.ebay.token_manager import AccessCredential

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[AccessCredential], Awaitable[T]]
CredentialRefresher = Callable[[], Awaitable[AccessCredential]]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    backoff_base: float
    backoff_max: float
    jitter: float = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            backoff_base=settings.RETRY_BACKOFF_BASE_SECONDS,
            backoff_max=settings.RETRY_BACKOFF_MAX_SECONDS,
            jitter=settings.RETRY_JITTER_SECONDS,
        )

    def next_backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        if retry_after is not None:
            delay = max(0.0, retry_after)
            jitter = 0.0
        else:
            base = min(self.backoff_base * (2 ** attempt), self.backoff_max)
            jitter = random.uniform(-self.jitter, self.jitter) if self.jitter > 0 else 0.0
            delay = max(0.0, base + jitter)
        logger.debug(f"Computed backoff (attempt={attempt} retry_after={retry_after} jitter={jitter}) -> {delay}")
        return delay


@dataclass
class _AccountWindow:
    lock: asyncio.Lock
    last_request_at: Optional[float] = None
    restricted_until: float = 0.0


class AccountRateLimiter:
    """Minimum spacing between calls per account, plus penalty windows after throttling."""

    def __init__(
        self,
        min_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._windows: Dict[str, _AccountWindow] = {}

    def _window(self, account_id: str) -> _AccountWindow:
        window = self._windows.get(account_id)
        if window is None:
            window = _AccountWindow(lock=asyncio.Lock())
            self._windows[account_id] = window
        return window

    def next_delay(self, account_id: str) -> float:
        window = self._window(account_id)
        now = self._clock()
        delay = 0.0
        if window.restricted_until > now:
            delay = window.restricted_until - now
        if window.last_request_at is not None and self.min_interval_seconds > 0:
            interval_delay = (window.last_request_at + self.min_interval_seconds) - now
            delay = max(delay, interval_delay)
        return max(0.0, delay)

    async def acquire(self, account_id: str) -> None:
        """Wait until the account may make its next call, then stamp it."""
        window = self._window(account_id)
        async with window.lock:
            delay = self.next_delay(account_id)
            while delay > 0:
                await self._sleep(delay)
                delay = self.next_delay(account_id)
            window.last_request_at = self._clock()

    def penalize(self, account_id: str, seconds: float) -> None:
        if seconds <= 0:
            return
        window = self._window(account_id)
        window.restricted_until = max(window.restricted_until, self._clock() + seconds)


@dataclass
class CallResult(Generic[T]):
    value: T
    credential: AccessCredential  # may be a refreshed credential
    attempts: int


class RateLimitedCaller:
    """Wraps every outbound marketplace call for every account."""

    def __init__(
        self,
        retry_policy: RetryPolicy,
        max_concurrency: int,
        account_min_interval: float,
        call_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retry_policy = retry_policy
        self.call_timeout = call_timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._sleep = sleep
        self.limiter = AccountRateLimiter(account_min_interval, clock=clock, sleep=sleep)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitedCaller":
        return cls(
            retry_policy=RetryPolicy.from_settings(settings),
            max_concurrency=settings.RATE_LIMIT_MAX_CONCURRENCY,
            account_min_interval=settings.RATE_LIMIT_ACCOUNT_MIN_INTERVAL_SECONDS,
            call_timeout=settings.HTTP_TIMEOUT_SECONDS,
        )

    async def _invoke(self, operation: Operation, credential: AccessCredential):
        async with self._semaphore:
            if self.call_timeout is None:
                return await operation(credential)
            try:
                return await asyncio.wait_for(operation(credential), timeout=self.call_timeout)
            except asyncio.TimeoutError:
                raise TransientCallError(f"Call timed out after {self.call_timeout}s", code="timeout")

    async def call(
        self,
        account_id: str,
        operation: Operation,
        credential: AccessCredential,
        refresh_credential: Optional[CredentialRefresher] = None,
    ) -> CallResult:
        """
        Run ``operation(credential)`` under the account's rate limit.

        Raises the classified CallError once the policy gives up. TokenError
        raised by ``refresh_credential`` propagates unchanged.
        """
        attempt = 0
        retries = 0
        auth_refreshed = False

        while True:
            attempt += 1
            await self.limiter.acquire(account_id)
            try:
                value = await self._invoke(operation, credential)
                return CallResult(value=value, credential=credential, attempts=attempt)

            except AuthCallError as e:
                if refresh_credential is None or auth_refreshed:
                    e.attempts = attempt
                    raise
                logger.info(f"Access credential rejected for account {account_id}, refreshing once")
                credential = await refresh_credential()
                auth_refreshed = True

            except CallError as e:
                if not e.retryable:
                    e.attempts = attempt
                    raise
                if retries >= self.retry_policy.max_retries:
                    logger.warning(
                        f"Account {account_id}: {e.classification} persisted after {attempt} attempts"
                    )
                    raise RetryExhaustedError(e, attempts=attempt) from e

                retry_after = e.retry_after if isinstance(e, RateLimitedError) else None
                delay = self.retry_policy.next_backoff(retries, retry_after)
                if isinstance(e, RateLimitedError):
                    self.limiter.penalize(account_id, delay)
                logger.info(
                    f"Account {account_id}: {e.classification} on attempt {attempt}, "
                    f"retrying in {delay:.2f}s"
                )
                retries += 1
                # Rate-limited calls wait inside the limiter via the penalty window
                if not isinstance(e, RateLimitedError):
                    await self._sleep(delay)
