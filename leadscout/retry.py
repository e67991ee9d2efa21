import asyncio, random, time
from dataclasses import dataclass
from typing import Callable, Awaitable, Type, Sequence

from leadscout import settings


class RetryableError(Exception):
    pass


@dataclass
class BackoffPolicy:
    max_attempts: int = settings.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = settings.RETRY_BASE_DELAY_MS
    max_delay_ms: int = settings.RETRY_MAX_DELAY_MS

    def delay_s(self, attempt: int) -> float:
        # exponential backoff with jitter
        delay = min(self.max_delay_ms, self.base_delay_ms * (2 ** (attempt - 1)))
        delay = delay * (0.8 + 0.4 * random.random())
        return delay / 1000.0


async def with_retry(fn: Callable[[], Awaitable],
                     retry_on: Sequence[Type[BaseException]] = (RetryableError,),
                     policy: BackoffPolicy | None = None):
    """Await ``fn()`` until it succeeds or raises something not in ``retry_on``.

    CancelledError is never retried.
    """
    policy = policy or BackoffPolicy()
    attempt = 0
    last_exc: BaseException | None = None
    while attempt < max(1, policy.max_attempts):
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_exc = e
            if not any(isinstance(e, t) for t in retry_on):
                break
            attempt += 1
            if attempt >= policy.max_attempts:
                break
            await asyncio.sleep(policy.delay_s(attempt))
    if last_exc:
        raise last_exc


class CircuitBreaker:
    """Per-name error counter that opens after ``error_threshold`` consecutive
    failures and half-opens again after ``cool_off_s``."""

    def __init__(self, error_threshold: int = settings.CB_ERROR_THRESHOLD,
                 cool_off_s: float = settings.CB_COOL_OFF_S):
        self.error_threshold = error_threshold
        self.cool_off_s = cool_off_s
        self._state: dict[str, tuple[int, float | None]] = {}

    def allow(self, name: str) -> bool:
        errors, opened_at = self._state.get(name, (0, None))
        if opened_at is None:
            return True
        if time.time() - opened_at >= self.cool_off_s:
            self._state[name] = (0, None)
            return True
        return False

    def on_success(self, name: str):
        self._state[name] = (0, None)

    def on_error(self, name: str):
        errors, opened_at = self._state.get(name, (0, None))
        errors += 1
        if errors >= self.error_threshold:
            self._state[name] = (errors, time.time())
        else:
            self._state[name] = (errors, opened_at)

    def reset(self):
        self._state.clear()
