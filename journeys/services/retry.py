import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional

from journeys.services.errors import PermanentEffectError, StepEffectError, TransientEffectError

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    """Delay to sleep after the given failed attempt.

    attempt 1 -> base, attempt 2 -> 2*base, attempt 3 -> 4*base, capped.
    """
    n = int(attempt) if attempt is not None else 0
    if n <= 0 or base_seconds <= 0:
        return 0.0
    return float(min(max_seconds, base_seconds * (2 ** (n - 1))))


def inbox_retry_wait(retry_count: int) -> timedelta:
    """Backoff for trigger inbox rows: 2^n seconds, capped at 60."""
    n = int(retry_count) if retry_count is not None else 0
    if n <= 0:
        return timedelta(seconds=0)
    return timedelta(seconds=min(60, 2**n))


def classify_exception(exc: Exception) -> StepEffectError:
    if isinstance(exc, StepEffectError):
        return exc
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TransientEffectError(f"{type(exc).__name__}: {exc}")
    return PermanentEffectError(f"{type(exc).__name__}: {exc}")


@dataclass
class RetryOutcome:
    value: Any
    attempts: int
    error: Optional[StepEffectError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def call_with_retry(
    fn: Callable[[], Any],
    *,
    max_attempts: int,
    base_seconds: float,
    max_seconds: float,
    sleep: Callable[[float], None] = time.sleep,
    log_extra: Optional[dict] = None,
    before_retry: Optional[Callable[[], None]] = None,
) -> RetryOutcome:
    """Run ``fn`` until it succeeds, fails permanently, or attempts run out.

    ``before_retry`` runs after each backoff sleep, ahead of the next attempt.
    Exceptions it raises propagate to the caller.
    """
    attempts = 0
    max_attempts = max(1, int(max_attempts))

    while True:
        attempts += 1
        try:
            return RetryOutcome(value=fn(), attempts=attempts)
        except Exception as exc:
            err = classify_exception(exc)
            if not err.transient or attempts >= max_attempts:
                return RetryOutcome(value=None, attempts=attempts, error=err)

            delay = backoff_delay(attempts, base_seconds=base_seconds, max_seconds=max_seconds)
            logger.warning(
                "Transient step failure; retrying",
                extra={**(log_extra or {}), "attempt": attempts, "max_attempts": max_attempts, "delay_seconds": delay, "error": str(err)},
            )
            if delay > 0:
                sleep(delay)
            if before_retry is not None:
                before_retry()
