from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from fleetwave_core.config import MAX_RETRY_ATTEMPTS
from fleetwave_core.errors import RecoverableError

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = MAX_RETRY_ATTEMPTS
    backoff_s: float = 1.0

    @property
    def attempts(self) -> int:
        return max(1, min(MAX_RETRY_ATTEMPTS, self.max_attempts))


class RetryExhaustedError(RecoverableError):
    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> tuple[T, int]:
    """Run ``fn`` retrying only recoverable errors, with exponential backoff.

    Returns the result and the number of attempts used. Permanent errors
    propagate immediately.
    """
    attempts = 0
    last_error: RecoverableError | None = None
    while attempts < policy.attempts:
        attempts += 1
        try:
            return fn(), attempts
        except RecoverableError as exc:
            last_error = exc
        if attempts < policy.attempts and policy.backoff_s > 0:
            sleep_fn(policy.backoff_s * (2 ** (attempts - 1)))
    raise RetryExhaustedError(str(last_error), attempts) from last_error
