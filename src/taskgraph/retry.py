"""
Retry Policy

Explicit retry loop around a single model call. Exceptions raised by the
client are converted into a tagged CallOutcome (success, transient,
fatal) right at the call site; the loop only looks at the tag to decide
whether another attempt is allowed.

Only the model call is retried. Validation happens after the loop and a
validation failure is final.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from .types import FatalError, TransientError

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class BackoffStrategy(str, Enum):
    """How the delay grows between retries."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class CallOutcome:
    """Tagged result of one model call attempt."""

    kind: OutcomeKind
    output: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry budget and backoff schedule for transient failures.

    Attempt 1 is the original call; retries 1..max_retries follow, each
    preceded by `delay_for(retry_number)` seconds.
    """

    max_retries: int = 2
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    def delay_for(self, retry_number: int) -> float:
        """Seconds to wait before retry `retry_number` (1-based)."""
        if self.backoff == BackoffStrategy.FIXED:
            delay = self.base_delay
        else:
            delay = self.base_delay * (self.multiplier ** (retry_number - 1))
        return min(delay, self.max_delay)

    def with_max_retries(self, max_retries: Optional[int]) -> "RetryPolicy":
        """Copy with a per-node budget override (None keeps the current one)."""
        if max_retries is None:
            return self
        return replace(self, max_retries=max_retries)


@dataclass
class RetryResult:
    """Final outcome of the retry loop plus the attempts it consumed."""

    outcome: CallOutcome
    attempts: int
    transient_errors: List[str] = field(default_factory=list)

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


async def attempt_call(
    call: Callable[[], Awaitable[Any]],
    timeout: Optional[float] = None,
) -> CallOutcome:
    """
    Run one call and tag its outcome.

    A timeout counts as transient. Any exception that is neither
    TransientError nor FatalError is tagged fatal: an unknown failure is
    not assumed to be safe to repeat.
    """
    try:
        if timeout is not None:
            output = await asyncio.wait_for(call(), timeout=timeout)
        else:
            output = await call()
        return CallOutcome(OutcomeKind.SUCCESS, output=output)
    except TransientError as e:
        return CallOutcome(OutcomeKind.TRANSIENT, error=e)
    except asyncio.TimeoutError as e:
        return CallOutcome(
            OutcomeKind.TRANSIENT,
            error=TransientError(f"Model call timed out after {timeout}s", cause=e),
        )
    except FatalError as e:
        return CallOutcome(OutcomeKind.FATAL, error=e)
    except Exception as e:
        logger.exception(f"[retry] Unexpected error from model client: {e}")
        return CallOutcome(
            OutcomeKind.FATAL,
            error=FatalError(f"Unexpected {type(e).__name__}: {e}", cause=e),
        )


async def call_with_retry(
    call: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    sleep: SleepFunc = asyncio.sleep,
    timeout: Optional[float] = None,
    label: str = "call",
) -> RetryResult:
    """
    Call until success, a fatal outcome, or the retry budget runs out.

    Args:
        call: Zero-argument coroutine factory performing one model call
        policy: Retry budget and backoff schedule
        sleep: Awaitable used for backoff delays (injectable for tests)
        timeout: Optional per-attempt timeout in seconds
        label: Prefix for log messages (usually the node id)

    Returns:
        RetryResult whose `attempts` is at most policy.max_retries + 1
    """
    attempts = 0
    transient_errors: List[str] = []
    while True:
        attempts += 1
        outcome = await attempt_call(call, timeout)

        if outcome.kind != OutcomeKind.TRANSIENT:
            return RetryResult(outcome, attempts, transient_errors)

        transient_errors.append(str(outcome.error))
        retry_number = attempts
        if retry_number > policy.max_retries:
            logger.warning(
                f"[{label}] Retry budget exhausted after {attempts} attempts: {outcome.error}"
            )
            return RetryResult(outcome, attempts, transient_errors)

        delay = policy.delay_for(retry_number)
        logger.warning(
            f"[{label}] Transient failure (attempt {attempts}/{policy.max_retries + 1}), "
            f"retrying in {delay:.2f}s: {outcome.error}"
        )
        await sleep(delay)
