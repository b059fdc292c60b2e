"""
Retry/backoff policy for failed follow-up dispatches

Pure function: maps a failure reason and the current retry count to either
"retry after N minutes" or "fail for good".
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger("retry-policy")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_MINUTES = 5

# Call end reasons worth another attempt
RETRYABLE_CALL_REASONS = frozenset({
    "dial-busy",
    "dial-no-answer",
    "voicemail",
})

# Provider-level transient failures (timeouts, outages, retryable email errors)
TRANSIENT_REASONS = frozenset({
    "provider-timeout",
    "provider-unavailable",
    "transient-error",
})

RETRYABLE_REASONS = RETRYABLE_CALL_REASONS | TRANSIENT_REASONS


class RetryAction(Enum):
    RETRY = "retry"
    FAIL = "fail"


@dataclass(frozen=True)
class RetryDecision:
    """What to do with a failed item"""
    action: RetryAction
    delay_minutes: Optional[int] = None
    reason: Optional[str] = None

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY


def is_retryable(reason: Optional[str]) -> bool:
    """Check whether a failure reason is in the retryable set"""
    return bool(reason) and reason in RETRYABLE_REASONS


def calculate_retry_delay(retry_count: int, base_minutes: int = DEFAULT_BASE_MINUTES) -> int:
    """
    Exponential backoff delay in minutes

    Args:
        retry_count: Retries already performed (0 for the first retry)
        base_minutes: Delay before the first retry

    Returns:
        base_minutes * 2^retry_count (5, 10, 20, ... with the default base)
    """
    return (2 ** max(retry_count, 0)) * base_minutes


def decide(
    failure_reason: Optional[str],
    retry_count: int,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_minutes: int = DEFAULT_BASE_MINUTES
) -> RetryDecision:
    """
    Decide whether a failed item should be retried

    Args:
        failure_reason: Provider end reason or transient error class
        retry_count: Retries already performed
        max_retries: Cap on retries; at or above it the answer is always fail
        base_minutes: Backoff base

    Returns:
        RetryDecision
    """
    if retry_count >= max_retries:
        logger.info(f"Retry limit reached ({retry_count}/{max_retries}) for reason '{failure_reason}'")
        return RetryDecision(action=RetryAction.FAIL, reason=failure_reason)

    if not is_retryable(failure_reason):
        logger.info(f"Reason '{failure_reason}' is not retryable")
        return RetryDecision(action=RetryAction.FAIL, reason=failure_reason)

    delay = calculate_retry_delay(retry_count, base_minutes)
    logger.info(f"Retry {retry_count + 1}/{max_retries} for '{failure_reason}' in {delay} minutes")
    return RetryDecision(action=RetryAction.RETRY, delay_minutes=delay, reason=failure_reason)
