"""
Business logic for follow-up execution - pure functions with no external dependencies

These functions contain the core rules for interpreting provider responses
and assembling outbound payloads, separated from infrastructure concerns
for easier testing.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from followup.retry_policy import RETRYABLE_CALL_REASONS
from scheduling.models import ScheduledItem, ScheduledItemStatus
from utils.time_utils import parse_optional_iso

logger = logging.getLogger("call-business-logic")

# Provider lifecycle statuses and the item status each one implies
PROVIDER_STATUS_MAP = {
    "queued": ScheduledItemStatus.QUEUED,
    "ringing": ScheduledItemStatus.IN_PROGRESS,
    "in-progress": ScheduledItemStatus.IN_PROGRESS,
    "forwarding": ScheduledItemStatus.IN_PROGRESS,
    "ended": ScheduledItemStatus.COMPLETED,
}

SUCCESS_ENDED_REASONS = ("assistant-ended-call", "customer-ended-call")

FAILED_ENDED_REASONS = (
    "dial-busy",
    "dial-failed",
    "dial-no-answer",
    "assistant-error",
    "exceeded-max-duration",
    "voicemail",
    "assistant-not-found",
    "assistant-not-invalid",
    "assistant-not-provided",
    "assistant-request-failed",
    "assistant-request-returned-error",
    "assistant-request-returned-unspeakable-error",
    "assistant-request-returned-invalid-json",
    "assistant-request-returned-no-content",
    "twilio-failed-to-connect-call",
    "vonage-rejected",
)

# Order in which item statuses may advance
_STATUS_RANK = {
    ScheduledItemStatus.QUEUED: 0,
    ScheduledItemStatus.IN_PROGRESS: 1,
    ScheduledItemStatus.COMPLETED: 2,
    ScheduledItemStatus.FAILED: 2,
    ScheduledItemStatus.CANCELLED: 2,
}


def map_provider_status(provider_status: Optional[str]) -> Optional[ScheduledItemStatus]:
    """
    Map a provider lifecycle status to an item status

    Args:
        provider_status: Status string from a status-update callback

    Returns:
        The mapped status, or None when the status is missing or unknown
    """
    if not provider_status:
        return None
    mapped = PROVIDER_STATUS_MAP.get(provider_status.lower())
    if mapped is None:
        logger.warning(f"Unknown provider status '{provider_status}', ignoring")
    return mapped


def is_forward_transition(current: ScheduledItemStatus, new: ScheduledItemStatus) -> bool:
    """True when moving from current to new advances the item's lifecycle"""
    return _STATUS_RANK[new] > _STATUS_RANK[current]


def _voicemail_settings(metadata: Optional[Dict[str, Any]]) -> Tuple[bool, bool]:
    metadata = metadata or {}
    detection = metadata.get("voicemail_detection_enabled") is True
    hangup = metadata.get("voicemail_hangup_on_detection") is True
    return detection, hangup


def map_ended_reason(
    ended_reason: Optional[str],
    metadata: Optional[Dict[str, Any]] = None
) -> ScheduledItemStatus:
    """
    Determine the final item status from a provider end reason

    Voicemail with detection enabled counts as completed (a message was
    left) unless the call was configured to hang up on detection.

    Args:
        ended_reason: Provider end reason
        metadata: Item metadata carrying the voicemail settings

    Returns:
        COMPLETED, FAILED or CANCELLED
    """
    if not ended_reason:
        return ScheduledItemStatus.COMPLETED

    reason = ended_reason.lower()
    if reason in SUCCESS_ENDED_REASONS:
        return ScheduledItemStatus.COMPLETED

    if "cancelled" in reason:
        return ScheduledItemStatus.CANCELLED

    detection, hangup = _voicemail_settings(metadata)
    if "voicemail" in reason and detection:
        return ScheduledItemStatus.FAILED if hangup else ScheduledItemStatus.COMPLETED

    if any(failed in reason for failed in FAILED_ENDED_REASONS):
        return ScheduledItemStatus.FAILED

    return ScheduledItemStatus.COMPLETED


def retry_reason_for(
    ended_reason: Optional[str],
    metadata: Optional[Dict[str, Any]] = None
) -> Optional[str]:
    """
    Canonical retryable reason contained in an end reason, if any

    Returns:
        "dial-busy", "dial-no-answer" or "voicemail", else None
    """
    if not ended_reason:
        return None
    reason = ended_reason.lower()

    detection, hangup = _voicemail_settings(metadata)
    if "voicemail" in reason and detection:
        return "voicemail" if hangup else None

    for retryable in sorted(RETRYABLE_CALL_REASONS):
        if retryable in reason:
            return retryable
    return None


def calculate_duration(started_at: Any, ended_at: Any) -> Optional[int]:
    """
    Whole seconds between two timestamps

    Accepts datetimes or ISO strings. Returns None if either is missing or
    unparseable, or if the end precedes the start.
    """
    start = started_at if isinstance(started_at, datetime) else parse_optional_iso(started_at)
    end = ended_at if isinstance(ended_at, datetime) else parse_optional_iso(ended_at)
    if start is None or end is None or end < start:
        return None
    return math.floor((end - start).total_seconds())


def calculate_total_cost(costs: Optional[Iterable[Dict[str, Any]]] = None, cost: Any = None) -> float:
    """Sum the amounts of a cost breakdown, falling back to a scalar total"""
    if costs:
        return float(sum(float(entry.get("amount") or 0) for entry in costs))
    if cost is not None:
        try:
            return float(cost)
        except (TypeError, ValueError):
            return 0.0
    return 0.0


def merge_call_variables(
    extracted: Optional[Dict[str, Any]],
    fresh: Optional[Dict[str, Any]],
    stored: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    """
    Merge outbound call variables

    Later sources win: values extracted from the clinical record are
    refreshed by current case data, and anything stored on the item at
    schedule time (including manual overrides) wins over both.
    """
    merged: Dict[str, Any] = {}
    for source in (extracted, fresh, stored):
        if source:
            merged.update({key: value for key, value in source.items() if value is not None})
    return merged


def prepare_call_payload(item: ScheduledItem, variables: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the provider payload for an outbound call

    Args:
        item: The call being dispatched
        variables: Enriched assistant variables

    Returns:
        Provider request body
    """
    return {
        "phone_number": item.recipient,
        "customer_name": item.recipient_name,
        "variables": variables,
        "metadata": {
            "scheduled_item_id": item.id,
            "case_id": item.case_id,
            "retry_count": item.retry_count,
            "voicemail_detection_enabled": item.metadata.get("voicemail_detection_enabled", False),
            "voicemail_hangup_on_detection": item.metadata.get("voicemail_hangup_on_detection", False),
        },
    }


def prepare_email_payload(item: ScheduledItem, content: Dict[str, Any]) -> Dict[str, Any]:
    """Build the provider payload for a discharge email"""
    return {
        "to": item.recipient,
        "to_name": item.recipient_name,
        "subject": content.get("subject") or "Discharge instructions",
        "html": content.get("html"),
        "text": content.get("text") or "",
        "metadata": {"scheduled_item_id": item.id, "case_id": item.case_id},
    }
