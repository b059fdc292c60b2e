"""
Status tracker for asynchronous provider callbacks

Reconciles status-update, hang and end-of-call-report events against the
scheduled item they belong to (looked up by provider-assigned id).
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from followup.call_business_logic import (
    calculate_duration,
    calculate_total_cost,
    is_forward_transition,
    map_ended_reason,
    map_provider_status,
    retry_reason_for,
)
from followup.call_executor import CallOutcomeHandler
from scheduling.models import ScheduledItem, ScheduledItemStatus
from scheduling.store import SchedulingStore
from utils.time_utils import now_utc, parse_optional_iso

logger = logging.getLogger("status-tracker")

STATUS_UPDATE = "status-update"
END_OF_CALL_REPORT = "end-of-call-report"
HANG = "hang"


@dataclass
class CallbackResult:
    """Outcome of handling one provider callback"""
    success: bool
    handled: bool = False
    event_type: Optional[str] = None
    item_id: Optional[str] = None
    status: Optional[ScheduledItemStatus] = None
    retry_scheduled: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "handled": self.handled,
            "event_type": self.event_type,
            "item_id": self.item_id,
            "status": self.status.value if self.status else None,
            "retry_scheduled": self.retry_scheduled,
            "message": self.message,
        }


def _message_of(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Callbacks arrive either wrapped in {"message": {...}} or bare"""
    message = payload.get("message")
    return message if isinstance(message, dict) else payload


def _provider_id_of(message: Dict[str, Any]) -> Optional[str]:
    call = message.get("call") or {}
    return call.get("id") or message.get("call_id") or message.get("provider_id")


def _field(message: Dict[str, Any], name: str) -> Any:
    """Prefer the message-level field, falling back to the nested call object"""
    value = message.get(name)
    if value is None:
        value = (message.get("call") or {}).get(name)
    return value


class StatusTracker:
    """Applies provider callbacks to scheduled items"""

    def __init__(self, store: SchedulingStore, outcomes: CallOutcomeHandler):
        self.store = store
        self.outcomes = outcomes

    def handle_callback(self, payload: Dict[str, Any]) -> CallbackResult:
        """
        Handle one provider callback

        Args:
            payload: Decoded callback body

        Returns:
            CallbackResult; never raises
        """
        message = _message_of(payload or {})
        event_type = message.get("type")
        try:
            return self._handle(event_type, message)
        except Exception as e:
            logger.error(f"Error handling {event_type} callback: {e}", exc_info=True)
            return CallbackResult(success=False, event_type=event_type, message=str(e))

    def _handle(self, event_type: Optional[str], message: Dict[str, Any]) -> CallbackResult:
        if event_type not in (STATUS_UPDATE, END_OF_CALL_REPORT, HANG):
            logger.debug(f"Ignoring callback type {event_type}")
            return CallbackResult(success=True, event_type=event_type, message="Unhandled event type")

        provider_id = _provider_id_of(message)
        if not provider_id:
            logger.warning(f"{event_type} callback without a provider id")
            return CallbackResult(success=False, event_type=event_type, message="Missing provider id")

        item = self.store.find_item_by_provider_id(provider_id)
        if item is None or item.provider_id != provider_id:
            # Inbound calls and superseded attempts are not tracked here
            logger.info(f"No tracked item for provider id {provider_id}, dropping {event_type}")
            return CallbackResult(success=True, event_type=event_type, message="Untracked provider id")

        if event_type == STATUS_UPDATE:
            return self._handle_status_update(item, message)
        if event_type == HANG:
            logger.info(f"Hang reported for {item.channel.value} {item.id} ({provider_id})")
            return CallbackResult(success=True, handled=True, event_type=event_type,
                                  item_id=item.id, status=item.status)
        return self._handle_end_of_call_report(item, message)

    def _handle_status_update(self, item: ScheduledItem, message: Dict[str, Any]) -> CallbackResult:
        provider_status = message.get("status") or (message.get("call") or {}).get("status")
        new_status = map_provider_status(provider_status)
        result = CallbackResult(success=True, handled=True, event_type=STATUS_UPDATE,
                                item_id=item.id, status=item.status)
        if new_status is None:
            result.message = f"Unknown provider status '{provider_status}'"
            return result

        # Terminal outcomes are decided by the end-of-call report
        if new_status.is_terminal:
            logger.debug(f"{item.id}: provider status '{provider_status}' awaits end-of-call report")
            return result

        fields: Dict[str, Any] = {"updated_at": now_utc()}
        started_at = parse_optional_iso(_field(message, "startedAt"))
        if started_at and item.started_at is None:
            fields["started_at"] = started_at

        if is_forward_transition(item.status, new_status):
            self.store.transition_item(item.channel, item.id, (item.status,), new_status, fields)
            result.status = new_status
        elif item.status == new_status and "started_at" in fields:
            self.store.transition_item(item.channel, item.id, (item.status,), item.status, fields)
        else:
            logger.debug(f"{item.id}: ignoring '{provider_status}', item already {item.status.value}")
        return result

    def _handle_end_of_call_report(self, item: ScheduledItem, message: Dict[str, Any]) -> CallbackResult:
        ended_reason = _field(message, "endedReason")
        started = _field(message, "startedAt") or item.started_at
        ended = _field(message, "endedAt")

        outcome_fields: Dict[str, Any] = {
            "ended_reason": ended_reason,
            "ended_at": parse_optional_iso(ended) or now_utc(),
            "duration_seconds": calculate_duration(started, ended),
            "cost": calculate_total_cost(_field(message, "costs"), message.get("cost")),
            "transcript": _field(message, "transcript"),
            "analysis": _field(message, "analysis") or {},
            "updated_at": now_utc(),
        }
        if item.started_at is None and parse_optional_iso(started) is not None:
            outcome_fields["started_at"] = parse_optional_iso(started)

        final_status = map_ended_reason(ended_reason, item.metadata)
        logger.info(f"End-of-call report for {item.id}: reason={ended_reason} -> {final_status.value}")

        if final_status == ScheduledItemStatus.FAILED:
            retry_reason = retry_reason_for(ended_reason, item.metadata)
            if retry_reason:
                execution = self.outcomes.handle_failure(
                    item, retry_reason, outcome_fields=outcome_fields
                )
                return CallbackResult(
                    success=True,
                    handled=True,
                    event_type=END_OF_CALL_REPORT,
                    item_id=item.id,
                    status=execution.status,
                    retry_scheduled=execution.retry_scheduled,
                )
            outcome_fields["last_failure_reason"] = ended_reason

        execution = self.outcomes.finalize(
            item, final_status, outcome_fields, (ScheduledItemStatus.IN_PROGRESS,)
        )
        return CallbackResult(
            success=True,
            handled=not execution.skipped,
            event_type=END_OF_CALL_REPORT,
            item_id=item.id,
            status=execution.status,
        )
