"""
Tests for pure follow-up business logic functions
"""
import pytest
from datetime import datetime, timezone

from followup.call_business_logic import (
    calculate_duration,
    calculate_total_cost,
    is_forward_transition,
    map_ended_reason,
    map_provider_status,
    merge_call_variables,
    prepare_call_payload,
    prepare_email_payload,
    retry_reason_for,
)
from scheduling.models import Channel, ScheduledItem, ScheduledItemStatus

DETECT = {"voicemail_detection_enabled": True, "voicemail_hangup_on_detection": False}
DETECT_HANGUP = {"voicemail_detection_enabled": True, "voicemail_hangup_on_detection": True}


class TestProviderStatus:
    """Tests for status-update mapping"""

    @pytest.mark.parametrize("provider_status, expected", [
        ("queued", ScheduledItemStatus.QUEUED),
        ("ringing", ScheduledItemStatus.IN_PROGRESS),
        ("in-progress", ScheduledItemStatus.IN_PROGRESS),
        ("forwarding", ScheduledItemStatus.IN_PROGRESS),
        ("ended", ScheduledItemStatus.COMPLETED),
    ])
    def test_known_statuses(self, provider_status, expected):
        assert map_provider_status(provider_status) == expected

    def test_unknown_status_is_ignored(self):
        assert map_provider_status("teleporting") is None
        assert map_provider_status(None) is None

    def test_forward_transitions(self):
        assert is_forward_transition(ScheduledItemStatus.QUEUED, ScheduledItemStatus.IN_PROGRESS)
        assert is_forward_transition(ScheduledItemStatus.IN_PROGRESS, ScheduledItemStatus.COMPLETED)
        assert not is_forward_transition(ScheduledItemStatus.IN_PROGRESS, ScheduledItemStatus.QUEUED)
        assert not is_forward_transition(ScheduledItemStatus.COMPLETED, ScheduledItemStatus.IN_PROGRESS)
        assert not is_forward_transition(ScheduledItemStatus.IN_PROGRESS, ScheduledItemStatus.IN_PROGRESS)


class TestEndedReason:
    """Tests for end-of-call reason mapping"""

    @pytest.mark.parametrize("reason", ["assistant-ended-call", "customer-ended-call", None, "something-new"])
    def test_completed(self, reason):
        assert map_ended_reason(reason) == ScheduledItemStatus.COMPLETED

    @pytest.mark.parametrize("reason", ["dial-busy", "dial-no-answer", "assistant-error", "twilio-failed-to-connect-call"])
    def test_failed(self, reason):
        assert map_ended_reason(reason) == ScheduledItemStatus.FAILED

    def test_cancelled(self):
        assert map_ended_reason("call-cancelled-by-user") == ScheduledItemStatus.CANCELLED

    def test_voicemail_without_detection_fails(self):
        assert map_ended_reason("voicemail") == ScheduledItemStatus.FAILED
        assert retry_reason_for("voicemail") == "voicemail"

    def test_voicemail_with_detection_completes(self):
        assert map_ended_reason("voicemail", DETECT) == ScheduledItemStatus.COMPLETED
        assert retry_reason_for("voicemail", DETECT) is None

    def test_voicemail_with_hangup_fails_and_retries(self):
        assert map_ended_reason("voicemail", DETECT_HANGUP) == ScheduledItemStatus.FAILED
        assert retry_reason_for("voicemail", DETECT_HANGUP) == "voicemail"

    def test_retry_reason_found_inside_longer_reason(self):
        assert retry_reason_for("call.dial-busy") == "dial-busy"
        assert retry_reason_for("assistant-error") is None


class TestDurationAndCost:
    """Tests for outcome extraction"""

    def test_duration_floors_seconds(self):
        assert calculate_duration("2025-01-01T10:00:00Z", "2025-01-01T10:02:05.900Z") == 125

    def test_duration_accepts_datetimes(self):
        start = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
        end = datetime(2025, 1, 1, 10, 1, tzinfo=timezone.utc)
        assert calculate_duration(start, end) == 60

    def test_duration_missing_or_reversed(self):
        assert calculate_duration(None, "2025-01-01T10:00:00Z") is None
        assert calculate_duration("garbage", "2025-01-01T10:00:00Z") is None
        assert calculate_duration("2025-01-01T10:05:00Z", "2025-01-01T10:00:00Z") is None

    def test_cost_sums_breakdown(self):
        assert calculate_total_cost([{"amount": 0.1}, {"amount": 0.25}, {"type": "x"}]) == pytest.approx(0.35)

    def test_cost_falls_back_to_scalar(self):
        assert calculate_total_cost(None, "0.42") == pytest.approx(0.42)
        assert calculate_total_cost(None, "n/a") == 0.0
        assert calculate_total_cost() == 0.0


class TestPayloads:
    """Tests for variable merging and payload assembly"""

    def test_merge_order(self):
        merged = merge_call_variables(
            {"pet_name": "Old", "diagnosis": "otitis"},
            {"pet_name": "Biscuit", "owner_name": None},
            {"owner_name": "Jane"},
        )
        assert merged == {"pet_name": "Biscuit", "diagnosis": "otitis", "owner_name": "Jane"}

    def test_call_payload_carries_voicemail_flags(self):
        item = ScheduledItem(channel=Channel.CALL, case_id="case-1", recipient="+15555550123",
                             recipient_name="Jane", metadata=DETECT_HANGUP)
        payload = prepare_call_payload(item, {"pet_name": "Biscuit"})
        assert payload["phone_number"] == "+15555550123"
        assert payload["metadata"]["scheduled_item_id"] == item.id
        assert payload["metadata"]["voicemail_hangup_on_detection"] is True

    def test_email_payload_defaults_subject(self):
        item = ScheduledItem(channel=Channel.EMAIL, recipient="jane@example.com")
        payload = prepare_email_payload(item, {"text": "Hello"})
        assert payload["to"] == "jane@example.com"
        assert payload["subject"] == "Discharge instructions"
        assert payload["text"] == "Hello"
