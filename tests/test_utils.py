"""
Test utilities to reduce boilerplate and improve test maintainability
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from scheduling.models import Channel, ScheduledItem, ScheduledItemStatus

# Earlier than every frozen test clock, so built items are always due
DUE_AT = datetime(2025, 1, 1, 16, 0, tzinfo=timezone.utc)


class ScheduledItemBuilder:
    """Builder pattern for creating test ScheduledItems"""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset to default values"""
        self._id = "item-123"
        self._channel = Channel.CALL
        self._case_id = "case-1"
        self._clinic_id = "clinic-1"
        self._recipient = "+15555550123"
        self._recipient_name = "Jane Owner"
        self._scheduled_for = DUE_AT
        self._status = ScheduledItemStatus.QUEUED
        self._provider_id = None
        self._retry_count = 0
        self._max_retries = 3
        self._payload: Dict[str, Any] = {"variables": {"pet_name": "Biscuit"}, "overrides": {}}
        self._metadata: Dict[str, Any] = {
            "source": "auto",
            "voicemail_detection_enabled": False,
            "voicemail_hangup_on_detection": False,
        }
        return self

    def with_id(self, item_id: str):
        self._id = item_id
        return self

    def for_case(self, case_id: str, clinic_id: Optional[str] = None):
        self._case_id = case_id
        if clinic_id:
            self._clinic_id = clinic_id
        return self

    def as_email(self, recipient: str = "jane@example.com"):
        self._channel = Channel.EMAIL
        self._recipient = recipient
        self._payload = {"content": {"subject": "Stored subject", "text": "Stored body"}, "overrides": {}}
        self._metadata = {"source": "auto"}
        return self

    def scheduled_at(self, scheduled_for: datetime):
        self._scheduled_for = scheduled_for
        return self

    def with_status(self, status: ScheduledItemStatus):
        self._status = status
        return self

    def as_in_progress(self, provider_id: str = "prov-1"):
        self._status = ScheduledItemStatus.IN_PROGRESS
        self._provider_id = provider_id
        return self

    def with_retry_count(self, count: int, max_retries: int = 3):
        self._retry_count = count
        self._max_retries = max_retries
        return self

    def with_overrides(self, **overrides):
        self._payload = dict(self._payload, overrides=overrides)
        return self

    def with_metadata(self, **metadata):
        self._metadata.update(metadata)
        return self

    def build(self) -> ScheduledItem:
        """Build the ScheduledItem"""
        return ScheduledItem(
            id=self._id,
            channel=self._channel,
            case_id=self._case_id,
            clinic_id=self._clinic_id,
            recipient=self._recipient,
            recipient_name=self._recipient_name,
            scheduled_for=self._scheduled_for,
            status=self._status,
            provider_id=self._provider_id,
            retry_count=self._retry_count,
            max_retries=self._max_retries,
            payload=dict(self._payload),
            metadata=dict(self._metadata),
        )

    def save(self, store) -> ScheduledItem:
        """Build, persist and index the item under its provider id (if any)"""
        item = self.build()
        store.save_item(item)
        if item.provider_id:
            store.attach_provider_id(item.channel, item.id, item.provider_id, (item.status,))
        return item


class AssertionHelpers:
    """Helper methods for common test assertions"""

    @staticmethod
    def assert_result_success(result: Dict[str, Any], expected_keys: List[str] = None):
        """Assert a task result indicates success"""
        assert result.get("success") is True
        if expected_keys:
            for key in expected_keys:
                assert key in result

    @staticmethod
    def assert_result_failure(result: Dict[str, Any], expected_error: str = None):
        """Assert a task result indicates failure"""
        assert result.get("success") is False
        if expected_error:
            assert expected_error in str(result.get("error", ""))

    @staticmethod
    def assert_final_failure(item: ScheduledItem, reason: str):
        """Assert an item failed for good with retry-exhaustion bookkeeping"""
        assert item.status == ScheduledItemStatus.FAILED
        assert item.last_failure_reason == reason
        assert item.metadata.get("final_failure") is True
        assert item.metadata.get("final_failure_reason") == reason
        assert item.ended_at is not None
