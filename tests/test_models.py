"""
Tests for scheduling data models
"""
import json
import pytest
from datetime import datetime, timezone

from scheduling.models import (
    AutoScheduledItem,
    AutoScheduledItemStatus,
    CaseSnapshot,
    Channel,
    ClinicRunResult,
    ConfigSnapshot,
    EligibilityCriteria,
    Run,
    RunStatus,
    ScheduledItem,
    ScheduledItemStatus,
    SchedulingConfig,
)
from utils.redis_atomic import to_redis_mapping

WHEN = datetime(2025, 1, 3, 16, 0, tzinfo=timezone.utc)


class TestStatuses:
    """Tests for status enums"""

    def test_terminal_item_statuses(self):
        assert not ScheduledItemStatus.QUEUED.is_terminal
        assert not ScheduledItemStatus.IN_PROGRESS.is_terminal
        assert ScheduledItemStatus.COMPLETED.is_terminal
        assert ScheduledItemStatus.FAILED.is_terminal
        assert ScheduledItemStatus.CANCELLED.is_terminal

    def test_legacy_cancel_spelling(self):
        assert ScheduledItemStatus.from_string("canceled") == ScheduledItemStatus.CANCELLED
        assert ScheduledItemStatus.from_string("queued") == ScheduledItemStatus.QUEUED

    def test_only_scheduled_auto_item_is_active(self):
        assert not AutoScheduledItemStatus.SCHEDULED.is_terminal
        assert all(s.is_terminal for s in AutoScheduledItemStatus if s != AutoScheduledItemStatus.SCHEDULED)


class TestScheduledItem:
    """Tests for ScheduledItem serialization"""

    def test_round_trip(self):
        item = ScheduledItem(
            channel=Channel.EMAIL,
            case_id="case-1",
            recipient="jane@example.com",
            scheduled_for=WHEN,
            retry_count=2,
            payload={"content": {"subject": "Hi"}},
            metadata={"source": "auto"},
            cost=0.12,
            duration_seconds=0,
        )

        restored = ScheduledItem.from_dict(item.to_dict())

        assert restored == item

    def test_parses_redis_hash_strings(self):
        item = ScheduledItem(channel=Channel.CALL, case_id="case-1", scheduled_for=WHEN,
                             metadata={"voicemail_detection_enabled": True})

        restored = ScheduledItem.from_dict(to_redis_mapping(item.to_dict()))

        assert restored.scheduled_for == WHEN
        assert restored.provider_id is None
        assert restored.duration_seconds is None
        assert restored.cost is None
        assert restored.metadata == {"voicemail_detection_enabled": True}


class TestCaseSnapshot:
    """Tests for tolerant case parsing"""

    def test_missing_fields(self):
        case = CaseSnapshot.from_dict({"id": 42})

        assert case.id == "42"
        assert case.created_at is None
        assert case.has_discharge_summary is False
        assert case.clinical == {}

    def test_redis_strings(self):
        case = CaseSnapshot(id="case-1", clinic_id="clinic-1", created_at=WHEN, is_extreme_case=True,
                            clinical={"diagnosis": "otitis"})

        restored = CaseSnapshot.from_dict(to_redis_mapping(case.to_dict()))

        assert restored.is_extreme_case is True
        assert restored.created_at == WHEN
        assert restored.clinical == {"diagnosis": "otitis"}
        assert restored.owner_phone is None


class TestSchedulingConfig:
    """Tests for config defaults and parsing"""

    def test_defaults(self):
        config = SchedulingConfig(clinic_id="clinic-1")

        assert config.enabled is False
        assert config.email_delay_days == 1
        assert config.call_delay_days == 2
        assert config.eligibility_criteria == EligibilityCriteria()

    def test_from_redis_hash(self):
        config = SchedulingConfig(clinic_id="clinic-1", enabled=True,
                                  eligibility_criteria=EligibilityCriteria(excluded_case_types=("boarding",)))

        restored = SchedulingConfig.from_dict(to_redis_mapping(config.to_dict()))

        assert restored.enabled is True
        assert restored.eligibility_criteria.excluded_case_types == ("boarding",)

    def test_partial_criteria_fill_defaults(self):
        criteria = EligibilityCriteria.from_dict(json.dumps({"max_case_age_days": 7}))

        assert criteria.max_case_age_days == 7
        assert criteria.included_statuses == ("completed",)
        assert criteria.require_discharge_summary is True


class TestConfigSnapshot:
    """Tests for versioned audit snapshots"""

    def test_snapshot_captures_timing(self):
        snapshot = SchedulingConfig(clinic_id="clinic-1", call_delay_days=4).snapshot()

        assert snapshot.version == ConfigSnapshot.CURRENT_VERSION
        assert snapshot.call_delay_days == 4
        assert snapshot.preferred_call_time == "16:00"

    def test_legacy_camel_case_snapshot(self):
        snapshot = ConfigSnapshot.from_dict({"emailDelayDays": 1, "preferredCallTime": "15:00"})

        assert snapshot.version == 0
        assert snapshot.email_delay_days == 1
        assert snapshot.preferred_call_time == "15:00"
        assert snapshot.auto_call_enabled is None

    def test_unknown_keys_ignored(self):
        snapshot = ConfigSnapshot.from_dict({"version": 2, "call_delay_days": "3", "brand_new": True})

        assert snapshot.version == 2
        assert snapshot.call_delay_days == 3

    def test_auto_item_keeps_snapshot(self):
        auto_item = AutoScheduledItem(case_id="case-1", config_snapshot=ConfigSnapshot(call_delay_days=2))

        restored = AutoScheduledItem.from_dict(to_redis_mapping(auto_item.to_dict()))

        assert restored.config_snapshot.call_delay_days == 2
        assert restored.scheduled_email_id is None
        assert restored.item_id_for(Channel.EMAIL) is None


class TestRun:
    """Tests for run records"""

    def test_round_trip_with_results(self):
        result = ClinicRunResult(clinic_id="clinic-1", clinic_name="Happy Paws", cases_processed=1)
        result.add_skip("case-2", "NO_CONTACT_INFO", "No valid phone number or email address")
        result.add_error("boom", case_id="case-3")
        run = Run(status=RunStatus.PARTIAL, results=[result], total_errors=1)

        restored = Run.from_dict(json.loads(json.dumps(run.to_dict())))

        assert restored.status == RunStatus.PARTIAL
        assert restored.results[0].skipped[0]["reason_code"] == "NO_CONTACT_INFO"
        assert restored.results[0].errors[0]["case_id"] == "case-3"
