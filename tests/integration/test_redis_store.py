"""
Integration tests for the Redis store and its Lua scripts

Requires a Redis server on localhost:6379 (database 15 is flushed).
"""
import pytest
from datetime import datetime, timedelta, timezone

from scheduling.dispatch import MockDispatchGateway
from scheduling.models import (
    AutoScheduledItem,
    AutoScheduledItemStatus,
    CaseSnapshot,
    Channel,
    ClinicInfo,
    Run,
    RunStatus,
    ScheduledItem,
    ScheduledItemStatus,
    SchedulingConfig,
)
from scheduling.redis_store import RedisSchedulingStore
from scheduling.scheduler import AutoScheduler
from scheduling.store import TransitionOutcome

pytestmark = pytest.mark.integration

CREATED = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def redis_store(redis_test_db):
    return RedisSchedulingStore(redis_test_db)


def _case(case_id="case-1", **overrides):
    fields = dict(
        id=case_id,
        clinic_id="clinic-1",
        status="completed",
        created_at=CREATED,
        owner_phone="+15555550123",
        owner_email="jane@example.com",
        has_discharge_summary=True,
    )
    fields.update(overrides)
    return CaseSnapshot(**fields)


class TestConfigs:
    """Tests for config persistence"""

    def test_create_if_absent_keeps_first_record(self, redis_store):
        redis_store.create_config_if_absent(SchedulingConfig(clinic_id="clinic-1", call_delay_days=5))
        stored = redis_store.create_config_if_absent(SchedulingConfig(clinic_id="clinic-1", call_delay_days=1))

        assert stored.call_delay_days == 5
        assert [c.clinic_id for c in redis_store.list_configs()] == ["clinic-1"]

    def test_config_round_trip(self, redis_store):
        config = SchedulingConfig(clinic_id="clinic-1", enabled=True, auto_email_enabled=False)
        redis_store.save_config(config)

        stored = redis_store.get_config("clinic-1")
        assert stored.enabled is True
        assert stored.auto_email_enabled is False
        assert stored.eligibility_criteria == config.eligibility_criteria


class TestCases:
    """Tests for case lookup and stamping"""

    def test_find_unscheduled_cases(self, redis_store):
        redis_store.save_case(_case("old", created_at=CREATED - timedelta(days=10)))
        redis_store.save_case(_case("draft", status="draft"))
        redis_store.save_case(_case("manual", scheduling_source="manual"))
        redis_store.save_case(_case("newer", created_at=CREATED + timedelta(hours=1)))
        redis_store.save_case(_case("case-1"))

        cases = redis_store.find_unscheduled_cases("clinic-1", ["completed"], CREATED - timedelta(days=3))

        assert [case.id for case in cases] == ["newer", "case-1"]

    def test_stamp_and_clear(self, redis_store):
        redis_store.save_case(_case())

        assert redis_store.stamp_case("case-1", CREATED, "auto")
        assert redis_store.get_case("case-1").scheduling_source == "auto"

        redis_store.stamp_case("case-1", None, None)
        cleared = redis_store.get_case("case-1")
        assert cleared.auto_scheduled_at is None
        assert cleared.scheduling_source is None

        assert not redis_store.stamp_case("missing", CREATED, "auto")


class TestItems:
    """Tests for scheduled item transitions"""

    def test_guarded_transition(self, redis_store):
        item = ScheduledItem(channel=Channel.CALL, case_id="case-1", recipient="+15555550123")
        redis_store.save_item(item)

        claimed = redis_store.transition_item(
            Channel.CALL, item.id, [ScheduledItemStatus.QUEUED], ScheduledItemStatus.IN_PROGRESS,
            {"started_at": CREATED},
        )
        again = redis_store.transition_item(
            Channel.CALL, item.id, [ScheduledItemStatus.QUEUED], ScheduledItemStatus.IN_PROGRESS,
        )
        missing = redis_store.transition_item(
            Channel.CALL, "nope", [ScheduledItemStatus.QUEUED], ScheduledItemStatus.IN_PROGRESS,
        )

        assert claimed == TransitionOutcome.APPLIED
        assert again == TransitionOutcome.STATUS_MISMATCH
        assert missing == TransitionOutcome.NOT_FOUND
        stored = redis_store.get_item(Channel.CALL, item.id)
        assert stored.status == ScheduledItemStatus.IN_PROGRESS
        assert stored.started_at == CREATED

    def test_transition_writes_structured_fields(self, redis_store):
        item = ScheduledItem(channel=Channel.CALL, case_id="case-1", metadata={"source": "auto"})
        redis_store.save_item(item)

        redis_store.transition_item(
            Channel.CALL, item.id, [ScheduledItemStatus.QUEUED], ScheduledItemStatus.FAILED,
            {"metadata": {"source": "auto", "final_failure": True}, "provider_id": None},
        )

        stored = redis_store.get_item(Channel.CALL, item.id)
        assert stored.metadata["final_failure"] is True
        assert stored.provider_id is None

    def test_provider_lookup(self, redis_store):
        item = ScheduledItem(channel=Channel.EMAIL, case_id="case-1", status=ScheduledItemStatus.IN_PROGRESS)
        redis_store.save_item(item)

        outcome = redis_store.attach_provider_id(
            Channel.EMAIL, item.id, "<msg@example.com>", [ScheduledItemStatus.IN_PROGRESS], {"started_at": CREATED}
        )

        assert outcome == TransitionOutcome.APPLIED
        found = redis_store.find_item_by_provider_id("<msg@example.com>")
        assert found.id == item.id
        assert found.provider_id == "<msg@example.com>"
        assert found.started_at == CREATED
        assert found.status == ScheduledItemStatus.IN_PROGRESS
        assert redis_store.find_item_by_provider_id("unknown") is None
        assert [i.id for i in redis_store.list_items_for_case(Channel.EMAIL, "case-1")] == [item.id]

    def test_provider_id_not_indexed_when_guard_rejects(self, redis_store):
        item = ScheduledItem(channel=Channel.CALL, case_id="case-1", status=ScheduledItemStatus.CANCELLED)
        redis_store.save_item(item)

        outcome = redis_store.attach_provider_id(
            Channel.CALL, item.id, "prov-9", [ScheduledItemStatus.IN_PROGRESS]
        )

        assert outcome == TransitionOutcome.STATUS_MISMATCH
        assert redis_store.find_item_by_provider_id("prov-9") is None
        assert redis_store.get_item(Channel.CALL, item.id).provider_id is None


class TestAutoItems:
    """Tests for the one-active-auto-item-per-case rule"""

    def test_second_active_item_is_refused(self, redis_store):
        redis_store.save_case(_case())
        first = AutoScheduledItem(case_id="case-1", clinic_id="clinic-1", scheduled_call_id="call-1")
        second = AutoScheduledItem(case_id="case-1", clinic_id="clinic-1")

        assert redis_store.create_auto_item(first, CREATED)
        assert not redis_store.create_auto_item(second, CREATED)

        assert redis_store.find_active_auto_item("case-1").id == first.id
        assert redis_store.find_auto_item_for(Channel.CALL, "call-1").id == first.id
        assert redis_store.get_case("case-1").auto_scheduled_at == CREATED
        assert redis_store.get_auto_item(second.id) is None

    def test_terminal_transition_frees_the_case(self, redis_store):
        first = AutoScheduledItem(case_id="case-1", clinic_id="clinic-1")
        redis_store.create_auto_item(first, CREATED)

        outcome = redis_store.transition_auto_item(
            first.id, [AutoScheduledItemStatus.SCHEDULED], AutoScheduledItemStatus.CANCELLED,
            {"cancelled_by": "ops"},
        )

        assert outcome == TransitionOutcome.APPLIED
        assert redis_store.find_active_auto_item("case-1") is None
        assert redis_store.create_auto_item(AutoScheduledItem(case_id="case-1", clinic_id="clinic-1"), CREATED)

    def test_list_auto_items_by_status(self, redis_store):
        kept = AutoScheduledItem(case_id="case-1", clinic_id="clinic-1")
        cancelled = AutoScheduledItem(case_id="case-2", clinic_id="clinic-1")
        redis_store.create_auto_item(kept, CREATED)
        redis_store.create_auto_item(cancelled, CREATED)
        redis_store.transition_auto_item(
            cancelled.id, [AutoScheduledItemStatus.SCHEDULED], AutoScheduledItemStatus.CANCELLED,
        )

        scheduled = redis_store.list_auto_items("clinic-1", AutoScheduledItemStatus.SCHEDULED)
        assert [item.id for item in scheduled] == [kept.id]
        assert len(redis_store.list_auto_items("clinic-1")) == 2


class TestRuns:
    """Tests for run records and a full scheduling pass"""

    def test_runs_newest_first(self, redis_store):
        older = Run(started_at=CREATED, status=RunStatus.COMPLETED)
        newer = Run(started_at=CREATED + timedelta(days=1), status=RunStatus.PARTIAL, total_errors=1)
        redis_store.save_run(older)
        redis_store.save_run(newer)

        assert [run.id for run in redis_store.list_runs()] == [newer.id, older.id]
        assert redis_store.get_run(newer.id).status == RunStatus.PARTIAL

    def test_scheduler_on_redis(self, redis_store):
        redis_store.save_clinic(ClinicInfo(id="clinic-1", name="Happy Paws", timezone="UTC"))
        redis_store.save_config(SchedulingConfig(clinic_id="clinic-1", enabled=True))
        recent = datetime.now(timezone.utc) - timedelta(hours=2)
        redis_store.save_case(_case(created_at=recent))
        dispatch = MockDispatchGateway()
        scheduler = AutoScheduler(redis_store, dispatch, default_timezone="UTC")

        first = scheduler.run_for_all_clinics()
        second = scheduler.run_for_all_clinics()

        assert first.total_cases_processed == 1
        assert second.total_cases_processed == 0
        assert len(dispatch.messages) == 2
        auto_item = redis_store.find_active_auto_item("case-1")
        call = redis_store.get_item(Channel.CALL, auto_item.scheduled_call_id)
        assert call.dispatch_message_id == dispatch.messages_for(call.id)[0].message_id
