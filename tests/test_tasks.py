"""
Tests for RQ tasks functionality
"""
import pytest
from unittest.mock import Mock, patch
from freezegun import freeze_time

from scheduling.models import Channel, ScheduledItemStatus
from scheduling.tasks import fire_scheduled_item, run_daily_auto_scheduling


class TestFireScheduledItem:
    """Tests for fire_scheduled_item task"""

    @freeze_time("2025-01-03 16:00:00")
    def test_fires_call(self, runtime, store, call_adapter, item_builder, assert_helpers):
        item = item_builder.save(store)

        result = fire_scheduled_item("call", item.id, runtime=runtime)

        assert_helpers.assert_result_success(result, ["provider_id"])
        assert result["status"] == "in_progress"
        assert call_adapter.dispatch_count == 1

    def test_inline_job_reports_terminal_item(self, runtime, store, item_builder):
        item = item_builder.with_status(ScheduledItemStatus.CANCELLED).save(store)

        with patch('scheduling.tasks.get_current_job', return_value=Mock(id="job-1")):
            result = fire_scheduled_item("call", item.id, runtime=runtime)

        assert result["skipped"] is True
        assert result["status"] == "cancelled"

    def test_unknown_channel_raises(self, runtime):
        # rq records the job as failed; the item itself stays untouched
        with pytest.raises(ValueError):
            fire_scheduled_item("fax", "item-1", runtime=runtime)

    @patch('scheduling.runtime.build_runtime')
    def test_builds_runtime_when_not_given(self, mock_build_runtime):
        mock_build_runtime.return_value.executor.execute.return_value = Mock(
            to_dict=Mock(return_value={"success": True})
        )

        result = fire_scheduled_item("email", "item-9")

        assert result == {"success": True}
        mock_build_runtime.return_value.executor.execute.assert_called_once_with(Channel.EMAIL, "item-9")


@freeze_time("2025-01-02 12:00:00")
class TestRunDailyAutoScheduling:
    """Tests for the daily run task"""

    def test_summary(self, runtime, enabled_config, make_case):
        make_case()

        summary = run_daily_auto_scheduling(runtime=runtime)

        assert summary["status"] == "completed"
        assert summary["total_cases_processed"] == 1
        assert summary["total_emails_scheduled"] == 1
        assert summary["total_calls_scheduled"] == 1
        assert summary["total_errors"] == 0
        assert runtime.scheduler.get_run(summary["run_id"]) is not None

    def test_dry_run(self, runtime, dispatch, enabled_config, make_case):
        make_case()

        summary = run_daily_auto_scheduling(dry_run=True, runtime=runtime)

        assert summary["total_calls_scheduled"] == 1
        assert dispatch.messages == []
