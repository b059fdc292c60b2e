"""
RQ tasks for firing scheduled follow-ups and running the daily scheduler
"""
import logging
from typing import Any, Dict, List, Optional

from rq import get_current_job

from scheduling.models import Channel

logger = logging.getLogger("followup-tasks")


def _runtime(runtime=None):
    # Imported here so the worker resolves this module without building services
    if runtime is None:
        from scheduling.runtime import build_runtime
        runtime = build_runtime()
    return runtime


def fire_scheduled_item(channel: str, item_id: str, runtime=None) -> Dict[str, Any]:
    """
    RQ task delivered by the dispatch queue at an item's scheduled instant

    Args:
        channel: "call" or "email"
        item_id: Scheduled item id
        runtime: Wired services (built from the environment if omitted)

    Returns:
        ExecutionResult as a dict (stored as the job result)
    """
    job = get_current_job()
    logger.info(f"Firing {channel} {item_id} (job {job.id if job else 'inline'})")
    result = _runtime(runtime).executor.execute(Channel(channel), item_id)
    return result.to_dict()


def run_daily_auto_scheduling(
    dry_run: bool = False,
    clinic_ids: Optional[List[str]] = None,
    runtime=None
) -> Dict[str, Any]:
    """
    RQ task triggered by the daily cron entry

    Returns:
        Summary of the finished run
    """
    run = _runtime(runtime).scheduler.run_for_all_clinics(dry_run=dry_run, clinic_ids=clinic_ids)
    summary = {
        "run_id": run.id,
        "status": run.status.value,
        "total_cases_processed": run.total_cases_processed,
        "total_emails_scheduled": run.total_emails_scheduled,
        "total_calls_scheduled": run.total_calls_scheduled,
        "total_errors": run.total_errors,
    }
    logger.info(f"Daily auto-scheduling finished: {summary}")
    return summary
