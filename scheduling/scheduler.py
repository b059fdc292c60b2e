"""
AutoScheduler - daily run that schedules discharge follow-ups for eligible cases
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from followup.enrichment import (
    CaseContext,
    EnrichmentSource,
    StoreEnrichmentSource,
    build_call_variables,
    build_email_content,
)
from scheduling.case_query import CaseQueryService
from scheduling.config_store import ConfigStore
from scheduling.dispatch import DispatchError, DispatchQueueGateway
from scheduling.eligibility import evaluate
from scheduling.models import (
    AutoScheduledItem,
    AutoScheduledItemStatus,
    CaseSnapshot,
    Channel,
    ClinicInfo,
    ClinicRunResult,
    Run,
    RunStatus,
    ScheduledItem,
    ScheduledItemStatus,
    SchedulingConfig,
)
from scheduling.store import SchedulingStore, TransitionOutcome
from utils.time_utils import calculate_scheduled_time, format_iso, now_utc

logger = logging.getLogger("auto-scheduler")

ACTIVE_ITEM_SKIP_REASON = "Already has active auto-scheduled item"
ACTIVE_ITEM_SKIP_CODE = "ACTIVE_AUTO_SCHEDULED_ITEM"
NO_CHANNEL_SKIP_CODE = "NO_SCHEDULABLE_CHANNEL"


class CancellationError(Exception):
    """An auto-scheduled item cannot be cancelled in its current state"""


@dataclass
class CaseOutcome:
    """What process_case did for one case"""
    email_id: Optional[str] = None
    call_id: Optional[str] = None
    email_scheduled: bool = False
    call_scheduled: bool = False
    auto_item_id: Optional[str] = None
    skip_code: Optional[str] = None
    skipped_reason: Optional[str] = None
    scheduled_for: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


@dataclass
class CancelResult:
    """Outcome of an operator cancellation"""
    success: bool
    auto_item_id: str
    cancelled_item_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "auto_item_id": self.auto_item_id,
            "cancelled_item_ids": self.cancelled_item_ids,
            "error": self.error,
        }


class AutoScheduler:
    """
    Orchestrates auto-scheduling runs.

    Handles:
    - Resolving the clinics to process (explicit list or all enabled)
    - Evaluating each candidate case and guarding against double scheduling
    - Creating scheduled items and handing them to the dispatch queue
    - Recording the run and operator cancellations
    """

    def __init__(
        self,
        store: SchedulingStore,
        dispatch_gateway: DispatchQueueGateway,
        config_store: Optional[ConfigStore] = None,
        case_query: Optional[CaseQueryService] = None,
        enrichment: Optional[EnrichmentSource] = None,
        max_retries: int = 3,
        default_timezone: str = "America/Los_Angeles"
    ):
        """
        Args:
            store: Scheduling store
            dispatch_gateway: Delayed-dispatch queue
            config_store: Clinic config access (built on store if omitted)
            case_query: Candidate case lookup (built on store if omitted)
            enrichment: Case/clinic data for payloads (built on store if omitted)
            max_retries: Retry cap stamped onto new items
            default_timezone: Used when a clinic record has no timezone
        """
        self.store = store
        self.dispatch = dispatch_gateway
        self.config_store = config_store or ConfigStore(store)
        self.case_query = case_query or CaseQueryService(store)
        self.enrichment = enrichment or StoreEnrichmentSource(store)
        self.max_retries = max_retries
        self.default_timezone = default_timezone

    # Runs

    def run_for_all_clinics(
        self,
        dry_run: bool = False,
        force: bool = False,
        clinic_ids: Optional[Iterable[str]] = None
    ) -> Run:
        """
        Run auto-scheduling across clinics

        Args:
            dry_run: Decide everything but create no items, messages or stamps
            force: With explicit clinic_ids, process clinics even if disabled
            clinic_ids: Restrict the run to these clinics

        Returns:
            The finished Run; never raises
        """
        run = Run(dry_run=dry_run)
        clinic_ids = list(clinic_ids or [])
        logger.info(f"Starting auto-scheduling run {run.id} (dry_run={dry_run}, force={force}, clinics={clinic_ids or 'all enabled'})")

        try:
            if not dry_run:
                self.store.save_run(run)

            configs, left_out = self._resolve_configs(clinic_ids, force)
            run.results.extend(left_out)
            for config in configs:
                clinic_result = self.process_clinic(config, run.id, dry_run)
                run.results.append(clinic_result)
                run.total_cases_processed += clinic_result.cases_processed
                run.total_emails_scheduled += clinic_result.emails_scheduled
                run.total_calls_scheduled += clinic_result.calls_scheduled
                run.total_errors += len(clinic_result.errors)

            run.status = self._final_status(run.total_errors, run.total_cases_processed)
        except Exception as e:
            logger.error(f"Run {run.id} failed: {e}", exc_info=True)
            run.status = RunStatus.FAILED
            run.error_message = str(e)
            run.total_errors += 1

        run.completed_at = now_utc()
        if not dry_run:
            try:
                self.store.save_run(run)
            except Exception as e:
                logger.error(f"Could not record run {run.id}: {e}", exc_info=True)

        logger.info(
            f"Run {run.id} {run.status.value}: processed={run.total_cases_processed} "
            f"emails={run.total_emails_scheduled} calls={run.total_calls_scheduled} errors={run.total_errors}"
        )
        return run

    def run_for_clinic(self, clinic_id: str, dry_run: bool = False, force: bool = False) -> Run:
        return self.run_for_all_clinics(dry_run=dry_run, force=force, clinic_ids=[clinic_id])

    @staticmethod
    def _final_status(total_errors: int, total_processed: int) -> RunStatus:
        if total_errors == 0:
            return RunStatus.COMPLETED
        if total_processed > 0:
            return RunStatus.PARTIAL
        return RunStatus.FAILED

    def _resolve_configs(
        self,
        clinic_ids: List[str],
        force: bool
    ) -> Tuple[List[SchedulingConfig], List[ClinicRunResult]]:
        """Configs to process, plus a result for each requested clinic left out"""
        if not clinic_ids:
            configs = self.config_store.list_enabled()
            logger.info(f"Processing {len(configs)} enabled clinics")
            return configs, []

        configs, left_out = [], []
        for clinic_id in clinic_ids:
            config = self.config_store.get(clinic_id)
            if config is None:
                logger.warning(f"No scheduling config for clinic {clinic_id}, skipping")
                left_out.append(ClinicRunResult(clinic_id=clinic_id, skip_reason="No scheduling config"))
                continue
            if not config.enabled and not force:
                logger.info(f"Clinic {clinic_id} has auto-scheduling disabled, skipping (use force)")
                left_out.append(ClinicRunResult(
                    clinic_id=clinic_id,
                    skip_reason="Auto-scheduling disabled (use force to run anyway)",
                ))
                continue
            configs.append(config)
        return configs, left_out

        configs = []
        for clinic_id in clinic_ids:
            config = self.config_store.get(clinic_id)
            if config is None:
                logger.warning(f"No scheduling config for clinic {clinic_id}, skipping")
                continue
            if not config.enabled and not force:
                logger.info(f"Clinic {clinic_id} has auto-scheduling disabled, skipping (use force)")
                continue
            configs.append(config)
        return configs

    # Clinics and cases

    def process_clinic(self, config: SchedulingConfig, run_id: str, dry_run: bool = False) -> ClinicRunResult:
        """
        Schedule follow-ups for one clinic's candidate cases

        A failure on one case is recorded and the remaining cases continue;
        a failure loading clinic metadata or candidates aborts this clinic only.
        """
        result = ClinicRunResult(clinic_id=config.clinic_id)

        try:
            clinic = self.case_query.get_clinic(config.clinic_id)
        except Exception as e:
            logger.error(f"Error loading clinic {config.clinic_id}: {e}", exc_info=True)
            result.add_error(f"Failed to load clinic: {e}")
            result.aborted = True
            return result

        if clinic is None:
            logger.error(f"Clinic {config.clinic_id} not found")
            result.add_error("Clinic not found")
            result.aborted = True
            return result
        result.clinic_name = clinic.name

        try:
            cases = self.case_query.find_candidates(config.clinic_id, config.eligibility_criteria)
        except Exception as e:
            logger.error(f"Error fetching cases for clinic {clinic.name}: {e}", exc_info=True)
            result.add_error(f"Failed to fetch cases: {e}")
            result.aborted = True
            return result

        result.cases_found = len(cases)
        logger.info(f"Found {len(cases)} potential cases for clinic {clinic.name}")

        for case in cases:
            eligibility = evaluate(case, config.eligibility_criteria)
            if not eligibility.is_eligible:
                logger.debug(f"Case {case.id} skipped: {eligibility.reason_code.value}")
                result.add_skip(case.id, eligibility.reason_code.value, eligibility.reason_text)
                continue

            try:
                if self.store.find_active_auto_item(case.id) is not None:
                    result.add_skip(case.id, ACTIVE_ITEM_SKIP_CODE, ACTIVE_ITEM_SKIP_REASON)
                    continue
                outcome = self.process_case(case, config, clinic, run_id, dry_run)
            except Exception as e:
                logger.error(f"Error processing case {case.id}: {e}", exc_info=True)
                result.add_error(str(e), case_id=case.id)
                continue

            if outcome.skipped_reason:
                result.add_skip(case.id, outcome.skip_code, outcome.skipped_reason)
                continue
            for message in outcome.errors:
                result.add_error(message, case_id=case.id)
            if outcome.email_scheduled or outcome.call_scheduled:
                result.cases_processed += 1
                result.emails_scheduled += int(outcome.email_scheduled)
                result.calls_scheduled += int(outcome.call_scheduled)
                if dry_run:
                    result.planned.extend(self._planned_entries(case.id, outcome))

        logger.info(
            f"Clinic {clinic.name} results: found={result.cases_found} processed={result.cases_processed} "
            f"emails={result.emails_scheduled} calls={result.calls_scheduled} "
            f"errors={len(result.errors)} skipped={len(result.skipped)}"
        )
        return result

    def process_case(
        self,
        case: CaseSnapshot,
        config: SchedulingConfig,
        clinic: ClinicInfo,
        run_id: str,
        dry_run: bool = False
    ) -> CaseOutcome:
        """
        Create and enqueue the email and/or call for one eligible case

        Each channel is scheduled only when enabled for the clinic, not
        already scheduled for the case, and the owner is reachable on it.
        """
        outcome = CaseOutcome()
        if case.created_at is None:
            outcome.errors.append("Case has no creation date")
            return outcome

        context = self.enrichment.load(case.id)
        timezone = clinic.timezone or self.default_timezone
        now = now_utc()

        plans = []
        if config.auto_email_enabled and context.email and not self._has_open_item(Channel.EMAIL, case.id):
            plans.append((Channel.EMAIL, context.email, config.email_delay_days, config.preferred_email_time))
        if config.auto_call_enabled and context.phone and not self._has_open_item(Channel.CALL, case.id):
            plans.append((Channel.CALL, context.phone, config.call_delay_days, config.preferred_call_time))

        if not plans:
            outcome.skip_code = NO_CHANNEL_SKIP_CODE
            outcome.skipped_reason = "No enabled, unscheduled and reachable channel"
            return outcome

        created: List[ScheduledItem] = []
        for channel, recipient, delay_days, preferred_time in plans:
            scheduled_for = calculate_scheduled_time(case.created_at, delay_days, preferred_time, timezone, now)
            item = self._build_item(channel, case, context, recipient, scheduled_for, run_id)

            if dry_run:
                self._record(outcome, item)
                continue

            self.store.save_item(item)
            try:
                item.dispatch_message_id = self.dispatch.enqueue(channel, item.id, scheduled_for)
            except DispatchError as e:
                self.store.transition_item(
                    channel,
                    item.id,
                    (ScheduledItemStatus.QUEUED,),
                    ScheduledItemStatus.FAILED,
                    {"last_failure_reason": "enqueue-failed", "updated_at": now_utc()},
                )
                outcome.errors.append(f"Failed to enqueue {channel.value}: {e}")
                continue

            self.store.transition_item(
                channel,
                item.id,
                (ScheduledItemStatus.QUEUED,),
                ScheduledItemStatus.QUEUED,
                {"dispatch_message_id": item.dispatch_message_id},
            )
            logger.info(f"Scheduled {channel.value} {item.id} for case {case.id} at {format_iso(scheduled_for)}")
            self._record(outcome, item)
            created.append(item)

        if dry_run or not created:
            return outcome

        auto_item = AutoScheduledItem(
            case_id=case.id,
            clinic_id=config.clinic_id,
            run_id=run_id,
            scheduled_email_id=outcome.email_id,
            scheduled_call_id=outcome.call_id,
            config_snapshot=config.snapshot(),
        )
        if not self.store.create_auto_item(auto_item, now_utc()):
            # Lost a race with another run for this case; withdraw our items
            for item in created:
                self.store.transition_item(
                    item.channel,
                    item.id,
                    (ScheduledItemStatus.QUEUED,),
                    ScheduledItemStatus.CANCELLED,
                    {"last_failure_reason": "duplicate-auto-schedule", "updated_at": now_utc()},
                )
            logger.warning(f"Case {case.id} was auto-scheduled concurrently, withdrew {len(created)} items")
            return CaseOutcome(skip_code=ACTIVE_ITEM_SKIP_CODE, skipped_reason=ACTIVE_ITEM_SKIP_REASON)

        outcome.auto_item_id = auto_item.id
        return outcome

    def _has_open_item(self, channel: Channel, case_id: str) -> bool:
        return any(not item.status.is_terminal for item in self.store.list_items_for_case(channel, case_id))

    def _build_item(
        self,
        channel: Channel,
        case: CaseSnapshot,
        context: CaseContext,
        recipient: str,
        scheduled_for: datetime,
        run_id: str
    ) -> ScheduledItem:
        if channel == Channel.CALL:
            payload = {"variables": build_call_variables(context, scheduled_for), "overrides": {}}
            metadata = {
                "source": "auto",
                "voicemail_detection_enabled": False,
                "voicemail_hangup_on_detection": False,
            }
        else:
            payload = {"content": build_email_content(context), "overrides": {}}
            metadata = {"source": "auto"}
        metadata["run_id"] = run_id

        return ScheduledItem(
            channel=channel,
            case_id=case.id,
            user_id=case.user_id,
            clinic_id=case.clinic_id,
            recipient=recipient,
            recipient_name=case.owner_name,
            scheduled_for=scheduled_for,
            max_retries=self.max_retries,
            payload=payload,
            metadata=metadata,
        )

    @staticmethod
    def _record(outcome: CaseOutcome, item: ScheduledItem):
        if item.channel == Channel.EMAIL:
            outcome.email_id = item.id
            outcome.email_scheduled = True
        else:
            outcome.call_id = item.id
            outcome.call_scheduled = True
        outcome.scheduled_for[item.channel.value] = format_iso(item.scheduled_for)

    @staticmethod
    def _planned_entries(case_id: str, outcome: CaseOutcome) -> List[Dict[str, Any]]:
        return [
            {"case_id": case_id, "channel": channel, "scheduled_for": scheduled_for}
            for channel, scheduled_for in outcome.scheduled_for.items()
        ]

    # Operator actions and queries

    def cancel(self, auto_item_id: str, user_id: str, reason: str) -> CancelResult:
        """
        Cancel an auto-scheduled item and its still-queued follow-ups

        The case's scheduling stamp is cleared so a later run can pick it up.

        Returns:
            CancelResult; never raises
        """
        try:
            return self._cancel(auto_item_id, user_id, reason)
        except CancellationError as e:
            logger.warning(f"Cancel rejected for {auto_item_id}: {e}")
            return CancelResult(success=False, auto_item_id=auto_item_id, error=str(e))
        except Exception as e:
            logger.error(f"Error cancelling {auto_item_id}: {e}", exc_info=True)
            return CancelResult(success=False, auto_item_id=auto_item_id, error=str(e))

    def _cancel(self, auto_item_id: str, user_id: str, reason: str) -> CancelResult:
        auto_item = self.store.get_auto_item(auto_item_id)
        if auto_item is None:
            raise CancellationError("Auto-scheduled item not found")
        if auto_item.status != AutoScheduledItemStatus.SCHEDULED:
            raise CancellationError(f"Cannot cancel item with status '{auto_item.status.value}'")

        now = now_utc()
        outcome = self.store.transition_auto_item(
            auto_item_id,
            (AutoScheduledItemStatus.SCHEDULED,),
            AutoScheduledItemStatus.CANCELLED,
            {
                "cancelled_at": now,
                "cancelled_by": user_id,
                "cancellation_reason": reason,
                "updated_at": now,
            },
        )
        if outcome != TransitionOutcome.APPLIED:
            raise CancellationError("Item changed state before it could be cancelled")

        result = CancelResult(success=True, auto_item_id=auto_item_id)
        for channel in (Channel.EMAIL, Channel.CALL):
            item_id = auto_item.item_id_for(channel)
            if not item_id:
                continue
            cancelled = self.store.transition_item(
                channel,
                item_id,
                (ScheduledItemStatus.QUEUED,),
                ScheduledItemStatus.CANCELLED,
                {"last_failure_reason": "cancelled-by-operator", "updated_at": now},
            )
            if cancelled == TransitionOutcome.APPLIED:
                result.cancelled_item_ids.append(item_id)
            else:
                logger.info(f"{channel.value.capitalize()} {item_id} not queued, left as is")

        self.store.stamp_case(auto_item.case_id, None, None)
        logger.info(f"Cancelled auto-scheduled item {auto_item_id} for case {auto_item.case_id}")
        return result

    def preview_clinic(self, clinic_id: str) -> ClinicRunResult:
        """What a run would do for one clinic right now, without side effects"""
        config = self.config_store.get(clinic_id) or SchedulingConfig(clinic_id=clinic_id)
        return self.process_clinic(config, run_id="preview", dry_run=True)

    def get_recent_runs(self, limit: int = 10) -> List[Run]:
        return self.store.list_runs(limit)

    def get_run(self, run_id: str) -> Optional[Run]:
        return self.store.get_run(run_id)

    def get_scheduled_items(
        self,
        clinic_id: str,
        status: Optional[AutoScheduledItemStatus] = None,
        limit: int = 50
    ) -> List[AutoScheduledItem]:
        return self.store.list_auto_items(clinic_id, status, limit)
