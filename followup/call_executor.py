"""
Follow-up Executor - fires scheduled calls and emails when the dispatch queue delivers them

Uses dependency injection for the store, provider registry and dispatch
gateway to improve testability. Interpretation rules live in
call_business_logic as pure functions.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from followup.call_business_logic import (
    merge_call_variables,
    prepare_call_payload,
    prepare_email_payload,
)
from followup.client_registry import ProviderClientRegistry
from followup.enrichment import (
    EnrichmentError,
    EnrichmentSource,
    StoreEnrichmentSource,
    build_call_variables,
    build_email_content,
    extract_clinical_variables,
)
from followup.provider_adapter import ConfigurationError, ProviderError
from followup.retry_policy import (
    DEFAULT_BASE_MINUTES,
    RETRYABLE_REASONS,
    decide,
)
from scheduling.dispatch import DispatchError, DispatchQueueGateway
from scheduling.models import (
    AutoScheduledItemStatus,
    Channel,
    ScheduledItem,
    ScheduledItemStatus,
)
from scheduling.store import SchedulingStore, TransitionOutcome
from utils.time_utils import now_utc

logger = logging.getLogger("call-executor")

# Queue deliveries this far ahead of scheduled_for are treated as on time
EARLY_DELIVERY_GRACE = timedelta(seconds=60)

_AUTO_STATUS_FOR = {
    ScheduledItemStatus.COMPLETED: AutoScheduledItemStatus.COMPLETED,
    ScheduledItemStatus.FAILED: AutoScheduledItemStatus.FAILED,
    ScheduledItemStatus.CANCELLED: AutoScheduledItemStatus.CANCELLED,
}


@dataclass
class ExecutionResult:
    """Outcome of one executor invocation"""
    success: bool
    item_id: str
    status: Optional[ScheduledItemStatus] = None
    provider_id: Optional[str] = None
    skipped: bool = False
    retry_scheduled: bool = False
    next_retry_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "item_id": self.item_id,
            "status": self.status.value if self.status else None,
            "provider_id": self.provider_id,
            "skipped": self.skipped,
            "retry_scheduled": self.retry_scheduled,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "error": self.error,
        }


class CallOutcomeHandler:
    """
    Applies failure and completion outcomes to scheduled items

    Shared by the executor (synchronous provider rejections) and the status
    tracker (asynchronous end-of-call reports).
    """

    def __init__(
        self,
        store: SchedulingStore,
        dispatch_gateway: DispatchQueueGateway,
        base_minutes: int = DEFAULT_BASE_MINUTES
    ):
        self.store = store
        self.dispatch = dispatch_gateway
        self.base_minutes = base_minutes

    def handle_failure(
        self,
        item: ScheduledItem,
        reason: str,
        from_statuses: Iterable[ScheduledItemStatus] = (ScheduledItemStatus.IN_PROGRESS,),
        outcome_fields: Optional[Dict[str, Any]] = None
    ) -> ExecutionResult:
        """
        Retry or permanently fail an item according to the retry policy

        A retry is a fresh dispatch cycle: the item goes back to queued with
        retry_count + 1 and a new queue message is enqueued for next_retry_at.

        Args:
            item: Item as last read
            reason: Failure reason (end reason or transient class)
            from_statuses: Statuses the item must still be in
            outcome_fields: Extra fields to persist (duration, transcript, ...)

        Returns:
            ExecutionResult describing what happened
        """
        now = now_utc()
        decision = decide(reason, item.retry_count, item.max_retries, self.base_minutes)

        if not decision.should_retry:
            metadata = dict(item.metadata)
            metadata["final_failure"] = True
            metadata["final_failure_reason"] = reason
            fields = dict(outcome_fields or {})
            fields.update({
                "last_failure_reason": reason,
                "ended_at": fields.get("ended_at") or now,
                "metadata": metadata,
                "updated_at": now,
            })
            return self.finalize(item, ScheduledItemStatus.FAILED, fields, from_statuses, error=reason)

        next_retry_at = now + timedelta(minutes=decision.delay_minutes)
        fields = dict(outcome_fields or {})
        fields.update({
            "retry_count": item.retry_count + 1,
            "next_retry_at": next_retry_at,
            "provider_id": None,
            "last_failure_reason": reason,
            "scheduled_for": next_retry_at,
            "updated_at": now,
        })
        outcome = self.store.transition_item(
            item.channel, item.id, from_statuses, ScheduledItemStatus.QUEUED, fields
        )
        if outcome != TransitionOutcome.APPLIED:
            logger.warning(f"Item {item.id} moved on before retry could be recorded ({outcome})")
            current = self.store.get_item(item.channel, item.id)
            return ExecutionResult(
                success=True,
                item_id=item.id,
                status=current.status if current else None,
                skipped=True,
            )

        try:
            message_id = self.dispatch.enqueue(item.channel, item.id, next_retry_at)
        except DispatchError as e:
            logger.error(f"Retry enqueue failed for {item.channel.value} {item.id}: {e}")
            retried = self.store.get_item(item.channel, item.id) or item
            metadata = dict(retried.metadata)
            metadata["final_failure"] = True
            metadata["final_failure_reason"] = "retry-enqueue-failed"
            return self.finalize(
                retried,
                ScheduledItemStatus.FAILED,
                {
                    "last_failure_reason": "retry-enqueue-failed",
                    "next_retry_at": None,
                    "ended_at": now_utc(),
                    "metadata": metadata,
                    "updated_at": now_utc(),
                },
                (ScheduledItemStatus.QUEUED,),
                error=f"Retry enqueue failed: {e}",
            )

        self.store.transition_item(
            item.channel,
            item.id,
            (ScheduledItemStatus.QUEUED,),
            ScheduledItemStatus.QUEUED,
            {"dispatch_message_id": message_id},
        )
        logger.info(
            f"Scheduled retry {item.retry_count + 1}/{item.max_retries} for "
            f"{item.channel.value} {item.id} at {next_retry_at.isoformat()} ({reason})"
        )
        return ExecutionResult(
            success=False,
            item_id=item.id,
            status=ScheduledItemStatus.QUEUED,
            retry_scheduled=True,
            next_retry_at=next_retry_at,
            error=reason,
        )

    def finalize(
        self,
        item: ScheduledItem,
        status: ScheduledItemStatus,
        fields: Dict[str, Any],
        from_statuses: Iterable[ScheduledItemStatus],
        error: Optional[str] = None
    ) -> ExecutionResult:
        """Move an item to a terminal status and update its auto-scheduled item"""
        outcome = self.store.transition_item(item.channel, item.id, from_statuses, status, fields)
        if outcome != TransitionOutcome.APPLIED:
            logger.warning(f"Could not finalize {item.channel.value} {item.id} as {status.value} ({outcome})")
            current = self.store.get_item(item.channel, item.id)
            return ExecutionResult(
                success=True,
                item_id=item.id,
                status=current.status if current else None,
                skipped=True,
            )

        logger.info(f"{item.channel.value.capitalize()} {item.id} finalized as {status.value}")
        self.propagate_to_auto_item(item.channel, item.id, status)
        return ExecutionResult(
            success=status == ScheduledItemStatus.COMPLETED,
            item_id=item.id,
            status=status,
            provider_id=item.provider_id,
            error=error,
        )

    def propagate_to_auto_item(self, channel: Channel, item_id: str, status: ScheduledItemStatus) -> bool:
        """
        Advance the owning auto-scheduled item when a linked item terminates

        The first linked item to terminate decides the auto-scheduled item's
        status; later ones find it already terminal and change nothing.

        Returns:
            True if the auto-scheduled item was updated
        """
        auto_status = _AUTO_STATUS_FOR.get(status)
        if auto_status is None:
            return False

        auto_item = self.store.find_auto_item_for(channel, item_id)
        if auto_item is None:
            return False

        fields: Dict[str, Any] = {"updated_at": now_utc()}
        if auto_status == AutoScheduledItemStatus.FAILED:
            fields["cancelled_at"] = now_utc()
            fields["cancellation_reason"] = "Execution failed"
        elif auto_status == AutoScheduledItemStatus.CANCELLED:
            fields["cancelled_at"] = now_utc()
            fields["cancellation_reason"] = f"Linked {channel.value} cancelled"

        outcome = self.store.transition_auto_item(
            auto_item.id, (AutoScheduledItemStatus.SCHEDULED,), auto_status, fields
        )
        if outcome == TransitionOutcome.APPLIED:
            logger.info(f"Auto-scheduled item {auto_item.id} -> {auto_status.value}")
            return True
        logger.debug(f"Auto-scheduled item {auto_item.id} already terminal, leaving as is")
        return False


class FollowupExecutor:
    """
    Executes a scheduled call or email at fire time

    Safe under at-least-once delivery: the queued -> in_progress claim is an
    atomic conditional update, so duplicate deliveries become no-ops.
    Deliveries that arrive before the item is due are skipped and leave it
    queued.
    """

    def __init__(
        self,
        store: SchedulingStore,
        registry: ProviderClientRegistry,
        dispatch_gateway: DispatchQueueGateway,
        enrichment: Optional[EnrichmentSource] = None,
        base_minutes: int = DEFAULT_BASE_MINUTES
    ):
        """
        Args:
            store: Scheduling store
            registry: Provider client registry
            dispatch_gateway: Queue used to re-enqueue retries
            enrichment: Current case/clinic lookup (store-backed by default)
            base_minutes: Retry backoff base
        """
        self.store = store
        self.registry = registry
        self.enrichment = enrichment or StoreEnrichmentSource(store)
        self.outcomes = CallOutcomeHandler(store, dispatch_gateway, base_minutes)

    def execute(self, channel: Channel, item_id: str) -> ExecutionResult:
        """
        Fire one scheduled item

        Args:
            channel: Item channel
            item_id: Scheduled item id

        Returns:
            ExecutionResult; never raises
        """
        try:
            return self._execute(channel, item_id)
        except Exception as e:
            logger.error(f"Unexpected error executing {channel.value} {item_id}: {e}", exc_info=True)
            return ExecutionResult(success=False, item_id=item_id, error=str(e))

    def _execute(self, channel: Channel, item_id: str) -> ExecutionResult:
        item = self.store.get_item(channel, item_id)
        if item is None:
            logger.error(f"Scheduled {channel.value} {item_id} not found")
            return ExecutionResult(success=False, item_id=item_id, error="Scheduled item not found")

        if item.status != ScheduledItemStatus.QUEUED:
            logger.warning(f"{channel.value.capitalize()} {item_id} is {item.status.value}, skipping execution")
            return ExecutionResult(success=True, item_id=item_id, status=item.status, skipped=True)

        if item.scheduled_for > now_utc() + EARLY_DELIVERY_GRACE:
            # Stale message from before a retry; the retry's own message fires later
            logger.warning(
                f"{channel.value.capitalize()} {item_id} is not due until "
                f"{item.scheduled_for.isoformat()}, skipping early delivery"
            )
            return ExecutionResult(
                success=True,
                item_id=item_id,
                status=item.status,
                skipped=True,
                next_retry_at=item.next_retry_at,
            )

        claimed = self.store.transition_item(
            channel,
            item_id,
            (ScheduledItemStatus.QUEUED,),
            ScheduledItemStatus.IN_PROGRESS,
            {"updated_at": now_utc()},
        )
        if claimed != TransitionOutcome.APPLIED:
            current = self.store.get_item(channel, item_id)
            logger.warning(f"{channel.value.capitalize()} {item_id} was claimed by another delivery")
            return ExecutionResult(
                success=True,
                item_id=item_id,
                status=current.status if current else None,
                skipped=True,
            )

        payload = self._build_payload(item)

        try:
            adapter = self.registry.get(channel, item.clinic_id or None)
            logger.info(f"Dispatching {channel.value} {item_id} to {item.recipient} (retry {item.retry_count})")
            response = adapter.dispatch(payload)
        except ConfigurationError as e:
            logger.error(f"Configuration error for {channel.value} {item_id}: {e}")
            return self.outcomes.finalize(
                item,
                ScheduledItemStatus.FAILED,
                {
                    "last_failure_reason": "configuration-error",
                    "ended_at": now_utc(),
                    "updated_at": now_utc(),
                },
                (ScheduledItemStatus.IN_PROGRESS,),
                error=str(e),
            )
        except ProviderError as e:
            reason = self._failure_reason(channel, e)
            logger.warning(f"Provider rejected {channel.value} {item_id}: {e.message} ({reason})")
            return self.outcomes.handle_failure(item, reason)
        except Exception as e:
            logger.error(f"Unexpected provider error for {channel.value} {item_id}: {e}", exc_info=True)
            return self.outcomes.handle_failure(item, "transient-error")

        try:
            return self._record_acceptance(item, payload, response)
        except Exception as e:
            logger.error(
                f"Could not record provider id {response.provider_id} for {channel.value} {item_id}: {e}",
                exc_info=True,
            )
            return self._record_persist_failure(item, response.provider_id, e)

    def _record_acceptance(self, item: ScheduledItem, payload: Dict[str, Any], response) -> ExecutionResult:
        now = now_utc()
        attached = self.store.attach_provider_id(
            item.channel,
            item.id,
            response.provider_id,
            (ScheduledItemStatus.IN_PROGRESS,),
            {"recipient": item.recipient, "started_at": now, "updated_at": now},
        )
        if attached != TransitionOutcome.APPLIED:
            current = self.store.get_item(item.channel, item.id)
            logger.warning(f"{item.channel.value.capitalize()} {item.id} moved on before its provider id was recorded")
            return ExecutionResult(
                success=True,
                item_id=item.id,
                status=current.status if current else None,
                provider_id=response.provider_id,
                skipped=True,
            )
        item.provider_id = response.provider_id

        if response.delivered:
            return self.outcomes.finalize(
                item,
                ScheduledItemStatus.COMPLETED,
                {"ended_at": now, "transcript": payload.get("text"), "updated_at": now},
                (ScheduledItemStatus.IN_PROGRESS,),
            )

        logger.info(f"{item.channel.value.capitalize()} {item.id} accepted by provider as {response.provider_id}")
        return ExecutionResult(
            success=True,
            item_id=item.id,
            status=ScheduledItemStatus.IN_PROGRESS,
            provider_id=response.provider_id,
        )

    def _record_persist_failure(self, item: ScheduledItem, provider_id: str, error: Exception) -> ExecutionResult:
        """Fail an item the provider accepted but whose acceptance could not be stored"""
        item.provider_id = provider_id
        metadata = dict(item.metadata)
        metadata["final_failure"] = True
        metadata["final_failure_reason"] = "persist-failed"
        try:
            return self.outcomes.finalize(
                item,
                ScheduledItemStatus.FAILED,
                {
                    "provider_id": provider_id,
                    "last_failure_reason": "persist-failed",
                    "ended_at": now_utc(),
                    "metadata": metadata,
                    "updated_at": now_utc(),
                },
                (ScheduledItemStatus.IN_PROGRESS,),
                error=f"Provider accepted {provider_id} but it could not be recorded: {error}",
            )
        except Exception as e:
            logger.error(f"Could not mark {item.channel.value} {item.id} as failed: {e}", exc_info=True)
            return ExecutionResult(
                success=False,
                item_id=item.id,
                status=ScheduledItemStatus.IN_PROGRESS,
                provider_id=provider_id,
                error=str(error),
            )

    @staticmethod
    def _failure_reason(channel: Channel, error: ProviderError) -> str:
        if channel == Channel.EMAIL and error.retryable:
            return "transient-error"
        if error.reason in RETRYABLE_REASONS:
            return error.reason
        if error.retryable:
            return "transient-error"
        return error.reason

    def _build_payload(self, item: ScheduledItem) -> Dict[str, Any]:
        """
        Rebuild the outbound payload from current case data

        Overrides recorded at schedule time always win. If the case cannot be
        loaded, the payload stored at schedule time is used unchanged.
        """
        overrides = item.payload.get("overrides") or {}
        try:
            context = self.enrichment.load(item.case_id)
        except EnrichmentError as e:
            logger.warning(f"Enrichment failed for {item.id}, using stored payload: {e}")
            context = None
        except Exception as e:
            logger.error(f"Enrichment error for {item.id}, using stored payload: {e}", exc_info=True)
            context = None

        if item.channel == Channel.CALL:
            if context is None:
                variables = merge_call_variables(None, item.payload.get("variables"), overrides)
            else:
                if context.phone:
                    item.recipient = context.phone
                variables = merge_call_variables(
                    extract_clinical_variables(context.case),
                    build_call_variables(context),
                    overrides,
                )
            return prepare_call_payload(item, variables)

        if context is None:
            content = dict(item.payload.get("content") or {})
        else:
            if context.email:
                item.recipient = context.email
            content = build_email_content(context)
        content.update(overrides)
        return prepare_email_payload(item, content)
