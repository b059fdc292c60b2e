"""
Data models for the discharge follow-up auto-scheduling system
"""
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from utils.time_utils import format_iso, now_utc, parse_optional_iso


def _load_json(value: Any, default: Any) -> Any:
    """Decode a nested value that may arrive as a JSON string (from Redis)"""
    if value is None or value == "":
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return default
    return value


def _optional_str(value: Any) -> Optional[str]:
    """Redis stores None as an empty string"""
    if value is None or value == "":
        return None
    return str(value)


def _to_bool(value: Any, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def new_id() -> str:
    return str(uuid.uuid4())


class Channel(Enum):
    """Outbound follow-up channel"""
    CALL = "call"
    EMAIL = "email"


class ScheduledItemStatus(Enum):
    """Status of a scheduled call or email"""
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ScheduledItemStatus.COMPLETED,
            ScheduledItemStatus.FAILED,
            ScheduledItemStatus.CANCELLED,
        )

    @classmethod
    def from_string(cls, value: str) -> "ScheduledItemStatus":
        """Accept the legacy "canceled" spelling alongside "cancelled" """
        if value == "canceled":
            return cls.CANCELLED
        return cls(value)


class AutoScheduledItemStatus(Enum):
    """Status of an auto-scheduling attempt for a case"""
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != AutoScheduledItemStatus.SCHEDULED


class RunStatus(Enum):
    """Outcome of one scheduler invocation"""
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class SchedulingSource(Enum):
    """Who scheduled the follow-up for a case"""
    AUTO = "auto"
    MANUAL = "manual"


@dataclass(frozen=True)
class EligibilityCriteria:
    """
    Per-clinic eligibility rules, embedded in SchedulingConfig.

    Immutable: updates replace the whole value.
    """
    excluded_case_types: Tuple[str, ...] = ()
    included_statuses: Tuple[str, ...] = ("completed",)
    min_case_age_hours: float = 0
    max_case_age_days: float = 3
    require_contact_info: bool = True
    require_discharge_summary: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "excluded_case_types": list(self.excluded_case_types),
            "included_statuses": list(self.included_statuses),
            "min_case_age_hours": self.min_case_age_hours,
            "max_case_age_days": self.max_case_age_days,
            "require_contact_info": self.require_contact_info,
            "require_discharge_summary": self.require_discharge_summary,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EligibilityCriteria":
        """Build criteria, filling every missing field with its default"""
        data = _load_json(data, {}) or {}
        defaults = cls()
        included = data.get("included_statuses")
        return cls(
            excluded_case_types=tuple(data.get("excluded_case_types") or ()),
            included_statuses=tuple(included) if included else defaults.included_statuses,
            min_case_age_hours=_to_float(data.get("min_case_age_hours"), defaults.min_case_age_hours),
            max_case_age_days=_to_float(data.get("max_case_age_days"), defaults.max_case_age_days),
            require_contact_info=_to_bool(data.get("require_contact_info"), defaults.require_contact_info),
            require_discharge_summary=_to_bool(
                data.get("require_discharge_summary"), defaults.require_discharge_summary
            ),
        )


@dataclass
class SchedulingConfig:
    """Per-clinic auto-scheduling configuration"""
    clinic_id: str
    enabled: bool = False
    auto_email_enabled: bool = True
    auto_call_enabled: bool = True
    email_delay_days: int = 1
    call_delay_days: int = 2
    preferred_email_time: str = "10:00"
    preferred_call_time: str = "16:00"
    eligibility_criteria: EligibilityCriteria = field(default_factory=EligibilityCriteria)
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    # Fields an update() call may touch
    UPDATABLE_FIELDS = (
        "enabled",
        "auto_email_enabled",
        "auto_call_enabled",
        "email_delay_days",
        "call_delay_days",
        "preferred_email_time",
        "preferred_call_time",
        "eligibility_criteria",
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clinic_id": self.clinic_id,
            "enabled": self.enabled,
            "auto_email_enabled": self.auto_email_enabled,
            "auto_call_enabled": self.auto_call_enabled,
            "email_delay_days": self.email_delay_days,
            "call_delay_days": self.call_delay_days,
            "preferred_email_time": self.preferred_email_time,
            "preferred_call_time": self.preferred_call_time,
            "eligibility_criteria": self.eligibility_criteria.to_dict(),
            "created_at": format_iso(self.created_at),
            "updated_at": format_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchedulingConfig":
        defaults = cls(clinic_id=data["clinic_id"])
        return cls(
            clinic_id=data["clinic_id"],
            enabled=_to_bool(data.get("enabled"), defaults.enabled),
            auto_email_enabled=_to_bool(data.get("auto_email_enabled"), defaults.auto_email_enabled),
            auto_call_enabled=_to_bool(data.get("auto_call_enabled"), defaults.auto_call_enabled),
            email_delay_days=_to_int(data.get("email_delay_days"), defaults.email_delay_days),
            call_delay_days=_to_int(data.get("call_delay_days"), defaults.call_delay_days),
            preferred_email_time=data.get("preferred_email_time") or defaults.preferred_email_time,
            preferred_call_time=data.get("preferred_call_time") or defaults.preferred_call_time,
            eligibility_criteria=EligibilityCriteria.from_dict(data.get("eligibility_criteria")),
            created_at=parse_optional_iso(data.get("created_at")) or defaults.created_at,
            updated_at=parse_optional_iso(data.get("updated_at")) or defaults.updated_at,
        )

    def snapshot(self) -> "ConfigSnapshot":
        """Freeze the timing values active right now, for audit"""
        return ConfigSnapshot(
            email_delay_days=self.email_delay_days,
            call_delay_days=self.call_delay_days,
            preferred_email_time=self.preferred_email_time,
            preferred_call_time=self.preferred_call_time,
            auto_email_enabled=self.auto_email_enabled,
            auto_call_enabled=self.auto_call_enabled,
        )


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Versioned audit copy of the config used for one scheduling attempt.

    Every field is optional so snapshots written under an older shape keep
    loading; unknown keys from newer shapes are ignored.
    """
    version: int = 1
    email_delay_days: Optional[int] = None
    call_delay_days: Optional[int] = None
    preferred_email_time: Optional[str] = None
    preferred_call_time: Optional[str] = None
    auto_email_enabled: Optional[bool] = None
    auto_call_enabled: Optional[bool] = None

    CURRENT_VERSION = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "email_delay_days": self.email_delay_days,
            "call_delay_days": self.call_delay_days,
            "preferred_email_time": self.preferred_email_time,
            "preferred_call_time": self.preferred_call_time,
            "auto_email_enabled": self.auto_email_enabled,
            "auto_call_enabled": self.auto_call_enabled,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ConfigSnapshot":
        data = _load_json(data, {}) or {}
        # Snapshots from before versioning used camelCase keys
        aliases = {
            "emailDelayDays": "email_delay_days",
            "callDelayDays": "call_delay_days",
            "preferredEmailTime": "preferred_email_time",
            "preferredCallTime": "preferred_call_time",
        }
        normalized = {aliases.get(key, key): value for key, value in data.items()}

        def opt_int(key):
            value = normalized.get(key)
            return None if value is None else _to_int(value)

        def opt_bool(key):
            value = normalized.get(key)
            return None if value is None else _to_bool(value)

        return cls(
            version=_to_int(normalized.get("version"), 0),
            email_delay_days=opt_int("email_delay_days"),
            call_delay_days=opt_int("call_delay_days"),
            preferred_email_time=normalized.get("preferred_email_time"),
            preferred_call_time=normalized.get("preferred_call_time"),
            auto_email_enabled=opt_bool("auto_email_enabled"),
            auto_call_enabled=opt_bool("auto_call_enabled"),
        )


@dataclass
class CaseSnapshot:
    """
    Read-only view of a veterinary case owned by the case-management system.

    Only ``auto_scheduled_at`` and ``scheduling_source`` are ever written
    back by this subsystem.
    """
    id: str
    clinic_id: str
    status: str = ""
    created_at: Optional[datetime] = None
    user_id: str = ""
    auto_scheduled_at: Optional[datetime] = None
    scheduling_source: Optional[str] = None
    is_extreme_case: bool = False
    case_type: Optional[str] = None
    owner_name: Optional[str] = None
    owner_phone: Optional[str] = None
    owner_email: Optional[str] = None
    patient_name: Optional[str] = None
    has_discharge_summary: bool = False
    discharge_summary: Optional[str] = None
    clinical: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "clinic_id": self.clinic_id,
            "status": self.status,
            "created_at": format_iso(self.created_at),
            "user_id": self.user_id,
            "auto_scheduled_at": format_iso(self.auto_scheduled_at),
            "scheduling_source": self.scheduling_source,
            "is_extreme_case": self.is_extreme_case,
            "case_type": self.case_type,
            "owner_name": self.owner_name,
            "owner_phone": self.owner_phone,
            "owner_email": self.owner_email,
            "patient_name": self.patient_name,
            "has_discharge_summary": self.has_discharge_summary,
            "discharge_summary": self.discharge_summary,
            "clinical": self.clinical,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CaseSnapshot":
        """Tolerant parse: every optional field may be missing or empty"""
        return cls(
            id=str(data["id"]),
            clinic_id=str(data.get("clinic_id") or ""),
            status=str(data.get("status") or ""),
            created_at=parse_optional_iso(data.get("created_at")),
            user_id=str(data.get("user_id") or ""),
            auto_scheduled_at=parse_optional_iso(data.get("auto_scheduled_at")),
            scheduling_source=_optional_str(data.get("scheduling_source")),
            is_extreme_case=_to_bool(data.get("is_extreme_case")),
            case_type=_optional_str(data.get("case_type")),
            owner_name=_optional_str(data.get("owner_name")),
            owner_phone=_optional_str(data.get("owner_phone")),
            owner_email=_optional_str(data.get("owner_email")),
            patient_name=_optional_str(data.get("patient_name")),
            has_discharge_summary=_to_bool(data.get("has_discharge_summary")),
            discharge_summary=_optional_str(data.get("discharge_summary")),
            clinical=_load_json(data.get("clinical"), {}),
        )


@dataclass
class ClinicInfo:
    """Clinic metadata needed to schedule and place follow-ups"""
    id: str
    name: str
    phone: Optional[str] = None
    timezone: str = "America/Los_Angeles"
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "timezone": self.timezone,
            "email": self.email,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClinicInfo":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            phone=_optional_str(data.get("phone")),
            timezone=data.get("timezone") or "America/Los_Angeles",
            email=_optional_str(data.get("email")),
        )


@dataclass
class ScheduledItem:
    """
    A single queued or dispatched follow-up (one call or one email).

    Calls and emails share this shape and live in separate per-channel
    collections.
    """
    id: str = field(default_factory=new_id)
    channel: Channel = Channel.CALL
    case_id: str = ""
    user_id: str = ""
    clinic_id: str = ""
    recipient: str = ""
    recipient_name: Optional[str] = None
    scheduled_for: datetime = field(default_factory=now_utc)
    status: ScheduledItemStatus = ScheduledItemStatus.QUEUED

    # Dispatch bookkeeping
    provider_id: Optional[str] = None
    dispatch_message_id: Optional[str] = None

    # Retry metadata
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    last_failure_reason: Optional[str] = None

    # Outbound content: call variables or email subject/body
    payload: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    # Outcome, filled in on completion
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    transcript: Optional[str] = None
    cost: Optional[float] = None
    analysis: Dict[str, Any] = field(default_factory=dict)
    ended_reason: Optional[str] = None

    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "id": self.id,
            "channel": self.channel.value,
            "case_id": self.case_id,
            "user_id": self.user_id,
            "clinic_id": self.clinic_id,
            "recipient": self.recipient,
            "recipient_name": self.recipient_name,
            "scheduled_for": format_iso(self.scheduled_for),
            "status": self.status.value,
            "provider_id": self.provider_id,
            "dispatch_message_id": self.dispatch_message_id,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_retry_at": format_iso(self.next_retry_at),
            "last_failure_reason": self.last_failure_reason,
            "payload": self.payload,
            "metadata": self.metadata,
            "started_at": format_iso(self.started_at),
            "ended_at": format_iso(self.ended_at),
            "duration_seconds": self.duration_seconds,
            "transcript": self.transcript,
            "cost": self.cost,
            "analysis": self.analysis,
            "ended_reason": self.ended_reason,
            "created_at": format_iso(self.created_at),
            "updated_at": format_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledItem":
        """Create from dictionary"""
        duration = data.get("duration_seconds")
        return cls(
            id=data["id"],
            channel=Channel(data.get("channel") or Channel.CALL.value),
            case_id=data.get("case_id") or "",
            user_id=data.get("user_id") or "",
            clinic_id=data.get("clinic_id") or "",
            recipient=data.get("recipient") or "",
            recipient_name=_optional_str(data.get("recipient_name")),
            scheduled_for=parse_optional_iso(data.get("scheduled_for")) or now_utc(),
            status=ScheduledItemStatus.from_string(data.get("status") or "queued"),
            provider_id=_optional_str(data.get("provider_id")),
            dispatch_message_id=_optional_str(data.get("dispatch_message_id")),
            retry_count=_to_int(data.get("retry_count")),
            max_retries=_to_int(data.get("max_retries"), 3),
            next_retry_at=parse_optional_iso(data.get("next_retry_at")),
            last_failure_reason=_optional_str(data.get("last_failure_reason")),
            payload=_load_json(data.get("payload"), {}),
            metadata=_load_json(data.get("metadata"), {}),
            started_at=parse_optional_iso(data.get("started_at")),
            ended_at=parse_optional_iso(data.get("ended_at")),
            duration_seconds=None if duration in (None, "") else _to_int(duration),
            transcript=_optional_str(data.get("transcript")),
            cost=_to_float(data.get("cost")),
            analysis=_load_json(data.get("analysis"), {}),
            ended_reason=_optional_str(data.get("ended_reason")),
            created_at=parse_optional_iso(data.get("created_at")) or now_utc(),
            updated_at=parse_optional_iso(data.get("updated_at")) or now_utc(),
        )


@dataclass
class AutoScheduledItem:
    """Links one case's auto-scheduling attempt to the items it produced"""
    id: str = field(default_factory=new_id)
    case_id: str = ""
    clinic_id: str = ""
    run_id: str = ""
    scheduled_email_id: Optional[str] = None
    scheduled_call_id: Optional[str] = None
    status: AutoScheduledItemStatus = AutoScheduledItemStatus.SCHEDULED
    config_snapshot: ConfigSnapshot = field(default_factory=ConfigSnapshot)
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "clinic_id": self.clinic_id,
            "run_id": self.run_id,
            "scheduled_email_id": self.scheduled_email_id,
            "scheduled_call_id": self.scheduled_call_id,
            "status": self.status.value,
            "config_snapshot": self.config_snapshot.to_dict(),
            "cancelled_at": format_iso(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "cancellation_reason": self.cancellation_reason,
            "created_at": format_iso(self.created_at),
            "updated_at": format_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoScheduledItem":
        return cls(
            id=data["id"],
            case_id=data.get("case_id") or "",
            clinic_id=data.get("clinic_id") or "",
            run_id=data.get("run_id") or "",
            scheduled_email_id=_optional_str(data.get("scheduled_email_id")),
            scheduled_call_id=_optional_str(data.get("scheduled_call_id")),
            status=AutoScheduledItemStatus(data.get("status") or "scheduled"),
            config_snapshot=ConfigSnapshot.from_dict(data.get("config_snapshot")),
            cancelled_at=parse_optional_iso(data.get("cancelled_at")),
            cancelled_by=_optional_str(data.get("cancelled_by")),
            cancellation_reason=_optional_str(data.get("cancellation_reason")),
            created_at=parse_optional_iso(data.get("created_at")) or now_utc(),
            updated_at=parse_optional_iso(data.get("updated_at")) or now_utc(),
        )

    def item_id_for(self, channel: Channel) -> Optional[str]:
        if channel == Channel.CALL:
            return self.scheduled_call_id
        return self.scheduled_email_id


@dataclass
class ClinicRunResult:
    """Per-clinic outcome inside a Run"""
    clinic_id: str
    clinic_name: str = "Unknown"
    cases_found: int = 0
    cases_processed: int = 0
    emails_scheduled: int = 0
    calls_scheduled: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    planned: List[Dict[str, Any]] = field(default_factory=list)
    aborted: bool = False
    skip_reason: Optional[str] = None

    def add_error(self, message: str, case_id: Optional[str] = None):
        error = {"message": message, "timestamp": format_iso(now_utc())}
        if case_id:
            error["case_id"] = case_id
        self.errors.append(error)

    def add_skip(self, case_id: str, reason_code: str, reason: str):
        self.skipped.append({"case_id": case_id, "reason_code": reason_code, "reason": reason})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clinic_id": self.clinic_id,
            "clinic_name": self.clinic_name,
            "cases_found": self.cases_found,
            "cases_processed": self.cases_processed,
            "emails_scheduled": self.emails_scheduled,
            "calls_scheduled": self.calls_scheduled,
            "errors": self.errors,
            "skipped": self.skipped,
            "planned": self.planned,
            "aborted": self.aborted,
            "skip_reason": self.skip_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClinicRunResult":
        return cls(
            clinic_id=data["clinic_id"],
            clinic_name=data.get("clinic_name") or "Unknown",
            cases_found=_to_int(data.get("cases_found")),
            cases_processed=_to_int(data.get("cases_processed")),
            emails_scheduled=_to_int(data.get("emails_scheduled")),
            calls_scheduled=_to_int(data.get("calls_scheduled")),
            errors=list(data.get("errors") or []),
            skipped=list(data.get("skipped") or []),
            planned=list(data.get("planned") or []),
            aborted=_to_bool(data.get("aborted")),
            skip_reason=_optional_str(data.get("skip_reason")),
        )


@dataclass
class Run:
    """Append-only audit record of one scheduler invocation"""
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    dry_run: bool = False
    results: List[ClinicRunResult] = field(default_factory=list)
    total_cases_processed: int = 0
    total_emails_scheduled: int = 0
    total_calls_scheduled: int = 0
    total_errors: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "started_at": format_iso(self.started_at),
            "completed_at": format_iso(self.completed_at),
            "status": self.status.value,
            "dry_run": self.dry_run,
            "results": [result.to_dict() for result in self.results],
            "total_cases_processed": self.total_cases_processed,
            "total_emails_scheduled": self.total_emails_scheduled,
            "total_calls_scheduled": self.total_calls_scheduled,
            "total_errors": self.total_errors,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Run":
        return cls(
            id=data["id"],
            started_at=parse_optional_iso(data.get("started_at")) or now_utc(),
            completed_at=parse_optional_iso(data.get("completed_at")),
            status=RunStatus(data.get("status") or "running"),
            dry_run=_to_bool(data.get("dry_run")),
            results=[ClinicRunResult.from_dict(r) for r in _load_json(data.get("results"), [])],
            total_cases_processed=_to_int(data.get("total_cases_processed")),
            total_emails_scheduled=_to_int(data.get("total_emails_scheduled")),
            total_calls_scheduled=_to_int(data.get("total_calls_scheduled")),
            total_errors=_to_int(data.get("total_errors")),
            error_message=_optional_str(data.get("error_message")),
        )
