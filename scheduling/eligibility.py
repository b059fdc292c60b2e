"""
Eligibility evaluator for automatic discharge follow-up

Pure decision logic: given a case snapshot and the clinic's eligibility
criteria, decide whether the case may be auto-scheduled. No I/O, and no
exceptions for missing optional fields.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

from scheduling.models import CaseSnapshot, EligibilityCriteria, SchedulingSource
from utils.time_utils import hours_between, now_utc

logger = logging.getLogger("eligibility")

# Keywords that mark a case as an end-of-life visit
BLOCKED_KEYWORDS = (
    "euthanasia",
    "euthanize",
    "euthanized",
    "doa",
    "dead on arrival",
    "deceased",
    "passed away",
    "death during",
    "humane ending",
    "compassionate euthanasia",
    "put to sleep",
    "pts",
    "humanely euthanized",
)

# Case types that are blocked outright
BLOCKED_CASE_TYPES = ("euthanasia", "doa", "deceased")

MIN_PHONE_DIGITS = 10


class EligibilityReason(Enum):
    """Reason codes for rejected cases"""
    ALREADY_AUTO_SCHEDULED = "ALREADY_AUTO_SCHEDULED"
    ALREADY_SCHEDULED = "ALREADY_SCHEDULED"
    INVALID_STATUS = "INVALID_STATUS"
    EXTREME_CASE = "EXTREME_CASE"
    EXCLUDED_CASE_TYPE = "EXCLUDED_CASE_TYPE"
    NO_CONTACT_INFO = "NO_CONTACT_INFO"
    NO_DISCHARGE_SUMMARY = "NO_DISCHARGE_SUMMARY"
    CASE_TOO_OLD = "CASE_TOO_OLD"
    CASE_TOO_NEW = "CASE_TOO_NEW"


@dataclass(frozen=True)
class EligibilityResult:
    """Outcome of an eligibility check"""
    is_eligible: bool
    reason_code: Optional[EligibilityReason] = None
    reason_text: Optional[str] = None

    @classmethod
    def eligible(cls) -> "EligibilityResult":
        return cls(is_eligible=True)

    @classmethod
    def rejected(cls, code: EligibilityReason, text: str) -> "EligibilityResult":
        return cls(is_eligible=False, reason_code=code, reason_text=text)


def has_valid_phone(phone: Optional[str]) -> bool:
    """A usable phone number has at least ten digits once formatting is stripped"""
    if not phone:
        return False
    return len(re.sub(r"\D", "", phone)) >= MIN_PHONE_DIGITS


def has_valid_email(email: Optional[str]) -> bool:
    return bool(email) and "@" in email


def _contains_keyword(content: str, keywords: Iterable[str]) -> Optional[str]:
    """Return the first keyword found anywhere in content (plain substring match)"""
    for keyword in keywords:
        if keyword in content:
            return keyword
    return None


def detect_extreme_case(case: CaseSnapshot) -> Optional[str]:
    """
    Check whether a case is an end-of-life visit that must never get an
    automated follow-up.

    Args:
        case: Case snapshot to inspect

    Returns:
        A human-readable reason when the case is blocked, otherwise None
    """
    if case.is_extreme_case:
        return "Case flagged as extreme"

    if case.case_type:
        normalized_type = case.case_type.strip().lower()
        if normalized_type in BLOCKED_CASE_TYPES:
            return f"Case type: {case.case_type}"

    clinical = case.clinical or {}
    content_parts = [
        case.case_type,
        case.discharge_summary,
        clinical.get("consultation_notes"),
        clinical.get("appointment_type"),
        clinical.get("notes"),
    ]
    content = " ".join(str(part) for part in content_parts if part).lower()

    keyword = _contains_keyword(content, BLOCKED_KEYWORDS)
    if keyword:
        return f'Content contains: "{keyword}"'
    return None


def evaluate(
    case: CaseSnapshot,
    criteria: EligibilityCriteria,
    now: Optional[datetime] = None
) -> EligibilityResult:
    """
    Decide whether a case is eligible for auto-scheduling

    Checks run in a fixed order and the first failing check wins.

    Args:
        case: Current case snapshot
        criteria: Clinic eligibility criteria
        now: Reference time for the age window (defaults to now_utc())

    Returns:
        EligibilityResult with a reason code when rejected
    """
    if case.auto_scheduled_at is not None:
        return EligibilityResult.rejected(
            EligibilityReason.ALREADY_AUTO_SCHEDULED,
            "Case has already been auto-scheduled",
        )

    if case.scheduling_source == SchedulingSource.MANUAL.value:
        return EligibilityResult.rejected(
            EligibilityReason.ALREADY_SCHEDULED,
            "Case was manually scheduled",
        )

    if case.status not in criteria.included_statuses:
        return EligibilityResult.rejected(
            EligibilityReason.INVALID_STATUS,
            f"Case status '{case.status or 'unknown'}' is not eligible",
        )

    extreme_reason = detect_extreme_case(case)
    if extreme_reason:
        return EligibilityResult.rejected(EligibilityReason.EXTREME_CASE, extreme_reason)

    excluded = {t.strip().lower() for t in criteria.excluded_case_types}
    if case.case_type and case.case_type.strip().lower() in excluded:
        return EligibilityResult.rejected(
            EligibilityReason.EXCLUDED_CASE_TYPE,
            f"Case type '{case.case_type}' is excluded for this clinic",
        )

    if criteria.require_contact_info and not (
        has_valid_phone(case.owner_phone) or has_valid_email(case.owner_email)
    ):
        return EligibilityResult.rejected(
            EligibilityReason.NO_CONTACT_INFO,
            "No valid phone number or email address",
        )

    if criteria.require_discharge_summary and not case.has_discharge_summary:
        return EligibilityResult.rejected(
            EligibilityReason.NO_DISCHARGE_SUMMARY,
            "No discharge summary available",
        )

    # Without a creation time the age window cannot reject the case
    if case.created_at is not None:
        age_hours = hours_between(case.created_at, now or now_utc())
        if age_hours / 24 > criteria.max_case_age_days:
            return EligibilityResult.rejected(
                EligibilityReason.CASE_TOO_OLD,
                f"Case is older than {criteria.max_case_age_days} days",
            )
        if age_hours < criteria.min_case_age_hours:
            return EligibilityResult.rejected(
                EligibilityReason.CASE_TOO_NEW,
                f"Case is newer than {criteria.min_case_age_hours} hours",
            )

    return EligibilityResult.eligible()
