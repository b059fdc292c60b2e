"""
Contact and clinical enrichment

Looks up current owner contact details and clinical content for a case so
the scheduler (at schedule time) and the executor (at fire time) build
payloads from fresh data.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from scheduling.eligibility import has_valid_email, has_valid_phone
from scheduling.models import CaseSnapshot, ClinicInfo
from scheduling.store import SchedulingStore
from utils.time_utils import is_within_business_hours, now_utc

logger = logging.getLogger("enrichment")


class EnrichmentError(Exception):
    """The case or clinic could not be loaded for enrichment"""


@dataclass
class CaseContext:
    """Everything needed to address and fill an outbound follow-up"""
    case: CaseSnapshot
    clinic: Optional[ClinicInfo]

    @property
    def phone(self) -> Optional[str]:
        return self.case.owner_phone if has_valid_phone(self.case.owner_phone) else None

    @property
    def email(self) -> Optional[str]:
        return self.case.owner_email if has_valid_email(self.case.owner_email) else None


class EnrichmentSource(ABC):
    """Read-only lookup of current case and clinic data"""

    @abstractmethod
    def load(self, case_id: str) -> CaseContext:
        """
        Raises:
            EnrichmentError: If the case does not exist
        """
        pass


class StoreEnrichmentSource(EnrichmentSource):
    """Enrichment backed by the scheduling store's case and clinic records"""

    def __init__(self, store: SchedulingStore):
        self.store = store

    def load(self, case_id):
        case = self.store.get_case(case_id)
        if case is None:
            raise EnrichmentError(f"Case {case_id} not found")
        clinic = self.store.get_clinic(case.clinic_id) if case.clinic_id else None
        return CaseContext(case=case, clinic=clinic)


def extract_clinical_variables(case: CaseSnapshot) -> Dict[str, Any]:
    """Variables already extracted from the discharge record"""
    extracted = (case.clinical or {}).get("call_variables") or {}
    return dict(extracted) if isinstance(extracted, dict) else {}


def build_call_variables(context: CaseContext, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Variables derived from the current case and clinic state

    Includes ``clinic_is_open`` so the assistant can tell the owner whether
    the clinic can be reached right now.
    """
    case, clinic = context.case, context.clinic
    variables = {
        "case_id": case.id,
        "pet_name": case.patient_name,
        "owner_name": case.owner_name,
        "discharge_summary": case.discharge_summary,
        "clinic_name": clinic.name if clinic else None,
        "clinic_phone": clinic.phone if clinic else None,
    }
    clinical = case.clinical or {}
    for key in ("diagnosis", "medications", "next_steps", "recheck_date"):
        if clinical.get(key) is not None:
            variables[key] = clinical[key]

    timezone = clinic.timezone if clinic else None
    variables["clinic_is_open"] = is_within_business_hours(now or now_utc(), timezone)
    return {key: value for key, value in variables.items() if value is not None}


def build_email_content(context: CaseContext) -> Dict[str, Any]:
    """Minimal subject and plain-text body for a discharge email"""
    case, clinic = context.case, context.clinic
    clinic_name = clinic.name if clinic else "your veterinary clinic"
    pet = case.patient_name or "your pet"

    lines = [f"Hello {case.owner_name or 'there'},", ""]
    lines.append(f"Here are the discharge instructions for {pet} from {clinic_name}.")
    if case.discharge_summary:
        lines.extend(["", case.discharge_summary])
    if clinic and clinic.phone:
        lines.extend(["", f"Questions? Call us at {clinic.phone}."])

    return {
        "subject": f"Discharge instructions for {pet}",
        "text": "\n".join(lines),
    }
