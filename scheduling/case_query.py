"""
Candidate case lookup for the daily scheduling run
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from scheduling.models import CaseSnapshot, ClinicInfo, EligibilityCriteria
from scheduling.store import SchedulingStore
from utils.time_utils import now_utc

logger = logging.getLogger("case-query")


class CaseQueryService:
    """
    Coarse pre-filter over the case data store.

    Status and age are checked here and again by the eligibility evaluator;
    this query only narrows what has to be evaluated.
    """

    def __init__(self, store: SchedulingStore):
        self.store = store

    def find_candidates(
        self,
        clinic_id: str,
        criteria: EligibilityCriteria,
        now: Optional[datetime] = None
    ) -> List[CaseSnapshot]:
        """
        Unstamped cases in an included status created inside the age window

        Returns:
            Cases newest first
        """
        created_after = (now or now_utc()) - timedelta(days=criteria.max_case_age_days)
        cases = self.store.find_unscheduled_cases(clinic_id, criteria.included_statuses, created_after)
        logger.debug(f"Found {len(cases)} candidate cases for clinic {clinic_id}")
        return cases

    def get_clinic(self, clinic_id: str) -> Optional[ClinicInfo]:
        return self.store.get_clinic(clinic_id)

    def get_case(self, case_id: str) -> Optional[CaseSnapshot]:
        return self.store.get_case(case_id)
