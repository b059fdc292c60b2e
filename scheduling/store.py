"""
Persistence interface for scheduling records

SchedulingStore is the seam between the scheduling/execution logic and the
data store. RedisSchedulingStore (scheduling/redis_store.py) is the
production implementation; InMemorySchedulingStore below backs tests and
local dry runs.
"""
import copy
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from scheduling.models import (
    AutoScheduledItem,
    AutoScheduledItemStatus,
    CaseSnapshot,
    Channel,
    ClinicInfo,
    Run,
    ScheduledItem,
    ScheduledItemStatus,
    SchedulingConfig,
)


class TransitionOutcome:
    """Result codes for guarded status transitions"""
    APPLIED = "applied"
    STATUS_MISMATCH = "status_mismatch"
    NOT_FOUND = "not_found"


class SchedulingStore(ABC):
    """Abstract store for configs, cases, scheduled items and runs"""

    # Clinic scheduling config

    @abstractmethod
    def get_config(self, clinic_id: str) -> Optional[SchedulingConfig]:
        pass

    @abstractmethod
    def create_config_if_absent(self, config: SchedulingConfig) -> SchedulingConfig:
        """Insert config unless one exists; return whichever record is stored"""
        pass

    @abstractmethod
    def save_config(self, config: SchedulingConfig) -> None:
        pass

    @abstractmethod
    def list_configs(self) -> List[SchedulingConfig]:
        pass

    # Clinics and cases (owned upstream, read-mostly here)

    @abstractmethod
    def get_clinic(self, clinic_id: str) -> Optional[ClinicInfo]:
        pass

    @abstractmethod
    def save_clinic(self, clinic: ClinicInfo) -> None:
        pass

    @abstractmethod
    def get_case(self, case_id: str) -> Optional[CaseSnapshot]:
        pass

    @abstractmethod
    def save_case(self, case: CaseSnapshot) -> None:
        pass

    @abstractmethod
    def find_unscheduled_cases(
        self,
        clinic_id: str,
        statuses: Iterable[str],
        created_after: datetime
    ) -> List[CaseSnapshot]:
        """Cases with no scheduling stamp, newest first"""
        pass

    @abstractmethod
    def stamp_case(
        self,
        case_id: str,
        auto_scheduled_at: Optional[datetime],
        scheduling_source: Optional[str]
    ) -> bool:
        """Write (or clear, with None) the case's scheduling stamp"""
        pass

    # Scheduled items (one collection per channel)

    @abstractmethod
    def save_item(self, item: ScheduledItem) -> None:
        pass

    @abstractmethod
    def get_item(self, channel: Channel, item_id: str) -> Optional[ScheduledItem]:
        pass

    @abstractmethod
    def find_item_by_provider_id(self, provider_id: str) -> Optional[ScheduledItem]:
        pass

    @abstractmethod
    def attach_provider_id(
        self,
        channel: Channel,
        item_id: str,
        provider_id: str,
        expected: Iterable[ScheduledItemStatus],
        fields: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Record the provider-assigned id on an item and index it in one step

        The item keeps its status; the write only happens if that status is
        expected, and callbacks can find the item as soon as it lands.

        Returns:
            A TransitionOutcome value
        """
        pass

    @abstractmethod
    def list_items_for_case(self, channel: Channel, case_id: str) -> List[ScheduledItem]:
        pass

    @abstractmethod
    def transition_item(
        self,
        channel: Channel,
        item_id: str,
        expected: Iterable[ScheduledItemStatus],
        new_status: ScheduledItemStatus,
        fields: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Atomically set status (and fields) only if the current status is expected

        Returns:
            A TransitionOutcome value
        """
        pass

    # Auto-scheduled items

    @abstractmethod
    def create_auto_item(self, auto_item: AutoScheduledItem, stamped_at: datetime) -> bool:
        """
        Atomically create the auto-scheduled item and stamp its case

        Returns:
            False if the case already has an active auto-scheduled item
        """
        pass

    @abstractmethod
    def get_auto_item(self, auto_id: str) -> Optional[AutoScheduledItem]:
        pass

    @abstractmethod
    def find_active_auto_item(self, case_id: str) -> Optional[AutoScheduledItem]:
        pass

    @abstractmethod
    def find_auto_item_for(self, channel: Channel, item_id: str) -> Optional[AutoScheduledItem]:
        pass

    @abstractmethod
    def transition_auto_item(
        self,
        auto_id: str,
        expected: Iterable[AutoScheduledItemStatus],
        new_status: AutoScheduledItemStatus,
        fields: Optional[Dict[str, Any]] = None
    ) -> str:
        """Guarded status change; leaving 'scheduled' frees the case's active slot"""
        pass

    @abstractmethod
    def list_auto_items(
        self,
        clinic_id: str,
        status: Optional[AutoScheduledItemStatus] = None,
        limit: int = 100
    ) -> List[AutoScheduledItem]:
        """Auto-scheduled items for a clinic, newest first"""
        pass

    # Runs

    @abstractmethod
    def save_run(self, run: Run) -> None:
        pass

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[Run]:
        pass

    @abstractmethod
    def list_runs(self, limit: int = 10) -> List[Run]:
        """Runs newest first"""
        pass


class InMemorySchedulingStore(SchedulingStore):
    """
    Single-process store guarded by one lock

    Records are held as dicts and rebuilt on read, so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._configs: Dict[str, Dict[str, Any]] = {}
        self._clinics: Dict[str, Dict[str, Any]] = {}
        self._cases: Dict[str, Dict[str, Any]] = {}
        self._items: Dict[str, Dict[str, Dict[str, Any]]] = {c.value: {} for c in Channel}
        self._provider_index: Dict[str, tuple] = {}
        self._auto_items: Dict[str, Dict[str, Any]] = {}
        self._active_auto: Dict[str, str] = {}
        self._runs: Dict[str, Dict[str, Any]] = {}

    def get_config(self, clinic_id):
        with self._lock:
            data = self._configs.get(clinic_id)
            return SchedulingConfig.from_dict(copy.deepcopy(data)) if data else None

    def create_config_if_absent(self, config):
        with self._lock:
            if config.clinic_id not in self._configs:
                self._configs[config.clinic_id] = config.to_dict()
            return SchedulingConfig.from_dict(copy.deepcopy(self._configs[config.clinic_id]))

    def save_config(self, config):
        with self._lock:
            self._configs[config.clinic_id] = config.to_dict()

    def list_configs(self):
        with self._lock:
            return [SchedulingConfig.from_dict(copy.deepcopy(d)) for d in self._configs.values()]

    def get_clinic(self, clinic_id):
        with self._lock:
            data = self._clinics.get(clinic_id)
            return ClinicInfo.from_dict(dict(data)) if data else None

    def save_clinic(self, clinic):
        with self._lock:
            self._clinics[clinic.id] = clinic.to_dict()

    def get_case(self, case_id):
        with self._lock:
            data = self._cases.get(case_id)
            return CaseSnapshot.from_dict(copy.deepcopy(data)) if data else None

    def save_case(self, case):
        with self._lock:
            self._cases[case.id] = case.to_dict()

    def find_unscheduled_cases(self, clinic_id, statuses, created_after):
        statuses = set(statuses)
        with self._lock:
            cases = [CaseSnapshot.from_dict(copy.deepcopy(d)) for d in self._cases.values()]
        matches = [
            case for case in cases
            if case.clinic_id == clinic_id
            and case.status in statuses
            and case.auto_scheduled_at is None
            and case.scheduling_source is None
            and case.created_at is not None
            and case.created_at >= created_after
        ]
        matches.sort(key=lambda case: case.created_at, reverse=True)
        return matches

    def stamp_case(self, case_id, auto_scheduled_at, scheduling_source):
        with self._lock:
            data = self._cases.get(case_id)
            if data is None:
                return False
            case = CaseSnapshot.from_dict(data)
            case.auto_scheduled_at = auto_scheduled_at
            case.scheduling_source = scheduling_source
            self._cases[case_id] = case.to_dict()
            return True

    def save_item(self, item):
        with self._lock:
            self._items[item.channel.value][item.id] = item.to_dict()

    def get_item(self, channel, item_id):
        with self._lock:
            data = self._items[channel.value].get(item_id)
            return ScheduledItem.from_dict(copy.deepcopy(data)) if data else None

    def find_item_by_provider_id(self, provider_id):
        with self._lock:
            ref = self._provider_index.get(provider_id)
        if ref is None:
            return None
        channel, item_id = ref
        return self.get_item(channel, item_id)

    def attach_provider_id(self, channel, item_id, provider_id, expected, fields=None):
        allowed = {status.value for status in expected}
        with self._lock:
            data = self._items[channel.value].get(item_id)
            if data is None:
                return TransitionOutcome.NOT_FOUND
            if data["status"] not in allowed:
                return TransitionOutcome.STATUS_MISMATCH
            item = ScheduledItem.from_dict(copy.deepcopy(data))
            item.provider_id = provider_id
            for name, value in (fields or {}).items():
                setattr(item, name, value)
            self._items[channel.value][item_id] = item.to_dict()
            self._provider_index[provider_id] = (channel, item_id)
            return TransitionOutcome.APPLIED

    def list_items_for_case(self, channel, case_id):
        with self._lock:
            rows = [copy.deepcopy(d) for d in self._items[channel.value].values()]
        return [ScheduledItem.from_dict(d) for d in rows if d.get("case_id") == case_id]

    def transition_item(self, channel, item_id, expected, new_status, fields=None):
        allowed = {status.value for status in expected}
        with self._lock:
            data = self._items[channel.value].get(item_id)
            if data is None:
                return TransitionOutcome.NOT_FOUND
            if data["status"] not in allowed:
                return TransitionOutcome.STATUS_MISMATCH
            item = ScheduledItem.from_dict(copy.deepcopy(data))
            item.status = new_status
            for name, value in (fields or {}).items():
                setattr(item, name, value)
            self._items[channel.value][item_id] = item.to_dict()
            return TransitionOutcome.APPLIED

    def create_auto_item(self, auto_item, stamped_at):
        with self._lock:
            if auto_item.case_id in self._active_auto:
                return False
            self._active_auto[auto_item.case_id] = auto_item.id
            self._auto_items[auto_item.id] = auto_item.to_dict()
            self.stamp_case(auto_item.case_id, stamped_at, "auto")
            return True

    def get_auto_item(self, auto_id):
        with self._lock:
            data = self._auto_items.get(auto_id)
            return AutoScheduledItem.from_dict(copy.deepcopy(data)) if data else None

    def find_active_auto_item(self, case_id):
        with self._lock:
            auto_id = self._active_auto.get(case_id)
        return self.get_auto_item(auto_id) if auto_id else None

    def find_auto_item_for(self, channel, item_id):
        field_name = "scheduled_call_id" if channel == Channel.CALL else "scheduled_email_id"
        with self._lock:
            for data in self._auto_items.values():
                if data.get(field_name) == item_id:
                    return AutoScheduledItem.from_dict(copy.deepcopy(data))
        return None

    def transition_auto_item(self, auto_id, expected, new_status, fields=None):
        allowed = {status.value for status in expected}
        with self._lock:
            data = self._auto_items.get(auto_id)
            if data is None:
                return TransitionOutcome.NOT_FOUND
            if data["status"] not in allowed:
                return TransitionOutcome.STATUS_MISMATCH
            auto_item = AutoScheduledItem.from_dict(copy.deepcopy(data))
            auto_item.status = new_status
            for name, value in (fields or {}).items():
                setattr(auto_item, name, value)
            self._auto_items[auto_id] = auto_item.to_dict()
            if new_status.is_terminal and self._active_auto.get(auto_item.case_id) == auto_id:
                del self._active_auto[auto_item.case_id]
            return TransitionOutcome.APPLIED

    def list_auto_items(self, clinic_id, status=None, limit=100):
        with self._lock:
            rows = [copy.deepcopy(d) for d in self._auto_items.values()]
        items = [AutoScheduledItem.from_dict(d) for d in rows if d.get("clinic_id") == clinic_id]
        if status is not None:
            items = [item for item in items if item.status == status]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items[:limit]

    def save_run(self, run):
        with self._lock:
            self._runs[run.id] = run.to_dict()

    def get_run(self, run_id):
        with self._lock:
            data = self._runs.get(run_id)
            return Run.from_dict(copy.deepcopy(data)) if data else None

    def list_runs(self, limit=10):
        with self._lock:
            runs = [Run.from_dict(copy.deepcopy(d)) for d in self._runs.values()]
        runs.sort(key=lambda run: run.started_at, reverse=True)
        return runs[:limit]
