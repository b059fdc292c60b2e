"""
Per-clinic auto-scheduling configuration
"""
import logging
from typing import Any, Dict, List, Optional

from scheduling.models import EligibilityCriteria, SchedulingConfig
from scheduling.store import SchedulingStore
from utils.time_utils import now_utc, parse_time_of_day

logger = logging.getLogger("config-store")


class ConfigStore:
    """Reads and updates clinic scheduling configs"""

    def __init__(self, store: SchedulingStore):
        self.store = store

    def get(self, clinic_id: str) -> Optional[SchedulingConfig]:
        return self.store.get_config(clinic_id)

    def get_or_create(self, clinic_id: str) -> SchedulingConfig:
        """
        Return the clinic's config, persisting a default one on first access

        Safe under concurrent callers: creation is insert-if-absent, so every
        caller ends up with the same stored record.
        """
        existing = self.store.get_config(clinic_id)
        if existing:
            return existing
        return self.store.create_config_if_absent(SchedulingConfig(clinic_id=clinic_id))

    def update(self, clinic_id: str, fields: Dict[str, Any]) -> SchedulingConfig:
        """
        Merge the provided fields into the clinic's config

        Args:
            clinic_id: Clinic to update
            fields: Partial field values; keys not in SchedulingConfig.UPDATABLE_FIELDS
                are rejected

        Returns:
            The updated config

        Raises:
            ValueError: On unknown fields or malformed values
        """
        unknown = set(fields) - set(SchedulingConfig.UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")

        config = self.get_or_create(clinic_id)
        for name, value in fields.items():
            setattr(config, name, self._coerce(name, value))
        config.updated_at = now_utc()

        self.store.save_config(config)
        logger.info(f"Updated scheduling config for clinic {clinic_id}: {sorted(fields)}")
        return config

    def toggle_enabled(self, clinic_id: str, enabled: bool) -> SchedulingConfig:
        return self.update(clinic_id, {"enabled": enabled})

    def list_enabled(self) -> List[SchedulingConfig]:
        return [config for config in self.store.list_configs() if config.enabled]

    def list_all(self) -> List[SchedulingConfig]:
        return self.store.list_configs()

    @staticmethod
    def _coerce(name: str, value: Any) -> Any:
        if name in ("enabled", "auto_email_enabled", "auto_call_enabled"):
            return bool(value)
        if name in ("email_delay_days", "call_delay_days"):
            days = int(value)
            if days < 0:
                raise ValueError(f"{name} must not be negative")
            return days
        if name in ("preferred_email_time", "preferred_call_time"):
            try:
                hours, minutes = parse_time_of_day(str(value))
            except ValueError:
                raise ValueError(f"{name} must be HH:MM, got '{value}'")
            return f"{hours:02d}:{minutes:02d}"
        if name == "eligibility_criteria":
            if isinstance(value, EligibilityCriteria):
                return value
            return EligibilityCriteria.from_dict(value)
        return value
