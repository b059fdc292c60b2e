"""
Scheduling module for the discharge follow-up system

Contains components for deciding and recording automatic follow-ups:
- SchedulingConfig / EligibilityCriteria: Per-clinic settings
- ScheduledItem: One queued call or email
- AutoScheduledItem: Links a case's auto-scheduling attempt to its items
- Run: Audit record of one scheduler invocation
- AutoScheduler (scheduling.scheduler): The daily run itself
- RQ tasks and worker (scheduling.tasks, scheduling.worker)
"""

from .models import (
    AutoScheduledItem,
    AutoScheduledItemStatus,
    Channel,
    EligibilityCriteria,
    Run,
    RunStatus,
    ScheduledItem,
    ScheduledItemStatus,
    SchedulingConfig,
)

__all__ = [
    "AutoScheduledItem",
    "AutoScheduledItemStatus",
    "Channel",
    "EligibilityCriteria",
    "Run",
    "RunStatus",
    "ScheduledItem",
    "ScheduledItemStatus",
    "SchedulingConfig",
]
