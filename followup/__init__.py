"""
Followup package for the discharge follow-up system

Contains execution-side components:
- FollowupExecutor: Fires a scheduled call or email when the queue delivers it
- StatusTracker: Applies provider callbacks to scheduled items
"""

# Resolved lazily so importing one followup submodule does not load the rest


def __getattr__(name):
    if name == 'FollowupExecutor':
        from .call_executor import FollowupExecutor as _FollowupExecutor
        globals()['FollowupExecutor'] = _FollowupExecutor
        return _FollowupExecutor
    if name == 'StatusTracker':
        from .status_tracker import StatusTracker as _StatusTracker
        globals()['StatusTracker'] = _StatusTracker
        return _StatusTracker
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    'FollowupExecutor',
    'StatusTracker'
]
