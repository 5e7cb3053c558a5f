"""Member lifecycle rules."""

from membership_core.lifecycle.state_machine import (
    VALID_TRANSITIONS,
    allowed_transitions,
    can_reactivate,
    can_transition,
)

__all__ = [
    "VALID_TRANSITIONS",
    "allowed_transitions",
    "can_reactivate",
    "can_transition",
]
