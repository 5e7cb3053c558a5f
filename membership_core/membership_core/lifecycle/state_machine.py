"""Member status transition rules.

The transition table is the single authority on which status changes are
legal.  ``removed`` is terminal in the table; the only way out of it is the
explicitly named reactivation operation guarded by :func:`can_reactivate`.
"""

from __future__ import annotations

import logging

from membership_core.models.member import MemberStatus

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[MemberStatus, frozenset[MemberStatus]] = {
    MemberStatus.TRIAL: frozenset({MemberStatus.ACTIVE, MemberStatus.REMOVED}),
    MemberStatus.ACTIVE: frozenset({MemberStatus.DELINQUENT, MemberStatus.REMOVED}),
    MemberStatus.DELINQUENT: frozenset({MemberStatus.ACTIVE, MemberStatus.REMOVED}),
    MemberStatus.REMOVED: frozenset(),
}


def _coerce(status: MemberStatus | str) -> MemberStatus | None:
    if isinstance(status, MemberStatus):
        return status
    try:
        return MemberStatus(status)
    except ValueError:
        return None


def can_transition(current: MemberStatus | str, new: MemberStatus | str) -> bool:
    """Return ``True`` when *current* -> *new* is in the transition table.

    Unknown status values are rejected with a warning.  Staying in the same
    status is never a transition.
    """
    current_status = _coerce(current)
    new_status = _coerce(new)
    if current_status is None or new_status is None:
        logger.warning("Invalid status in transition check: %r -> %r", current, new)
        return False
    return new_status in VALID_TRANSITIONS[current_status]


def can_reactivate(current: MemberStatus | str) -> bool:
    """Reactivation applies only to members that are exactly ``removed``."""
    return _coerce(current) is MemberStatus.REMOVED


def allowed_transitions(current: MemberStatus | str) -> list[str]:
    """Sorted target statuses reachable from *current* (empty when unknown)."""
    current_status = _coerce(current)
    if current_status is None:
        return []
    return sorted(s.value for s in VALID_TRANSITIONS[current_status])
