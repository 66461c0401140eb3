"""Donation status lifecycle.

One-time donations move pending -> completed | failed. Monthly donations move
pending -> active, then stay active across successful billing cycles until
they end in cancelled (donor or gateway) or failed (retries exhausted).
Terminal states have no exits, so a late or duplicate event can never pull a
donation backwards.
"""

from enum import Enum


class DonationStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    ACTIVE = "active"
    CANCELLED = "cancelled"


class DonationType(str, Enum):
    ONE_TIME = "one-time"
    MONTHLY = "monthly"


TRANSITIONS: dict[DonationStatus, set[DonationStatus]] = {
    DonationStatus.PENDING: {
        DonationStatus.COMPLETED,
        DonationStatus.FAILED,
        DonationStatus.ACTIVE,
    },
    DonationStatus.ACTIVE: {
        DonationStatus.ACTIVE,
        DonationStatus.CANCELLED,
        DonationStatus.FAILED,
    },
    DonationStatus.COMPLETED: set(),
    DonationStatus.FAILED: set(),
    DonationStatus.CANCELLED: set(),
}

TERMINAL_STATES = frozenset(status for status, targets in TRANSITIONS.items() if not targets)


def can_transition(current: DonationStatus | str, target: DonationStatus | str) -> bool:
    """Return True if moving from ``current`` to ``target`` is allowed."""
    return DonationStatus(target) in TRANSITIONS[DonationStatus(current)]


def sources_for(target: DonationStatus | str) -> set[DonationStatus]:
    """All statuses from which ``target`` is reachable in one step."""
    target = DonationStatus(target)
    return {status for status, targets in TRANSITIONS.items() if target in targets}
