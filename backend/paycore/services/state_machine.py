"""
Payment State Machine — canonical lifecycle ordering and allowed transitions.

    pending -> processing -> completed | failed | cancelled
                             completed -> refunded

Writers never decide on their own whether a status change is legal; they ask
``is_forward_progress`` so that confirm, poll and webhook paths agree.
"""
from typing import Dict, FrozenSet

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
REFUNDED = "refunded"
CANCELLED = "cancelled"

CANONICAL_STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, REFUNDED, CANCELLED)

TERMINAL_STATUSES: FrozenSet[str] = frozenset({COMPLETED, FAILED, CANCELLED, REFUNDED})

STATUS_RANK: Dict[str, int] = {
    PENDING: 0,
    PROCESSING: 1,
    COMPLETED: 2,
    FAILED: 2,
    CANCELLED: 2,
    REFUNDED: 3,
}

ALLOWED_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PENDING: frozenset({PROCESSING, COMPLETED, FAILED, CANCELLED}),
    PROCESSING: frozenset({COMPLETED, FAILED, CANCELLED}),
    COMPLETED: frozenset({REFUNDED}),
    FAILED: frozenset(),
    CANCELLED: frozenset(),
    REFUNDED: frozenset(),
}


def is_canonical(status: str) -> bool:
    return status in STATUS_RANK


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_forward_progress(current: str, target: str) -> bool:
    """True when moving from ``current`` to ``target`` is a legal forward step.

    Equal, earlier and sibling-terminal targets are not progress, so applying
    them must leave the record unchanged.
    """
    if target not in STATUS_RANK:
        raise ValueError(f"Unknown canonical status: {target}")
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def furthest(a: str, b: str) -> str:
    """The status a record converges to after applying ``a`` then ``b``."""
    return b if is_forward_progress(a, b) else a
