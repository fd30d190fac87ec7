"""Payment intent state machine.

The ``TRANSITIONS`` table is the only place that decides whether one status may
follow another. The store, the webhook reconciler and the sweeper all consult
it; none of them encode transitions of their own.
"""
from __future__ import annotations

from collections.abc import Iterable
from functools import lru_cache

from app.core.exceptions import IllegalTransition
from app.models.payment_intent import IntentStatus

TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    IntentStatus.PENDING: frozenset(
        {IntentStatus.PROCESSING, IntentStatus.FAILED, IntentStatus.CANCELED}
    ),
    IntentStatus.PROCESSING: frozenset(
        {IntentStatus.SUCCEEDED, IntentStatus.FAILED, IntentStatus.CANCELED}
    ),
    IntentStatus.SUCCEEDED: frozenset({IntentStatus.REFUNDED}),
    IntentStatus.FAILED: frozenset(),
    IntentStatus.CANCELED: frozenset(),
    IntentStatus.REFUNDED: frozenset(),
}

NON_TERMINAL = frozenset({IntentStatus.PENDING, IntentStatus.PROCESSING})
CANCELABLE = frozenset({IntentStatus.PENDING, IntentStatus.PROCESSING})


def can_transition(current: IntentStatus, target: IntentStatus) -> bool:
    """Return True when ``target`` may directly follow ``current``."""

    return target in TRANSITIONS.get(current, frozenset())


def is_terminal(status: IntentStatus) -> bool:
    """Terminal means nothing but SUCCEEDED->REFUNDED may ever follow."""

    return status not in NON_TERMINAL


@lru_cache(maxsize=None)
def _descendants(status: IntentStatus) -> frozenset[IntentStatus]:
    seen: set[IntentStatus] = set()
    frontier = list(TRANSITIONS[status])
    while frontier:
        nxt = frontier.pop()
        if nxt in seen:
            continue
        seen.add(nxt)
        frontier.extend(TRANSITIONS[nxt])
    return frozenset(seen)


def is_reachable(current: IntentStatus, target: IntentStatus) -> bool:
    """Whether ``target`` lies strictly ahead of ``current`` in the table."""

    return target in _descendants(current)


def sources_for(target: IntentStatus) -> frozenset[IntentStatus]:
    """All statuses from which ``target`` can be reached.

    Gateway events report the gateway's current truth, not every hop in
    between; a SUCCEEDED event for a PENDING intent is a forward move through
    PROCESSING and is applied as one conditional update.
    """

    return frozenset(status for status in IntentStatus if is_reachable(status, target))


def legal_sources(allowed_from: Iterable[IntentStatus], target: IntentStatus) -> frozenset[IntentStatus]:
    """Filter ``allowed_from`` down to statuses that may legally reach ``target``."""

    return frozenset(status for status in allowed_from if is_reachable(status, target))


def assert_transition(current: IntentStatus, target: IntentStatus) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(
            f"Illegal payment intent transition: {current.value} -> {target.value}",
            details={"from": current.value, "to": target.value},
        )


def describe(current: IntentStatus, target: IntentStatus) -> str:
    """Compact label stored in the ledger's ``applied_transition`` column."""

    return f"{current.value}->{target.value}"


__all__ = [
    "TRANSITIONS",
    "NON_TERMINAL",
    "CANCELABLE",
    "can_transition",
    "is_terminal",
    "is_reachable",
    "sources_for",
    "legal_sources",
    "assert_transition",
    "describe",
]
