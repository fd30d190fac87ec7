"""Process-wide runtime flags shared across modules."""
from __future__ import annotations

_scheduler_active = False
_last_sweep: dict[str, object] = {}


def set_scheduler_active(active: bool) -> None:
    global _scheduler_active
    _scheduler_active = active


def is_scheduler_active() -> bool:
    return _scheduler_active


def record_sweep(summary: dict[str, object]) -> None:
    """Remember the outcome of the latest sweeper run for the health endpoint."""

    _last_sweep.clear()
    _last_sweep.update(summary)


def last_sweep() -> dict[str, object]:
    return dict(_last_sweep)
