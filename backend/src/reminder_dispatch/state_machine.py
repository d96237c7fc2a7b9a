from __future__ import annotations

from .models import ReminderStatus

# Terminal states have no outgoing edges. The in_progress self-loop records
# dispatch details (provider id, sub-state) without closing the attempt.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"queued", "in_progress", "skipped", "failed"}),
    "queued": frozenset({"in_progress", "pending", "skipped", "failed"}),
    "in_progress": frozenset({"in_progress", "completed", "skipped", "failed", "pending"}),
    "completed": frozenset(),
    "skipped": frozenset(),
    "failed": frozenset(),
}


class IllegalTransitionError(ValueError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"illegal reminder transition: {current} -> {target}")
        self.current = current
        self.target = target


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: ReminderStatus | str, target: ReminderStatus | str) -> None:
    if not can_transition(current, target):
        raise IllegalTransitionError(current, target)
