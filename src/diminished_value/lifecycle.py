from __future__ import annotations

from diminished_value.data_models import CASE_STATUSES
from diminished_value.errors import InvalidInput, InvalidStatusTransition

_RANK = {status: i for i, status in enumerate(CASE_STATUSES)}


def status_rank(status: str) -> int:
    try:
        return _RANK[status]
    except KeyError:
        raise InvalidInput(f"status must be one of {', '.join(CASE_STATUSES)}", field="status") from None


def check_transition(current: str, target: str) -> None:
    """Statuses only move forward: draft -> ready_for_download -> completed."""
    if status_rank(target) < status_rank(current):
        raise InvalidStatusTransition(
            f"cannot move case from {current} back to {target}", field="status"
        )
