"""Seat limit and waitlist classification for class rosters.

Everything here is pure: the same roster and capacity always produce the same
split, which lets admission checks and after-the-fact overflow reports agree.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

from .models import Enrollment


@dataclass(frozen=True)
class RosterPartition:
    """A roster split into seated enrollments and the overflow behind them."""

    capacity: int
    enrolled: Tuple[Enrollment, ...]
    overflow: Tuple[Enrollment, ...]

    @property
    def is_full(self) -> bool:
        return len(self.enrolled) >= self.capacity

    @property
    def seats_left(self) -> int:
        return max(self.capacity - len(self.enrolled), 0)

    @property
    def total(self) -> int:
        return len(self.enrolled) + len(self.overflow)


def partition(enrollments: Iterable[Enrollment], capacity: int) -> RosterPartition:
    """Rank ``enrollments`` by ``enrolled_at`` and cut the ranking at ``capacity``.

    The sort is stable, so enrollments sharing a timestamp keep their record
    order. The input is never mutated.
    """

    if capacity < 0:
        raise ValueError("Capacity must not be negative")
    ranked: List[Enrollment] = sorted(enrollments, key=lambda item: item.enrolled_at)
    return RosterPartition(
        capacity=capacity,
        enrolled=tuple(ranked[:capacity]),
        overflow=tuple(ranked[capacity:]),
    )


def has_open_seat(enrollments: Sequence[Enrollment], capacity: int) -> bool:
    return not partition(enrollments, capacity).is_full


def seats_left(enrollments: Sequence[Enrollment], capacity: int) -> int:
    return partition(enrollments, capacity).seats_left


__all__ = ["RosterPartition", "has_open_seat", "partition", "seats_left"]
