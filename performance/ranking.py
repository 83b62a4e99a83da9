"""
Class ranking with standard competition ranks (1, 2, 2, 4).
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from core.utils import round_half_up
from .exceptions import DuplicateStudentError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankEntry:
    student_id: Any
    value: Optional[Decimal]
    rank: Optional[int]
    percentile: Optional[Decimal]
    class_size: int


def rank_students(pairs):
    """
    Rank students by a metric, highest first.

    Ties share a rank and the next rank skips ahead. Two values tie when
    they are equal after rounding to two decimals. The sort is stable, so
    tied students keep their input order. Students whose value is None
    (no data) are not ranked but still count towards class_size.

    Args:
        pairs: iterable of (student_id, value) tuples

    Returns:
        list of RankEntry: ranked students in rank order, then the unranked
        ones in input order

    Raises:
        DuplicateStudentError: if a student_id appears more than once
    """
    pairs = list(pairs)

    seen = set()
    for student_id, _ in pairs:
        if student_id in seen:
            raise DuplicateStudentError(
                f'Student {student_id} appears more than once in ranking input',
                student_id=student_id,
            )
        seen.add(student_id)

    class_size = len(pairs)
    eligible = [(sid, round_half_up(value, 2)) for sid, value in pairs if value is not None]
    unranked = [sid for sid, value in pairs if value is None]

    eligible.sort(key=lambda item: item[1], reverse=True)
    ranked_count = len(eligible)

    entries = []
    position = 0
    last_value = None
    for i, (student_id, value) in enumerate(eligible, 1):
        if value != last_value:
            position = i
        last_value = value
        entries.append(RankEntry(
            student_id=student_id,
            value=value,
            rank=position,
            percentile=percentile(position, ranked_count),
            class_size=class_size,
        ))

    for student_id in unranked:
        entries.append(RankEntry(
            student_id=student_id,
            value=None,
            rank=None,
            percentile=None,
            class_size=class_size,
        ))

    logger.debug(f"Ranked {ranked_count} of {class_size} students")

    return entries


def percentile(rank, ranked_count):
    """
    Share of ranked students at or below this rank, as a percentage.

    The top student always sits at 100; a student ranked last in a class
    of four sits at 25.
    """
    if rank is None or ranked_count == 0:
        return None
    return round_half_up(Decimal(ranked_count - rank + 1) / Decimal(ranked_count) * 100, 1)
