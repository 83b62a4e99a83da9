"""
Grade aggregation: weighted percentage and letter grade for one student
in one subject over one term.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Tuple

from core.choices import LetterGrade
from core.utils import round_half_up, to_decimal
from .exceptions import InvalidRecordError, NoGradesRecorded
from .records import latest_grades

logger = logging.getLogger(__name__)

# Inclusive lower bounds, checked from the top down
LETTER_GRADE_THRESHOLDS = (
    (Decimal('90'), LetterGrade.A),
    (Decimal('80'), LetterGrade.B),
    (Decimal('70'), LetterGrade.C),
    (Decimal('60'), LetterGrade.D),
    (Decimal('0'), LetterGrade.F),
)


@dataclass(frozen=True)
class GradeResult:
    """Outcome of aggregating one student's grades in one subject."""
    percentage: Optional[Decimal]
    letter_grade: Optional[LetterGrade]
    graded_count: int = 0
    excluded: Tuple[InvalidRecordError, ...] = field(default=())

    @property
    def has_data(self):
        return self.percentage is not None

    @property
    def value(self):
        """Metric used for trend comparison."""
        return self.percentage

    def require_percentage(self):
        """Return the percentage, raising NoGradesRecorded if there is none."""
        if self.percentage is None:
            raise NoGradesRecorded(
                'No grades recorded',
                excluded_count=len(self.excluded),
            )
        return self.percentage


def letter_grade(percentage):
    """
    Map a percentage to its letter grade.

    The percentage is rounded to one decimal first so 89.95 is an A and
    89.94 is a B.
    """
    if percentage is None:
        return None
    rounded = round_half_up(percentage, 1)
    for lower_bound, grade in LETTER_GRADE_THRESHOLDS:
        if rounded >= lower_bound:
            return grade
    return LetterGrade.F


def validate_grade(grade):
    """
    Check the numeric constraints of an AssignmentGrade.

    Raises:
        InvalidRecordError: describing the first violated constraint
    """
    reason = None
    if grade.points_possible <= 0:
        reason = 'pointsPossible must be greater than zero'
    elif grade.points_earned < 0:
        reason = 'pointsEarned cannot be negative'
    elif grade.points_earned > grade.points_possible:
        reason = 'pointsEarned cannot exceed pointsPossible'
    elif grade.weight <= 0:
        reason = 'weight must be greater than zero'

    if reason:
        raise InvalidRecordError(
            reason,
            record=grade,
            student_id=grade.student_id,
            assignment_id=grade.assignment_id,
        )


def is_valid_grade(grade):
    """True when the grade passes validate_grade."""
    try:
        validate_grade(grade)
    except InvalidRecordError:
        return False
    return True


def aggregate_grades(grades):
    """
    Reduce a student's grades for one subject to a weighted percentage.

    percentage = sum(earned * weight) / sum(possible * weight) * 100,
    rounded half-up to one decimal. Superseded submissions are collapsed
    first; invalid records are skipped and listed in the result.

    Args:
        grades: iterable of AssignmentGrade (any order, may be empty)

    Returns:
        GradeResult with percentage None when nothing usable was recorded
    """
    earned_total = Decimal('0')
    possible_total = Decimal('0')
    graded_count = 0
    excluded = []

    for grade in latest_grades(list(grades)):
        try:
            validate_grade(grade)
        except InvalidRecordError as e:
            logger.warning(
                f"Excluding grade {grade.assignment_id} for student {grade.student_id}: {e}"
            )
            excluded.append(e)
            continue

        weight = to_decimal(grade.weight)
        earned_total += to_decimal(grade.points_earned) * weight
        possible_total += to_decimal(grade.points_possible) * weight
        graded_count += 1

    if graded_count == 0:
        return GradeResult(percentage=None, letter_grade=None, excluded=tuple(excluded))

    percentage = round_half_up(earned_total / possible_total * 100, 1)

    return GradeResult(
        percentage=percentage,
        letter_grade=letter_grade(percentage),
        graded_count=graded_count,
        excluded=tuple(excluded),
    )
