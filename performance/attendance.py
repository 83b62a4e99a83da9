"""
Attendance aggregation: status counts, attendance rate and punctuality
rate for one student in one class over a window of session dates.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Tuple

from django.core.exceptions import ImproperlyConfigured
from django.utils import timezone

from core.choices import AttendanceStatus
from core.utils import percentage
from . import config
from .exceptions import MissingSessionDataError, NoAttendanceRecorded
from .records import latest_attendance

logger = logging.getLogger(__name__)

# Sentinel so callers can pass unmarked_status=None explicitly
_FROM_SETTINGS = object()


@dataclass(frozen=True)
class AttendanceResult:
    """Attendance counts and rates for one student."""
    total_days: int = 0
    present_days: int = 0
    late_days: int = 0
    absent_days: int = 0
    excused_days: int = 0
    sick_days: int = 0
    unmarked_days: int = 0
    attendance_rate: int = 0
    punctuality_rate: int = 0
    anomalies: Tuple[MissingSessionDataError, ...] = field(default=())

    @property
    def has_data(self):
        return self.total_days > 0

    @property
    def value(self):
        """Metric used for trend comparison; None when nothing was scheduled."""
        return self.attendance_rate if self.has_data else None

    def require_rate(self):
        """Return the attendance rate, raising NoAttendanceRecorded if unknown."""
        if not self.has_data:
            raise NoAttendanceRecorded('No scheduled sessions in window')
        return self.attendance_rate

    def to_dict(self):
        return {
            'totalDays': self.total_days,
            'presentDays': self.present_days,
            'lateDays': self.late_days,
            'absentDays': self.absent_days,
            'excusedDays': self.excused_days,
            'sickDays': self.sick_days,
            'unmarkedDays': self.unmarked_days,
            'attendanceRate': self.attendance_rate,
            'punctualityRate': self.punctuality_rate,
        }


def resolve_unmarked_status(value=_FROM_SETTINGS):
    """
    Status applied to scheduled sessions with no attendance entry.

    An empty string or 'none' (as read from the environment) means the
    same as None.

    Returns:
        AttendanceStatus, or None when unmarked sessions are not counted

    Raises:
        ImproperlyConfigured: for a value that is not an attendance status
    """
    if value is _FROM_SETTINGS:
        value = config.UNMARKED_SESSION_STATUS
    if isinstance(value, str):
        value = value.strip().lower()
        if value in ('', 'none'):
            value = None
    if value is None:
        return None
    try:
        return AttendanceStatus(value)
    except ValueError:
        allowed = ', '.join(AttendanceStatus.values)
        raise ImproperlyConfigured(
            f"PERFORMANCE_UNMARKED_SESSION_STATUS must be one of: {allowed}, or None (got {value!r})"
        )


def calculate_rates(present_days, late_days, total_days):
    """
    Attendance and punctuality rates as whole percentages.

    Both are 0 when total_days is 0. Anomalous entries can push counts past
    total_days, so rates are capped at 100.

    Returns:
        tuple: (attendance_rate, punctuality_rate)
    """
    if total_days <= 0:
        return 0, 0
    attendance_rate = min(int(percentage(present_days + late_days, total_days, 0)), 100)
    punctuality_rate = min(int(percentage(present_days, total_days, 0)), 100)
    return attendance_rate, punctuality_rate


def aggregate_attendance(entries, sessions, today=None, unmarked_status=_FROM_SETTINGS):
    """
    Reduce one student's attendance entries for one class.

    Only scheduled session dates on or before today count towards
    total_days. A scheduled date with no entry counts as unmarked_status
    (absent by default). An entry whose date has no ClassSession at all is
    still counted but reported as a MissingSessionDataError anomaly.

    Args:
        entries: iterable of AttendanceEntry (any order, duplicates allowed)
        sessions: iterable of ClassSession for the same class and window
        today: cut-off date (defaults to timezone.localdate())
        unmarked_status: status for unmarked sessions, None to skip them

    Returns:
        AttendanceResult
    """
    if today is None:
        today = timezone.localdate()
    unmarked_status = resolve_unmarked_status(unmarked_status)

    sessions = list(sessions)
    scheduled_dates = {s.date for s in sessions if s.scheduled and s.date <= today}
    known_dates = {s.date for s in sessions}

    counts = Counter()
    marked_dates = set()
    anomalies = []

    for entry in latest_attendance(list(entries)):
        if entry.date > today:
            logger.debug(f"Ignoring future attendance entry on {entry.date} for student {entry.student_id}")
            continue

        if entry.date in scheduled_dates:
            marked_dates.add(entry.date)
        elif entry.date in known_dates:
            # Session exists but was not scheduled (holiday, cancelled lesson)
            continue
        else:
            logger.warning(
                f"Attendance for student {entry.student_id} on {entry.date} "
                f"has no class session for class {entry.class_id}"
            )
            anomalies.append(MissingSessionDataError(
                'Attendance entry references a date with no class session',
                record=entry,
                student_id=entry.student_id,
                class_id=entry.class_id,
                date=entry.date,
            ))

        counts[AttendanceStatus(entry.status)] += 1

    unmarked_days = len(scheduled_dates - marked_dates)
    total_days = len(scheduled_dates)
    if unmarked_status is None:
        total_days -= unmarked_days
    else:
        counts[unmarked_status] += unmarked_days

    return _build_result(counts, total_days, unmarked_days, anomalies)


def combine_attendance(results):
    """
    Merge per-class results for one student into a single result.

    Counts are summed and the rates recomputed from the sums, so a class
    with many sessions weighs more than one with few.
    """
    counts = Counter()
    total_days = 0
    unmarked_days = 0
    anomalies = []

    for result in results:
        counts[AttendanceStatus.PRESENT] += result.present_days
        counts[AttendanceStatus.LATE] += result.late_days
        counts[AttendanceStatus.ABSENT] += result.absent_days
        counts[AttendanceStatus.EXCUSED] += result.excused_days
        counts[AttendanceStatus.SICK] += result.sick_days
        total_days += result.total_days
        unmarked_days += result.unmarked_days
        anomalies.extend(result.anomalies)

    return _build_result(counts, total_days, unmarked_days, anomalies)


def _build_result(counts, total_days, unmarked_days, anomalies):
    present_days = counts[AttendanceStatus.PRESENT]
    late_days = counts[AttendanceStatus.LATE]
    attendance_rate, punctuality_rate = calculate_rates(present_days, late_days, total_days)

    return AttendanceResult(
        total_days=total_days,
        present_days=present_days,
        late_days=late_days,
        absent_days=counts[AttendanceStatus.ABSENT],
        excused_days=counts[AttendanceStatus.EXCUSED],
        sick_days=counts[AttendanceStatus.SICK],
        unmarked_days=unmarked_days,
        attendance_rate=attendance_rate,
        punctuality_rate=punctuality_rate,
        anomalies=tuple(anomalies),
    )
