"""
Immutable input records handed to the engine by the record store.

The store delivers plain dictionaries (camelCase JSON from the web client,
snake_case from Python callers). The from_dict constructors turn them into
frozen value objects and raise InvalidRecordError for anything that cannot
be parsed. Identifiers are normalised to strings. Range checks (negative points and so on) belong to the
aggregators, which skip and report bad records instead of failing.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone as dt_timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from core.choices import AssignmentType, AttendanceStatus
from .exceptions import InvalidRecordError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssignmentGrade:
    """Points a student earned on one assignment."""
    student_id: Any
    assignment_id: Any
    class_id: Any
    subject_id: Any
    points_earned: Decimal
    points_possible: Decimal
    assignment_type: AssignmentType
    recorded_at: datetime
    weight: Decimal = Decimal('1.0')

    @classmethod
    def from_dict(cls, data):
        return cls(
            student_id=_identifier(data, 'student_id'),
            assignment_id=_identifier(data, 'assignment_id'),
            class_id=_identifier(data, 'class_id'),
            subject_id=_identifier(data, 'subject_id'),
            points_earned=_decimal(data, 'points_earned'),
            points_possible=_decimal(data, 'points_possible'),
            assignment_type=_choice(data, 'assignment_type', AssignmentType),
            recorded_at=_datetime(data, 'recorded_at'),
            weight=_decimal(data, 'weight', default=Decimal('1.0')),
        )


@dataclass(frozen=True)
class AttendanceEntry:
    """A student's attendance mark for one class on one day."""
    student_id: Any
    class_id: Any
    date: date
    status: AttendanceStatus
    recorded_at: datetime

    @classmethod
    def from_dict(cls, data):
        return cls(
            student_id=_identifier(data, 'student_id'),
            class_id=_identifier(data, 'class_id'),
            date=_date(data, 'date'),
            status=_choice(data, 'status', AttendanceStatus),
            recorded_at=_datetime(data, 'recorded_at'),
        )


@dataclass(frozen=True)
class ClassSession:
    """A calendar day on which a class may meet."""
    class_id: Any
    date: date
    scheduled: bool = True

    @classmethod
    def from_dict(cls, data):
        return cls(
            class_id=_identifier(data, 'class_id'),
            date=_date(data, 'date'),
            scheduled=_boolean(data, 'scheduled', default=True),
        )


@dataclass(frozen=True)
class Term:
    """An academic term; records outside its dates are ignored."""
    name: str
    start_date: date
    end_date: date

    def __post_init__(self):
        if self.start_date > self.end_date:
            raise ValueError(f"Term {self.name} starts after it ends")

    def __str__(self):
        return self.name

    def contains(self, day):
        if isinstance(day, datetime):
            day = day.date()
        return self.start_date <= day <= self.end_date

    @classmethod
    def from_dict(cls, data):
        return cls(
            name=str(_require(data, 'name')),
            start_date=_date(data, 'start_date'),
            end_date=_date(data, 'end_date'),
        )


# ============ De-duplication ============

def latest_grades(grades):
    """
    Collapse corrected submissions: one grade per (student, assignment).

    The latest recorded_at wins. Ties are broken on the remaining fields so
    the winner never depends on input order.

    Returns:
        list of AssignmentGrade sorted by (student_id, assignment_id)
    """
    latest = {}
    for grade in grades:
        key = (grade.student_id, grade.assignment_id)
        current = latest.get(key)
        if current is None or _grade_version(grade) > _grade_version(current):
            latest[key] = grade

    dropped = len(grades) - len(latest) if hasattr(grades, '__len__') else 0
    if dropped:
        logger.debug(f"Collapsed {dropped} superseded grade record(s)")

    return sorted(latest.values(), key=lambda g: (str(g.student_id), str(g.assignment_id)))


def latest_attendance(entries):
    """
    One entry per (student, class, date); the latest recorded_at wins.

    Returns:
        list of AttendanceEntry sorted by (student_id, class_id, date)
    """
    latest = {}
    for entry in entries:
        key = (entry.student_id, entry.class_id, entry.date)
        current = latest.get(key)
        if current is None or _entry_version(entry) > _entry_version(current):
            latest[key] = entry

    return sorted(
        latest.values(),
        key=lambda e: (str(e.student_id), str(e.class_id), e.date)
    )


def _grade_version(grade):
    return (
        grade.recorded_at,
        grade.points_earned,
        grade.points_possible,
        grade.weight,
        str(grade.assignment_type),
        str(grade.class_id),
        str(grade.subject_id),
    )


def _entry_version(entry):
    return (entry.recorded_at, str(entry.status))


# ============ Payload parsing ============

def parse_payload(payload):
    """
    Parse a record store payload of the form
    {'grades': [...], 'attendance': [...], 'sessions': [...]}.

    Malformed dictionaries are skipped and returned as errors so one bad
    row does not blank a whole report.

    Returns:
        tuple: (grades, attendance, sessions, errors)
    """
    errors = []
    grades = _parse_many(payload.get('grades') or [], AssignmentGrade, errors)
    attendance = _parse_many(payload.get('attendance') or [], AttendanceEntry, errors)
    sessions = _parse_many(payload.get('sessions') or [], ClassSession, errors)

    if errors:
        logger.warning(f"Skipped {len(errors)} malformed record(s) while parsing payload")

    return grades, attendance, sessions, errors


def class_id_of(row):
    """Class id of a raw record dictionary, or None."""
    value = row.get('classId', row.get('class_id')) if isinstance(row, dict) else None
    return str(value) if value is not None else None


def _parse_many(rows, record_class, errors):
    parsed = []
    for index, row in enumerate(rows):
        try:
            parsed.append(record_class.from_dict(row))
        except InvalidRecordError as e:
            e.context.setdefault('index', index)
            e.context.setdefault('record_type', record_class.__name__)
            errors.append(e)
    return parsed


# ============ Field helpers ============

def _camel(name):
    head, *rest = name.split('_')
    return head + ''.join(part.capitalize() for part in rest)


def _lookup(data, name):
    if not isinstance(data, dict):
        raise InvalidRecordError(f"Expected a mapping, got {type(data).__name__}", record=data)
    if name in data:
        return data[name]
    return data.get(_camel(name))


def _require(data, name):
    value = _lookup(data, name)
    if value is None or value == '':
        raise InvalidRecordError(f"Missing required field '{_camel(name)}'", record=data, field=_camel(name))
    return value


def _identifier(data, name):
    # JSON object keys are always strings, so ids are compared as strings
    return str(_require(data, name))


def _decimal(data, name, default=None):
    value = _lookup(data, name)
    if value is None:
        if default is not None:
            return default
        raise InvalidRecordError(f"Missing required field '{_camel(name)}'", record=data, field=_camel(name))
    if isinstance(value, bool):
        raise InvalidRecordError(f"Field '{_camel(name)}' must be a number", record=data, field=_camel(name))
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidRecordError(f"Field '{_camel(name)}' must be a number", record=data, field=_camel(name))
    if not result.is_finite():
        raise InvalidRecordError(f"Field '{_camel(name)}' must be finite", record=data, field=_camel(name))
    return result


def _choice(data, name, choices):
    value = _require(data, name)
    try:
        return choices(str(value).lower())
    except ValueError:
        allowed = ', '.join(choices.values)
        raise InvalidRecordError(
            f"Field '{_camel(name)}' must be one of: {allowed}",
            record=data, field=_camel(name), value=value,
        )


_TRUE_STRINGS = {'true', '1', 'yes'}
_FALSE_STRINGS = {'false', '0', 'no'}


def _boolean(data, name, default):
    value = _lookup(data, name)
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise InvalidRecordError(
        f"Field '{_camel(name)}' must be true or false",
        record=data, field=_camel(name), value=value,
    )


def _date(data, name):
    value = _require(data, name)
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = _parse_text(parse_date, value) or _as_date(_parse_text(parse_datetime, value))
    if parsed is None:
        raise InvalidRecordError(f"Field '{_camel(name)}' is not a valid date", record=data, field=_camel(name))
    return parsed


def _datetime(data, name):
    value = _require(data, name)
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    else:
        parsed = _parse_text(parse_datetime, value)
        if parsed is None:
            day = _parse_text(parse_date, value)
            parsed = datetime.combine(day, time.min) if day else None
    if parsed is None:
        raise InvalidRecordError(f"Field '{_camel(name)}' is not a valid timestamp", record=data, field=_camel(name))
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, dt_timezone.utc)
    return parsed


def _parse_text(parser, value) -> Optional[Any]:
    if not isinstance(value, str):
        return None
    try:
        return parser(value)
    except ValueError:
        return None


def _as_date(value):
    return value.date() if value is not None else None
