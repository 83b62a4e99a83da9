"""Exceptions raised and reported by the performance engine."""


class PerformanceError(Exception):
    """
    Base exception for the performance engine.

    `record` keeps the offending input for callers; it is not part of the
    JSON context.
    """

    code = 'performance_error'

    def __init__(self, message, record=None, **context):
        super().__init__(message)
        self.message = message
        self.record = record
        self.context = context

    def as_dict(self):
        """JSON-safe description for the UI layer."""
        data = {'code': self.code, 'message': self.message}
        data.update({key: _json_safe(value) for key, value in self.context.items()})
        return data


class InvalidRecordError(PerformanceError):
    """A single input record is malformed; it is skipped and reported."""

    code = 'invalid_record'


class NoGradesRecorded(PerformanceError):
    """No usable grades exist, so there is no percentage (not 0%)."""

    code = 'no_grades_recorded'


class NoAttendanceRecorded(PerformanceError):
    """No scheduled sessions fall in the window, so attendance is unknown."""

    code = 'no_attendance_recorded'


class MissingSessionDataError(PerformanceError):
    """An attendance entry points at a date with no class session."""

    code = 'missing_session_data'


class DuplicateStudentError(PerformanceError):
    """The same student appears twice in one ranking call."""

    code = 'duplicate_student'


class RecordLimitExceeded(PerformanceError):
    """A payload holds more records than one call may process."""

    code = 'record_limit_exceeded'


def _json_safe(value):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    return str(value)
