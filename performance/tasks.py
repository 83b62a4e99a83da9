"""
Celery tasks for the performance app.
Builds class summaries off the request cycle, one task per class, so large
schools can be spread across workers.
"""
import logging

from celery import group, shared_task
from django.utils.dateparse import parse_date

from . import config
from .exceptions import InvalidRecordError, RecordLimitExceeded
from .records import Term, class_id_of, parse_payload
from .reports import build_class_summary

logger = logging.getLogger(__name__)

RECORD_KEYS = ('grades', 'attendance', 'sessions')
RECORD_TYPES = {
    'grades': 'AssignmentGrade',
    'attendance': 'AttendanceEntry',
    'sessions': 'ClassSession',
}


def check_payload_size(payload):
    """
    Reject payloads too large to aggregate in one call.

    Raises:
        RecordLimitExceeded: when the record count exceeds MAX_RECORDS_PER_CALL
    """
    total = sum(len(payload.get(key) or []) for key in RECORD_KEYS)
    limit = config.MAX_RECORDS_PER_CALL
    if total > limit:
        raise RecordLimitExceeded(
            f'Payload holds {total} records; the limit is {limit}',
            total=total,
            limit=limit,
        )
    return total


# Decorator limits are read once at import; build_school_summaries_task
# passes the current PERFORMANCE_TASK_* limits on every call.
@shared_task(
    bind=True,
    max_retries=0,
    soft_time_limit=config.TASK_SOFT_TIME_LIMIT,
    time_limit=config.TASK_TIME_LIMIT,
)
def build_class_summary_task(self, class_id, payload):
    """
    Build one class summary from a JSON payload.

    Args:
        class_id: ID of the class
        payload: dict with 'students', 'grades', 'attendance', 'sessions'
            and optional 'enrollments', 'term' and 'today' (ISO date)

    Returns:
        dict: the class summary, plus 'parseErrors' for skipped rows
    """
    total = check_payload_size(payload)
    class_id = str(class_id)

    grades, attendance, sessions, errors = parse_payload(payload)
    term = Term.from_dict(payload['term']) if payload.get('term') else None
    today = parse_date(payload['today']) if payload.get('today') else None
    enrollments = {
        str(student_id): [str(s) for s in subject_ids]
        for student_id, subject_ids in (payload.get('enrollments') or {}).items()
    }

    summary = build_class_summary(
        class_id,
        [str(s) for s in payload.get('students') or []],
        grades, attendance, sessions,
        enrollments=enrollments, term=term, today=today,
    )

    logger.info(f"Task {self.request.id}: summarised class {class_id} from {total} records")

    result = summary.to_dict()
    result['parseErrors'] = [e.as_dict() for e in errors]
    return result


def split_payload_by_class(payload, class_ids):
    """
    Split the record lists of a school payload into one payload per class.

    Rows whose classId is missing or names a class outside class_ids are
    reported instead of being dropped.

    Returns:
        tuple: ({class_id: {'grades': [...], 'attendance': [...],
                'sessions': [...]}}, [InvalidRecordError, ...])
    """
    class_ids = set(class_ids)
    split = {class_id: {key: [] for key in RECORD_KEYS} for class_id in class_ids}
    errors = []

    for key in RECORD_KEYS:
        for index, row in enumerate(payload.get(key) or []):
            class_id = class_id_of(row)
            if class_id in class_ids:
                split[class_id][key].append(row)
                continue

            if class_id is None:
                message = "Missing required field 'classId'"
            else:
                message = f"Class {class_id} is not one of the classes in this payload"
            errors.append(InvalidRecordError(
                message,
                record=row,
                field='classId',
                value=class_id,
                index=index,
                record_type=RECORD_TYPES[key],
            ))

    if errors:
        logger.warning(f"{len(errors)} record(s) could not be assigned to a class")

    return split, errors


@shared_task(bind=True, max_retries=0)
def build_school_summaries_task(self, payload):
    """
    Fan out one build_class_summary_task per class.

    Args:
        payload: dict with 'classes' ({class_id: [student_id, ...]}), the
            record lists, and optional 'enrollments' keyed by class id,
            'term' and 'today'

    Returns:
        dict: 'tasks' maps class_id to the queued task id, 'parseErrors'
        lists rows that belong to no class
    """
    check_payload_size(payload)

    classes = {str(k): v for k, v in (payload.get('classes') or {}).items()}
    enrollments = {str(k): v for k, v in (payload.get('enrollments') or {}).items()}
    class_ids = sorted(classes)

    split, errors = split_payload_by_class(payload, class_ids)

    # Limits are read per call so they follow the current settings
    limits = {
        'soft_time_limit': config.TASK_SOFT_TIME_LIMIT,
        'time_limit': config.TASK_TIME_LIMIT,
    }

    signatures = []
    for class_id in class_ids:
        class_payload = {
            'students': classes[class_id],
            'enrollments': enrollments.get(class_id) or {},
            'term': payload.get('term'),
            'today': payload.get('today'),
            **split[class_id],
        }
        signatures.append(build_class_summary_task.s(class_id, class_payload).set(**limits))

    result = group(signatures).apply_async()

    logger.info(f"Task {self.request.id}: queued summaries for {len(class_ids)} classes")

    return {
        'tasks': {class_id: child.id for class_id, child in zip(class_ids, result.results)},
        'parseErrors': [e.as_dict() for e in errors],
    }
