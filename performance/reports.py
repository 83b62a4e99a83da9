"""
Summary report builder: the single entry point the UI layer calls.

Composes grade aggregation, attendance aggregation, trend classification
and ranking into StudentPerformanceSummary and ClassPerformanceSummary
objects. Every call recomputes from the records it is given; nothing is
stored between calls.
"""
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone

from core.choices import LetterGrade, Trend
from core.utils import as_number, mean
from . import config
from .attendance import AttendanceResult, aggregate_attendance, combine_attendance
from .exceptions import PerformanceError
from .grades import aggregate_grades, is_valid_grade, letter_grade
from .ranking import rank_students
from .records import latest_grades
from .trends import classify_results, majority_trend, trend_windows

logger = logging.getLogger(__name__)


# ============ Summary types ============

@dataclass(frozen=True)
class SubjectBreakdown:
    subject_id: Any
    percentage: Optional[Decimal]
    letter_grade: Optional[LetterGrade]
    trend: Trend
    graded_count: int = 0
    excluded_count: int = 0

    def to_dict(self):
        return {
            'percentage': as_number(self.percentage),
            'letterGrade': _label(self.letter_grade),
            'trend': _label(self.trend),
            'gradedCount': self.graded_count,
            'excludedCount': self.excluded_count,
        }


@dataclass(frozen=True)
class StudentPerformanceSummary:
    """
    Everything the UI shows about one student's performance.

    overall_percentage is None when no subject has grades, which the UI
    must render as "No data", never as 0%.
    """
    student_id: Any
    subject_breakdown: Dict[Any, SubjectBreakdown]
    overall_percentage: Optional[Decimal]
    overall_letter_grade: Optional[LetterGrade]
    attendance: AttendanceResult
    attendance_trend: Trend
    grade_trend: Trend
    class_rank: Optional[int] = None
    class_size: Optional[int] = None
    percentile: Optional[Decimal] = None
    issues: Tuple[PerformanceError, ...] = field(default=())

    @property
    def attendance_rate(self):
        return self.attendance.attendance_rate

    @property
    def punctuality_rate(self):
        return self.attendance.punctuality_rate

    @property
    def has_attendance_data(self):
        return self.attendance.has_data

    def to_dict(self):
        return {
            'studentId': self.student_id,
            'subjectBreakdown': {
                str(subject_id): breakdown.to_dict()
                for subject_id, breakdown in self.subject_breakdown.items()
            },
            'overallPercentage': as_number(self.overall_percentage),
            'overallLetterGrade': _label(self.overall_letter_grade),
            'attendanceRate': self.attendance_rate,
            'punctualityRate': self.punctuality_rate,
            'hasAttendanceData': self.has_attendance_data,
            'attendance': self.attendance.to_dict(),
            'attendanceTrend': _label(self.attendance_trend),
            'gradeTrend': _label(self.grade_trend),
            'classRank': self.class_rank,
            'classSize': self.class_size,
            'percentile': as_number(self.percentile),
            'issues': [issue.as_dict() for issue in self.issues],
        }


@dataclass(frozen=True)
class ClassInsights:
    top_performers: Tuple[Any, ...] = ()
    at_risk_students: Tuple[Any, ...] = ()
    improving_students: Tuple[Any, ...] = ()
    declining_students: Tuple[Any, ...] = ()
    consistent_attendees: Tuple[Any, ...] = ()
    frequent_absentees: Tuple[Any, ...] = ()

    def to_dict(self):
        return {
            'topPerformers': list(self.top_performers),
            'atRiskStudents': list(self.at_risk_students),
            'improvingStudents': list(self.improving_students),
            'decliningStudents': list(self.declining_students),
            'consistentAttendees': list(self.consistent_attendees),
            'frequentAbsentees': list(self.frequent_absentees),
        }


@dataclass(frozen=True)
class ClassPerformanceSummary:
    """Class-level roll-up; student_summaries are in rank order."""
    class_id: Any
    student_summaries: Tuple[StudentPerformanceSummary, ...]
    class_average_percentage: Optional[Decimal]
    class_average_attendance: Optional[Decimal]
    class_size: int
    ranked_count: int
    subject_averages: Dict[Any, Optional[Decimal]]
    grade_distribution: Dict[str, int]
    highest_percentage: Optional[Decimal]
    lowest_percentage: Optional[Decimal]
    insights: ClassInsights

    def to_dict(self):
        return {
            'classId': self.class_id,
            'studentSummaries': [s.to_dict() for s in self.student_summaries],
            'classAveragePercentage': as_number(self.class_average_percentage),
            'classAverageAttendance': as_number(self.class_average_attendance),
            'classSize': self.class_size,
            'rankedCount': self.ranked_count,
            'subjectAverages': {
                str(subject_id): as_number(value)
                for subject_id, value in self.subject_averages.items()
            },
            'gradeDistribution': dict(self.grade_distribution),
            'highestPercentage': as_number(self.highest_percentage),
            'lowestPercentage': as_number(self.lowest_percentage),
            'insights': self.insights.to_dict(),
        }


def summary_to_json(summary):
    """
    Canonical JSON for a summary.

    Keys are sorted and separators fixed, so the same records produce the
    same bytes whatever order they arrived in.
    """
    return json.dumps(
        summary.to_dict(),
        cls=DjangoJSONEncoder,
        sort_keys=True,
        separators=(',', ':'),
    )


# ============ Builders ============

def build_student_summary(student_id, grades, attendance, sessions, *,
                          subject_ids=None, class_id=None, term=None, today=None):
    """
    Build one student's summary (unranked).

    Args:
        student_id: the student to summarise
        grades: AssignmentGrade records (other students' records are ignored)
        attendance: AttendanceEntry records (other students' are ignored)
        sessions: ClassSession records for the classes the student attends
        subject_ids: subjects the student is enrolled in; subjects without
            grades are reported with no percentage
        class_id: restrict everything to one class
        term: optional Term restricting records to its dates
        today: cut-off date for attendance (defaults to timezone.localdate())

    Returns:
        StudentPerformanceSummary
    """
    if today is None:
        today = timezone.localdate()

    student_grades = [
        g for g in _in_class(_grades_in_term(grades, term), class_id)
        if g.student_id == student_id
    ]
    student_entries = [
        e for e in _in_class(_dated_in_term(attendance, term), class_id)
        if e.student_id == student_id
    ]
    student_sessions = list(_in_class(_dated_in_term(sessions, term), class_id))

    return _summarise_student(
        student_id, student_grades, student_entries, student_sessions,
        subject_ids=subject_ids, anchor=_anchor(today, term),
    )


def build_class_summary(class_id, student_ids, grades, attendance, sessions, *,
                        enrollments=None, term=None, today=None):
    """
    Build summaries for every student on a class roster, ranked by
    overall percentage.

    Args:
        class_id: the class to summarise; records for other classes are ignored
        student_ids: the class roster
        grades, attendance, sessions: raw records in any order
        enrollments: optional {student_id: [subject_id, ...]}
        term: optional Term
        today: cut-off date for attendance (defaults to timezone.localdate())

    Returns:
        ClassPerformanceSummary

    Raises:
        DuplicateStudentError: if the roster lists a student twice
    """
    if today is None:
        today = timezone.localdate()
    anchor = _anchor(today, term)
    enrollments = enrollments or {}

    class_sessions = list(_in_class(_dated_in_term(sessions, term), class_id))

    grades_by_student = defaultdict(list)
    for grade in _in_class(_grades_in_term(grades, term), class_id):
        grades_by_student[grade.student_id].append(grade)

    entries_by_student = defaultdict(list)
    for entry in _in_class(_dated_in_term(attendance, term), class_id):
        entries_by_student[entry.student_id].append(entry)

    roster = sorted(student_ids, key=str)
    unknown = set(grades_by_student) - set(roster)
    if unknown:
        logger.debug(f"Ignoring grades for {len(unknown)} student(s) not on the roster of class {class_id}")

    summaries = {}
    for student_id in roster:
        summaries[student_id] = _summarise_student(
            student_id,
            grades_by_student.get(student_id, []),
            entries_by_student.get(student_id, []),
            class_sessions,
            subject_ids=enrollments.get(student_id),
            anchor=anchor,
        )

    # Raises DuplicateStudentError before any result is returned
    rankings = rank_students(
        (student_id, summaries[student_id].overall_percentage) for student_id in roster
    )

    ordered = [
        replace(
            summaries[entry.student_id],
            class_rank=entry.rank,
            class_size=entry.class_size,
            percentile=entry.percentile,
        )
        for entry in rankings
    ]

    summary = _class_rollup(class_id, ordered)

    logger.info(
        f"Built performance summary for class {class_id}: "
        f"{summary.ranked_count}/{summary.class_size} students ranked, "
        f"average {summary.class_average_percentage}"
    )

    return summary


def build_class_summaries(classes, grades, attendance, sessions, *,
                          enrollments=None, term=None, today=None):
    """
    Build summaries for many classes.

    A structural error in one class (a duplicated roster entry, say) is
    logged and reported for that class; the other classes still build.

    Args:
        classes: {class_id: [student_id, ...]}
        enrollments: optional {class_id: {student_id: [subject_id, ...]}}

    Returns:
        tuple: (list of ClassPerformanceSummary, {class_id: PerformanceError})
    """
    grades = list(grades)
    attendance = list(attendance)
    sessions = list(sessions)
    enrollments = enrollments or {}

    results = []
    failures = {}
    for class_id in sorted(classes, key=str):
        try:
            results.append(build_class_summary(
                class_id, classes[class_id], grades, attendance, sessions,
                enrollments=enrollments.get(class_id), term=term, today=today,
            ))
        except PerformanceError as e:
            logger.error(f"Could not build performance summary for class {class_id}: {e}")
            e.context.setdefault('class_id', class_id)
            failures[class_id] = e

    return results, failures


# ============ Internals ============

def _summarise_student(student_id, grades, entries, sessions, subject_ids, anchor):
    """Summary for records already filtered to one student."""
    recent_window, prior_window = trend_windows(anchor)

    current = latest_grades(grades)
    by_subject = defaultdict(list)
    for grade in current:
        by_subject[grade.subject_id].append(grade)

    subjects = sorted(set(by_subject) | set(subject_ids or ()), key=str)

    breakdown = {}
    issues = []
    for subject_id in subjects:
        subject_grades = by_subject.get(subject_id, [])
        result = aggregate_grades(subject_grades)
        issues.extend(result.excluded)

        valid = [g for g in subject_grades if is_valid_grade(g)]
        recent = aggregate_grades(_recorded_within(valid, recent_window))
        prior = aggregate_grades(_recorded_within(valid, prior_window))

        breakdown[subject_id] = SubjectBreakdown(
            subject_id=subject_id,
            percentage=result.percentage,
            letter_grade=result.letter_grade,
            trend=classify_results(recent, prior),
            graded_count=result.graded_count,
            excluded_count=len(result.excluded),
        )

    overall = mean(b.percentage for b in breakdown.values())

    attendance = _attendance_over(entries, sessions, anchor)
    recent_attendance = _attendance_over(
        _dated_within(entries, recent_window), _dated_within(sessions, recent_window), recent_window[1]
    )
    prior_attendance = _attendance_over(
        _dated_within(entries, prior_window), _dated_within(sessions, prior_window), prior_window[1]
    )
    issues.extend(attendance.anomalies)

    return StudentPerformanceSummary(
        student_id=student_id,
        subject_breakdown=breakdown,
        overall_percentage=overall,
        overall_letter_grade=letter_grade(overall),
        attendance=attendance,
        attendance_trend=classify_results(recent_attendance, prior_attendance),
        grade_trend=majority_trend(b.trend for b in breakdown.values()),
        issues=tuple(issues),
    )


def _attendance_over(entries, sessions, today):
    """Aggregate per class, then combine, so each class uses its own sessions."""
    entries_by_class = defaultdict(list)
    for entry in entries:
        entries_by_class[entry.class_id].append(entry)
    sessions_by_class = defaultdict(list)
    for session in sessions:
        sessions_by_class[session.class_id].append(session)

    class_ids = sorted(set(entries_by_class) | set(sessions_by_class), key=str)
    return combine_attendance(
        aggregate_attendance(entries_by_class[cid], sessions_by_class[cid], today=today)
        for cid in class_ids
    )


def _class_rollup(class_id, ordered):
    ranked = [s for s in ordered if s.class_rank is not None]
    with_attendance = [s for s in ordered if s.has_attendance_data]

    subject_values = defaultdict(list)
    for s in ordered:
        for subject_id, breakdown in s.subject_breakdown.items():
            subject_values[subject_id].append(breakdown.percentage)
    subject_averages = {
        subject_id: mean(subject_values[subject_id])
        for subject_id in sorted(subject_values, key=str)
    }

    distribution = {grade.value: 0 for grade in LetterGrade}
    for s in ranked:
        distribution[s.overall_letter_grade.value] += 1

    overall_values = [s.overall_percentage for s in ranked]

    return ClassPerformanceSummary(
        class_id=class_id,
        student_summaries=tuple(ordered),
        class_average_percentage=mean(overall_values),
        class_average_attendance=mean(s.attendance_rate for s in with_attendance),
        class_size=len(ordered),
        ranked_count=len(ranked),
        subject_averages=subject_averages,
        grade_distribution=distribution,
        highest_percentage=max(overall_values) if overall_values else None,
        lowest_percentage=min(overall_values) if overall_values else None,
        insights=_insights(ranked, with_attendance, ordered),
    )


def _insights(ranked, with_attendance, ordered):
    top = [s.student_id for s in ranked if s.overall_percentage >= config.TOP_PERFORMER_MIN]

    at_risk = sorted(
        (s for s in ranked if s.overall_percentage < config.AT_RISK_BELOW),
        key=lambda s: (s.overall_percentage, str(s.student_id)),
    )

    return ClassInsights(
        top_performers=tuple(top[:config.TOP_PERFORMERS_LIMIT]),
        at_risk_students=tuple(s.student_id for s in at_risk[:config.AT_RISK_STUDENTS_LIMIT]),
        improving_students=_ids(s for s in ordered if s.grade_trend == Trend.IMPROVING),
        declining_students=_ids(s for s in ordered if s.grade_trend == Trend.DECLINING),
        consistent_attendees=_ids(
            s for s in with_attendance if s.attendance_rate >= config.CONSISTENT_ATTENDANCE_MIN
        ),
        frequent_absentees=_ids(
            s for s in with_attendance if s.attendance_rate <= config.FREQUENT_ABSENCE_MAX
        ),
    )


def _ids(summaries):
    return tuple(sorted((s.student_id for s in summaries), key=str))


def _label(choice):
    return choice.value if choice is not None else None


def _anchor(today, term):
    if term is not None and term.end_date < today:
        return term.end_date
    return today


def _in_class(records, class_id):
    if class_id is None:
        return list(records)
    return [r for r in records if r.class_id == class_id]


def _grades_in_term(grades, term):
    """
    Latest version of each (student, assignment) whose first submission
    falls within the term. A correction recorded after the term ends still
    replaces the grade it supersedes.
    """
    grades = list(grades)
    current = latest_grades(grades)
    if term is None:
        return current

    first_recorded = {}
    for grade in grades:
        key = (grade.student_id, grade.assignment_id)
        if key not in first_recorded or grade.recorded_at < first_recorded[key]:
            first_recorded[key] = grade.recorded_at

    return [
        g for g in current
        if term.contains(first_recorded[(g.student_id, g.assignment_id)])
    ]


def _dated_in_term(records, term):
    if term is None:
        return list(records)
    return [r for r in records if term.contains(r.date)]


def _recorded_within(grades, window):
    start, end = window
    return [g for g in grades if start <= g.recorded_at.date() <= end]


def _dated_within(records, window):
    start, end = window
    return [r for r in records if start <= r.date <= end]
