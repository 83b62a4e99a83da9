from datetime import date, datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest import mock

from django.core.cache import cache
from django.core.exceptions import ImproperlyConfigured
from django.test import SimpleTestCase, override_settings

from core.choices import AssignmentType, AttendanceStatus, LetterGrade, Trend
from .attendance import (
    aggregate_attendance, calculate_rates, combine_attendance, resolve_unmarked_status,
)
from .cache import get_or_build, invalidate, summary_cache_key
from .exceptions import (
    DuplicateStudentError, InvalidRecordError, MissingSessionDataError,
    NoAttendanceRecorded, NoGradesRecorded, RecordLimitExceeded,
)
from .grades import aggregate_grades, letter_grade
from .ranking import percentile, rank_students
from .records import (
    AssignmentGrade, AttendanceEntry, ClassSession, Term,
    latest_grades, parse_payload,
)
from .reports import (
    build_class_summaries, build_class_summary, build_student_summary,
    summary_to_json,
)
from .tasks import (
    build_class_summary_task, build_school_summaries_task, check_payload_size,
    split_payload_by_class,
)
from .trends import classify_results, classify_trend, majority_trend, trend_windows


TODAY = date(2024, 3, 28)


def at(day, hour=9):
    """Timestamp in March 2024."""
    return datetime(2024, 3, day, hour, 0, tzinfo=dt_timezone.utc)


def make_grade(student_id='s1', assignment_id='a1', earned=10, possible=10,
               subject_id='math', class_id='7A', assignment_type=AssignmentType.QUIZ,
               weight=Decimal('1.0'), recorded_at=None):
    return AssignmentGrade(
        student_id=student_id,
        assignment_id=assignment_id,
        class_id=class_id,
        subject_id=subject_id,
        points_earned=Decimal(str(earned)),
        points_possible=Decimal(str(possible)),
        assignment_type=assignment_type,
        weight=Decimal(str(weight)),
        recorded_at=recorded_at or at(20),
    )


def make_entry(day, status=AttendanceStatus.PRESENT, student_id='s1', class_id='7A', recorded_at=None):
    return AttendanceEntry(
        student_id=student_id,
        class_id=class_id,
        date=day,
        status=status,
        recorded_at=recorded_at or datetime.combine(day, datetime.min.time(), tzinfo=dt_timezone.utc),
    )


def session_days(start, count):
    return [start + timedelta(days=i) for i in range(count)]


def make_sessions(days, class_id='7A', scheduled=True):
    return [ClassSession(class_id=class_id, date=day, scheduled=scheduled) for day in days]


# =============================================================================
# GRADE AGGREGATION
# =============================================================================

class GradeAggregationTest(SimpleTestCase):
    """Tests for weighted percentage and letter grade calculation."""

    def test_quiz_and_homework_scenario(self):
        """18/20 quiz and 45/50 homework give 90.0% and an A."""
        result = aggregate_grades([
            make_grade(assignment_id='quiz-1', earned=18, possible=20),
            make_grade(assignment_id='hw-1', earned=45, possible=50,
                       assignment_type=AssignmentType.HOMEWORK),
        ])
        self.assertEqual(result.percentage, Decimal('90.0'))
        self.assertEqual(result.letter_grade, LetterGrade.A)
        self.assertEqual(result.graded_count, 2)
        self.assertEqual(result.excluded, ())

    def test_weights_scale_points(self):
        """A weight of 3 counts a record three times."""
        result = aggregate_grades([
            make_grade(assignment_id='test-1', earned=10, possible=10, weight=3),
            make_grade(assignment_id='quiz-1', earned=0, possible=10, weight=1),
        ])
        self.assertEqual(result.percentage, Decimal('75.0'))
        self.assertEqual(result.letter_grade, LetterGrade.C)

    def test_empty_sequence_has_no_percentage(self):
        """No grades means no data, not 0%."""
        result = aggregate_grades([])
        self.assertIsNone(result.percentage)
        self.assertIsNone(result.letter_grade)
        self.assertFalse(result.has_data)
        with self.assertRaises(NoGradesRecorded):
            result.require_percentage()

    def test_zero_score_is_data(self):
        result = aggregate_grades([make_grade(earned=0, possible=10)])
        self.assertEqual(result.percentage, Decimal('0.0'))
        self.assertEqual(result.letter_grade, LetterGrade.F)
        self.assertTrue(result.has_data)

    def test_invalid_records_are_excluded_and_reported(self):
        """Bad records are skipped, listed, and logged."""
        grades = [
            make_grade(assignment_id='ok', earned=8, possible=10),
            make_grade(assignment_id='zero-possible', earned=0, possible=0),
            make_grade(assignment_id='negative', earned=-1, possible=10),
            make_grade(assignment_id='too-many', earned=12, possible=10),
            make_grade(assignment_id='no-weight', earned=5, possible=10, weight=0),
        ]
        with self.assertLogs('performance.grades', level='WARNING') as logs:
            result = aggregate_grades(grades)

        self.assertEqual(result.percentage, Decimal('80.0'))
        self.assertEqual(result.graded_count, 1)
        self.assertEqual(len(result.excluded), 4)
        self.assertEqual(len(logs.output), 4)
        self.assertTrue(all(isinstance(e, InvalidRecordError) for e in result.excluded))
        excluded_ids = {e.context['assignment_id'] for e in result.excluded}
        self.assertEqual(excluded_ids, {'zero-possible', 'negative', 'too-many', 'no-weight'})

    def test_all_records_invalid_means_no_data(self):
        with self.assertLogs('performance.grades', level='WARNING'):
            result = aggregate_grades([make_grade(earned=-5, possible=10)])
        self.assertIsNone(result.percentage)
        self.assertEqual(len(result.excluded), 1)

    def test_latest_correction_wins(self):
        """A re-submitted grade replaces the original regardless of order."""
        original = make_grade(earned=5, possible=20, recorded_at=at(10))
        corrected = make_grade(earned=20, possible=20, recorded_at=at(12))

        self.assertEqual(aggregate_grades([original, corrected]).percentage, Decimal('100.0'))
        self.assertEqual(aggregate_grades([corrected, original]).percentage, Decimal('100.0'))

    def test_latest_grades_keeps_one_per_assignment(self):
        grades = [
            make_grade(assignment_id='a1', recorded_at=at(1)),
            make_grade(assignment_id='a1', earned=3, recorded_at=at(2)),
            make_grade(assignment_id='a2'),
        ]
        latest = latest_grades(grades)
        self.assertEqual([g.assignment_id for g in latest], ['a1', 'a2'])
        self.assertEqual(latest[0].points_earned, Decimal('3'))

    def test_percentage_stays_within_bounds(self):
        sequences = [
            [make_grade(earned=0, possible=7)],
            [make_grade(earned=7, possible=7)],
            [make_grade(assignment_id='x', earned=1, possible=3, weight='0.5'),
             make_grade(assignment_id='y', earned=2, possible=9, weight='2.25')],
        ]
        for grades in sequences:
            result = aggregate_grades(grades)
            self.assertGreaterEqual(result.percentage, 0)
            self.assertLessEqual(result.percentage, 100)


class LetterGradeTest(SimpleTestCase):
    """Tests for letter grade boundaries."""

    def test_boundary_rounds_up_to_a(self):
        """89.95% rounds to 90.0% and is an A."""
        self.assertEqual(letter_grade(Decimal('89.95')), LetterGrade.A)
        result = aggregate_grades([make_grade(earned=1799, possible=2000)])
        self.assertEqual(result.percentage, Decimal('90.0'))
        self.assertEqual(result.letter_grade, LetterGrade.A)

    def test_boundary_rounds_down_to_b(self):
        """89.94% rounds to 89.9% and is a B."""
        self.assertEqual(letter_grade(Decimal('89.94')), LetterGrade.B)
        result = aggregate_grades([make_grade(earned=8994, possible=10000)])
        self.assertEqual(result.percentage, Decimal('89.9'))
        self.assertEqual(result.letter_grade, LetterGrade.B)

    def test_thresholds(self):
        cases = [
            ('100', LetterGrade.A), ('90', LetterGrade.A),
            ('80', LetterGrade.B), ('79.9', LetterGrade.C),
            ('70', LetterGrade.C), ('60', LetterGrade.D),
            ('59.9', LetterGrade.F), ('0', LetterGrade.F),
        ]
        for value, expected in cases:
            self.assertEqual(letter_grade(Decimal(value)), expected, value)

    def test_none_has_no_letter(self):
        self.assertIsNone(letter_grade(None))


# =============================================================================
# ATTENDANCE AGGREGATION
# =============================================================================

class AttendanceAggregationTest(SimpleTestCase):
    """Tests for attendance counts and rates."""

    def setUp(self):
        self.days = session_days(date(2024, 3, 1), 20)
        self.sessions = make_sessions(self.days)

    def test_unmarked_sessions_count_as_absent(self):
        entries = [make_entry(day) for day in self.days[:18]]
        result = aggregate_attendance(entries, self.sessions, today=TODAY)

        self.assertEqual(result.total_days, 20)
        self.assertEqual(result.present_days, 18)
        self.assertEqual(result.absent_days, 2)
        self.assertEqual(result.unmarked_days, 2)
        self.assertEqual(result.attendance_rate, 90)
        self.assertEqual(result.punctuality_rate, 90)

    def test_late_counts_as_attended_but_not_punctual(self):
        entries = (
            [make_entry(day) for day in self.days[:15]]
            + [make_entry(day, AttendanceStatus.LATE) for day in self.days[15:18]]
            + [make_entry(day, AttendanceStatus.EXCUSED) for day in self.days[18:19]]
            + [make_entry(day, AttendanceStatus.SICK) for day in self.days[19:]]
        )
        result = aggregate_attendance(entries, self.sessions, today=TODAY)

        self.assertEqual(result.late_days, 3)
        self.assertEqual(result.excused_days, 1)
        self.assertEqual(result.sick_days, 1)
        self.assertEqual(result.attendance_rate, 90)
        self.assertEqual(result.punctuality_rate, 75)

    def test_no_sessions_gives_zero_rates(self):
        """totalDays = 0 gives 0%, never an exception."""
        result = aggregate_attendance([], [], today=TODAY)

        self.assertEqual(result.total_days, 0)
        self.assertEqual(result.attendance_rate, 0)
        self.assertEqual(result.punctuality_rate, 0)
        self.assertFalse(result.has_data)
        self.assertIsNone(result.value)
        with self.assertRaises(NoAttendanceRecorded):
            result.require_rate()

    def test_sessions_after_today_are_not_counted(self):
        sessions = make_sessions(session_days(date(2024, 3, 25), 10))
        entries = [make_entry(date(2024, 3, 25)), make_entry(date(2024, 4, 1))]
        result = aggregate_attendance(entries, sessions, today=TODAY)

        self.assertEqual(result.total_days, 4)
        self.assertEqual(result.present_days, 1)
        self.assertEqual(result.attendance_rate, 25)

    def test_entry_without_session_is_flagged(self):
        entries = [make_entry(day) for day in self.days] + [make_entry(date(2024, 3, 27))]
        with self.assertLogs('performance.attendance', level='WARNING'):
            result = aggregate_attendance(entries, self.sessions, today=TODAY)

        self.assertEqual(result.present_days, 21)
        self.assertEqual(len(result.anomalies), 1)
        self.assertIsInstance(result.anomalies[0], MissingSessionDataError)
        self.assertEqual(result.anomalies[0].context['date'], date(2024, 3, 27))
        # Counted, but the rate cannot pass 100
        self.assertEqual(result.attendance_rate, 100)

    def test_unscheduled_session_is_ignored(self):
        sessions = make_sessions(self.days[:2]) + make_sessions([self.days[2]], scheduled=False)
        entries = [make_entry(day) for day in self.days[:3]]
        result = aggregate_attendance(entries, sessions, today=TODAY)

        self.assertEqual(result.total_days, 2)
        self.assertEqual(result.present_days, 2)
        self.assertEqual(result.anomalies, ())

    def test_unmarked_sessions_can_be_left_out(self):
        entries = [make_entry(day) for day in self.days[:10]]
        result = aggregate_attendance(entries, self.sessions, today=TODAY, unmarked_status=None)

        self.assertEqual(result.total_days, 10)
        self.assertEqual(result.unmarked_days, 10)
        self.assertEqual(result.absent_days, 0)
        self.assertEqual(result.attendance_rate, 100)

    @override_settings(PERFORMANCE_UNMARKED_SESSION_STATUS='excused')
    def test_unmarked_status_from_settings(self):
        entries = [make_entry(day) for day in self.days[:10]]
        result = aggregate_attendance(entries, self.sessions, today=TODAY)

        self.assertEqual(result.excused_days, 10)
        self.assertEqual(result.absent_days, 0)
        self.assertEqual(result.attendance_rate, 50)

    @override_settings(PERFORMANCE_UNMARKED_SESSION_STATUS='none')
    def test_unmarked_status_none_from_settings(self):
        """'none' (as read from the environment) leaves unmarked sessions out."""
        entries = [make_entry(day) for day in self.days[:10]]
        result = aggregate_attendance(entries, self.sessions, today=TODAY)

        self.assertEqual(result.total_days, 10)
        self.assertEqual(result.attendance_rate, 100)

    def test_resolve_unmarked_status(self):
        self.assertIsNone(resolve_unmarked_status(''))
        self.assertIsNone(resolve_unmarked_status(None))
        self.assertEqual(resolve_unmarked_status('Sick'), AttendanceStatus.SICK)
        with self.assertRaises(ImproperlyConfigured):
            resolve_unmarked_status('holiday')

    def test_present_days_scenario_ranks(self):
        """Present days of 18, 20 and 15 over 20 sessions rank 2, 1, 3."""
        present_days = {'s1': 18, 's2': 20, 's3': 15}
        rates = {}
        for student_id, present in present_days.items():
            entries = [make_entry(day, student_id=student_id) for day in self.days[:present]]
            result = aggregate_attendance(entries, self.sessions, today=TODAY)
            self.assertEqual(result.total_days, 20)
            rates[student_id] = result.attendance_rate

        self.assertEqual([rates['s1'], rates['s2'], rates['s3']], [90, 100, 75])

        ranks = {e.student_id: e.rank for e in rank_students(rates.items())}
        self.assertEqual([ranks['s1'], ranks['s2'], ranks['s3']], [2, 1, 3])

    def test_rates_round_half_up(self):
        """5 of 8 is 62.5%, which rounds to 63."""
        self.assertEqual(calculate_rates(5, 0, 8), (63, 63))
        self.assertEqual(calculate_rates(0, 0, 0), (0, 0))

    def test_duplicate_entry_latest_wins(self):
        day = self.days[0]
        entries = [
            make_entry(day, AttendanceStatus.ABSENT, recorded_at=at(1, 8)),
            make_entry(day, AttendanceStatus.LATE, recorded_at=at(1, 10)),
        ]
        result = aggregate_attendance(entries, make_sessions([day]), today=TODAY)

        self.assertEqual(result.late_days, 1)
        self.assertEqual(result.absent_days, 0)

    def test_combine_results_across_classes(self):
        math = aggregate_attendance(
            [make_entry(day) for day in self.days[:10]],
            make_sessions(self.days[:10]), today=TODAY,
        )
        art = aggregate_attendance(
            [make_entry(day, class_id='ART') for day in self.days[:5]],
            make_sessions(self.days[:10], class_id='ART'), today=TODAY,
        )
        combined = combine_attendance([math, art])

        self.assertEqual(combined.total_days, 20)
        self.assertEqual(combined.present_days, 15)
        self.assertEqual(combined.absent_days, 5)
        self.assertEqual(combined.attendance_rate, 75)


# =============================================================================
# TRENDS
# =============================================================================

class TrendClassifierTest(SimpleTestCase):
    """Tests for improving / declining / stable classification."""

    def test_symmetric_deadband(self):
        self.assertEqual(classify_trend(83, 80), Trend.IMPROVING)
        self.assertEqual(classify_trend(77, 80), Trend.DECLINING)
        self.assertEqual(classify_trend(80, 80), Trend.STABLE)

    def test_deadband_edges_are_stable(self):
        self.assertEqual(classify_trend(82, 80), Trend.STABLE)
        self.assertEqual(classify_trend(78, 80), Trend.STABLE)
        self.assertEqual(classify_trend(Decimal('82.1'), 80), Trend.IMPROVING)

    def test_missing_window_is_stable(self):
        self.assertEqual(classify_trend(None, 80), Trend.STABLE)
        self.assertEqual(classify_trend(10, None), Trend.STABLE)
        self.assertEqual(
            classify_results(aggregate_grades([]), aggregate_grades([make_grade()])),
            Trend.STABLE,
        )

    @override_settings(PERFORMANCE_TREND_DEADBAND=Decimal('5'))
    def test_deadband_from_settings(self):
        self.assertEqual(classify_trend(83, 80), Trend.STABLE)
        self.assertEqual(classify_trend(86, 80), Trend.IMPROVING)

    def test_explicit_deadband(self):
        self.assertEqual(classify_trend(81, 80, deadband=0), Trend.IMPROVING)

    def test_windows(self):
        recent, prior = trend_windows(date(2024, 3, 28), days=14)
        self.assertEqual(recent, (date(2024, 3, 15), date(2024, 3, 28)))
        self.assertEqual(prior, (date(2024, 3, 1), date(2024, 3, 14)))

    def test_majority_trend(self):
        self.assertEqual(majority_trend([Trend.IMPROVING, Trend.IMPROVING, Trend.DECLINING]), Trend.IMPROVING)
        self.assertEqual(majority_trend([Trend.DECLINING, Trend.STABLE]), Trend.DECLINING)
        self.assertEqual(majority_trend([Trend.IMPROVING, Trend.DECLINING]), Trend.STABLE)
        self.assertEqual(majority_trend([]), Trend.STABLE)


# =============================================================================
# RANKING
# =============================================================================

class RankingTest(SimpleTestCase):
    """Tests for competition ranking."""

    def test_ties_share_rank(self):
        entries = rank_students([('a', 95), ('b', 95), ('c', 80)])
        self.assertEqual([e.rank for e in entries], [1, 1, 3])

    def test_competition_ranking_skips(self):
        entries = rank_students([('a', 90), ('b', 80), ('c', 80), ('d', 70)])
        self.assertEqual([(e.student_id, e.rank) for e in entries],
                         [('a', 1), ('b', 2), ('c', 2), ('d', 4)])

    def test_sort_is_stable(self):
        entries = rank_students([('z', 80), ('a', 95), ('m', 80)])
        self.assertEqual([e.student_id for e in entries], ['a', 'z', 'm'])

    def test_attendance_rate_scenario(self):
        """Rates of 90, 100 and 75 rank 2, 1, 3."""
        ranks = {e.student_id: e.rank for e in rank_students([('s1', 90), ('s2', 100), ('s3', 75)])}
        self.assertEqual([ranks['s1'], ranks['s2'], ranks['s3']], [2, 1, 3])

    def test_no_data_students_are_unranked(self):
        entries = rank_students([('a', None), ('b', Decimal('70.0')), ('c', Decimal('85.5'))])
        self.assertEqual([(e.student_id, e.rank) for e in entries],
                         [('c', 1), ('b', 2), ('a', None)])
        self.assertTrue(all(e.class_size == 3 for e in entries))
        self.assertIsNone(entries[-1].percentile)

    def test_ties_compare_at_two_decimals(self):
        entries = rank_students([('a', Decimal('89.994')), ('b', Decimal('89.99')), ('c', Decimal('89.996'))])
        self.assertEqual([(e.student_id, e.rank) for e in entries],
                         [('c', 1), ('a', 2), ('b', 2)])

    def test_duplicate_student_rejected(self):
        with self.assertRaises(DuplicateStudentError):
            rank_students([('a', 90), ('a', 80)])

    def test_percentile(self):
        entries = rank_students([('a', 95), ('b', 95), ('c', 80)])
        self.assertEqual([e.percentile for e in entries],
                         [Decimal('100.0'), Decimal('100.0'), Decimal('33.3')])
        self.assertEqual(percentile(4, 4), Decimal('25.0'))
        self.assertIsNone(percentile(None, 4))

    def test_empty_input(self):
        self.assertEqual(rank_students([]), [])


# =============================================================================
# SUMMARY REPORTS
# =============================================================================

class ClassFixtureMixin:
    """Three graded students, one without grades, ten sessions."""

    def class_records(self):
        grades = [
            make_grade('s1', 'm-quiz', 18, 20),
            make_grade('s1', 'm-hw', 45, 50, assignment_type=AssignmentType.HOMEWORK),
            make_grade('s1', 's-test', 40, 50, subject_id='science', assignment_type=AssignmentType.TEST),
            make_grade('s2', 'm-quiz', 19, 20),
            make_grade('s2', 's-test', 45, 50, subject_id='science', assignment_type=AssignmentType.TEST),
            make_grade('s3', 'm-quiz', 10, 20),
            make_grade('s3', 's-test', 25, 50, subject_id='science', assignment_type=AssignmentType.TEST),
            # Another class; must not leak into 7A
            make_grade('s1', 'other', 0, 20, class_id='8B'),
        ]

        days = session_days(date(2024, 3, 18), 10)
        sessions = make_sessions(days) + make_sessions(days, class_id='8B')
        attendance = (
            [make_entry(day, student_id='s1') for day in days]
            + [make_entry(day, student_id='s2') for day in days[:9]]
            + [make_entry(day, student_id='s3') for day in days[:5]]
            + [make_entry(day, AttendanceStatus.LATE, student_id='s3') for day in days[5:7]]
            + [make_entry(day, AttendanceStatus.ABSENT, student_id='s1', class_id='8B') for day in days]
        )
        return grades, attendance, sessions


class StudentSummaryTest(ClassFixtureMixin, SimpleTestCase):
    """Tests for per-student summaries."""

    def test_overall_is_unweighted_mean_of_subjects(self):
        grades, attendance, sessions = self.class_records()
        summary = build_student_summary('s1', grades, attendance, sessions, class_id='7A', today=TODAY)

        self.assertEqual(summary.subject_breakdown['math'].percentage, Decimal('90.0'))
        self.assertEqual(summary.subject_breakdown['science'].percentage, Decimal('80.0'))
        self.assertEqual(summary.overall_percentage, Decimal('85.0'))
        self.assertEqual(summary.overall_letter_grade, LetterGrade.B)
        self.assertEqual(summary.attendance_rate, 100)
        self.assertIsNone(summary.class_rank)
        self.assertIsNone(summary.class_size)

    def test_student_without_grades_has_no_percentage(self):
        grades, attendance, sessions = self.class_records()
        summary = build_student_summary('s4', grades, attendance, sessions, class_id='7A', today=TODAY)
        data = summary.to_dict()

        self.assertIsNone(summary.overall_percentage)
        self.assertIsNone(data['overallPercentage'])
        self.assertIsNone(data['overallLetterGrade'])
        self.assertEqual(data['subjectBreakdown'], {})
        # Ten unmarked sessions count as absences
        self.assertEqual(data['attendanceRate'], 0)
        self.assertTrue(data['hasAttendanceData'])

    def test_enrolled_subject_without_grades(self):
        grades, attendance, sessions = self.class_records()
        summary = build_student_summary(
            's2', grades, attendance, sessions,
            subject_ids=['math', 'science', 'art'], class_id='7A', today=TODAY,
        )

        self.assertIsNone(summary.subject_breakdown['art'].percentage)
        self.assertEqual(summary.subject_breakdown['art'].trend, Trend.STABLE)
        self.assertEqual(summary.overall_percentage, Decimal('92.5'))

    def test_no_sessions_means_no_attendance_data(self):
        summary = build_student_summary('s1', [make_grade()], [], [], today=TODAY)

        self.assertFalse(summary.has_attendance_data)
        self.assertEqual(summary.attendance_rate, 0)
        self.assertFalse(summary.to_dict()['hasAttendanceData'])

    def test_all_classes_when_class_not_given(self):
        grades, attendance, sessions = self.class_records()
        summary = build_student_summary('s1', grades, attendance, sessions, today=TODAY)

        self.assertEqual(summary.attendance.total_days, 20)
        self.assertEqual(summary.attendance_rate, 50)
        self.assertEqual(summary.subject_breakdown['math'].graded_count, 3)

    def test_trends_compare_recent_and_prior_windows(self):
        grades = [
            make_grade(assignment_id='early', earned=6, possible=10, recorded_at=at(5)),
            make_grade(assignment_id='late', earned=8, possible=10, recorded_at=at(20)),
        ]
        prior_days = session_days(date(2024, 3, 4), 10)
        recent_days = session_days(date(2024, 3, 18), 10)
        sessions = make_sessions(prior_days + recent_days)
        entries = [make_entry(day) for day in prior_days[:5] + recent_days]

        summary = build_student_summary('s1', grades, entries, sessions, today=TODAY)

        self.assertEqual(summary.subject_breakdown['math'].percentage, Decimal('70.0'))
        self.assertEqual(summary.subject_breakdown['math'].trend, Trend.IMPROVING)
        self.assertEqual(summary.grade_trend, Trend.IMPROVING)
        self.assertEqual(summary.attendance_rate, 75)
        self.assertEqual(summary.attendance_trend, Trend.IMPROVING)

    def test_term_limits_records(self):
        term = Term(name='Term 2', start_date=date(2024, 3, 10), end_date=date(2024, 3, 31))
        grades = [
            make_grade(assignment_id='before', earned=0, possible=10, recorded_at=at(5)),
            make_grade(assignment_id='during', earned=9, possible=10, recorded_at=at(20)),
        ]
        summary = build_student_summary('s1', grades, [], [], term=term, today=TODAY)

        self.assertEqual(summary.subject_breakdown['math'].percentage, Decimal('90.0'))

    def test_correction_after_term_end_still_wins(self):
        """A grade first recorded in term and corrected after it ends uses the correction."""
        term = Term(name='Term 2', start_date=date(2024, 1, 8), end_date=date(2024, 3, 29))
        grades = [
            make_grade(earned=10, possible=20, recorded_at=at(20)),
            make_grade(earned=18, possible=20,
                       recorded_at=datetime(2024, 4, 2, 9, 0, tzinfo=dt_timezone.utc)),
        ]
        summary = build_student_summary('s1', grades, [], [], term=term, today=TODAY)

        self.assertEqual(summary.overall_percentage, Decimal('90.0'))
        self.assertEqual(summary.subject_breakdown['math'].graded_count, 1)

    def test_correction_moving_class_follows_the_correction(self):
        grades = [
            make_grade(earned=5, possible=10, class_id='7A', recorded_at=at(10)),
            make_grade(earned=9, possible=10, class_id='8B', recorded_at=at(12)),
        ]
        in_7a = build_student_summary('s1', grades, [], [], class_id='7A', today=TODAY)
        in_8b = build_student_summary('s1', grades, [], [], class_id='8B', today=TODAY)

        self.assertIsNone(in_7a.overall_percentage)
        self.assertEqual(in_8b.overall_percentage, Decimal('90.0'))

    def test_session_anomaly_serialises_without_record_repr(self):
        sessions = make_sessions([date(2024, 3, 18)])
        entries = [make_entry(date(2024, 3, 18)), make_entry(date(2024, 3, 20))]
        with self.assertLogs('performance.attendance', level='WARNING'):
            summary = build_student_summary('s1', [], entries, sessions, today=TODAY)

        self.assertEqual(summary.issues[0].record, entries[1])
        issue = summary.to_dict()['issues'][0]
        self.assertEqual(issue, {
            'code': 'missing_session_data',
            'message': 'Attendance entry references a date with no class session',
            'student_id': 's1',
            'class_id': '7A',
            'date': '2024-03-20',
        })

    def test_issues_are_reported(self):
        grades = [make_grade(assignment_id='bad', earned=11, possible=10), make_grade()]
        with self.assertLogs('performance', level='WARNING'):
            summary = build_student_summary('s1', grades, [], [], today=TODAY)

        self.assertEqual(summary.subject_breakdown['math'].excluded_count, 1)
        issues = summary.to_dict()['issues']
        self.assertEqual(len(issues), 1)
        self.assertEqual(issues[0]['code'], 'invalid_record')
        self.assertEqual(issues[0]['assignment_id'], 'bad')


class ClassSummaryTest(ClassFixtureMixin, SimpleTestCase):
    """Tests for class summaries, ranking and insights."""

    def build(self, roster=('s1', 's2', 's3', 's4'), reverse=False):
        grades, attendance, sessions = self.class_records()
        roster = list(roster)
        if reverse:
            grades.reverse()
            attendance.reverse()
            sessions.reverse()
            roster.reverse()
        return build_class_summary('7A', roster, grades, attendance, sessions, today=TODAY)

    def test_students_in_rank_order(self):
        summary = self.build()

        self.assertEqual(
            [(s.student_id, s.class_rank) for s in summary.student_summaries],
            [('s2', 1), ('s1', 2), ('s3', 3), ('s4', None)],
        )
        self.assertTrue(all(s.class_size == 4 for s in summary.student_summaries))
        self.assertEqual(summary.class_size, 4)
        self.assertEqual(summary.ranked_count, 3)
        self.assertEqual(
            [s.percentile for s in summary.student_summaries],
            [Decimal('100.0'), Decimal('66.7'), Decimal('33.3'), None],
        )

    def test_class_averages(self):
        summary = self.build()

        self.assertEqual(summary.class_average_percentage, Decimal('75.8'))
        self.assertEqual(summary.class_average_attendance, Decimal('65.0'))
        self.assertEqual(summary.subject_averages, {'math': Decimal('78.3'), 'science': Decimal('73.3')})
        self.assertEqual(summary.highest_percentage, Decimal('92.5'))
        self.assertEqual(summary.lowest_percentage, Decimal('50.0'))

    def test_other_class_records_ignored(self):
        summary = self.build()
        s1 = next(s for s in summary.student_summaries if s.student_id == 's1')

        self.assertEqual(s1.subject_breakdown['math'].graded_count, 2)
        self.assertEqual(s1.attendance.total_days, 10)

    def test_grade_distribution(self):
        summary = self.build()
        self.assertEqual(summary.grade_distribution, {'A': 1, 'B': 1, 'C': 0, 'D': 0, 'F': 1})

    def test_insights(self):
        insights = self.build().insights

        self.assertEqual(insights.top_performers, ('s2', 's1'))
        self.assertEqual(insights.at_risk_students, ('s3',))
        self.assertEqual(insights.consistent_attendees, ('s1',))
        self.assertEqual(insights.frequent_absentees, ('s3', 's4'))
        self.assertEqual(insights.improving_students, ())

    @override_settings(PERFORMANCE_TOP_PERFORMERS_LIMIT=1)
    def test_insight_limits_from_settings(self):
        self.assertEqual(self.build().insights.top_performers, ('s2',))

    def test_input_order_does_not_change_output(self):
        """Same records in any order serialise to identical bytes."""
        self.assertEqual(summary_to_json(self.build()), summary_to_json(self.build(reverse=True)))
        self.assertEqual(summary_to_json(self.build()), summary_to_json(self.build()))

    def test_json_contract(self):
        data = self.build().to_dict()

        self.assertEqual(data['classId'], '7A')
        first = data['studentSummaries'][0]
        self.assertEqual(first['studentId'], 's2')
        self.assertEqual(first['overallPercentage'], 92.5)
        self.assertEqual(first['overallLetterGrade'], 'A')
        self.assertEqual(first['subjectBreakdown']['math'],
                         {'percentage': 95.0, 'letterGrade': 'A', 'trend': 'stable',
                          'gradedCount': 1, 'excludedCount': 0})
        self.assertEqual(first['attendanceRate'], 90)
        self.assertEqual(first['classRank'], 1)
        self.assertEqual(data['studentSummaries'][-1]['classRank'], None)

    def test_duplicate_roster_entry_rejected(self):
        with self.assertRaises(DuplicateStudentError):
            self.build(roster=('s1', 's2', 's1'))

    def test_batch_isolates_failures(self):
        grades, attendance, sessions = self.class_records()
        with self.assertLogs('performance.reports', level='ERROR'):
            results, failures = build_class_summaries(
                {'7A': ['s1', 's2', 's3'], '8B': ['s1', 's1']},
                grades, attendance, sessions, today=TODAY,
            )

        self.assertEqual([r.class_id for r in results], ['7A'])
        self.assertIsInstance(failures['8B'], DuplicateStudentError)
        self.assertEqual(failures['8B'].as_dict()['class_id'], '8B')


# =============================================================================
# RECORD PARSING
# =============================================================================

class RecordParsingTest(SimpleTestCase):
    """Tests for building records from record store dictionaries."""

    def test_grade_from_camel_case(self):
        grade = AssignmentGrade.from_dict({
            'studentId': 12, 'assignmentId': 'hw-3', 'classId': '7A', 'subjectId': 'math',
            'pointsEarned': 18, 'pointsPossible': '20', 'assignmentType': 'Quiz',
            'recordedAt': '2024-03-05T10:15:00Z',
        })

        self.assertEqual(grade.student_id, '12')
        self.assertEqual(grade.points_earned, Decimal('18'))
        self.assertEqual(grade.points_possible, Decimal('20'))
        self.assertEqual(grade.assignment_type, AssignmentType.QUIZ)
        self.assertEqual(grade.weight, Decimal('1.0'))
        self.assertEqual(grade.recorded_at, datetime(2024, 3, 5, 10, 15, tzinfo=dt_timezone.utc))

    def test_grade_from_snake_case_with_naive_timestamp(self):
        grade = AssignmentGrade.from_dict({
            'student_id': 's1', 'assignment_id': 'a1', 'class_id': '7A', 'subject_id': 'math',
            'points_earned': 4.5, 'points_possible': 5, 'assignment_type': 'project',
            'weight': 2, 'recorded_at': '2024-03-05 08:00:00',
        })

        self.assertEqual(grade.points_earned, Decimal('4.5'))
        self.assertEqual(grade.weight, Decimal('2'))
        self.assertEqual(grade.recorded_at.tzinfo, dt_timezone.utc)

    def test_missing_field_rejected(self):
        with self.assertRaises(InvalidRecordError) as ctx:
            AttendanceEntry.from_dict({'studentId': 's1', 'date': '2024-03-05', 'status': 'present',
                                       'recordedAt': '2024-03-05'})
        self.assertEqual(ctx.exception.context['field'], 'classId')

    def test_unknown_status_rejected(self):
        with self.assertRaises(InvalidRecordError):
            AttendanceEntry.from_dict({'studentId': 's1', 'classId': '7A', 'date': '2024-03-05',
                                       'status': 'holiday', 'recordedAt': '2024-03-05'})

    def test_bad_number_rejected(self):
        with self.assertRaises(InvalidRecordError):
            AssignmentGrade.from_dict({
                'studentId': 's1', 'assignmentId': 'a1', 'classId': '7A', 'subjectId': 'math',
                'pointsEarned': 'ten', 'pointsPossible': 10, 'assignmentType': 'quiz',
                'recordedAt': '2024-03-05',
            })

    def test_session_defaults_to_scheduled(self):
        session = ClassSession.from_dict({'classId': '7A', 'date': '2024-03-05'})
        self.assertTrue(session.scheduled)
        self.assertEqual(session.date, date(2024, 3, 5))

    def test_session_scheduled_from_text(self):
        """CSV-style text flags are parsed, not truth-tested."""
        cases = [('false', False), ('False', False), ('0', False), ('no', False),
                 ('true', True), ('1', True), (0, False), (True, True)]
        for raw, expected in cases:
            session = ClassSession.from_dict({'classId': '7A', 'date': '2024-03-05', 'scheduled': raw})
            self.assertIs(session.scheduled, expected, raw)

    def test_session_scheduled_rejects_other_values(self):
        with self.assertRaises(InvalidRecordError) as ctx:
            ClassSession.from_dict({'classId': '7A', 'date': '2024-03-05', 'scheduled': 'maybe'})
        self.assertEqual(ctx.exception.context['field'], 'scheduled')

    def test_parse_payload_collects_errors(self):
        with self.assertLogs('performance.records', level='WARNING'):
            grades, attendance, sessions, errors = parse_payload({
                'grades': [],
                'attendance': [
                    {'studentId': 's1', 'classId': '7A', 'date': '2024-03-05',
                     'status': 'late', 'recordedAt': '2024-03-05T08:00:00'},
                    {'studentId': 's1', 'classId': '7A', 'date': 'not-a-date',
                     'status': 'late', 'recordedAt': '2024-03-05T08:00:00'},
                ],
                'sessions': [{'classId': '7A', 'date': '2024-03-05', 'scheduled': True}],
            })

        self.assertEqual(len(attendance), 1)
        self.assertEqual(attendance[0].status, AttendanceStatus.LATE)
        self.assertEqual(len(sessions), 1)
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].context['index'], 1)
        self.assertEqual(errors[0].as_dict()['record_type'], 'AttendanceEntry')

    def test_term(self):
        term = Term.from_dict({'name': 'Term 1', 'startDate': '2024-01-08', 'endDate': '2024-04-05'})
        self.assertTrue(term.contains(date(2024, 1, 8)))
        self.assertTrue(term.contains(at(5)))
        self.assertFalse(term.contains(date(2024, 4, 6)))
        self.assertEqual(str(term), 'Term 1')

        with self.assertRaises(ValueError):
            Term(name='Backwards', start_date=date(2024, 4, 1), end_date=date(2024, 1, 1))


# =============================================================================
# CACHE
# =============================================================================

@override_settings(CACHES={'default': {'BACKEND': 'django.core.cache.backends.locmem.LocMemCache'}})
class SummaryCacheTest(SimpleTestCase):
    """Tests for summary caching keyed by record set version."""

    def setUp(self):
        cache.clear()
        self.calls = 0

    def build(self):
        self.calls += 1
        return {'built': self.calls}

    def test_key(self):
        term = Term(name='Term 1', start_date=date(2024, 1, 8), end_date=date(2024, 4, 5))
        self.assertEqual(summary_cache_key('class', '7A', term, 3), 'performance:class:7A:Term 1:3')
        self.assertEqual(summary_cache_key('student', 's1', None, 1), 'performance:student:s1:all:1')

    def test_second_call_is_cached(self):
        first = get_or_build('class', '7A', 'Term 1', 1, self.build)
        second = get_or_build('class', '7A', 'Term 1', 1, self.build)

        self.assertEqual(first, second)
        self.assertEqual(self.calls, 1)

    def test_new_version_rebuilds(self):
        get_or_build('class', '7A', 'Term 1', 1, self.build)
        get_or_build('class', '7A', 'Term 1', 2, self.build)
        self.assertEqual(self.calls, 2)

    def test_invalidate(self):
        get_or_build('student', 's1', 'Term 1', 1, self.build)
        invalidate('student', 's1', 'Term 1', 1)
        get_or_build('student', 's1', 'Term 1', 1, self.build)
        self.assertEqual(self.calls, 2)


# =============================================================================
# TASKS
# =============================================================================

class SummaryTaskTest(SimpleTestCase):
    """Tests for the Celery summary tasks, run in-process."""

    def payload(self):
        return {
            'students': ['s1', 's2'],
            'today': '2024-03-28',
            'term': {'name': 'Term 2', 'startDate': '2024-01-08', 'endDate': '2024-04-05'},
            'grades': [
                {'studentId': 's1', 'assignmentId': 'q1', 'classId': '7A', 'subjectId': 'math',
                 'pointsEarned': 18, 'pointsPossible': 20, 'assignmentType': 'quiz',
                 'recordedAt': '2024-03-20T09:00:00Z'},
                {'studentId': 's2', 'assignmentId': 'q1', 'classId': '7A', 'subjectId': 'math',
                 'pointsEarned': 19, 'pointsPossible': 20, 'assignmentType': 'quiz',
                 'recordedAt': '2024-03-20T09:00:00Z'},
                {'studentId': 's2', 'assignmentId': 'q2', 'classId': '7A', 'subjectId': 'math',
                 'pointsEarned': 19, 'assignmentType': 'quiz', 'recordedAt': '2024-03-20T09:00:00Z'},
            ],
            'attendance': [
                {'studentId': 's1', 'classId': '7A', 'date': '2024-03-25', 'status': 'present',
                 'recordedAt': '2024-03-25T08:00:00Z'},
            ],
            'sessions': [
                {'classId': '7A', 'date': '2024-03-25', 'scheduled': True},
                {'classId': '7A', 'date': '2024-03-26', 'scheduled': True},
            ],
        }

    def test_build_class_summary_task(self):
        with self.assertLogs('performance.records', level='WARNING'):
            result = build_class_summary_task.apply(args=['7A', self.payload()]).get()

        self.assertEqual(result['classId'], '7A')
        self.assertEqual([s['studentId'] for s in result['studentSummaries']], ['s2', 's1'])
        self.assertEqual(result['studentSummaries'][1]['overallPercentage'], 90.0)
        self.assertEqual(result['studentSummaries'][1]['attendanceRate'], 50)
        self.assertEqual(len(result['parseErrors']), 1)
        self.assertEqual(result['parseErrors'][0]['field'], 'pointsPossible')

    def school_payload(self):
        payload = self.payload()
        payload.pop('students')
        payload['classes'] = {'7A': ['s1', 's2'], '8B': ['s3']}
        payload['grades'].append(
            {'studentId': 's3', 'assignmentId': 'q1', 'classId': '8B', 'subjectId': 'math',
             'pointsEarned': 16, 'pointsPossible': 20, 'assignmentType': 'quiz',
             'recordedAt': '2024-03-20T09:00:00Z'}
        )
        # No classId, and a class outside the payload
        payload['attendance'].append(
            {'studentId': 's3', 'date': '2024-03-25', 'status': 'present',
             'recordedAt': '2024-03-25T08:00:00Z'}
        )
        payload['sessions'].append({'classId': '9C', 'date': '2024-03-25'})
        return payload

    def run_school_task(self, payload, child_ids=()):
        """Run the fan-out task with the Celery group replaced by a mock."""
        with mock.patch('performance.tasks.group') as group_mock:
            group_mock.return_value.apply_async.return_value.results = [
                mock.Mock(id=child_id) for child_id in child_ids
            ]
            result = build_school_summaries_task.apply(args=[payload]).get()
        return result, group_mock.call_args[0][0]

    def test_split_payload_by_class(self):
        with self.assertLogs('performance.tasks', level='WARNING'):
            split, errors = split_payload_by_class(self.school_payload(), ['7A', '8B'])

        self.assertEqual(len(split['7A']['grades']), 3)
        self.assertEqual(len(split['8B']['grades']), 1)
        self.assertEqual(len(split['7A']['sessions']), 2)
        self.assertEqual(split['8B']['attendance'], [])
        self.assertEqual(
            [(e.context['record_type'], e.context['index'], e.context['value']) for e in errors],
            [('AttendanceEntry', 1, None), ('ClassSession', 2, '9C')],
        )

    def test_school_task_fans_out_per_class(self):
        with self.assertLogs('performance.tasks', level='INFO'):
            queued, signatures = self.run_school_task(self.school_payload(), ['task-7A', 'task-8B'])

        self.assertEqual(queued['tasks'], {'7A': 'task-7A', '8B': 'task-8B'})
        self.assertEqual(len(queued['parseErrors']), 2)
        self.assertEqual(queued['parseErrors'][0]['code'], 'invalid_record')
        self.assertEqual(queued['parseErrors'][0]['field'], 'classId')
        self.assertNotIn('record', queued['parseErrors'][0])

        # Each queued signature builds its own class summary
        with self.assertLogs('performance', level='INFO'):
            results = {sig.args[0]: sig.apply().get() for sig in signatures}

        self.assertEqual(sorted(results), ['7A', '8B'])
        self.assertEqual([s['studentId'] for s in results['7A']['studentSummaries']], ['s2', 's1'])
        self.assertEqual(len(results['7A']['parseErrors']), 1)
        self.assertEqual(results['8B']['studentSummaries'][0]['studentId'], 's3')
        self.assertEqual(results['8B']['studentSummaries'][0]['overallPercentage'], 80.0)
        self.assertEqual(results['8B']['parseErrors'], [])

    @override_settings(PERFORMANCE_TASK_SOFT_TIME_LIMIT=5, PERFORMANCE_TASK_TIME_LIMIT=10)
    def test_fan_out_uses_current_time_limits(self):
        payload = {'classes': {'7A': []}}
        with self.assertLogs('performance.tasks', level='INFO'):
            _, signatures = self.run_school_task(payload, ['task-7A'])

        self.assertEqual(signatures[0].options['soft_time_limit'], 5)
        self.assertEqual(signatures[0].options['time_limit'], 10)

    @override_settings(PERFORMANCE_MAX_RECORDS_PER_CALL=2)
    def test_payload_size_limit(self):
        with self.assertRaises(RecordLimitExceeded):
            check_payload_size(self.payload())
        self.assertEqual(check_payload_size({'grades': [{}], 'sessions': [{}]}), 2)
