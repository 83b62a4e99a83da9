from django.db import models
from django.utils.translation import gettext_lazy as _

class AssignmentType(models.TextChoices):
    HOMEWORK = 'homework', _('Homework')
    QUIZ = 'quiz', _('Quiz')
    TEST = 'test', _('Test')
    PROJECT = 'project', _('Project')

class AttendanceStatus(models.TextChoices):
    PRESENT = 'present', _('Present')
    ABSENT = 'absent', _('Absent')
    LATE = 'late', _('Late')
    EXCUSED = 'excused', _('Excused')
    SICK = 'sick', _('Sick')

class Trend(models.TextChoices):
    IMPROVING = 'improving', _('Improving')
    DECLINING = 'declining', _('Declining')
    STABLE = 'stable', _('Stable')

class LetterGrade(models.TextChoices):
    A = 'A', _('Excellent')
    B = 'B', _('Good')
    C = 'C', _('Satisfactory')
    D = 'D', _('Pass')
    F = 'F', _('Fail')
