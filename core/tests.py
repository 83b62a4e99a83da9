from decimal import Decimal

from django.test import SimpleTestCase

from core.choices import AttendanceStatus, LetterGrade
from core.utils import as_number, mean, percentage, round_half_up, to_decimal


class RoundHalfUpTests(SimpleTestCase):
    """Tests for round_half_up."""

    def test_half_rounds_away_from_zero(self):
        self.assertEqual(round_half_up(Decimal('89.95')), Decimal('90.0'))
        self.assertEqual(round_half_up(Decimal('62.5'), 0), Decimal('63'))
        self.assertEqual(round_half_up(Decimal('0.125'), 2), Decimal('0.13'))

    def test_below_half_rounds_down(self):
        self.assertEqual(round_half_up(Decimal('89.94')), Decimal('89.9'))

    def test_float_input_has_no_binary_noise(self):
        """2.675 as a float must still round to 2.68."""
        self.assertEqual(round_half_up(2.675, 2), Decimal('2.68'))

    def test_none_passes_through(self):
        self.assertIsNone(round_half_up(None))


class PercentageTests(SimpleTestCase):

    def test_percentage(self):
        self.assertEqual(percentage(63, 70), Decimal('90.0'))
        self.assertEqual(percentage(1, 3), Decimal('33.3'))
        self.assertEqual(percentage(2, 3, 0), Decimal('67'))

    def test_zero_whole(self):
        self.assertIsNone(percentage(5, 0))


class MeanTests(SimpleTestCase):

    def test_ignores_none(self):
        self.assertEqual(mean([Decimal('90'), None, Decimal('80')]), Decimal('85.0'))

    def test_nothing_to_average(self):
        self.assertIsNone(mean([]))
        self.assertIsNone(mean([None, None]))

    def test_accepts_generators(self):
        self.assertEqual(mean(v for v in (1, 2, 2)), Decimal('1.7'))


class AsNumberTests(SimpleTestCase):
    """Tests for JSON number conversion."""

    def test_decimal_with_places_becomes_float(self):
        self.assertEqual(as_number(Decimal('92.5')), 92.5)
        self.assertIsInstance(as_number(Decimal('90.0')), float)

    def test_whole_decimal_becomes_int(self):
        self.assertEqual(as_number(Decimal('90')), 90)
        self.assertIsInstance(as_number(Decimal('90')), int)

    def test_other_values_unchanged(self):
        self.assertIsNone(as_number(None))
        self.assertEqual(as_number(75), 75)

    def test_to_decimal(self):
        self.assertEqual(to_decimal(0.1), Decimal('0.1'))
        value = Decimal('1.50')
        self.assertIs(to_decimal(value), value)


class ChoicesTests(SimpleTestCase):

    def test_values(self):
        self.assertEqual(AttendanceStatus('late'), AttendanceStatus.LATE)
        self.assertEqual(LetterGrade.A.label, 'Excellent')
        self.assertEqual(LetterGrade.values, ['A', 'B', 'C', 'D', 'F'])
