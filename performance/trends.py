"""
Trend classification: compare a recent window of a metric against the
window before it.
"""
from datetime import timedelta

from core.choices import Trend
from core.utils import to_decimal
from . import config


def classify_trend(recent, prior, deadband=None):
    """
    Label the change from prior to recent.

    A change inside +/- deadband (inclusive) is stable, so small noise does
    not flip the label back and forth. Missing data on either side is
    stable as well: no data is not a decline.

    Args:
        recent: metric for the recent window, or None
        prior: metric for the earlier window, or None
        deadband: percentage points (defaults to PERFORMANCE_TREND_DEADBAND)

    Returns:
        Trend
    """
    if recent is None or prior is None:
        return Trend.STABLE

    if deadband is None:
        deadband = config.TREND_DEADBAND
    deadband = to_decimal(deadband)

    delta = to_decimal(recent) - to_decimal(prior)
    if delta > deadband:
        return Trend.IMPROVING
    if delta < -deadband:
        return Trend.DECLINING
    return Trend.STABLE


def classify_results(recent_result, prior_result, deadband=None):
    """Trend between two GradeResult or AttendanceResult objects."""
    return classify_trend(recent_result.value, prior_result.value, deadband=deadband)


def trend_windows(anchor, days=None):
    """
    Build the (recent, prior) windows ending at anchor.

    Each window is an inclusive (start, end) date pair of `days` days:
    recent covers (anchor - days, anchor], prior the days before that.
    """
    if days is None:
        days = config.TREND_WINDOW_DAYS
    span = timedelta(days=days)
    recent = (anchor - span + timedelta(days=1), anchor)
    prior = (anchor - 2 * span + timedelta(days=1), anchor - span)
    return recent, prior


def majority_trend(trends):
    """
    Improving if more trends improve than decline, declining for the
    reverse, stable otherwise.
    """
    trends = list(trends)
    improving = trends.count(Trend.IMPROVING)
    declining = trends.count(Trend.DECLINING)
    if improving > declining:
        return Trend.IMPROVING
    if declining > improving:
        return Trend.DECLINING
    return Trend.STABLE
