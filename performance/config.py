"""
Configuration settings for the performance app.

These values can be overridden in Django settings by prefixing with PERFORMANCE_.
For example, to widen the trend deadband:
    PERFORMANCE_TREND_DEADBAND = Decimal('5')

All configuration values are lazily loaded to avoid Django setup issues.
"""
from decimal import Decimal


def _get_setting(name, default):
    """Get a performance setting from Django settings or use default."""
    from django.conf import settings
    return getattr(settings, f'PERFORMANCE_{name}', default)


_DEFAULTS = {
    # Trend classification
    'TREND_DEADBAND': Decimal('2'),  # percentage points
    'TREND_WINDOW_DAYS': 14,

    # Status assumed for a scheduled session nobody marked.
    # None drops unmarked sessions from the attendance denominator.
    'UNMARKED_SESSION_STATUS': 'absent',

    # Class insights
    'TOP_PERFORMER_MIN': Decimal('85'),
    'AT_RISK_BELOW': Decimal('60'),
    'TOP_PERFORMERS_LIMIT': 5,
    'AT_RISK_STUDENTS_LIMIT': 5,
    'CONSISTENT_ATTENDANCE_MIN': 95,
    'FREQUENT_ABSENCE_MAX': 80,

    # Summary cache
    'SUMMARY_CACHE_TIMEOUT': 300,  # seconds

    # Celery task settings
    'MAX_RECORDS_PER_CALL': 200_000,
    'TASK_SOFT_TIME_LIMIT': 60,  # seconds
    'TASK_TIME_LIMIT': 90,  # seconds
}


class _ConfigProxy:
    """
    Lazy configuration proxy that loads settings only when accessed.
    This avoids Django setup issues during module import.
    """

    def __getattr__(self, name):
        if name in _DEFAULTS:
            return _get_setting(name, _DEFAULTS[name])
        raise AttributeError(f"Unknown config setting: {name}")


# Module-level proxy object for attribute access
_config = _ConfigProxy()


def __getattr__(name):
    """Enable module-level attribute access via the config proxy."""
    return getattr(_config, name)
