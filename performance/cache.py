"""
Optional caching of built summaries in the Django cache.

The engine never invalidates anything by itself: the key carries the
caller's record-set version, and callers bump the version whenever the
underlying grades or attendance change.
"""
import logging

from django.core.cache import cache

from . import config

logger = logging.getLogger(__name__)

KEY_PREFIX = 'performance'


def summary_cache_key(kind, object_id, term, version):
    """
    Cache key for one summary.

    Args:
        kind: 'student' or 'class'
        object_id: student or class id
        term: Term, term name, or None for "all time"
        version: the caller's input record set version
    """
    term_part = str(term) if term is not None else 'all'
    return f'{KEY_PREFIX}:{kind}:{object_id}:{term_part}:{version}'


def get_or_build(kind, object_id, term, version, build, timeout=None):
    """
    Return the cached summary, building and caching it on a miss.

    Args:
        build: zero-argument callable producing the summary
        timeout: seconds (defaults to PERFORMANCE_SUMMARY_CACHE_TIMEOUT)
    """
    cache_key = summary_cache_key(kind, object_id, term, version)
    summary = cache.get(cache_key)

    if summary is None:
        summary = build()
        if timeout is None:
            timeout = config.SUMMARY_CACHE_TIMEOUT
        cache.set(cache_key, summary, timeout)
        logger.debug(f"Cached {kind} summary under {cache_key}")
    else:
        logger.debug(f"Summary cache hit for {cache_key}")

    return summary


def invalidate(kind, object_id, term, version):
    """Drop one cached summary."""
    cache.delete(summary_cache_key(kind, object_id, term, version))
