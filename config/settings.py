import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

# Security
DEBUG = os.getenv('DEBUG', '0') == '1'
SECRET_KEY = os.getenv('SECRET_KEY', 'dev-key-CHANGE-IN-PRODUCTION')

# Parse ALLOWED_HOSTS from env (comma-separated)
ALLOWED_HOSTS = os.getenv('ALLOWED_HOSTS', '*').split(',')

# --- 1. APPS ---
INSTALLED_APPS = [
    #Local Apps
    'core',
    'performance',
]

# The engine stores nothing; summaries are recomputed from the records
# handed in by the host application.
DATABASES = {}

REDIS_URL = os.getenv('REDIS_URL')

# --- 2. CACHE ---
if REDIS_URL:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'LOCATION': REDIS_URL,
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'performance-summaries',
        }
    }

# --- 3. CELERY ---
CELERY_BROKER_URL = REDIS_URL or 'redis://redis:6379/0'
CELERY_RESULT_BACKEND = REDIS_URL or 'redis://redis:6379/0'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = 'UTC'
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 30 * 60  # 30 minutes
CELERY_TASK_ALWAYS_EAGER = os.getenv('CELERY_TASK_ALWAYS_EAGER', '0') == '1'

# --- 4. PERFORMANCE ENGINE ---
# See performance/config.py for every PERFORMANCE_* setting and its default.
# Empty or 'none' leaves unmarked sessions out of the attendance denominator
if os.getenv('PERFORMANCE_UNMARKED_SESSION_STATUS') is not None:
    _unmarked = os.getenv('PERFORMANCE_UNMARKED_SESSION_STATUS').strip()
    PERFORMANCE_UNMARKED_SESSION_STATUS = None if _unmarked.lower() in ('', 'none') else _unmarked
if os.getenv('PERFORMANCE_TREND_DEADBAND'):
    PERFORMANCE_TREND_DEADBAND = os.getenv('PERFORMANCE_TREND_DEADBAND')

# --- 5. LOGGING ---
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': os.getenv('DJANGO_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'performance': {
            'handlers': ['console'],
            'level': os.getenv('PERFORMANCE_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'celery': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}

# --- 6. INTERNATIONALIZATION ---
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True
