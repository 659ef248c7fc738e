"""
Django settings for clipdrop project.

Every CLIPDROP_* value can be overridden from the environment.
"""

import os
import sys
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


TESTING = 'test' in sys.argv[1:2] or 'pytest' in sys.modules

SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'django-insecure-clipdrop-development-key')

DEBUG = env_bool('DJANGO_DEBUG', True)

ALLOWED_HOSTS = [h for h in os.getenv('DJANGO_ALLOWED_HOSTS', '*').split(',') if h]

INSTALLED_APPS = [
    'huey.contrib.djhuey',
    'downloads.apps.DownloadsConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
]

ROOT_URLCONF = 'clipdrop.urls'

WSGI_APPLICATION = 'clipdrop.wsgi.application'

# Jobs are kept in memory, nothing is persisted in a database
DATABASES = {}

# POST endpoints have no trailing slash
APPEND_SLASH = False

USE_TZ = True
TIME_ZONE = 'UTC'

# Metadata from describe calls, never expired
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
    },
    'metadata': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'clipdrop-metadata',
        'TIMEOUT': None,
        'OPTIONS': {'MAX_ENTRIES': 100000},
    },
}

# Download settings
CLIPDROP_WORK_DIR = os.getenv('CLIPDROP_WORK_DIR', str(BASE_DIR / 'temp'))

# argv used to spawn yt-dlp for fetches
CLIPDROP_YTDLP_COMMAND = os.getenv('CLIPDROP_YTDLP_COMMAND') or [sys.executable, '-m', 'yt_dlp']

# Extra arguments appended to every yt-dlp fetch, e.g. "--cookies /path/cookies.txt"
CLIPDROP_YTDLP_EXTRA_ARGS = os.getenv('CLIPDROP_YTDLP_EXTRA_ARGS', '')

CLIPDROP_YTDLP_PROXY = os.getenv('CLIPDROP_YTDLP_PROXY', '')

# Seconds between two progress events on an open stream
CLIPDROP_PROGRESS_INTERVAL = float(os.getenv('CLIPDROP_PROGRESS_INTERVAL', '1'))

# Retention of finished jobs
CLIPDROP_TERMINAL_RETENTION_SECONDS = int(os.getenv('CLIPDROP_TERMINAL_RETENTION_SECONDS', '1800'))
CLIPDROP_RETRIEVED_RETENTION_SECONDS = int(os.getenv('CLIPDROP_RETRIEVED_RETENTION_SECONDS', '300'))

# Sweep of the working directory
CLIPDROP_SWEEP_MAX_AGE_SECONDS = int(os.getenv('CLIPDROP_SWEEP_MAX_AGE_SECONDS', '3600'))
CLIPDROP_SWEEP_INTERVAL_MINUTES = int(os.getenv('CLIPDROP_SWEEP_INTERVAL_MINUTES', '10'))

# Archive of completed files: '' (disabled), 's3' or 'kv'
CLIPDROP_ARCHIVE_BACKEND = os.getenv('CLIPDROP_ARCHIVE_BACKEND', '')
CLIPDROP_S3_BUCKET = os.getenv('CLIPDROP_S3_BUCKET', '')
CLIPDROP_S3_PREFIX = os.getenv('CLIPDROP_S3_PREFIX', 'downloads')
CLIPDROP_S3_REGION = os.getenv('CLIPDROP_S3_REGION') or None
CLIPDROP_S3_ENDPOINT_URL = os.getenv('CLIPDROP_S3_ENDPOINT_URL', '')
CLIPDROP_KV_URL = os.getenv('CLIPDROP_KV_URL') or os.getenv('REPLIT_DB_URL', '')

# In-process worker
CLIPDROP_START_WORKER = env_bool('CLIPDROP_START_WORKER', not TESTING)
CLIPDROP_WORKER_THREADS = int(os.getenv('CLIPDROP_WORKER_THREADS', '4'))

HUEY = {
    'huey_class': 'huey.MemoryHuey',
    'name': 'clipdrop',
    'results': False,
    'immediate': env_bool('CLIPDROP_HUEY_IMMEDIATE', TESTING),
    'utc': True,
}

CLIPDROP_LOG_LEVEL = os.getenv('CLIPDROP_LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '[{asctime}] {levelname} {name}: {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'downloads': {
            'handlers': ['console'],
            'level': CLIPDROP_LOG_LEVEL,
            'propagate': False,
        },
        'huey': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
    },
}
