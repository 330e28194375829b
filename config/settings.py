import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'insecure-dev-key')
DEBUG = os.environ.get('DJANGO_DEBUG', '0') == '1'
ALLOWED_HOSTS = os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost').split(',')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'catalog_sync',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('DATABASE_PATH', BASE_DIR / 'db.sqlite3'),
    }
}

CACHES = {
    'default': {
        'BACKEND': os.environ.get('CACHE_BACKEND', 'django.core.cache.backends.locmem.LocMemCache'),
        'LOCATION': os.environ.get('CACHE_LOCATION', 'catalog-sync'),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'
USE_TZ = True
TIME_ZONE = 'UTC'

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {'format': '%(asctime)s %(levelname)s %(name)s: %(message)s'},
    },
    'handlers': {
        'console': {'class': 'logging.StreamHandler', 'formatter': 'simple'},
    },
    'loggers': {
        'catalog_sync': {
            'handlers': ['console'],
            'level': os.environ.get('CATALOG_SYNC_LOG_LEVEL', 'INFO'),
        },
    },
}

# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_TASK_ACKS_LATE = True


def _optional_int(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return int(value) if value.strip() else None


# Supplier API
CATALOG_API_BASE_URL = os.environ.get('CATALOG_API_BASE_URL', 'https://shopcommerce.mps.com.co:7965/')
CATALOG_API_USERNAME = os.environ.get('CATALOG_API_USERNAME', '')
CATALOG_API_PASSWORD = os.environ.get('CATALOG_API_PASSWORD', '')
CATALOG_API_TIMEOUT = int(os.environ.get('CATALOG_API_TIMEOUT', '840'))
CATALOG_API_RATE_LIMIT = int(os.environ.get('CATALOG_API_RATE_LIMIT', '5'))

# Sync engine
CATALOG_SYNC_BATCH_SIZE = int(os.environ.get('CATALOG_SYNC_BATCH_SIZE', '500'))
CATALOG_SYNC_MAX_ATTEMPTS = int(os.environ.get('CATALOG_SYNC_MAX_ATTEMPTS', '3'))
CATALOG_SYNC_BATCH_TIME_BUDGET = _optional_int('CATALOG_SYNC_BATCH_TIME_BUDGET', 60)
CATALOG_SYNC_BATCH_MEMORY_LIMIT_MB = _optional_int('CATALOG_SYNC_BATCH_MEMORY_LIMIT_MB', 256)
CATALOG_SYNC_IMMEDIATE_TIME_BUDGET = _optional_int('CATALOG_SYNC_IMMEDIATE_TIME_BUDGET', None)
CATALOG_SYNC_IMMEDIATE_MEMORY_LIMIT_MB = _optional_int('CATALOG_SYNC_IMMEDIATE_MEMORY_LIMIT_MB', 512)
CATALOG_SYNC_PROGRESS_TTL = int(os.environ.get('CATALOG_SYNC_PROGRESS_TTL', '3600'))
CATALOG_SYNC_RETENTION_DAYS = int(os.environ.get('CATALOG_SYNC_RETENTION_DAYS', '7'))
CATALOG_SYNC_STALE_AFTER = int(os.environ.get('CATALOG_SYNC_STALE_AFTER', '900'))
CATALOG_SYNC_PROCESS_LIMIT = int(os.environ.get('CATALOG_SYNC_PROCESS_LIMIT', '3'))
CATALOG_SYNC_INTERVAL_MINUTES = int(os.environ.get('CATALOG_SYNC_INTERVAL_MINUTES', '60'))
CATALOG_SYNC_ACTIVITY_LOG_MAX_ENTRIES = int(os.environ.get('CATALOG_SYNC_ACTIVITY_LOG_MAX_ENTRIES', '1000'))

# Used when no Brand rows exist; brand name -> category codes, empty for all.
CATALOG_SYNC_DEFAULT_BRANDS = {
    'HP INC': [],
    'DELL': [],
    'LENOVO': [],
    'APPLE': [1, 7],
    'ASUS': [7],
    'BOSE': [],
    'EPSON': [],
    'JBL': [],
}
