"""Django settings for riden_project project."""

import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

from kombu import Exchange, Queue

# Build paths inside the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file at project root
load_dotenv(BASE_DIR / '.env')

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'dev-secret-key-change-me')

# SECURITY WARNING: don’t run with debug turned on in production!
DEBUG = os.getenv('DJANGO_DEBUG', 'True').lower() == 'true'

ALLOWED_HOSTS = []

# -------------------------
# APPLICATION DEFINITION
# -------------------------

INSTALLED_APPS = [
    'django.contrib.contenttypes',

    # Third-party apps
    'django_celery_beat',        # repeatable jobs stored in the database

    # Local apps
    'payouts',
]

# -------------------------
# DATABASE
# -------------------------

if os.getenv('DB_NAME'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.getenv('DB_NAME'),
            'USER': os.getenv('DB_USER'),
            'PASSWORD': os.getenv('DB_PASSWORD'),
            'HOST': os.getenv('DB_HOST', 'localhost'),
            'PORT': os.getenv('DB_PORT', '5432'),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
            # single writer; wait for sibling transfer threads instead of failing
            'OPTIONS': {'timeout': 20},
        }
    }

# -------------------------
# INTERNATIONALIZATION
# -------------------------

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# -------------------------
# STRIPE
# -------------------------

STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY', '')
STRIPE_TIMEOUT_SECONDS = int(os.getenv('STRIPE_TIMEOUT_SECONDS', '30'))

# -------------------------
# REDIS / CELERY
# -------------------------

REDIS_URL = os.getenv('REDIS_URL', 'redis://127.0.0.1:6379/0')

PAYOUT_QUEUE_PREFIX = os.getenv('PAYOUT_QUEUE_PREFIX', 'riden')
PAYOUT_TRIGGER_QUEUE = f"{PAYOUT_QUEUE_PREFIX}.weekly-payout-queue"
PAYOUT_TRANSFER_QUEUE = f"{PAYOUT_QUEUE_PREFIX}.driver-transfer-queue"

CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND') or None
CELERY_TIMEZONE = 'UTC'
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']

# At-least-once delivery: ack after the task body returns, redeliver if the worker dies
CELERY_TASK_ACKS_LATE = True
CELERY_TASK_REJECT_ON_WORKER_LOST = True
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_WORKER_HIJACK_ROOT_LOGGER = False

CELERY_TASK_QUEUES = (
    Queue(PAYOUT_TRIGGER_QUEUE, Exchange(PAYOUT_TRIGGER_QUEUE), routing_key=PAYOUT_TRIGGER_QUEUE),
    Queue(PAYOUT_TRANSFER_QUEUE, Exchange(PAYOUT_TRANSFER_QUEUE), routing_key=PAYOUT_TRANSFER_QUEUE),
)
CELERY_TASK_ROUTES = {
    'payouts.tasks.trigger_weekly_payout': {'queue': PAYOUT_TRIGGER_QUEUE},
    'payouts.tasks.process_driver_batch': {'queue': PAYOUT_TRANSFER_QUEUE},
}
CELERY_BEAT_SCHEDULER = 'django_celery_beat.schedulers:DatabaseScheduler'

# -------------------------
# WEEKLY PAYOUTS
# -------------------------

PAYOUT_MIN_TRANSFER_AMOUNT = Decimal(os.getenv('PAYOUT_MIN_TRANSFER_AMOUNT', '10.00'))
PAYOUT_BATCH_SIZE = int(os.getenv('PAYOUT_BATCH_SIZE', '200'))
PAYOUT_WORKER_CONCURRENCY = int(os.getenv('PAYOUT_WORKER_CONCURRENCY', '6'))
PAYOUT_CURRENCY = os.getenv('PAYOUT_CURRENCY', 'CAD')

# Sunday 23:59:59 UTC (leading seconds field is dropped, Celery crontabs are per-minute)
PAYOUT_SCHEDULER_CRON = os.getenv('PAYOUT_SCHEDULER_CRON', '59 59 23 * * 0')
PAYOUT_SCHEDULER_TZ = os.getenv('PAYOUT_SCHEDULER_TZ', 'UTC')

PAYOUT_RETRY_ATTEMPTS = int(os.getenv('PAYOUT_RETRY_ATTEMPTS', '4'))
PAYOUT_RETRY_BASE_DELAY = float(os.getenv('PAYOUT_RETRY_BASE_DELAY', '2.0'))
PAYOUT_RETRY_MAX_DELAY = float(os.getenv('PAYOUT_RETRY_MAX_DELAY', '60'))

PAYOUT_FANOUT_LOCK_TTL = int(os.getenv('PAYOUT_FANOUT_LOCK_TTL', '900'))

# A trigger that runs up to this late still settles the week that just ended
PAYOUT_WEEK_GRACE_MINUTES = int(os.getenv('PAYOUT_WEEK_GRACE_MINUTES', '60'))

# -------------------------
# LOGGING
# -------------------------

LOG_LEVEL = os.getenv('LOG_LEVEL', 'DEBUG' if DEBUG else 'INFO').upper()

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'timestamped': {
            'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'timestamped',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': LOG_LEVEL,
    },
    'loggers': {
        'celery': {'level': 'INFO'},
        'stripe': {'level': 'WARNING'},
    },
}
