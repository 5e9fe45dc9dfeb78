"""Django settings for the conversational booking backend."""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

from celery.schedules import crontab

BASE_DIR = Path(__file__).resolve().parent.parent


def _env(name: str, default: str = "") -> str:
    return os.environ.get(name, default).strip()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


SECRET_KEY = _env("DJANGO_SECRET_KEY", "dev-insecure-secret-key")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [host for host in _env("DJANGO_ALLOWED_HOSTS", "*").split(",") if host]

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "rest_framework",
    "apps.common",
    "apps.audit",
    "apps.doctors",
    "apps.patients",
    "apps.conversations",
    "apps.appointments",
    "apps.payments",
    "apps.channels",
    "apps.webhooks",
    "apps.workers",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

ROOT_URLCONF = "config.urls"

if _env("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": _env("POSTGRES_DB"),
            "USER": _env("POSTGRES_USER", "postgres"),
            "PASSWORD": _env("POSTGRES_PASSWORD"),
            "HOST": _env("POSTGRES_HOST", "localhost"),
            "PORT": _env("POSTGRES_PORT", "5432"),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

REDIS_URL = _env("REDIS_URL")
if REDIS_URL:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.redis.RedisCache",
            "LOCATION": REDIS_URL,
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "booking-default",
        }
    }

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_TZ = True
USE_I18N = False

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework_simplejwt.authentication.JWTAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAdminUser",
    ],
    "EXCEPTION_HANDLER": "apps.common.api.exception_handler",
}

SIMPLE_JWT = {
    "ACCESS_TOKEN_LIFETIME": timedelta(minutes=30),
    "REFRESH_TOKEN_LIFETIME": timedelta(days=1),
}

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "plain"},
    },
    "root": {"handlers": ["console"], "level": _env("LOG_LEVEL", "INFO")},
}

# Encryption for dead letters and stored channel tokens.
ENCRYPTION_KEY = _env("ENCRYPTION_KEY", "dev-encryption-key")

# Instagram
INSTAGRAM_APP_SECRET = _env("INSTAGRAM_APP_SECRET")
INSTAGRAM_VERIFY_TOKEN = _env("INSTAGRAM_VERIFY_TOKEN")
INSTAGRAM_GRAPH_BASE = _env("INSTAGRAM_GRAPH_BASE", "https://graph.instagram.com/v18.0")
INSTAGRAM_TIMEOUT_SECONDS = _env_int("INSTAGRAM_TIMEOUT_SECONDS", 10)

# Payments
RAZORPAY_KEY_ID = _env("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = _env("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = _env("RAZORPAY_WEBHOOK_SECRET")
RAZORPAY_API_BASE = _env("RAZORPAY_API_BASE", "https://api.razorpay.com")
PAYPAL_CLIENT_ID = _env("PAYPAL_CLIENT_ID")
PAYPAL_CLIENT_SECRET = _env("PAYPAL_CLIENT_SECRET")
PAYPAL_WEBHOOK_ID = _env("PAYPAL_WEBHOOK_ID")
PAYPAL_MODE = _env("PAYPAL_MODE", "sandbox")
PAYMENT_TIMEOUT_SECONDS = _env_int("PAYMENT_TIMEOUT_SECONDS", 10)
PAYMENT_LINK_EXPIRY_MINUTES = _env_int("PAYMENT_LINK_EXPIRY_MINUTES", 1440)
DEFAULT_DOCTOR_COUNTRY = _env("DEFAULT_DOCTOR_COUNTRY", "IN")
APPOINTMENT_FEE_MINOR = _env_int("APPOINTMENT_FEE_MINOR", 50000)
APPOINTMENT_FEE_CURRENCY = _env("APPOINTMENT_FEE_CURRENCY", "INR")

# Intent classifier
OPENAI_API_KEY = _env("OPENAI_API_KEY")
OPENAI_API_BASE = _env("OPENAI_API_BASE", "https://api.openai.com")
AI_MODEL = _env("AI_MODEL", "gpt-5.2")
AI_MAX_TOKENS = _env_int("AI_MAX_TOKENS", 256)
AI_TIMEOUT_SECONDS = _env_int("AI_TIMEOUT_SECONDS", 15)
INTENT_CACHE_MAX_ENTRIES = _env_int("INTENT_CACHE_MAX_ENTRIES", 500)
INTENT_CACHE_TTL_SECONDS = _env_int("INTENT_CACHE_TTL_SECONDS", 300)

# Dialog
SLOT_INTERVAL_MINUTES = _env_int("SLOT_INTERVAL_MINUTES", 30)
PRE_CONSENT_TTL_SECONDS = _env_int("PRE_CONSENT_TTL_SECONDS", 1800)

# Webhook jobs
WEBHOOK_JOB_MAX_ATTEMPTS = _env_int("WEBHOOK_JOB_MAX_ATTEMPTS", 3)
WEBHOOK_JOB_INITIAL_DELAY = _env_int("WEBHOOK_JOB_INITIAL_DELAY", 60)
WEBHOOK_JOB_MAX_DELAY = _env_int("WEBHOOK_JOB_MAX_DELAY", 3600)
WEBHOOK_WORKER_CONCURRENCY = max(1, min(_env_int("WEBHOOK_WORKER_CONCURRENCY", 5), 20))
DEAD_LETTER_RETENTION_DAYS = _env_int("DEAD_LETTER_RETENTION_DAYS", 90)

# Email
EMAIL_BACKEND = _env("EMAIL_BACKEND", "django.core.mail.backends.console.EmailBackend")
DEFAULT_FROM_EMAIL = _env("DEFAULT_FROM_EMAIL", "no-reply@example.com")
DEFAULT_DOCTOR_EMAIL = _env("DEFAULT_DOCTOR_EMAIL")

# Celery
CELERY_BROKER_URL = _env("CELERY_BROKER_URL", REDIS_URL or "redis://localhost:6379/0")
CELERY_TASK_SERIALIZER = "json"
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_ACKS_LATE = True
CELERY_WORKER_PREFETCH_MULTIPLIER = 1
CELERY_WORKER_CONCURRENCY = WEBHOOK_WORKER_CONCURRENCY
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)
CELERY_TASK_PUBLISH_RETRY_POLICY = {
    "max_retries": 2,
    "interval_start": 0,
    "interval_step": 0.5,
    "interval_max": 1,
}
CELERY_BEAT_SCHEDULE = {
    "purge-expired-dead-letters": {
        "task": "apps.workers.tasks.purge_expired_dead_letters",
        "schedule": crontab(hour=3, minute=0),
    },
}
