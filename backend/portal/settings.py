"""Django settings for the subscription billing portal core."""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# load .env from the repository root
load_dotenv(BASE_DIR.parent / ".env")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "insecure-dev-key-change-me")
DEBUG = _env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [host for host in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost").split(",") if host]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "billing.apps.BillingConfig",
]

MIDDLEWARE = []

ROOT_URLCONF = None

DATABASES = {
    "default": {
        "ENGINE": os.getenv("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.getenv("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.getenv("DB_USER", ""),
        "PASSWORD": os.getenv("DB_PASSWORD", ""),
        "HOST": os.getenv("DB_HOST", ""),
        "PORT": os.getenv("DB_PORT", ""),
        "ATOMIC_REQUESTS": False,
    }
}

_REDIS_URL = os.getenv("REDIS_URL", "")
if _REDIS_URL:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.redis.RedisCache",
            "LOCATION": _REDIS_URL,
        }
    }
else:
    CACHES = {
        "default": {
            "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
            "LOCATION": "billing-core",
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = False
USE_TZ = True

# Celery
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", _REDIS_URL or "memory://")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "") or None
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", False)

# Payment gateway (Toss Payments billing-key API)
TOSS_API_URL = os.getenv("TOSS_API_URL", "https://api.tosspayments.com/v1")
TOSS_SECRET_KEY = os.getenv("TOSS_SECRET_KEY", "")
BILLING_GATEWAY_TIMEOUT_SECONDS = float(os.getenv("BILLING_GATEWAY_TIMEOUT_SECONDS", "10"))

# Billing core
BILLING_TIME_ZONE = os.getenv("BILLING_TIME_ZONE", "Asia/Seoul")
BILLING_PLAN_PRICES = {
    "trial": 0,
    "basic": int(os.getenv("BILLING_PRICE_BASIC", "39000")),
    "business": int(os.getenv("BILLING_PRICE_BUSINESS", "99000")),
    "enterprise": int(os.getenv("BILLING_PRICE_ENTERPRISE", "0")),
}
BILLING_TRIAL_DAYS = int(os.getenv("BILLING_TRIAL_DAYS", "30"))
BILLING_MAX_CARDS = int(os.getenv("BILLING_MAX_CARDS", "5"))
BILLING_ORDER_NAME_PREFIX = os.getenv("BILLING_ORDER_NAME_PREFIX", "Portal")
BILLING_STORE_CLASS = os.getenv("BILLING_STORE_CLASS", "billing.store.django_store.DjangoBillingStore")
BILLING_TENANT_LOCK_TIMEOUT_SECONDS = int(os.getenv("BILLING_TENANT_LOCK_TIMEOUT_SECONDS", "30"))
BILLING_TENANT_LOCK_WAIT_SECONDS = float(os.getenv("BILLING_TENANT_LOCK_WAIT_SECONDS", "5"))

# Notification webhook (fire-and-forget)
BILLING_NOTIFICATIONS_ENABLED = _env_bool("BILLING_NOTIFICATIONS_ENABLED", False)
BILLING_NOTIFICATION_WEBHOOK_URL = os.getenv("BILLING_NOTIFICATION_WEBHOOK_URL", "")
BILLING_NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("BILLING_NOTIFICATION_TIMEOUT_SECONDS", "5"))

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "billing": {
            "handlers": ["console"],
            "level": os.getenv("BILLING_LOG_LEVEL", "INFO"),
            "propagate": False,
        },
    },
    "root": {"handlers": ["console"], "level": os.getenv("LOG_LEVEL", "WARNING")},
}
