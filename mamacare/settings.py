"""
Django settings for the MamaCare client session core.

The project hosts the mobile client's authentication/session machinery:
the credential store, the API gateway and the session manager.  Values
are read from a `.env` file during development so that the client can
be pointed at another backend without modifying source code.  In
production you should set environment variables instead.
"""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv  # type: ignore

# -----------------------------------------------------------------------------
# Base & .env loading
# -----------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent.parent
env_path = BASE_DIR / ".env"
if env_path.exists():
    load_dotenv(dotenv_path=env_path)

# -----------------------------------------------------------------------------
# Core flags & security baseline
# -----------------------------------------------------------------------------
ENV = os.getenv("ENV", "dev")

DEBUG = os.getenv("DEBUG", "0").lower() in {"1", "true", "yes"}

ALLOWED_HOSTS: list[str] = [
    h.strip() for h in os.getenv("ALLOWED_HOSTS", "127.0.0.1,localhost").split(",") if h.strip()
]

# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv("SECRET_KEY") or "replace-me-with-a-secure-secret-key"

if ENV == "prod":
    if DEBUG:
        raise RuntimeError("DEBUG must be 0 in prod")
    if SECRET_KEY == "replace-me-with-a-secure-secret-key":
        raise RuntimeError("SECRET_KEY must be set securely in prod")

# -----------------------------------------------------------------------------
# Applications
# -----------------------------------------------------------------------------
INSTALLED_APPS = [
    # Third-party apps
    "rest_framework",
    # Local apps
    "core",
]

# -----------------------------------------------------------------------------
# Database configuration
# Priority:
#   1) DATABASE_URL (parsed by dj_database_url)
#   2) SQLite fallback
# The database only backs the on-device credential store (core.StoredItem).
# -----------------------------------------------------------------------------
DB_CONN_MAX_AGE = int(os.getenv("DB_CONN_MAX_AGE", "0"))

database_url = os.getenv("DATABASE_URL", "").strip()
if database_url:
    import dj_database_url  # type: ignore

    DATABASES = {
        "default": dj_database_url.parse(
            database_url,
            conn_max_age=DB_CONN_MAX_AGE,
        )
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": (BASE_DIR / "mamacare.sqlite3").as_posix(),
        }
    }

# -----------------------------------------------------------------------------
# Internationalization
# -----------------------------------------------------------------------------
LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# -----------------------------------------------------------------------------
# DRF (serializers only; no views are served)
# -----------------------------------------------------------------------------
REST_FRAMEWORK = {
    "UNAUTHENTICATED_USER": None,
    "DATETIME_FORMAT": "%Y-%m-%d %H:%M:%S",
}

# -----------------------------------------------------------------------------
# MamaCare backend API
# -----------------------------------------------------------------------------
MAMACARE_API = {
    "BASE_URL": os.getenv("MAMACARE_API_BASE_URL", "http://localhost:5000/api").rstrip("/"),
    "TIMEOUT": int(os.getenv("MAMACARE_API_TIMEOUT", "30")),
    "HEALTH_TIMEOUT": int(os.getenv("MAMACARE_API_HEALTH_TIMEOUT", "5")),
    # Tried in order when the primary base URL is unreachable
    "FALLBACK_URLS": [
        u.strip().rstrip("/")
        for u in os.getenv(
            "MAMACARE_API_FALLBACK_URLS",
            "http://10.0.2.2:5000/api,http://127.0.0.1:5000/api" if ENV == "dev" else "",
        ).split(",")
        if u.strip()
    ],
    # 401/403 on these endpoints is credential feedback, not a dead session
    "AUTH_HOOK_EXEMPT_PATHS": ["/auth/login", "/auth/register"],
}

# -----------------------------------------------------------------------------
# Session / credential store
# -----------------------------------------------------------------------------
MAMACARE_SESSION = {
    "STORE_BACKEND": os.getenv("MAMACARE_STORE_BACKEND", "core.storage.DatabaseCredentialStore"),
    # Infrastructure keys a complete wipe never touches
    "PRESERVED_KEY_PREFIXES": [
        "ReactNativeAsyncStorageDevtools",
        "RCTAsyncLocalStorage",
        "MMKV",
    ],
    "PRESERVED_KEYS": ["expo-constants@installationId"],
    # Removed on every complete wipe, even when key enumeration fails
    "LEGACY_KEYS": [
        "cached_user",
        "cached_medical_records",
        "registered_users",
        "user_preferences",
        "app_settings",
        "auth_token_data",
    ],
    "REFRESH_LEEWAY_SECONDS": int(os.getenv("MAMACARE_REFRESH_LEEWAY", "300")),
}

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG" if DEBUG else "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s [%(filename)s:%(lineno)d]",
        },
        "structured": {
            "()": "core.log_formatters.StructuredFormatter",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose" if DEBUG else "structured",
        },
    },
    "loggers": {
        "core": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": True},
    },
}
