from pathlib import Path

import environ

BASE_DIR = Path(__file__).resolve().parent.parent

env = environ.Env(
    DEBUG=(bool, False),
    FISCAL_SUBMISSION_ENABLED=(bool, True),
)
environ.Env.read_env(BASE_DIR / ".env")


SECRET_KEY = env("SECRET_KEY", default="django-insecure-change-me")

DEBUG = env("DEBUG")
ALLOWED_HOSTS: list[str] = []

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "tenancy",
    "customers.apps.CustomersConfig",
    "finance.fiscal.apps.FinanceFiscalConfig",
]

MIDDLEWARE: list[str] = []

DATABASE_ENGINE = env("DATABASE_ENGINE", default="django.db.backends.sqlite3").strip()

if DATABASE_ENGINE == "django.db.backends.sqlite3":
    DATABASES = {
        "default": {
            "ENGINE": DATABASE_ENGINE,
            "NAME": env("SQLITE_NAME", default=str(BASE_DIR / "db.sqlite3")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": DATABASE_ENGINE,
            "NAME": env("DATABASE_NAME", default="cpe_db"),
            "USER": env("DATABASE_USER", default="cpe_user"),
            "PASSWORD": env("DATABASE_PASSWORD", default=""),
            "HOST": env("DATABASE_HOST", default="127.0.0.1"),
            "PORT": env("DATABASE_PORT", default="5432"),
            "CONN_MAX_AGE": env.int("DATABASE_CONN_MAX_AGE", default=60),
            "OPTIONS": {"sslmode": env("DATABASE_SSLMODE", default="disable")},
        }
    }

LANGUAGE_CODE = "es-pe"
TIME_ZONE = "America/Lima"
USE_I18N = True
USE_TZ = True

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "mask_tax_ids": {"()": "tenancy.logging.MaskTaxIdFilter"},
    },
    "formatters": {
        "plain": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "plain",
            "filters": ["mask_tax_ids"],
        },
    },
    "root": {
        "handlers": ["console"],
        "level": env("LOG_LEVEL", default="INFO"),
    },
}

# Fiscal submission pipeline.
FISCAL_SUBMISSION_ENABLED = env("FISCAL_SUBMISSION_ENABLED")
FISCAL_ADAPTER_BACKEND = env("FISCAL_ADAPTER_BACKEND", default="soap").strip().lower()
FISCAL_ENDPOINTS = {
    "SANDBOX": env(
        "FISCAL_SANDBOX_BILL_SERVICE_URL",
        default="https://e-beta.sunat.gob.pe/ol-ti-itcpfegem-beta/billService",
    ),
    "PRODUCTION": env(
        "FISCAL_PRODUCTION_BILL_SERVICE_URL",
        default="https://e-factura.sunat.gob.pe/ol-ti-itcpfegem/billService",
    ),
}
FISCAL_SOAP_TIMEOUT_SECONDS = env.float("FISCAL_SOAP_TIMEOUT_SECONDS", default=60.0)
FISCAL_SOAP_CONNECT_TIMEOUT_SECONDS = env.float("FISCAL_SOAP_CONNECT_TIMEOUT_SECONDS", default=30.0)

# Environment credentials take precedence over the per-tenant configuration.
FISCAL_SOL_USER = env("FISCAL_SOL_USER", default="")
FISCAL_SOL_PASSWORD = env("FISCAL_SOL_PASSWORD", default="")
FISCAL_CREDENTIALS_CACHE_TTL_SECONDS = env.float("FISCAL_CREDENTIALS_CACHE_TTL_SECONDS", default=300.0)
FISCAL_TOKEN_ENCRYPTION_KEY = env("FISCAL_TOKEN_ENCRYPTION_KEY", default="")

FISCAL_RETRY_BACKOFF_SECONDS = [
    int(value)
    for value in env.list("FISCAL_RETRY_BACKOFF_SECONDS", default=["60", "300", "900", "3600", "7200"])
]
FISCAL_RETRY_MAX_ATTEMPTS = env.int("FISCAL_RETRY_MAX_ATTEMPTS", default=5)
FISCAL_JOB_LEASE_SECONDS = env.int("FISCAL_JOB_LEASE_SECONDS", default=300)
FISCAL_TICKET_FIRST_POLL_DELAY_SECONDS = env.int("FISCAL_TICKET_FIRST_POLL_DELAY_SECONDS", default=60)
FISCAL_TICKET_PENDING_DELAY_SECONDS = env.int("FISCAL_TICKET_PENDING_DELAY_SECONDS", default=120)

FISCAL_WORKER_POLL_INTERVAL_SECONDS = env.float("FISCAL_WORKER_POLL_INTERVAL_SECONDS", default=10.0)
FISCAL_WORKER_MAX_CONCURRENCY = env.int("FISCAL_WORKER_MAX_CONCURRENCY", default=3)
FISCAL_WORKER_SHUTDOWN_GRACE_SECONDS = env.float("FISCAL_WORKER_SHUTDOWN_GRACE_SECONDS", default=30.0)
FISCAL_WORKER_HEALTH_INTERVAL_SECONDS = env.float("FISCAL_WORKER_HEALTH_INTERVAL_SECONDS", default=60.0)

FISCAL_AUDIT_SINK = env("FISCAL_AUDIT_SINK", default="finance.fiscal.audit.LedgerAuditSink")
