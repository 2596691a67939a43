import json
import os

# PostgreSQL settings
POSTGRES_USER = os.getenv("POSTGRES_USER", "postgres")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
POSTGRES_DB = os.getenv("POSTGRES_DB", "attendance")
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "db")
POSTGRES_PORT = os.getenv("POSTGRES_PORT", "5432")

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}",
)

# Environment
ENVIRONMENT = os.getenv("ENVIRONMENT", "production").lower()
DEBUG = ENVIRONMENT in ["development", "dev"]

# Database retry settings
DB_RETRY_ATTEMPTS = int(os.getenv("DB_RETRY_ATTEMPTS", "3"))
DB_RETRY_DELAY = float(os.getenv("DB_RETRY_DELAY", "1.0"))
DB_RETRY_BACKOFF_FACTOR = float(os.getenv("DB_RETRY_BACKOFF_FACTOR", "2.0"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json" if not DEBUG else "text")

# Application
APP_NAME = os.getenv("APP_NAME", "School Attendance API")
APP_VERSION = os.getenv("APP_VERSION", "1.0.0")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
SLOW_REQUEST_THRESHOLD_SECONDS = float(os.getenv("SLOW_REQUEST_THRESHOLD_SECONDS", "5"))

# Tokens issued by the identity provider
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Attendance policy
MIN_ATTENDANCE_PERCENTAGE = float(os.getenv("MIN_ATTENDANCE_PERCENTAGE", "75"))
MAX_PERIOD_NUMBER = int(os.getenv("MAX_PERIOD_NUMBER", "10"))
MAX_LATE_MINUTES = int(os.getenv("MAX_LATE_MINUTES", "480"))

# Bulk and long-running operations
BULK_MAX_ITEMS = int(os.getenv("BULK_MAX_ITEMS", "1000"))
BULK_CHUNK_SIZE = int(os.getenv("BULK_CHUNK_SIZE", "100"))
BULK_OPERATION_TIMEOUT_SECONDS = float(
    os.getenv("BULK_OPERATION_TIMEOUT_SECONDS", "60")
)

# Summaries
SUMMARY_CACHE_TTL_SECONDS = float(os.getenv("SUMMARY_CACHE_TTL_SECONDS", "300"))
SUMMARY_CACHE_MAX_ENTRIES = int(os.getenv("SUMMARY_CACHE_MAX_ENTRIES", "10000"))
AUTO_RECALCULATE_SUMMARIES = (
    os.getenv("AUTO_RECALCULATE_SUMMARIES", "true").lower() == "true"
)
SUMMARY_REFRESH_INTERVAL_SECONDS = float(
    os.getenv("SUMMARY_REFRESH_INTERVAL_SECONDS", "0")
)

# Authorization gate
AUTHZ_MODE = os.getenv("AUTHZ_MODE", "static").lower()
AUTHZ_SERVICE_URL = os.getenv("AUTHZ_SERVICE_URL")
AUTHZ_TIMEOUT_SECONDS = float(os.getenv("AUTHZ_TIMEOUT_SECONDS", "5"))
AUTHZ_GRANTS = json.loads(
    os.getenv(
        "AUTHZ_GRANTS",
        '{"superadmin": ["*"], "admin": ["*"], "principal": ["*"], '
        '"teacher": ["attendance.bulk_create", "attendance.excuse"]}',
    )
)

# Alerts
ALERT_CHANNEL = os.getenv("ALERT_CHANNEL", "log").lower()
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
ALERT_TELEGRAM_CHAT_ID = os.getenv("ALERT_TELEGRAM_CHAT_ID")


def validate_config():
    """Validate critical settings at startup"""
    errors = []

    if not JWT_SECRET_KEY:
        errors.append("JWT_SECRET_KEY is required")

    if DB_RETRY_ATTEMPTS < 1:
        errors.append("DB_RETRY_ATTEMPTS must be >= 1")

    if DB_RETRY_DELAY < 0:
        errors.append("DB_RETRY_DELAY must be >= 0")

    if not 0 <= MIN_ATTENDANCE_PERCENTAGE <= 100:
        errors.append("MIN_ATTENDANCE_PERCENTAGE must be between 0 and 100")

    if BULK_CHUNK_SIZE < 1 or BULK_MAX_ITEMS < 1:
        errors.append("BULK_CHUNK_SIZE and BULK_MAX_ITEMS must be >= 1")

    if AUTHZ_MODE not in ("static", "http"):
        errors.append("AUTHZ_MODE must be 'static' or 'http'")

    if AUTHZ_MODE == "http" and not AUTHZ_SERVICE_URL:
        errors.append("AUTHZ_SERVICE_URL is required when AUTHZ_MODE=http")

    if ALERT_CHANNEL not in ("log", "telegram"):
        errors.append("ALERT_CHANNEL must be 'log' or 'telegram'")

    if ALERT_CHANNEL == "telegram" and not (
        TELEGRAM_BOT_TOKEN and ALERT_TELEGRAM_CHAT_ID
    ):
        errors.append(
            "TELEGRAM_BOT_TOKEN and ALERT_TELEGRAM_CHAT_ID are required for telegram alerts"
        )

    if errors:
        raise ValueError(f"Configuration errors: {'; '.join(errors)}")
