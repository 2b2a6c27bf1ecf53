import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except Exception:
        return int(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./shiftbook.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", True)

    DEFAULT_ORG_SLUG = os.getenv("DEFAULT_ORG_SLUG", "default").strip().lower()
    DEFAULT_ORG_NAME = os.getenv("DEFAULT_ORG_NAME", "Default Organization").strip()
    DEFAULT_ORG_TIMEZONE = os.getenv("DEFAULT_ORG_TIMEZONE", "UTC").strip()

    BOOKING_WRITE_RETRIES = _get_int("BOOKING_WRITE_RETRIES", 3)
    REQUIRE_SHIFT_COVERAGE = _get_bool("REQUIRE_SHIFT_COVERAGE", True)
    RECURRENCE_HORIZON_DAYS = _get_int("RECURRENCE_HORIZON_DAYS", 730)
    UPCOMING_APPOINTMENTS_DAYS = _get_int("UPCOMING_APPOINTMENTS_DAYS", 7)
    DEFAULT_SHIFT_COLOR = os.getenv("DEFAULT_SHIFT_COLOR", "#3B82F6").strip()

    DEFAULT_PAGE_LIMIT = _get_int("DEFAULT_PAGE_LIMIT", 20)
    MAX_PAGE_LIMIT = _get_int("MAX_PAGE_LIMIT", 100)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()
    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)

    HOST = os.getenv("HOST", "127.0.0.1").strip()
    PORT = _get_int("PORT", 8000)
    RELOAD = _get_bool("RELOAD", False)


settings = Settings()
