import os

from dotenv import load_dotenv

load_dotenv()


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "1" if default else "0").strip().lower()
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    return bool(default)


class Settings:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinicbook.db")
    DB_AUTO_CREATE_ALL = _get_bool("DB_AUTO_CREATE_ALL", False)
    REDIS_URL = os.getenv("REDIS_URL", "").strip()
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "").strip()
    CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "Asia/Seoul").strip()

    BOOKING_MIN_LEAD_MINUTES = _get_int("BOOKING_MIN_LEAD_MINUTES", 60)
    BOOKING_HORIZON_DAYS = _get_int("BOOKING_HORIZON_DAYS", 28)
    DEFAULT_SLOT_INTERVAL_MINUTES = _get_int("DEFAULT_SLOT_INTERVAL_MINUTES", 15)
    # "blank_day": reaching daily_max blanks the rest of the grid.
    # "ignore": the grid does not apply daily_max, so once the cap is reached it
    # still lists open slots that create and reschedule refuse with SLOT_UNAVAILABLE.
    DAILY_CAP_POLICY = os.getenv("DAILY_CAP_POLICY", "blank_day").strip().lower()
    AUTO_CONFIRM_BOOKINGS = _get_bool("AUTO_CONFIRM_BOOKINGS", False)

    EVENT_BUS_ENABLED = _get_bool("EVENT_BUS_ENABLED", True)
    EVENT_BUS_STREAM = os.getenv("EVENT_BUS_STREAM", "clinicbook.events").strip()
    BROADCAST_URL = os.getenv("BROADCAST_URL", "").strip()
    BROADCAST_API_KEY = os.getenv("BROADCAST_API_KEY", "").strip()
    BROADCAST_TIMEOUT_SECONDS = _get_float("BROADCAST_TIMEOUT_SECONDS", 2.0)
    NOTIFY_WORKERS = _get_int("NOTIFY_WORKERS", 2)

    SUMMARY_CACHE_DIR = os.getenv("SUMMARY_CACHE_DIR", "./.cache/summaries").strip()
    SUMMARY_CACHE_TTL_SECONDS = _get_int("SUMMARY_CACHE_TTL_SECONDS", 300)
    SUMMARY_REFRESH_ENABLED = _get_bool("SUMMARY_REFRESH_ENABLED", False)
    SUMMARY_REFRESH_INTERVAL_SECONDS = _get_int("SUMMARY_REFRESH_INTERVAL_SECONDS", 24 * 3600)

    SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)


settings = Settings()
