"""Application settings read from the environment."""
import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

APP_TIMEZONE = os.getenv("APP_TIMEZONE", "UTC")
BOOTSTRAP_ADMINS = {
    uid.strip() for uid in os.getenv("BOOTSTRAP_ADMINS", "").split(",") if uid.strip()
}
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

DEFAULT_WORK_HOURS_PER_DAY = "07:24"
DEFAULT_WORK_HOURS_PER_WEEK = "37:00"


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Return the zone for an IANA name, or the app default when empty.

    Raises ValueError for unknown names.
    """
    try:
        return ZoneInfo(name or APP_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown time zone: {name}") from e
