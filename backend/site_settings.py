"""Site-wide work-hour settings with default fallback."""
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from config import DEFAULT_WORK_HOURS_PER_DAY, DEFAULT_WORK_HOURS_PER_WEEK
from models import SiteSettings, utcnow
from timecalc import parse_hours

logger = logging.getLogger(__name__)


def default_settings() -> SiteSettings:
    return SiteSettings(
        work_hours_per_day=DEFAULT_WORK_HOURS_PER_DAY,
        work_hours_per_week=DEFAULT_WORK_HOURS_PER_WEEK,
    )


def get_settings(session: Session) -> SiteSettings:
    """Return the stored settings, or the defaults when missing or unreadable."""
    try:
        settings = session.exec(select(SiteSettings)).first()
    except SQLAlchemyError as e:
        logger.warning(f"Could not load site settings, using defaults: {e}")
        session.rollback()
        return default_settings()

    if settings is None:
        return default_settings()
    return settings


def target_hours(settings: SiteSettings) -> tuple[float, float]:
    """Daily and weekly targets in decimal hours.

    A corrupt stored value falls back to the default for that field only.
    """
    try:
        daily = parse_hours(settings.work_hours_per_day)
    except ValueError as e:
        logger.warning(f"{e}; falling back to {DEFAULT_WORK_HOURS_PER_DAY}")
        daily = parse_hours(DEFAULT_WORK_HOURS_PER_DAY)
    try:
        weekly = parse_hours(settings.work_hours_per_week)
    except ValueError as e:
        logger.warning(f"{e}; falling back to {DEFAULT_WORK_HOURS_PER_WEEK}")
        weekly = parse_hours(DEFAULT_WORK_HOURS_PER_WEEK)
    return daily, weekly


def update_settings(session: Session, work_hours_per_day: str, work_hours_per_week: str) -> SiteSettings:
    settings = session.exec(select(SiteSettings)).first()
    if settings is None:
        settings = SiteSettings()
    settings.work_hours_per_day = work_hours_per_day
    settings.work_hours_per_week = work_hours_per_week
    settings.updated_at = utcnow()
    session.add(settings)
    session.commit()
    session.refresh(settings)
    logger.info(f"Site settings updated: day={work_hours_per_day}, week={work_hours_per_week}")
    return settings
