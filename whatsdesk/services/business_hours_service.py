from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from whatsdesk.config import settings
from whatsdesk.logging_config import get_logger
from whatsdesk.models import BusinessException, BusinessHours

logger = get_logger("business_hours_service")


@dataclass
class BusinessStatus:
    is_open: bool
    reason: str  # open, closed, exception, error


def business_tz() -> ZoneInfo:
    return ZoneInfo(settings.business_timezone)


def to_local(when: datetime) -> datetime:
    """Aware datetimes are converted to the business timezone; naive ones are taken as local."""
    if when.tzinfo is None:
        return when
    return when.astimezone(business_tz())


def parse_time_to_minutes(value: Optional[str]) -> Optional[int]:
    if not value or not isinstance(value, str):
        return None
    try:
        hours, minutes = value.strip().split(":")[:2]
        return int(hours) * 60 + int(minutes)
    except ValueError:
        return None


def is_within_hours(local: datetime, open_time: Optional[str], close_time: Optional[str]) -> bool:
    open_minutes = parse_time_to_minutes(open_time)
    close_minutes = parse_time_to_minutes(close_time)
    if open_minutes is None or close_minutes is None:
        return False
    if open_minutes == close_minutes:
        return False

    now_minutes = local.hour * 60 + local.minute
    if close_minutes > open_minutes:
        return open_minutes <= now_minutes < close_minutes

    # Window crosses midnight.
    return now_minutes >= open_minutes or now_minutes < close_minutes


def weekday_index(local: datetime) -> int:
    """0=Sunday .. 6=Saturday."""
    return (local.weekday() + 1) % 7


def get_business_status(db: Session, when: datetime) -> BusinessStatus:
    """Decide whether the desk is open at `when`. Read errors fail open."""
    try:
        local = to_local(when)
        exception = (
            db.query(BusinessException).filter(BusinessException.date == local.strftime("%Y-%m-%d")).first()
        )
        if exception:
            if exception.closed:
                return BusinessStatus(is_open=False, reason="exception")
            if exception.open_time and exception.close_time:
                return BusinessStatus(
                    is_open=is_within_hours(local, exception.open_time, exception.close_time),
                    reason="exception",
                )
            return BusinessStatus(is_open=False, reason="exception")

        hours = db.query(BusinessHours).filter(BusinessHours.day == weekday_index(local)).first()
        if not hours or not hours.enabled:
            return BusinessStatus(is_open=False, reason="closed")

        is_open = is_within_hours(local, hours.open_time, hours.close_time)
        return BusinessStatus(is_open=is_open, reason="open" if is_open else "closed")
    except Exception as e:
        logger.error(f"Business hours check failed, assuming open: {e}")
        return BusinessStatus(is_open=True, reason="error")
