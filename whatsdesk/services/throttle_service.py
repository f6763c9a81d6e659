from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from whatsdesk.database import dialect_insert
from whatsdesk.logging_config import get_logger, mask_phone
from whatsdesk.models import OutOfHoursLog
from whatsdesk.services.settings_service import get_int_setting

logger = get_logger("throttle_service")

OUT_OF_HOURS_COOLDOWN_MINUTES = 120


def _epoch_ms(when: datetime) -> int:
    return int(when.timestamp() * 1000)


def should_send_out_of_hours(
    db: Session,
    phone: str,
    now: datetime,
    cooldown_minutes: int | None = None,
) -> bool:
    """Claim the right to send an out-of-hours notice to `phone`.

    A single upsert inserts the first timestamp or moves it forward only when
    the cooldown has elapsed, so concurrent callers cannot both win. The
    caller commits.
    """
    if cooldown_minutes is None:
        cooldown_minutes = get_int_setting(db, "out_of_hours_cooldown_minutes", OUT_OF_HOURS_COOLDOWN_MINUTES)

    now_ms = _epoch_ms(now)
    cutoff_ms = now_ms - cooldown_minutes * 60_000

    stmt = dialect_insert(db, OutOfHoursLog).values(phone=phone, last_sent_at=now_ms)
    stmt = stmt.on_conflict_do_update(
        index_elements=[OutOfHoursLog.phone],
        set_={"last_sent_at": stmt.excluded.last_sent_at},
        where=OutOfHoursLog.last_sent_at <= cutoff_ms,
    )
    try:
        result = db.execute(stmt)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Out-of-hours throttle failed for {mask_phone(phone)}: {e}")
        return False

    return result.rowcount > 0
