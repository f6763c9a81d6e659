from typing import Optional

from sqlalchemy.orm import Session

from whatsdesk.database import dialect_insert
from whatsdesk.models import Setting

DEFAULT_OUT_OF_HOURS_MESSAGE = (
    "🕒 Nosso horário de atendimento já encerrou. Retornaremos no próximo horário de funcionamento."
)
DEFAULT_WELCOME_MESSAGE = "👋 Olá! Recebi sua mensagem, um atendente já vai te responder."
DEFAULT_CLOSING_MESSAGE = (
    "✅ Seu atendimento foi encerrado. Obrigado por entrar em contato! "
    "Se precisar de ajuda novamente, é só enviar uma mensagem."
)


def get_setting(db: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    row = db.query(Setting).filter(Setting.key == key).first()
    if row is None or row.value in (None, ""):
        return default
    return row.value


def get_int_setting(db: Session, key: str, default: int) -> int:
    raw = get_setting(db, key)
    if raw is None:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default


def set_setting(db: Session, key: str, value: Optional[str]) -> None:
    stmt = dialect_insert(db, Setting).values(key=key, value=value)
    stmt = stmt.on_conflict_do_update(index_elements=[Setting.key], set_={"value": stmt.excluded.value})
    db.execute(stmt)


def get_out_of_hours_message(db: Session) -> str:
    return get_setting(db, "out_of_hours_message", DEFAULT_OUT_OF_HOURS_MESSAGE)


def get_welcome_message(db: Session) -> str:
    return get_setting(db, "welcome_message", DEFAULT_WELCOME_MESSAGE)


def get_closing_message(db: Session) -> str:
    return get_setting(db, "closing_message", DEFAULT_CLOSING_MESSAGE)
