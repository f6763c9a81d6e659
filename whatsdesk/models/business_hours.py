from sqlalchemy import Boolean, Column, Integer, Text

from whatsdesk.database import Base


class BusinessHours(Base):
    __tablename__ = "business_hours"

    day = Column(Integer, primary_key=True)  # 0=Sunday .. 6=Saturday
    open_time = Column(Text)  # HH:MM
    close_time = Column(Text)
    enabled = Column(Boolean, default=True)


class BusinessException(Base):
    __tablename__ = "business_exceptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(Text, unique=True, nullable=False)  # YYYY-MM-DD
    closed = Column(Boolean, default=True)
    open_time = Column(Text)
    close_time = Column(Text)
    reason = Column(Text)
