from sqlalchemy import BigInteger, Column, Text

from whatsdesk.database import Base


class OutOfHoursLog(Base):
    __tablename__ = "out_of_hours_log"

    phone = Column(Text, primary_key=True)
    last_sent_at = Column(BigInteger, nullable=False)  # epoch milliseconds
