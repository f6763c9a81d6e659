from datetime import datetime, timedelta, timezone

from whatsdesk.models import OutOfHoursLog
from whatsdesk.services.settings_service import set_setting
from whatsdesk.services.throttle_service import should_send_out_of_hours

NOW = datetime(2024, 1, 15, 23, 0, tzinfo=timezone.utc)
PHONE = "5511999990000"


class TestShouldSendOutOfHours:
    def test_first_send_then_throttled(self, db):
        assert should_send_out_of_hours(db, PHONE, NOW) is True
        db.commit()
        assert should_send_out_of_hours(db, PHONE, NOW + timedelta(minutes=30)) is False
        db.commit()

    def test_throttled_call_does_not_move_timestamp(self, db):
        should_send_out_of_hours(db, PHONE, NOW)
        db.commit()
        should_send_out_of_hours(db, PHONE, NOW + timedelta(minutes=119))
        db.commit()
        row = db.query(OutOfHoursLog).filter(OutOfHoursLog.phone == PHONE).one()
        assert row.last_sent_at == int(NOW.timestamp() * 1000)

    def test_allowed_again_after_cooldown(self, db):
        assert should_send_out_of_hours(db, PHONE, NOW) is True
        db.commit()
        assert should_send_out_of_hours(db, PHONE, NOW + timedelta(minutes=120)) is True
        db.commit()
        row = db.query(OutOfHoursLog).filter(OutOfHoursLog.phone == PHONE).one()
        assert row.last_sent_at == int((NOW + timedelta(minutes=120)).timestamp() * 1000)

    def test_phones_are_independent(self, db):
        assert should_send_out_of_hours(db, PHONE, NOW) is True
        assert should_send_out_of_hours(db, "5511888887777", NOW) is True

    def test_cooldown_from_settings(self, db):
        set_setting(db, "out_of_hours_cooldown_minutes", "10")
        db.commit()
        assert should_send_out_of_hours(db, PHONE, NOW) is True
        db.commit()
        assert should_send_out_of_hours(db, PHONE, NOW + timedelta(minutes=11)) is True

    def test_storage_error_means_no_send(self, db_session):
        from sqlalchemy.exc import OperationalError

        db_session.get_bind.return_value.dialect.name = "sqlite"
        db_session.execute.side_effect = OperationalError("upsert", {}, Exception("locked"))
        assert should_send_out_of_hours(db_session, PHONE, NOW, cooldown_minutes=120) is False
        db_session.rollback.assert_called_once()
