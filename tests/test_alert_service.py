from unittest.mock import MagicMock, Mock, patch

from whatsdesk.config import settings
from whatsdesk.services.alert_service import (
    alert_credentials_wiped,
    alert_critical,
    alert_warning,
    send_alert,
)


class TestSendAlert:
    @patch.object(settings, "alert_bot_token", "")
    @patch.object(settings, "alert_chat_id", "")
    def test_returns_false_when_not_configured(self):
        assert send_alert("ERROR", "Test message") is False

    @patch.object(settings, "alert_bot_token", "test-token")
    @patch.object(settings, "alert_chat_id", "test-chat")
    @patch("whatsdesk.services.alert_service.httpx.Client")
    def test_sends_alert_to_telegram(self, mock_client_class):
        mock_client = MagicMock()
        mock_client_class.return_value.__enter__.return_value = mock_client
        mock_response = Mock()
        mock_response.status_code = 200
        mock_client.post.return_value = mock_response

        result = send_alert("ERROR", "Test error message", {"reason": "401"})

        assert result is True
        call_args = mock_client.post.call_args
        assert "bottest-token" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]
        assert "reason: 401" in json_data["text"]

    @patch.object(settings, "alert_bot_token", "test-token")
    @patch.object(settings, "alert_chat_id", "test-chat")
    @patch("whatsdesk.services.alert_service.httpx.Client")
    def test_returns_false_on_exception(self, mock_client_class):
        mock_client_class.return_value.__enter__.side_effect = Exception("Network error")
        assert send_alert("ERROR", "Test message") is False


class TestAlertShortcuts:
    @patch("whatsdesk.services.alert_service.send_alert")
    def test_alert_warning(self, mock_send):
        mock_send.return_value = True
        assert alert_warning("Warning message") is True
        mock_send.assert_called_once_with("WARNING", "Warning message", None)

    @patch("whatsdesk.services.alert_service.send_alert")
    def test_alert_critical(self, mock_send):
        alert_critical("Critical issue", {"k": "v"})
        mock_send.assert_called_once_with("CRITICAL", "Critical issue", {"k": "v"})

    @patch("whatsdesk.services.alert_service.send_alert")
    def test_credentials_wiped_is_critical(self, mock_send):
        alert_credentials_wiped("auth invalid (401)")
        level, message, context = mock_send.call_args[0]
        assert level == "CRITICAL"
        assert "QR" in message
        assert context == {"reason": "auth invalid (401)"}
