"""
Tests for notification fan-out and the delivery channels
"""
import smtplib
import threading
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import requests

from aquaflow.core.config import Settings
from aquaflow.core.exceptions import DataStoreError, NotificationDeliveryError
from aquaflow.models.schemas import AlertLevel, AlertType, DeliveryStatus, NotificationChannel, UserRole
from aquaflow.services.gateway import Recipients
from aquaflow.services.notification_service import (
    EmailNotificationService, NotificationService, SMSNotificationService,
    WebhookNotificationService, format_phone_number, render_alert
)

from tests.conftest import make_household, make_site, make_user, sent_addresses


async def critical_alert(gateway, site_id=1):
    return await gateway.create_alert(
        site_id, AlertType.LOW_WATER_LEVEL, AlertLevel.CRITICAL, "Critical water level (15.0%)"
    )


def sms_stub(enabled=True):
    sms = MagicMock()
    sms.enabled = enabled
    sms.country_code = "243"
    sms.send_sms.return_value = True
    return sms


class TestPhoneFormatting:
    """Tests for E.164 normalization of household numbers"""

    @pytest.mark.parametrize("raw,expected", [
        ("0812345678", "+243812345678"),
        ("812345678", "+243812345678"),
        ("243812345678", "+243812345678"),
        ("+243 81 234 5678", "+243812345678"),
        ("+33612345678", "+33612345678"),
        ("081-234-5678", "+243812345678"),
    ])
    def test_format(self, raw, expected):
        assert format_phone_number(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "n/a"])
    def test_unusable_numbers(self, raw):
        assert format_phone_number(raw) is None

    def test_custom_country_code(self):
        assert format_phone_number("0612345678", country_code="33") == "+33612345678"


class TestRenderAlert:
    """Tests for notification content"""

    @pytest.mark.asyncio
    async def test_alert_content(self, gateway):
        alert = await critical_alert(gateway)
        content = render_alert(alert, "Reservoir Nord", alert.message, "19/10/2026 10:00:00 WAT", "https://app.test")

        assert content.subject == "Aqua Alert - LOW_WATER_LEVEL - Reservoir Nord"
        assert "Level: CRITICAL" in content.body
        assert "Message: Critical water level (15.0%)" in content.body
        assert "https://app.test/alerts/1" in content.body
        assert content.sms_body == "AQUA ALERT [CRITICAL] Reservoir Nord: Critical water level (15.0%)"
        assert content.payload["alert_id"] == 1
        assert content.payload["resolved"] is False

    @pytest.mark.asyncio
    async def test_resolved_content(self, gateway):
        alert = await critical_alert(gateway)
        content = render_alert(alert, "Reservoir Nord", "ALERT RESOLVED: x", "now", "https://app.test", resolved=True)

        assert content.subject == "Alert resolved - LOW_WATER_LEVEL - Reservoir Nord"
        assert content.payload["resolved"] is True


class TestPlanDeliveries:
    """Tests for recipient to (channel, address) expansion"""

    def test_duplicate_addresses_notified_once(self, gateway, email_service, test_settings):
        service = NotificationService(gateway, email_service=email_service, sms_service=sms_stub(),
                                      webhook_service=WebhookNotificationService(None), config=test_settings)
        recipients = Recipients(
            admins=[make_user(1, "boss@aquaflow.test"), make_user(2, "Boss@AquaFlow.test ")],
            sector_manager=make_user(2, "boss@aquaflow.test", role=UserRole.SECTOR_MANAGER),
            households=[
                make_household(1, contact="0812345678"),
                make_household(2, contact="+243812345678"),
                make_household(3, email="family@example.test", contact=None),
            ]
        )

        deliveries = service.plan_deliveries(recipients)

        assert deliveries == [
            (NotificationChannel.EMAIL, "boss@aquaflow.test"),
            (NotificationChannel.SMS, "+243812345678"),
            (NotificationChannel.EMAIL, "family@example.test"),
        ]

    def test_sms_skipped_when_not_configured(self, gateway, email_service, test_settings):
        service = NotificationService(gateway, email_service=email_service, sms_service=sms_stub(enabled=False),
                                      webhook_service=WebhookNotificationService(None), config=test_settings)
        recipients = Recipients(households=[make_household(1, contact="0812345678")])
        assert service.plan_deliveries(recipients) == []

    def test_webhook_added_when_configured(self, gateway, email_service, test_settings):
        webhook = WebhookNotificationService("https://hooks.example.test/alerts")
        service = NotificationService(gateway, email_service=email_service, sms_service=sms_stub(enabled=False),
                                      webhook_service=webhook, config=test_settings)
        deliveries = service.plan_deliveries(Recipients(admins=[make_user(1, "admin@aquaflow.test")]))
        assert deliveries[-1] == (NotificationChannel.WEBHOOK, "https://hooks.example.test/alerts")


class TestNotify:
    """Tests for NotificationService.notify"""

    @pytest.mark.asyncio
    async def test_no_recipients_means_no_attempts(self, gateway, notification_service, email_service):
        gateway.add_site(make_site())
        alert = await critical_alert(gateway)

        result = await notification_service.notify(alert)

        assert result == {'total_sent': 0, 'total_failed': 0, 'total_skipped': 0, 'details': []}
        email_service.send_email.assert_not_called()
        assert gateway.notification_log == []

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_the_others(self, gateway, staffed_site, notification_service, email_service):
        """Test three recipients where the manager's mailbox rejects the message"""
        def send(to_email, subject, body, html_body=None):
            if to_email == "manager@aquaflow.test":
                raise NotificationDeliveryError("EMAIL", to_email, "550 mailbox unavailable")
            return True

        email_service.send_email.side_effect = send
        alert = await critical_alert(gateway)

        result = await notification_service.notify(alert, site=staffed_site)

        assert result['total_sent'] == 2
        assert result['total_failed'] == 1
        assert sorted(sent_addresses(email_service)) == [
            "admin@aquaflow.test", "family@example.test", "manager@aquaflow.test"
        ]
        failed = [d for d in result['details'] if d['status'] == 'FAILED']
        assert failed == [{
            'channel': 'EMAIL', 'recipient': 'manager@aquaflow.test',
            'status': 'FAILED', 'error': '550 mailbox unavailable'
        }]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, gateway, staffed_site, notification_service, email_service):
        email_service.send_email.side_effect = RuntimeError("boom")
        alert = await critical_alert(gateway)

        result = await notification_service.notify(alert, site=staffed_site)

        assert result['total_failed'] == 3
        assert result['total_sent'] == 0

    @pytest.mark.asyncio
    async def test_deliveries_are_recorded(self, gateway, staffed_site, notification_service):
        alert = await critical_alert(gateway)

        await notification_service.notify(alert, site=staffed_site)

        assert len(gateway.notification_log) == 3
        assert {r.status for r in gateway.notification_log} == {DeliveryStatus.DELIVERED}
        assert all("Critical water level (15.0%)" in r.message_body for r in gateway.notification_log)

    @pytest.mark.asyncio
    async def test_record_failure_is_swallowed(self, gateway, staffed_site, notification_service):
        gateway.record_notifications = AsyncMock(side_effect=DataStoreError("log table locked"))
        alert = await critical_alert(gateway)

        result = await notification_service.notify(alert, site=staffed_site)

        assert result['total_sent'] == 3

    @pytest.mark.asyncio
    async def test_recipient_lookup_failure_is_swallowed(self, gateway, staffed_site, notification_service, email_service):
        gateway.list_recipients = AsyncMock(side_effect=DataStoreError("connection refused"))
        alert = await critical_alert(gateway)

        result = await notification_service.notify(alert, site=staffed_site)

        assert result['total_sent'] == 0
        email_service.send_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_site_loaded_when_not_given(self, gateway, staffed_site, notification_service, email_service):
        alert = await critical_alert(gateway)

        await notification_service.notify(alert)

        subject = email_service.send_email.call_args.args[1]
        assert subject == "Aqua Alert - LOW_WATER_LEVEL - Reservoir 1"

    @pytest.mark.asyncio
    async def test_message_override(self, gateway, staffed_site, notification_service, email_service):
        alert = await critical_alert(gateway)

        await notification_service.notify(alert, site=staffed_site, message="ALERT RESOLVED: done", resolved=True)

        body = email_service.send_email.call_args.args[2]
        assert "Message: ALERT RESOLVED: done" in body

    @pytest.mark.asyncio
    async def test_slow_delivery_times_out(self, gateway, staffed_site, email_service):
        config = Settings(SMTP_USERNAME="alerts@aquaflow.test", SMTP_PASSWORD="secret",
                          NOTIFICATION_TIMEOUT_SECONDS=0.1)

        def send(to_email, subject, body, html_body=None):
            if to_email == "admin@aquaflow.test":
                time.sleep(0.5)
            return True

        email_service.send_email.side_effect = send
        service = NotificationService(gateway, email_service=email_service, sms_service=sms_stub(enabled=False),
                                      webhook_service=WebhookNotificationService(None), config=config)
        alert = await critical_alert(gateway)

        result = await service.notify(alert, site=staffed_site)

        assert result['total_sent'] == 2
        assert result['total_failed'] == 1
        timed_out = [d for d in result['details'] if d['status'] == 'FAILED']
        assert timed_out[0]['recipient'] == "admin@aquaflow.test"
        assert timed_out[0]['error'] == "timed out"

    @pytest.mark.asyncio
    async def test_queued_deliveries_are_not_timed_out(self, gateway, email_service):
        """Test that waiting for a send slot does not count against the delivery timeout"""
        config = Settings(SMTP_USERNAME="alerts@aquaflow.test", SMTP_PASSWORD="secret",
                          NOTIFICATION_TIMEOUT_SECONDS=0.3, NOTIFICATION_MAX_CONCURRENT=3)
        site = gateway.add_site(make_site(site_id=1))
        gateway.recipients[1] = Recipients(
            admins=[make_user(i, f"admin{i}@aquaflow.test") for i in range(1, 21)]
        )
        lock = threading.Lock()
        in_flight = {'now': 0, 'peak': 0}

        def send(to_email, subject, body, html_body=None):
            with lock:
                in_flight['now'] += 1
                in_flight['peak'] = max(in_flight['peak'], in_flight['now'])
            time.sleep(0.1)
            with lock:
                in_flight['now'] -= 1
            return True

        email_service.send_email.side_effect = send
        service = NotificationService(gateway, email_service=email_service, sms_service=sms_stub(enabled=False),
                                      webhook_service=WebhookNotificationService(None), config=config)
        alert = await critical_alert(gateway)

        result = await service.notify(alert, site=site)

        assert result['total_sent'] == 20
        assert result['total_failed'] == 0
        assert in_flight['peak'] <= 3
        assert len(gateway.notification_log) == 20

        service.close()
        after_close = await service.notify(alert, site=site)
        assert after_close['total_failed'] == 20
        assert in_flight['now'] == 0

    @pytest.mark.asyncio
    async def test_alert_type_filter(self, gateway, staffed_site, email_service):
        config = Settings(SMTP_USERNAME="alerts@aquaflow.test", SMTP_PASSWORD="secret",
                          NOTIFY_ALERT_TYPES="sensor_failure, MAINTENANCE_DUE")
        service = NotificationService(gateway, email_service=email_service, sms_service=sms_stub(enabled=False),
                                      webhook_service=WebhookNotificationService(None), config=config)
        alert = await critical_alert(gateway)

        result = await service.notify(alert, site=staffed_site)

        assert result['total_sent'] == 0
        email_service.send_email.assert_not_called()

        sensor_alert = await gateway.create_alert(
            1, AlertType.SENSOR_FAILURE, AlertLevel.WARNING, "Water level sensor malfunction: no reading on record"
        )
        result = await service.notify(sensor_alert, site=staffed_site)
        assert result['total_sent'] == 3

    @pytest.mark.asyncio
    async def test_unconfigured_email_is_skipped(self, gateway, staffed_site):
        config = Settings(SMTP_USERNAME=None, SMTP_PASSWORD=None)
        service = NotificationService(gateway, email_service=EmailNotificationService(config),
                                      sms_service=sms_stub(enabled=False),
                                      webhook_service=WebhookNotificationService(None), config=config)
        alert = await critical_alert(gateway)

        result = await service.notify(alert, site=staffed_site)

        assert result['total_skipped'] == 3
        assert {r.status for r in gateway.notification_log} == {DeliveryStatus.SKIPPED}

    @pytest.mark.asyncio
    async def test_sms_and_webhook_channels(self, gateway, staffed_site, notification_service, email_service):
        sms = sms_stub()
        webhook = WebhookNotificationService("https://hooks.example.test/alerts")
        webhook.send_webhook = MagicMock(return_value=True)
        notification_service.sms_service = sms
        notification_service.webhook_service = webhook
        gateway.recipients[1].households[0].contact = "0991112233"
        alert = await critical_alert(gateway)

        result = await notification_service.notify(alert, site=staffed_site)

        assert result['total_sent'] == 5
        sms.send_sms.assert_called_once_with(
            "+243991112233", "AQUA ALERT [CRITICAL] Reservoir 1: Critical water level (15.0%)"
        )
        url, payload = webhook.send_webhook.call_args.args
        assert url == "https://hooks.example.test/alerts"
        assert payload["site_id"] == 1


class TestChannels:
    """Tests for the channel services themselves"""

    def test_email_disabled_without_credentials(self):
        service = EmailNotificationService(Settings(SMTP_USERNAME=None, SMTP_PASSWORD=None))
        assert service.enabled is False
        assert service.send_email("a@b.test", "s", "b") is False

    def test_email_smtp_failure_raises(self, test_settings):
        service = EmailNotificationService(test_settings)
        with patch("aquaflow.services.notification_service.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad")
            with pytest.raises(NotificationDeliveryError) as exc:
                service.send_email("admin@aquaflow.test", "subject", "body")
        assert exc.value.recipient == "admin@aquaflow.test"

    def test_email_sent(self, test_settings):
        service = EmailNotificationService(test_settings)
        with patch("aquaflow.services.notification_service.smtplib.SMTP") as smtp:
            assert service.send_email("admin@aquaflow.test", "subject", "body", "<p>body</p>") is True
            server = smtp.return_value.__enter__.return_value
            server.starttls.assert_called_once()
            server.login.assert_called_once_with("alerts@aquaflow.test", "secret")
            server.send_message.assert_called_once()

    def test_sms_disabled_without_credentials(self, test_settings):
        service = SMSNotificationService(test_settings)
        assert service.enabled is False
        assert service.client is None
        assert service.send_sms("+243812345678", "hello") is False

    def test_webhook_failure_raises(self):
        service = WebhookNotificationService("https://hooks.example.test/alerts")
        with patch("aquaflow.services.notification_service.requests.post",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(NotificationDeliveryError):
                service.send_webhook(service.url, {"text": "x"})

    def test_webhook_sent(self):
        service = WebhookNotificationService("https://hooks.example.test/alerts", timeout=3)
        with patch("aquaflow.services.notification_service.requests.post") as post:
            assert service.send_webhook(service.url, {"text": "x"}) is True
        post.assert_called_once_with(
            "https://hooks.example.test/alerts",
            json={"text": "x"},
            headers={'Content-Type': 'application/json'},
            timeout=3
        )
