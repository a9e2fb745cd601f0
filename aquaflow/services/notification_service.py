"""
Notification Service - Send alerts via Email, SMS, and Webhooks
- Email: SMTP
- SMS: Twilio
- Webhook: POST requests (Slack-compatible payload)

Fan-out resolves the recipients of an alert and attempts every delivery
independently. A failed delivery is logged and recorded, never retried and
never raised to the caller.
"""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import asyncio
import logging
import re
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart

import requests
from twilio.base.exceptions import TwilioException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from aquaflow.core.config import Settings, settings as app_settings
from aquaflow.core.exceptions import NotificationDeliveryError
from aquaflow.models.models import Alert, Site
from aquaflow.models.schemas import AlertLevel, DeliveryStatus, NotificationChannel
from aquaflow.services.gateway import DataStoreGateway, DeliveryRecord, Recipients

logger = logging.getLogger(__name__)

LEVEL_COLORS = {
    AlertLevel.EMERGENCY: '#7f1d1d',
    AlertLevel.CRITICAL: '#dc2626',
    AlertLevel.WARNING: '#f59e0b',
    AlertLevel.INFO: '#2563eb',
}


def format_phone_number(phone: Optional[str], country_code: str = "243") -> Optional[str]:
    """
    Normalize a household phone number to E.164

    Local numbers (leading 0 or no prefix) get the country code.
    """
    if not phone:
        return None
    had_plus = phone.strip().startswith('+')
    digits = re.sub(r'\D', '', phone)
    if not digits:
        return None
    if had_plus:
        return f"+{digits}"
    if digits.startswith('0'):
        return f"+{country_code}{digits[1:]}"
    if digits.startswith(country_code):
        return f"+{digits}"
    return f"+{country_code}{digits}"


@dataclass
class AlertContent:
    """Rendered notification content for one alert"""
    subject: str
    body: str
    html_body: str
    sms_body: str
    payload: Dict[str, Any]


def _value(enum_or_str) -> str:
    return getattr(enum_or_str, 'value', enum_or_str)


def render_alert(
    alert: Alert,
    site_name: str,
    message: str,
    timestamp: str,
    frontend_url: str,
    resolved: bool = False
) -> AlertContent:
    """Build email, SMS and webhook content for an alert"""
    alert_type = _value(alert.type)
    level = _value(alert.level)
    title = "Alert resolved" if resolved else "Aqua Alert"
    subject = f"{title} - {alert_type} - {site_name}"
    view_url = f"{frontend_url}/alerts/{alert.id}"

    body = (
        f"{title.upper()}\n"
        f"Type: {alert_type}\n"
        f"Level: {level}\n"
        f"Site: {site_name}\n"
        f"Message: {message}\n"
        f"Date: {timestamp}\n"
        f"\nView Details: {view_url}\n"
    )

    color = '#10b981' if resolved else LEVEL_COLORS.get(alert.level, '#6b7280')
    html_message = message.replace('\n', '<br>')
    html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: {color}; color: white; padding: 20px; border-radius: 5px;">
            <h2>{title}: {alert_type}</h2>
        </div>
        <div style="background: #f9fafb; padding: 20px; margin: 20px 0; border-radius: 5px;">
            <p><strong>Type:</strong> {alert_type}</p>
            <p><strong>Level:</strong> {level}</p>
            <p><strong>Site:</strong> {site_name}</p>
            <p><strong>Message:</strong> {html_message}</p>
            <p><strong>Date:</strong> {timestamp}</p>
            <a href="{view_url}">View Alert Details</a>
        </div>
        <p style="color: #6b7280; font-size: 12px;">This is an automated notification from the AquaFlow monitoring system.</p>
    </div>
</body>
</html>
"""

    sms_body = f"{title.upper()} [{level}] {site_name}: {message}"

    payload = {
        "text": f"{title}: {alert_type} ({level}) at {site_name}",
        "attachments": [
            {
                "color": color,
                "fields": [
                    {"title": "Type", "value": alert_type, "short": True},
                    {"title": "Level", "value": level, "short": True},
                    {"title": "Site", "value": site_name, "short": True},
                    {"title": "Date", "value": timestamp, "short": True},
                    {"title": "Message", "value": message, "short": False},
                ],
                "actions": [
                    {"type": "button", "text": "View Alert", "url": view_url}
                ]
            }
        ],
        "alert_id": alert.id,
        "site_id": alert.site_id,
        "resolved": resolved,
    }

    return AlertContent(subject=subject, body=body, html_body=html_body, sms_body=sms_body, payload=payload)


class EmailNotificationService:
    """
    Email notification service using SMTP
    """

    def __init__(self, config: Optional[Settings] = None):
        config = config or app_settings
        self.smtp_server = config.SMTP_SERVER
        self.smtp_port = config.SMTP_PORT
        self.smtp_username = config.SMTP_USERNAME
        self.smtp_password = config.SMTP_PASSWORD
        self.use_tls = config.SMTP_TLS
        self.from_email = config.FROM_EMAIL or self.smtp_username
        self.timeout = config.NOTIFICATION_TIMEOUT_SECONDS
        self.enabled = bool(self.smtp_username and self.smtp_password)

    def send_email(
        self,
        to_email: str,
        subject: str,
        body: str,
        html_body: Optional[str] = None
    ) -> bool:
        """
        Send email notification

        Returns:
            bool: True if sent, False if the service is not configured

        Raises:
            NotificationDeliveryError: the SMTP exchange failed
        """
        if not self.enabled:
            logger.warning("Email service not configured. Skipping email send.")
            return False

        msg = MIMEMultipart('alternative')
        msg['From'] = self.from_email
        msg['To'] = to_email
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain'))
        if html_body:
            msg.attach(MIMEText(html_body, 'html'))

        try:
            with smtplib.SMTP(self.smtp_server, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                server.login(self.smtp_username, self.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationDeliveryError(NotificationChannel.EMAIL.value, to_email, str(e)) from e

        logger.info(f"Email sent successfully to {to_email}")
        return True


class SMSNotificationService:
    """
    SMS notification service using Twilio
    """

    def __init__(self, config: Optional[Settings] = None):
        config = config or app_settings
        self.account_sid = config.TWILIO_ACCOUNT_SID
        self.auth_token = config.TWILIO_AUTH_TOKEN
        self.from_number = config.TWILIO_PHONE_NUMBER
        self.country_code = config.SMS_COUNTRY_CODE
        self.enabled = all([self.account_sid, self.auth_token, self.from_number])
        self.client = None

        if self.enabled:
            self.client = Client(
                self.account_sid,
                self.auth_token,
                http_client=TwilioHttpClient(timeout=config.NOTIFICATION_TIMEOUT_SECONDS)
            )

    def send_sms(self, to_number: str, message: str) -> bool:
        """
        Send SMS notification

        Args:
            to_number: Recipient phone number (E.164 format: +243812345678)
            message: SMS message

        Returns:
            bool: True if sent, False if the service is not configured
        """
        if not self.enabled:
            logger.warning("SMS service not configured. Skipping SMS send.")
            return False

        try:
            sent = self.client.messages.create(
                body=message,
                from_=self.from_number,
                to=to_number
            )
        except TwilioException as e:
            raise NotificationDeliveryError(NotificationChannel.SMS.value, to_number, str(e)) from e

        logger.info(f"SMS sent successfully to {to_number}: {sent.sid}")
        return True


class WebhookNotificationService:
    """
    Webhook notification service
    Send HTTP POST requests to a configured endpoint (Slack, Teams, custom APIs)
    """

    def __init__(self, url: Optional[str] = None, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self.enabled = bool(url)

    def send_webhook(self, url: str, payload: Dict[str, Any]) -> bool:
        """
        Send webhook POST request

        Returns:
            bool: True if sent successfully
        """
        try:
            response = requests.post(
                url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationDeliveryError(NotificationChannel.WEBHOOK.value, url, str(e)) from e

        logger.info(f"Webhook sent successfully to {url}")
        return True


class NotificationService:
    """
    Main notification service - resolves recipients and fans out across channels
    """

    def __init__(
        self,
        gateway: DataStoreGateway,
        email_service: Optional[EmailNotificationService] = None,
        sms_service: Optional[SMSNotificationService] = None,
        webhook_service: Optional[WebhookNotificationService] = None,
        config: Optional[Settings] = None
    ):
        config = config or app_settings
        self.gateway = gateway
        self.email_service = email_service or EmailNotificationService(config)
        self.sms_service = sms_service or SMSNotificationService(config)
        self.webhook_service = webhook_service or WebhookNotificationService(
            config.ALERT_WEBHOOK_URL, timeout=config.NOTIFICATION_TIMEOUT_SECONDS
        )
        self.timeout = config.NOTIFICATION_TIMEOUT_SECONDS
        self.max_concurrent = config.NOTIFICATION_MAX_CONCURRENT
        # A slot is held until the transport call returns, even after a timeout;
        # one worker per slot so an acquired slot never waits for a thread
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="aquaflow-notify")
        self.frontend_url = config.FRONTEND_URL
        self.alert_types = config.notify_alert_types
        self.timezone_name = config.NOTIFICATION_TIMEZONE

    def close(self) -> None:
        """Release the send threads; deliveries already queued still run"""
        self._executor.shutdown(wait=False)

    def _timestamp(self) -> str:
        try:
            tz = ZoneInfo(self.timezone_name)
        except ZoneInfoNotFoundError:
            logger.warning(f"Unknown timezone {self.timezone_name!r}, using UTC")
            tz = timezone.utc
        return datetime.now(tz).strftime('%d/%m/%Y %H:%M:%S %Z')

    def plan_deliveries(self, recipients: Recipients) -> List[Tuple[NotificationChannel, str]]:
        """
        Turn recipients into (channel, address) pairs, each address once
        """
        deliveries: List[Tuple[NotificationChannel, str]] = []
        seen = set()

        def add(channel: NotificationChannel, address: Optional[str]):
            if not address:
                return
            key = (channel, address.strip().lower())
            if key in seen:
                return
            seen.add(key)
            deliveries.append((channel, address.strip()))

        for admin in recipients.admins:
            add(NotificationChannel.EMAIL, admin.email)

        if recipients.sector_manager is not None:
            add(NotificationChannel.EMAIL, recipients.sector_manager.email)

        for household in recipients.households:
            add(NotificationChannel.EMAIL, household.email)
            if self.sms_service.enabled:
                add(
                    NotificationChannel.SMS,
                    format_phone_number(household.contact, self.sms_service.country_code)
                )

        if self.webhook_service.enabled:
            add(NotificationChannel.WEBHOOK, self.webhook_service.url)

        return deliveries

    def _sender(self, channel: NotificationChannel, address: str, content: AlertContent) -> Callable[[], bool]:
        if channel == NotificationChannel.EMAIL:
            return lambda: self.email_service.send_email(address, content.subject, content.body, content.html_body)
        if channel == NotificationChannel.SMS:
            return lambda: self.sms_service.send_sms(address, content.sms_body)
        return lambda: self.webhook_service.send_webhook(address, content.payload)

    async def _deliver(
        self,
        alert: Alert,
        channel: NotificationChannel,
        address: str,
        content: AlertContent
    ) -> DeliveryRecord:
        """
        Attempt one delivery; failures become FAILED records

        The time budget starts once a send slot is free, so queued
        deliveries are never timed out before they are attempted.
        """
        send = self._sender(channel, address, content)
        loop = asyncio.get_running_loop()

        await self._slots.acquire()
        try:
            future = loop.run_in_executor(self._executor, send)
        except BaseException:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())

        try:
            sent = await asyncio.wait_for(asyncio.shield(future), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"{channel.value} notification for alert {alert.id} to {address} timed out")
            return DeliveryRecord(channel, address, DeliveryStatus.FAILED, content.body, "timed out")
        except NotificationDeliveryError as e:
            logger.error(f"Failed to notify {address} about alert {alert.id}: {e.reason}")
            return DeliveryRecord(channel, address, DeliveryStatus.FAILED, content.body, e.reason)
        except Exception as e:
            logger.exception(f"Unexpected error notifying {address} about alert {alert.id}")
            return DeliveryRecord(channel, address, DeliveryStatus.FAILED, content.body, str(e))

        status = DeliveryStatus.DELIVERED if sent else DeliveryStatus.SKIPPED
        return DeliveryRecord(channel, address, status, content.body)

    async def notify(
        self,
        alert: Alert,
        site: Optional[Site] = None,
        message: Optional[str] = None,
        resolved: bool = False
    ) -> Dict[str, Any]:
        """
        Send alert notifications to every resolved recipient

        Args:
            alert: Persisted alert
            site: Alert's site, loaded through the gateway when omitted
            message: Message body overriding alert.message
            resolved: Render as a resolution notice

        Returns:
            dict: Summary of sent notifications. Never raises for delivery
            or recipient lookup failures.
        """
        results = {
            'total_sent': 0,
            'total_failed': 0,
            'total_skipped': 0,
            'details': []
        }

        if self.alert_types is not None and _value(alert.type) not in self.alert_types:
            logger.debug(f"Notifications disabled for alert type {_value(alert.type)}")
            return results

        try:
            if site is None:
                site = await self.gateway.get_site(alert.site_id)
            recipients = await self.gateway.list_recipients(alert.site_id)
        except Exception as e:
            logger.error(f"Could not resolve recipients for alert {alert.id}: {e}")
            return results

        deliveries = self.plan_deliveries(recipients)
        if not deliveries:
            logger.info(f"No recipients to notify for alert {alert.id}")
            return results

        site_name = site.name if site is not None else f"Site {alert.site_id}"
        content = render_alert(
            alert,
            site_name=site_name,
            message=message or alert.message,
            timestamp=self._timestamp(),
            frontend_url=self.frontend_url,
            resolved=resolved
        )

        records = await asyncio.gather(
            *(self._deliver(alert, channel, address, content) for channel, address in deliveries),
            return_exceptions=True
        )

        delivered: List[DeliveryRecord] = []
        for (channel, address), record in zip(deliveries, records):
            if isinstance(record, BaseException):
                logger.error(f"Delivery task for {address} crashed: {record}")
                record = DeliveryRecord(channel, address, DeliveryStatus.FAILED, content.body, str(record))
            delivered.append(record)

            if record.status == DeliveryStatus.DELIVERED:
                results['total_sent'] += 1
            elif record.status == DeliveryStatus.FAILED:
                results['total_failed'] += 1
            else:
                results['total_skipped'] += 1

            results['details'].append({
                'channel': record.channel.value,
                'recipient': record.recipient,
                'status': record.status.value,
                'error': record.error
            })

        logger.info(
            f"Alert {alert.id} notifications: {results['total_sent']} sent, "
            f"{results['total_failed']} failed, {results['total_skipped']} skipped"
        )

        try:
            await self.gateway.record_notifications(alert.id, delivered)
        except Exception as e:
            logger.error(f"Failed to record notifications for alert {alert.id}: {e}")

        return results
