"""
Domain exceptions for the monitoring core.
API handlers translate these into HTTP errors.
"""
from typing import Optional


class AquaflowError(Exception):
    """Base exception for the monitoring core."""
    pass


class DataStoreError(AquaflowError):
    """A query or write against the data store failed."""
    pass


class SiteNotFoundError(AquaflowError):
    """Requested site does not exist."""
    def __init__(self, site_id: int):
        super().__init__(f"Site with ID {site_id} not found")
        self.site_id = site_id


class AlertNotFoundError(AquaflowError):
    """Requested alert does not exist."""
    def __init__(self, alert_id: int):
        super().__init__(f"Alert with ID {alert_id} not found")
        self.alert_id = alert_id


class DuplicateAlertError(AquaflowError):
    """An active alert of the same type already exists for the site."""
    def __init__(self, site_id: int, alert_type: str, existing_alert_id: Optional[int] = None):
        super().__init__(
            f"An active {alert_type} alert already exists for site {site_id}"
        )
        self.site_id = site_id
        self.alert_type = alert_type
        self.existing_alert_id = existing_alert_id


class NotificationDeliveryError(AquaflowError):
    """A notification channel failed to deliver a message."""
    def __init__(self, channel: str, recipient: str, reason: str):
        super().__init__(f"{channel} delivery to {recipient} failed: {reason}")
        self.channel = channel
        self.recipient = recipient
        self.reason = reason
