class IssueTrackError(Exception):
    """Base class for errors raised by the tracking subsystem."""


class NotificationNotFound(IssueTrackError):
    def __init__(self, notification_id: str):
        super().__init__(f"Notification not found: {notification_id}")
        self.notification_id = notification_id


class TransportNotConfigured(IssueTrackError):
    """Raised in production when a delivery channel has no credentials."""


class DeliveryError(IssueTrackError):
    """A transport rejected or failed to deliver a message."""

    def __init__(self, message: str, provider_response: dict | None = None):
        super().__init__(message)
        self.provider_response = provider_response
