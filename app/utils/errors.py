from typing import Optional


class NotificationError(Exception):
    """Base class for errors surfaced by the notification endpoints."""

    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(NotificationError):
    """Malformed or missing request fields. Never retried."""

    status_code = 400


class ResolutionError(NotificationError):
    """The recipient store could not be read; the whole request is aborted."""

    status_code = 500


class RecordStoreError(NotificationError):
    status_code = 500


class NotificationNotFound(NotificationError):
    status_code = 404

    def __init__(self, notification_id):
        super().__init__("Notification not found")
        self.notification_id = notification_id
