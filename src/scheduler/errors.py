"""Exceptions raised by the message scheduler."""

from src.db import TransientStoreError

__all__ = [
    "AuthRejectedError",
    "DeliveryRejectedError",
    "InvalidScheduleError",
    "MessageNotFoundError",
    "RemoteDeliveryError",
    "SchedulerError",
    "TargetNotFoundError",
    "TransientStoreError",
]


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class InvalidScheduleError(SchedulerError):
    """Raised when a schedule request is rejected before any state changes."""


class MessageNotFoundError(SchedulerError):
    """Raised when operating on an unknown message id."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message with ID {message_id} not found")
        self.message_id = message_id


class DeliveryRejectedError(SchedulerError):
    """Raised when Slack declines to deliver a message."""


class AuthRejectedError(DeliveryRejectedError):
    """Slack rejected the access token used for delivery."""


class TargetNotFoundError(DeliveryRejectedError):
    """The destination channel does not exist or cannot be posted to."""


class RemoteDeliveryError(DeliveryRejectedError):
    """Any other delivery failure reported by Slack or the network."""
