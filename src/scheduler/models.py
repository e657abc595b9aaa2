"""ScheduledMessage data model."""

from __future__ import annotations

import enum
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

_MARKUP_CHARS = re.compile(r"[<>]")


class MessageStatus(enum.StrEnum):
    """Lifecycle of a scheduled message. Only ``PENDING`` is non-terminal."""

    PENDING = "pending"
    SENT = "sent"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.PENDING


@dataclass
class ScheduledMessage:
    """A message queued for delivery to a Slack channel.

    Attributes:
        id: Unique identifier (UUID4).
        channel: Slack channel or conversation ID to post to.
        channel_name: Channel name cached when the message was scheduled.
        message: Sanitized message text.
        scheduled_at: When to deliver (timezone-aware, UTC).
        status: Current ``MessageStatus``.
        created_at: When the record was created.
        sent_at: When the message was delivered, set only on ``sent``.
        error: Reason for the most recent failure.
    """

    id: str
    channel: str
    channel_name: str
    message: str
    scheduled_at: datetime
    status: MessageStatus = MessageStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    sent_at: datetime | None = None
    error: str | None = None

    def __post_init__(self) -> None:
        self.scheduled_at = ensure_utc(self.scheduled_at)
        self.created_at = ensure_utc(self.created_at)
        if self.sent_at is not None:
            self.sent_at = ensure_utc(self.sent_at)
        self.status = MessageStatus(self.status)
        if not self.channel_name:
            self.channel_name = self.channel

    def is_due(self, now: datetime | None = None) -> bool:
        """True once the scheduled time is no longer strictly in the future."""
        return self.scheduled_at <= (now or datetime.now(UTC))

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``scheduled_messages`` column order."""
        return (
            self.id,
            self.channel,
            self.channel_name,
            self.message,
            self.scheduled_at.isoformat(),
            self.status.value,
            self.created_at.isoformat(),
            self.sent_at.isoformat() if self.sent_at else None,
            self.error,
        )

    @classmethod
    def from_row(cls, row: tuple) -> ScheduledMessage:
        """Deserialize from a SQLite row tuple."""
        return cls(
            id=row[0],
            channel=row[1],
            channel_name=row[2],
            message=row[3],
            scheduled_at=datetime.fromisoformat(row[4]),
            status=MessageStatus(row[5]),
            created_at=datetime.fromisoformat(row[6]),
            sent_at=datetime.fromisoformat(row[7]) if row[7] else None,
            error=row[8],
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation used by the HTTP API."""
        data: dict[str, Any] = {
            "id": self.id,
            "channel": self.channel,
            "channelName": self.channel_name,
            "message": self.message,
            "scheduledAt": _iso(self.scheduled_at),
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
        }
        if self.sent_at is not None:
            data["sentAt"] = _iso(self.sent_at)
        if self.error is not None:
            data["error"] = self.error
        return data


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def sanitize_message(text: str, max_length: int = 4000) -> str:
    """Trim, strip ``<``/``>`` and cap *text* at *max_length* characters."""
    if not isinstance(text, str):
        return ""
    return _MARKUP_CHARS.sub("", text.strip())[:max_length]


def make_message_id() -> str:
    """Generate a new message ID."""
    return str(uuid.uuid4())


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")
