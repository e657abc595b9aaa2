"""Scheduled message delivery — models, persistence, delivery, and timers."""

from src.scheduler.engine import SchedulerEngine
from src.scheduler.executor import DeliveryExecutor
from src.scheduler.models import MessageStatus, ScheduledMessage
from src.scheduler.store import MessageStore

__all__ = [
    "MessageStatus",
    "ScheduledMessage",
    "MessageStore",
    "DeliveryExecutor",
    "SchedulerEngine",
]
