"""SchedulerEngine — one-shot APScheduler timers for scheduled Slack messages."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from src.config import settings
from src.integrations.slack_auth import CredentialUnavailableError
from src.scheduler.errors import AuthRejectedError, InvalidScheduleError, TransientStoreError
from src.scheduler.models import (
    MessageStatus,
    ScheduledMessage,
    ensure_utc,
    make_message_id,
    sanitize_message,
)

if TYPE_CHECKING:
    from apscheduler.job import Job

    from src.integrations.slack_auth import SlackAuthManager
    from src.scheduler.executor import DeliveryExecutor
    from src.scheduler.store import MessageStore

logger = logging.getLogger(__name__)

TIME_PASSED = "Scheduled time has passed"
NO_CREDENTIALS = "No valid Slack credentials"


class SchedulerEngine:
    """Owns the table of armed timers, one per pending future message.

    The store is the source of truth; the timer table is rebuilt from it on
    every ``start()``. All table mutations happen under ``self._lock``.
    Status changes go through the store's compare-and-swap ``transition``.

    Args:
        store: MessageStore for persistence.
        auth: SlackAuthManager used to validate/refresh credentials on fire.
        executor: DeliveryExecutor that posts the message.
        timezone: IANA timezone for the APScheduler instance (default from settings).
    """

    def __init__(
        self,
        store: MessageStore,
        auth: SlackAuthManager,
        executor: DeliveryExecutor,
        timezone: str | None = None,
    ) -> None:
        self._store = store
        self._auth = auth
        self._executor = executor
        self._timezone = timezone or settings.scheduler_timezone
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._jobs: dict[str, Job] = {}
        self._in_flight: set[str] = set()
        self._lock = asyncio.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Reconcile pending messages against the clock, then start the scheduler.

        Future messages are armed; past-due ones are marked failed without a
        delivery attempt.
        """
        if self._running:
            return

        pending = await self._store.list_pending()
        now = datetime.now(UTC)
        armed = expired = 0
        for message in pending:
            if message.scheduled_at > now:
                async with self._lock:
                    self._arm(message)
                armed += 1
                logger.info(
                    "Rescheduled message %s for %s", message.id, message.scheduled_at.isoformat()
                )
            else:
                if await self._store.transition(message.id, MessageStatus.FAILED, TIME_PASSED):
                    logger.warning("Message %s marked as failed (scheduled time passed)", message.id)
                expired += 1

        self._scheduler.start()
        self._running = True
        logger.info(
            "Scheduler started: %d message(s) armed, %d expired (tz=%s)",
            armed,
            expired,
            self._timezone,
        )

    async def stop(self) -> None:
        """Shut down the scheduler and drop all armed timers."""
        if self._running:
            self._scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")
        async with self._lock:
            self._jobs.clear()

    # -- Message management ----------------------------------------------------

    async def schedule_message(
        self,
        channel: str,
        message: str,
        scheduled_at: datetime,
        channel_name: str | None = None,
    ) -> ScheduledMessage:
        """Persist a new pending message, then arm its timer.

        Raises ``InvalidScheduleError`` (nothing stored, nothing armed) when
        *scheduled_at* is not strictly in the future or the input is empty.
        """
        scheduled_at = ensure_utc(scheduled_at)
        if scheduled_at <= datetime.now(UTC):
            msg = "Scheduled time must be in the future"
            raise InvalidScheduleError(msg)

        text = sanitize_message(message, settings.message_max_length)
        if not channel or not text:
            msg = "Channel and message are required"
            raise InvalidScheduleError(msg)

        record = ScheduledMessage(
            id=make_message_id(),
            channel=channel,
            channel_name=channel_name or channel,
            message=text,
            scheduled_at=scheduled_at,
        )
        await self._store.add_message(record)
        async with self._lock:
            self._arm(record)
        logger.info("Message %s scheduled for %s", record.id, scheduled_at.isoformat())
        return record

    async def cancel_message(self, message_id: str) -> ScheduledMessage | None:
        """Disarm the timer and mark the message cancelled if still pending.

        Idempotent: unknown ids and messages that already reached a terminal
        status are left as they are. Returns the stored record, if any.
        """
        async with self._lock:
            job = self._jobs.pop(message_id, None)
            if job is not None:
                self._remove_job(job)
            in_flight = message_id in self._in_flight

        if in_flight:
            logger.info("Message %s is being delivered, cancel ignored", message_id)
        elif await self._store.transition(message_id, MessageStatus.CANCELLED):
            logger.info("Cancelled scheduled message %s", message_id)
        else:
            logger.debug("Message %s not pending, nothing to cancel", message_id)
        return await self._store.get_message(message_id)

    def scheduled_ids(self) -> list[str]:
        """Return the ids of messages with an armed timer."""
        return sorted(self._jobs)

    # -- Internal --------------------------------------------------------------

    def _arm(self, message: ScheduledMessage) -> Job:
        """Create (or replace) the one-shot job for *message*. Caller holds the lock."""
        existing = self._jobs.pop(message.id, None)
        if existing is not None:
            self._remove_job(existing)
        job = self._scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=message.scheduled_at, timezone=self._timezone),
            id=message.id,
            name=f"message:{message.id}",
            args=[message.id],
            misfire_grace_time=None,
            replace_existing=True,
        )
        self._jobs[message.id] = job
        return job

    def _remove_job(self, job: Job) -> None:
        try:
            job.remove()
        except JobLookupError:
            logger.debug("Job %s already removed from scheduler", job.id)

    async def _fire(self, message_id: str) -> None:
        """Callback invoked by APScheduler when a message is due."""
        async with self._lock:
            if self._jobs.pop(message_id, None) is None:
                logger.debug("Timer for %s no longer armed, skipping", message_id)
                return
            self._in_flight.add(message_id)
        try:
            await self._deliver(message_id)
        finally:
            async with self._lock:
                self._in_flight.discard(message_id)

    async def _deliver(self, message_id: str) -> None:
        """Validate credentials, send, and record a terminal status."""
        logger.info("Sending scheduled message %s...", message_id)
        try:
            message = await self._store.get_message(message_id)
            if message is None:
                logger.warning("Scheduled message not found: %s", message_id)
                return
            if message.status is not MessageStatus.PENDING:
                logger.info("Skipping message %s (status=%s)", message_id, message.status)
                return

            try:
                valid = await self._auth.ensure_valid()
            except Exception as exc:
                logger.exception("Credential check failed for message %s", message_id)
                await self._record(
                    message_id, MessageStatus.FAILED, f"Credential check failed: {exc}"
                )
                return
            if not valid:
                await self._record(message_id, MessageStatus.FAILED, NO_CREDENTIALS)
                return

            credential = await self._auth.get_credentials()
            await self._executor.deliver(message.channel, message.message, credential)
        except (AuthRejectedError, CredentialUnavailableError):
            logger.warning("Slack rejected credentials for message %s", message_id)
            await self._record(message_id, MessageStatus.FAILED, NO_CREDENTIALS)
            return
        except Exception as exc:
            logger.exception("Error sending scheduled message %s", message_id)
            await self._record(message_id, MessageStatus.FAILED, str(exc) or type(exc).__name__)
            return

        await self._record(message_id, MessageStatus.SENT)

    async def _record(
        self,
        message_id: str,
        status: MessageStatus,
        error: str | None = None,
    ) -> None:
        """Write a terminal status. Never raises."""
        try:
            changed = await self._store.transition(message_id, status, error)
        except TransientStoreError:
            if status is MessageStatus.SENT:
                logger.exception(
                    "Message %s was delivered but its status could not be saved", message_id
                )
            else:
                logger.exception("Could not save status %s for message %s", status, message_id)
            return
        if not changed:
            logger.warning(
                "Message %s was no longer pending; %s not recorded", message_id, status
            )
        elif status is MessageStatus.SENT:
            logger.info("Scheduled message %s sent successfully", message_id)
        else:
            logger.warning("Scheduled message %s failed: %s", message_id, error)
