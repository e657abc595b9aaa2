"""JSON HTTP API for connecting Slack and sending or scheduling messages.

Runs in the same asyncio event loop as the scheduler, using aiohttp's
AppRunner/TCPSite for non-blocking start/stop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from aiohttp import web

from src.config import settings
from src.integrations.slack_auth import CredentialCheckError, CredentialUnavailableError
from src.integrations.slack_oauth import OAuthStateError
from src.scheduler.errors import (
    AuthRejectedError,
    InvalidScheduleError,
    RemoteDeliveryError,
    TargetNotFoundError,
)
from src.scheduler.models import ensure_utc, sanitize_message

if TYPE_CHECKING:
    from src.integrations.slack_auth import SlackAuthManager
    from src.integrations.slack_oauth import SlackOAuthFlow
    from src.integrations.slack_tokens import TokenStore
    from src.scheduler.engine import SchedulerEngine
    from src.scheduler.executor import DeliveryExecutor
    from src.scheduler.store import MessageStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Collaborators the request handlers need."""

    engine: SchedulerEngine
    store: MessageStore
    tokens: TokenStore
    auth: SlackAuthManager
    executor: DeliveryExecutor
    oauth: SlackOAuthFlow


SERVICES = web.AppKey("services", Services)


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 string or epoch milliseconds. Returns None if invalid."""
    if isinstance(value, bool):
        return None
    try:
        if isinstance(value, int | float):
            return datetime.fromtimestamp(value / 1000, UTC)
        if isinstance(value, str):
            return datetime.fromisoformat(value)
    except (ValueError, OverflowError, OSError):
        return None
    return None


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    try:
        payload = await request.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


# -- Middleware ----------------------------------------------------------------


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:  # noqa: ANN001
    """Turn unhandled exceptions into a JSON 500."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as exc:
        logger.exception("Unhandled error: %s %s", request.method, request.path)
        message = str(exc) or "Internal Server Error"
        if settings.is_production:
            message = "Something went wrong"
        return _error(message, 500)


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:  # noqa: ANN001
    """Allow credentialed requests from the configured frontend origins."""
    origin = request.headers.get("Origin")
    allowed = settings.get_allowed_origins()
    if origin and origin.rstrip("/") not in allowed:
        logger.warning("CORS rejected origin=%s", origin)
        return _error("Not allowed by CORS", 403)

    if request.method == "OPTIONS":
        response: web.StreamResponse = web.Response(status=204)
    else:
        response = await handler(request)

    if origin:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


# -- Health & auth -------------------------------------------------------------


async def _health(request: web.Request) -> web.Response:
    """GET /api/health — basic liveness check."""
    return web.json_response({"status": "OK", "timestamp": datetime.now(UTC).isoformat()})


async def _auth_start(request: web.Request) -> web.Response:
    """GET /api/auth/slack — return the Slack consent URL."""
    return web.json_response({"url": request.app[SERVICES].oauth.authorize_url()})


async def _auth_callback(request: web.Request) -> web.Response:
    """GET /api/auth/slack/callback — finish OAuth and redirect to the frontend."""
    frontend = settings.frontend_url.rstrip("/")
    error = request.query.get("error")
    code = request.query.get("code")
    state = request.query.get("state")

    if error:
        logger.warning("OAuth error: %s", error)
        raise web.HTTPFound(f"{frontend}?error=oauth_denied")
    if not code or not state:
        raise web.HTTPFound(f"{frontend}?error=missing_params")

    try:
        await request.app[SERVICES].oauth.complete(code, state)
    except OAuthStateError:
        raise web.HTTPFound(f"{frontend}?error=invalid_state") from None
    except Exception:
        logger.exception("OAuth callback error")
        raise web.HTTPFound(f"{frontend}?error=oauth_failed") from None
    raise web.HTTPFound(f"{frontend}/dashboard")


async def _auth_status(request: web.Request) -> web.Response:
    """GET /api/auth/status — whether a workspace is connected."""
    try:
        connected = await request.app[SERVICES].tokens.is_connected()
    except Exception:
        logger.exception("Failed to read Slack connection status")
        connected = False
    return web.json_response({"connected": connected})


# -- Channels ------------------------------------------------------------------


async def _channels(request: web.Request) -> web.Response:
    """GET /api/channels — conversations the token can see."""
    services = request.app[SERVICES]
    if not await services.tokens.is_connected():
        return _error("Not connected to Slack", 401)
    try:
        credential = await services.auth.live_credentials()
        channels = await services.executor.list_channels(credential)
    except (CredentialUnavailableError, AuthRejectedError):
        return _error("Invalid Slack authentication", 401)
    except (CredentialCheckError, RemoteDeliveryError):
        logger.exception("Error fetching channels")
        return _error("Failed to fetch channels", 500)
    return web.json_response(channels)


# -- Messages ------------------------------------------------------------------


async def _send(request: web.Request) -> web.Response:
    """POST /api/message/send — deliver a message immediately."""
    services = request.app[SERVICES]
    body = await _read_json(request) or {}
    channel = body.get("channel")
    message = body.get("message")
    if not channel or not message:
        return _error("Channel and message are required", 400)
    if not await services.tokens.is_connected():
        return _error("Not connected to Slack", 401)

    text = sanitize_message(message, settings.message_max_length)
    try:
        credential = await services.auth.live_credentials()
        ts = await services.executor.deliver(channel, text, credential)
    except (CredentialUnavailableError, AuthRejectedError):
        return _error("Invalid Slack authentication", 401)
    except TargetNotFoundError:
        return _error("Channel not found", 404)
    except (CredentialCheckError, RemoteDeliveryError):
        logger.exception("Error sending message to %s", channel)
        return _error("Failed to send message", 500)

    logger.info("Message sent to channel %s", channel)
    return web.json_response({"success": True, "messageId": ts})


async def _schedule(request: web.Request) -> web.Response:
    """POST /api/message/schedule — persist and arm a future message."""
    services = request.app[SERVICES]
    body = await _read_json(request) or {}
    channel = body.get("channel")
    message = body.get("message")
    scheduled_at_raw = body.get("scheduledAt")
    if not channel or not message or not scheduled_at_raw:
        return _error("Channel, message, and scheduledAt are required", 400)

    scheduled_at = _parse_timestamp(scheduled_at_raw)
    if scheduled_at is None:
        return _error("scheduledAt must be an ISO 8601 timestamp or epoch milliseconds", 400)
    if ensure_utc(scheduled_at) <= datetime.now(UTC):
        return _error("Scheduled time must be in the future", 400)

    try:
        credential = await services.auth.get_credentials()
        channel_name = await services.executor.channel_name(channel, credential)
        record = await services.engine.schedule_message(
            channel, message, scheduled_at, channel_name=channel_name
        )
    except InvalidScheduleError as exc:
        return _error(str(exc), 400)
    except CredentialUnavailableError:
        return _error("Not connected to Slack", 401)
    except AuthRejectedError:
        return _error("Invalid Slack authentication", 401)
    except TargetNotFoundError:
        return _error("Channel not found", 404)

    return web.json_response({
        "success": True,
        "messageId": record.id,
        "scheduledAt": record.to_dict()["scheduledAt"],
    })


async def _list_scheduled(request: web.Request) -> web.Response:
    """GET /api/message/scheduled — every message record, any status."""
    messages = await request.app[SERVICES].store.list_messages()
    return web.json_response([m.to_dict() for m in messages])


async def _cancel(request: web.Request) -> web.Response:
    """DELETE /api/message/scheduled/{id} — idempotent cancel."""
    message_id = request.match_info["id"]
    await request.app[SERVICES].engine.cancel_message(message_id)
    return web.json_response({"success": True})


async def _scheduler_status(request: web.Request) -> web.Response:
    """GET /api/scheduler/status — ids of messages with an armed timer."""
    engine = request.app[SERVICES].engine
    return web.json_response([
        {"messageId": message_id, "scheduled": True} for message_id in engine.scheduled_ids()
    ])


def create_web_app(services: Services) -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application(middlewares=[cors_middleware, error_middleware])
    app[SERVICES] = services
    app.router.add_get("/api/health", _health)
    app.router.add_get("/api/auth/slack", _auth_start)
    app.router.add_get("/api/auth/slack/callback", _auth_callback)
    app.router.add_get("/api/auth/status", _auth_status)
    app.router.add_get("/api/channels", _channels)
    app.router.add_post("/api/message/send", _send)
    app.router.add_post("/api/message/schedule", _schedule)
    app.router.add_get("/api/message/scheduled", _list_scheduled)
    app.router.add_delete("/api/message/scheduled/{id}", _cancel)
    app.router.add_get("/api/scheduler/status", _scheduler_status)
    return app


class ApiServer:
    """Manages the aiohttp server lifecycle."""

    def __init__(self, services: Services, host: str | None = None, port: int | None = None) -> None:
        self._services = services
        self.host = host or settings.api_host
        self.port = port or settings.api_port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start listening for API requests."""
        app = create_web_app(self._services)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info("API server listening on %s:%d", self.host, self.port)
        logger.info("Frontend URL: %s", settings.frontend_url)

    async def stop(self) -> None:
        """Shut down the server gracefully."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("API server stopped")
