"""Slack Connect entry point."""

import asyncio
import contextlib
import logging
import signal

from src.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
)
logger = logging.getLogger(__name__)


def build_services():  # noqa: ANN201
    """Create the stores, Slack collaborators and scheduler engine."""
    from src.api.server import Services
    from src.integrations.slack_auth import SlackAuthManager
    from src.integrations.slack_oauth import SlackOAuthFlow
    from src.integrations.slack_tokens import TokenStore
    from src.scheduler.engine import SchedulerEngine
    from src.scheduler.executor import DeliveryExecutor
    from src.scheduler.store import MessageStore

    tokens = TokenStore.get()
    store = MessageStore.get()
    auth = SlackAuthManager(store=tokens)
    executor = DeliveryExecutor()
    engine = SchedulerEngine(store=store, auth=auth, executor=executor)
    return Services(
        engine=engine,
        store=store,
        tokens=tokens,
        auth=auth,
        executor=executor,
        oauth=SlackOAuthFlow(store=tokens),
    )


async def serve() -> None:
    """Reconcile the scheduler, start the API, and run until signalled."""
    from src.api.server import ApiServer

    services = build_services()
    server = ApiServer(services)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    logger.info("Initializing message scheduler...")
    await services.engine.start()
    await server.start()
    try:
        await stop.wait()
    finally:
        await server.stop()
        await services.engine.stop()


def main() -> None:
    """Start the API server and scheduler."""
    if not settings.slack_client_id or not settings.slack_client_secret:
        logger.warning("SLACK_CLIENT_ID / SLACK_CLIENT_SECRET not set, OAuth and refresh disabled")
    asyncio.run(serve())


if __name__ == "__main__":
    main()
