"""Run the bot with long polling instead of a webhook.

SIGINT/SIGTERM stop polling, let in-flight updates finish and exit.

Usage:
    python -m src.scripts.run_polling
"""

import asyncio
import signal

from src.config.settings import get_settings
from src.core.dependencies import build_dependencies
from src.core.retry import RetryExecutor
from src.handlers.polling import PollingRunner
from src.services.observability import setup_tracing, shutdown_tracing
from src.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


async def run() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)
    provider = setup_tracing(settings)

    deps = await build_dependencies(settings)
    me = await deps.telegram.get_me()
    logger.info("bot_started", username=me.get("username"))

    runner = PollingRunner(
        telegram=deps.telegram,
        engine=deps.engine,
        executor=RetryExecutor(settings.retry_policy()),
        timeout=settings.polling_timeout,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runner.stop)

    try:
        await runner.run()
    finally:
        drained = await deps.engine.shutdown(settings.shutdown_timeout)
        await deps.aclose()
        shutdown_tracing(provider)
        logger.info("bot_stopped", drained=drained)


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
