"""Application Dependencies.

Builds the engine and its collaborators from settings. Everything is
created here and passed explicitly; no module keeps a global instance.
"""

from dataclasses import dataclass

from src.config.settings import Settings
from src.core.dispatcher import OutboundDispatcher
from src.core.engine import ConversationEngine
from src.core.idempotency import IdempotencyGuard
from src.core.retry import RetryExecutor
from src.services.hyperliquid import HyperliquidClient
from src.services.persistence import PersistenceGateway
from src.services.telegram import TelegramClient
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class AppDependencies:
    """Wired components of a running bot.

    Attributes:
        settings: Loaded settings.
        gateway: Persistence gateway (owns the connection pool).
        telegram: Bot API client.
        engine: Update processing pipeline.
        coins: Hyperliquid coin lookup (None when validation is off).
    """

    settings: Settings
    gateway: PersistenceGateway
    telegram: TelegramClient
    engine: ConversationEngine
    coins: HyperliquidClient | None = None

    async def aclose(self) -> None:
        """Release the HTTP clients and the connection pool."""
        await self.telegram.close()
        if self.coins is not None:
            await self.coins.close()
        await self.gateway.close()


async def build_dependencies(settings: Settings) -> AppDependencies:
    """Create and wire all components.

    Args:
        settings: Application settings.

    Returns:
        AppDependencies ready to process updates.
    """
    engine_kwargs = {}
    if settings.database_url.startswith("postgresql"):
        engine_kwargs["pool_size"] = settings.database_pool_size
    gateway = PersistenceGateway.from_url(settings.database_url, **engine_kwargs)
    if settings.auto_create_schema:
        await gateway.create_schema()

    telegram = TelegramClient(
        bot_token=settings.telegram_bot_token,
        base_url=settings.telegram_api_url,
    )
    dispatcher = OutboundDispatcher(
        transport=telegram,
        executor=RetryExecutor(settings.retry_policy()),
        idle_timeout=settings.lane_idle_timeout,
    )
    coins = (
        HyperliquidClient(
            base_url=settings.hyperliquid_api_url,
            cache_ttl=settings.coin_cache_ttl,
        )
        if settings.validate_coins
        else None
    )
    guard = IdempotencyGuard(gateway, reservation_timeout=settings.reservation_timeout)
    engine = ConversationEngine(
        guard=guard, gateway=gateway, dispatcher=dispatcher, coins=coins
    )

    logger.info(
        "dependencies_ready",
        environment=settings.app_env,
        retry_max_attempts=settings.retry_max_attempts,
        validate_coins=settings.validate_coins,
    )
    return AppDependencies(
        settings=settings,
        gateway=gateway,
        telegram=telegram,
        engine=engine,
        coins=coins,
    )
