"""Services package - External service integrations."""

from src.services.hyperliquid import HyperliquidClient
from src.services.persistence import PersistenceGateway
from src.services.telegram import TelegramClient

__all__ = [
    "HyperliquidClient",
    "PersistenceGateway",
    "TelegramClient",
]
