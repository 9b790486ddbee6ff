"""Response Templates - Base templates for all bot replies.

Templates contain the fixed structure of each reply plus placeholders
for dynamic data. Transitions pick a template key; nothing else decides
wording.
"""

from typing import Any

# Response templates organized by dialog step
TEMPLATES: dict[str, str] = {
    # Conversation start
    "welcome": (
        "Welcome to Hyperliquid Trade Alerts!\n\n"
        "Which coin would you like to follow? (e.g. BTC, ETH, SOL)"
    ),
    "ask_coin_again": "No problem. Which coin would you like to follow instead?",
    "invalid_coin": (
        "{coin} doesn't look like a coin symbol. "
        "Please send a ticker such as BTC or ETH."
    ),
    "unlisted_coin": (
        "{coin} is not available on Hyperliquid. Please send another ticker."
    ),
    "coin_check_failed": (
        "Sorry, there was an error validating {coin}. Please try again."
    ),
    # Confirmation
    "ask_confirmation": "Subscribe to {coin} trade alerts? (yes/no)",
    "subscribed": (
        "Successfully subscribed to {coin} trades!\n\n"
        "Your subscriptions: {subscriptions}"
    ),
    "already_subscribed": "You're already subscribed to {coin} trades.",
    # Subscriptions management
    "list": "Your Subscriptions:\n\n{subscriptions}",
    "list_empty": (
        "You're not subscribed to any coins.\n\n"
        "Use /start to get started!"
    ),
    "unsubscribed": "Successfully unsubscribed from {coin} trades.",
    "not_subscribed": "You weren't subscribed to {coin} trades.",
    "unsubscribe_usage": "Please specify a coin. Example: /unsubscribe ETH",
    "cancelled": "Okay, cancelled. Use /start whenever you want to begin again.",
    "help": (
        "Hyperliquid Trade Alerts Help\n\n"
        "I keep track of the Hyperliquid coins you follow.\n\n"
        "Available Commands:\n"
        "/start - Subscribe to a coin step by step\n"
        "/subscribe <coin> - Subscribe to a coin (e.g. /subscribe ETH)\n"
        "/unsubscribe <coin> - Unsubscribe from a coin\n"
        "/list - Show your current subscriptions\n"
        "/cancel - Abort the current conversation\n"
        "/help - Show this help message"
    ),
    # Diagnostics
    "unexpected_input": (
        "Sorry, I can't handle that right now. 🤔\n\n"
        "Use /help to see what I can do."
    ),
    "delivery_failed": (
        "Sorry, something went wrong while completing your request. 😔\n\n"
        "Please try again with /start."
    ),
    "error": (
        "Sorry, there was an error processing your message.\n\n"
        "Please try again in a few moments."
    ),
}


def get_template(template_key: str) -> str:
    """Get a template by its key.

    Args:
        template_key: Key of the template to retrieve.

    Returns:
        Template string, or error template if not found.
    """
    return TEMPLATES.get(template_key, TEMPLATES["error"])


def format_template(template_key: str, **context: Any) -> str:
    """Format a template with context data.

    Args:
        template_key: Key of the template.
        **context: Data to fill placeholders.

    Returns:
        Formatted template string.
    """
    template = get_template(template_key)
    try:
        return template.format(**context)
    except KeyError:
        # Missing placeholder - return template as-is
        return template


def format_subscriptions(coins: list[str]) -> str:
    """Render a subscriptions list for display."""
    return ", ".join(sorted(coins)) if coins else "none"
