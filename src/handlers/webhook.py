"""Webhook Handler - Telegram webhook endpoint."""

from fastapi import APIRouter, Header, HTTPException, Request

from src.config.settings import get_settings
from src.contracts.telegram_update import TelegramUpdate
from src.core.engine import ConversationEngine
from src.core.errors import EngineShuttingDownError, PersistenceError
from src.services.observability import annotate_update, get_tracer
from src.utils.logger import get_logger

router = APIRouter(prefix="/webhook", tags=["webhook"])
logger = get_logger(__name__)
tracer = get_tracer(__name__)


def get_engine(request: Request) -> ConversationEngine:
    """Engine wired by the application lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail={"error": "Engine not ready"})
    return engine


@router.post("/telegram")
async def telegram_webhook(
    payload: TelegramUpdate,
    request: Request,
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
) -> dict:
    """Webhook handler for the Telegram Bot API.

    Classifies the update, runs it through the engine and reports what
    happened. Telegram redelivers on non-2xx answers, so persistence
    failures answer 500 and duplicates answer 200.

    Args:
        payload: Telegram Update object.
        request: Incoming request (gives access to the engine).
        x_telegram_bot_api_secret_token: Secret configured with setWebhook.

    Returns:
        Dict com status.
    """
    settings = get_settings()
    if (
        settings.telegram_webhook_secret
        and x_telegram_bot_api_secret_token != settings.telegram_webhook_secret
    ):
        logger.warning("webhook_secret_mismatch", update_id=payload.update_id)
        raise HTTPException(status_code=401, detail={"error": "Invalid secret token"})

    update = payload.to_inbound()
    if update is None:
        # Edits, bot messages, non-text messages
        return {"status": "ignored", "reason": "filtered_event"}

    engine = get_engine(request)

    with tracer.start_as_current_span("telegram_webhook") as span:
        annotate_update(span, update)

        try:
            result = await engine.process(update)
        except EngineShuttingDownError as e:
            logger.info("webhook_rejected_shutdown", update_id=update.update_id)
            raise HTTPException(
                status_code=503,
                detail={"error": "Shutting down", "update_id": update.update_id},
            ) from e
        except PersistenceError as e:
            span.record_exception(e)
            logger.error(
                "webhook_processing_failed",
                update_id=update.update_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise HTTPException(
                status_code=500,
                detail={"error": "Processing failed", "update_id": update.update_id},
            ) from e

    final_state = result.final_state
    logger.info(
        "webhook_processed",
        update_id=update.update_id,
        status=result.status,
        state=final_state.label if final_state else None,
    )
    return {
        "status": result.status,
        "update_id": update.update_id,
        "state": final_state.label if final_state else None,
        "outcome": result.outcome,
    }


@router.get("/health")
async def webhook_health() -> dict:
    """Health check for webhook endpoint.

    Returns:
        Health status dict.
    """
    return {"status": "healthy", "endpoint": "webhook"}


@router.get("/debug/state/{chat_id}")
async def get_state(chat_id: int, request: Request) -> dict:
    """Get conversation state for a chat (debug/testing only).

    Args:
        chat_id: Telegram chat id.

    Returns:
        State data dict.
    """
    if get_settings().is_production:
        raise HTTPException(status_code=404)

    engine = get_engine(request)
    try:
        user = await engine.gateway.load(chat_id)
    except PersistenceError as e:
        logger.error("debug_state_get_failed", chat_id=chat_id, error=str(e))
        return {"status": "error", "message": str(e)}

    return {
        "status": "success",
        "chat_id": chat_id,
        "known": user.persisted,
        "state": user.state.label,
        "context": user.state.context,
    }
