"""Contract Tests - Validate Pydantic schemas."""

from datetime import UTC, datetime

import pytest
from pydantic import TypeAdapter, ValidationError

from src.config.settings import Settings
from src.contracts.side_effects import SendDiagnostic, SendMessage, SideEffect
from src.contracts.telegram_update import TelegramUpdate, classify_text
from src.contracts.updates import InboundUpdate, InputKind


class TestTelegramUpdateContract:
    """Tests for TelegramUpdate schema and classification."""

    def test_valid_update(self, sample_telegram_update: dict) -> None:
        """Test that a valid update converts to an inbound update."""
        update = TelegramUpdate.model_validate(sample_telegram_update)
        inbound = update.to_inbound()

        assert inbound is not None
        assert inbound.update_id == "900001"
        assert inbound.chat_id == 1001
        assert inbound.input_kind == InputKind.START
        assert inbound.payload == {"command": "subscribe", "coin": "eth"}
        assert inbound.received_at == datetime(2026, 1, 1, tzinfo=UTC)

    def test_edited_message_ignored(self, sample_telegram_update: dict) -> None:
        payload = dict(sample_telegram_update)
        payload["edited_message"] = payload.pop("message")

        assert TelegramUpdate.model_validate(payload).to_inbound() is None

    def test_bot_sender_ignored(self, sample_telegram_update: dict) -> None:
        sample_telegram_update["message"]["from"]["is_bot"] = True

        assert TelegramUpdate.model_validate(sample_telegram_update).to_inbound() is None

    def test_non_text_message_ignored(self, sample_telegram_update: dict) -> None:
        """Test that photos, stickers, etc. are filtered."""
        del sample_telegram_update["message"]["text"]

        assert TelegramUpdate.model_validate(sample_telegram_update).to_inbound() is None

    def test_missing_chat_fails(self) -> None:
        with pytest.raises(ValidationError):
            TelegramUpdate.model_validate(
                {"update_id": 1, "message": {"message_id": 1, "date": 0, "text": "hi"}}
            )


class TestClassifyText:
    """Tests for command and free text classification."""

    @pytest.mark.parametrize(
        "text,kind",
        [
            ("/start", InputKind.START),
            ("/subscribe BTC", InputKind.START),
            ("/start@coin_alerts_bot", InputKind.START),
            ("/unsubscribe ETH", InputKind.UNSUBSCRIBE),
            ("/list", InputKind.LIST),
            ("/help", InputKind.HELP),
            ("/cancel", InputKind.CANCEL),
            ("yes", InputKind.CONFIRM),
            ("OK", InputKind.CONFIRM),
            ("no", InputKind.DENY),
            ("btc", InputKind.TEXT),
            ("/unknown", InputKind.TEXT),
        ],
    )
    def test_classification(self, text: str, kind: InputKind) -> None:
        assert classify_text(text)[0] == kind

    def test_command_argument_becomes_coin(self) -> None:
        kind, payload = classify_text("/unsubscribe  eth ")

        assert kind == InputKind.UNSUBSCRIBE
        assert payload["coin"] == "eth"

    def test_free_text_payload(self) -> None:
        assert classify_text("sol") == (InputKind.TEXT, {"text": "sol"})


class TestInboundUpdateContract:
    """Tests for InboundUpdate schema."""

    def test_int_update_id_coerced(self) -> None:
        update = InboundUpdate(update_id=77, chat_id=1, input_kind=InputKind.HELP)

        assert update.update_id == "77"
        assert not update.is_internal

    def test_empty_update_id_fails(self) -> None:
        with pytest.raises(ValidationError):
            InboundUpdate(update_id="", chat_id=1, input_kind=InputKind.HELP)

    def test_internal_kinds(self) -> None:
        update = InboundUpdate(
            update_id="77:delivery", chat_id=1, input_kind=InputKind.DELIVERY_FAILED
        )

        assert update.is_internal

    def test_immutable(self) -> None:
        update = InboundUpdate(update_id=77, chat_id=1, input_kind=InputKind.HELP)

        with pytest.raises(ValidationError):
            update.chat_id = 2  # type: ignore[misc]


class TestSideEffectContract:
    """Tests for the side effect union."""

    def test_discriminated_by_kind(self) -> None:
        adapter = TypeAdapter(list[SideEffect])

        effects = adapter.validate_python(
            [
                {"kind": "send_message", "text": "hi"},
                {"kind": "send_diagnostic", "reason": "forbidden", "text": "sorry"},
            ]
        )

        assert isinstance(effects[0], SendMessage)
        assert isinstance(effects[1], SendDiagnostic)
        assert effects[0].report_outcome is False

    def test_empty_text_fails(self) -> None:
        with pytest.raises(ValidationError):
            SendMessage(text="")


class TestSettingsContract:
    """Tests for configuration."""

    def test_retry_policy_from_settings(self) -> None:
        settings = Settings(
            telegram_bot_token="t",
            retry_base_delay=1.0,
            retry_max_delay=8.0,
            retry_max_attempts=4,
        )
        policy = settings.retry_policy()

        assert policy.delays() == [1.0, 2.0, 4.0]

    def test_invalid_retry_policy_rejected(self) -> None:
        settings = Settings(telegram_bot_token="t", retry_base_delay=5, retry_max_delay=1)

        with pytest.raises(ValidationError):
            settings.retry_policy()
