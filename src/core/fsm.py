"""Finite State Machine - Conversation state and the pure transition table.

``transition`` maps (state, input kind, payload) to the next state and the
side effects to emit. It performs no I/O; the engine persists and
dispatches what it returns.
"""

import re
from collections.abc import Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.contracts.side_effects import SendDiagnostic, SendMessage, SideEffect
from src.contracts.updates import InputKind
from src.core.templates import format_subscriptions, format_template


class StateTag(str, Enum):
    """Conversation states.

    IDLE is initial. COMPLETED and FAILED end a conversation; the user can
    start a new one from either.
    """

    IDLE = "idle"
    AWAITING_INPUT = "awaiting_input"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Dialog stages of AWAITING_INPUT
STAGE_ASK_COIN = 1
STAGE_CONFIRM = 2

# Context keys kept when a conversation ends
PERSISTENT_KEYS = frozenset({"subscriptions"})

COIN_PATTERN = re.compile(r"^[A-Z0-9]{2,10}$")


class ConversationState(BaseModel):
    """Tagged conversation state plus its opaque context payload.

    ``stage`` is only set for AWAITING_INPUT and ``reason`` only for
    FAILED.
    """

    model_config = ConfigDict(frozen=True)

    tag: StateTag = Field(
        default=StateTag.IDLE,
        description="Current state tag",
    )
    stage: int | None = Field(
        default=None,
        description="Dialog step, compared only for equality",
    )
    reason: str | None = Field(
        default=None,
        description="Failure reason",
    )
    context: dict[str, Any] = Field(
        default_factory=dict,
        description="Dialog data carried between updates",
    )

    @model_validator(mode="after")
    def check_variant(self) -> "ConversationState":
        """Reject fields that don't belong to the tag."""
        if (self.tag == StateTag.AWAITING_INPUT) != (self.stage is not None):
            raise ValueError("stage is required for awaiting_input and only for it")
        if (self.tag == StateTag.FAILED) != (self.reason is not None):
            raise ValueError("reason is required for failed and only for it")
        return self

    @classmethod
    def idle(cls, context: dict[str, Any] | None = None) -> "ConversationState":
        return cls(tag=StateTag.IDLE, context=context or {})

    @classmethod
    def awaiting_input(
        cls, stage: int, context: dict[str, Any] | None = None
    ) -> "ConversationState":
        return cls(tag=StateTag.AWAITING_INPUT, stage=stage, context=context or {})

    @classmethod
    def processing(cls, context: dict[str, Any] | None = None) -> "ConversationState":
        return cls(tag=StateTag.PROCESSING, context=context or {})

    @classmethod
    def completed(cls, context: dict[str, Any] | None = None) -> "ConversationState":
        return cls(tag=StateTag.COMPLETED, context=context or {})

    @classmethod
    def failed(
        cls, reason: str, context: dict[str, Any] | None = None
    ) -> "ConversationState":
        return cls(tag=StateTag.FAILED, reason=reason, context=context or {})

    @property
    def is_terminal(self) -> bool:
        """Verifica se a conversa terminou (completed ou failed)."""
        return self.tag in (StateTag.COMPLETED, StateTag.FAILED)

    @property
    def label(self) -> str:
        """Compact form for logs and recorded outcomes."""
        if self.tag == StateTag.AWAITING_INPUT:
            return f"{self.tag.value}({self.stage})"
        if self.tag == StateTag.FAILED:
            return f"{self.tag.value}({self.reason})"
        return self.tag.value

    @property
    def subscriptions(self) -> list[str]:
        return list(self.context.get("subscriptions", []))


class Transition(BaseModel):
    """Result of applying one input to a state."""

    model_config = ConfigDict(frozen=True)

    next_state: ConversationState
    side_effects: list[SideEffect] = Field(default_factory=list)
    accepted: bool = Field(
        default=True,
        description="False when the pair is not in the table",
    )


Handler = Callable[[ConversationState, dict[str, Any]], Transition]


def _reply(template_key: str, **context: Any) -> SendMessage:
    return SendMessage(text=format_template(template_key, **context))


def _persistent(context: dict[str, Any]) -> dict[str, Any]:
    """Drop the per-conversation scratch keys."""
    return {k: v for k, v in context.items() if k in PERSISTENT_KEYS}


def normalize_coin(raw: Any) -> str | None:
    """Uppercase a coin symbol, None if it isn't one."""
    if not isinstance(raw, str):
        return None
    coin = raw.strip().upper()
    return coin if COIN_PATTERN.match(coin) else None


def coin_to_check(
    state: ConversationState, input_kind: InputKind, payload: dict[str, Any]
) -> str | None:
    """Coin whose listing the transition will need, if any.

    The engine looks it up and passes the answer back as
    ``payload["coin_listed"]``: True, False, or None when the lookup
    failed. Without the key the coin is taken as listed.
    """
    if input_kind == InputKind.START and state.tag != StateTag.AWAITING_INPUT:
        return normalize_coin(payload.get("coin"))
    if (
        input_kind == InputKind.TEXT
        and state.tag == StateTag.AWAITING_INPUT
        and state.stage == STAGE_ASK_COIN
    ):
        return normalize_coin(payload.get("text"))
    return None


def _listing_problem(payload: dict[str, Any]) -> str | None:
    listed = payload.get("coin_listed", True)
    if listed is None:
        return "coin_check_failed"
    if not listed:
        return "unlisted_coin"
    return None


def _ask_confirmation(
    state: ConversationState, coin: str, base: dict[str, Any], payload: dict[str, Any]
) -> Transition:
    problem = _listing_problem(payload)
    if problem is not None:
        return Transition(
            next_state=ConversationState.awaiting_input(STAGE_ASK_COIN, base),
            side_effects=[_reply(problem, coin=coin)],
        )
    if coin in base.get("subscriptions", []):
        return Transition(
            next_state=ConversationState.awaiting_input(STAGE_ASK_COIN, base),
            side_effects=[_reply("already_subscribed", coin=coin)],
        )
    return Transition(
        next_state=ConversationState.awaiting_input(
            STAGE_CONFIRM, {**base, "pending_coin": coin}
        ),
        side_effects=[_reply("ask_confirmation", coin=coin)],
    )


def _on_help(state: ConversationState, payload: dict[str, Any]) -> Transition:
    return Transition(next_state=state, side_effects=[_reply("help")])


def _on_list(state: ConversationState, payload: dict[str, Any]) -> Transition:
    coins = state.subscriptions
    if not coins:
        return Transition(next_state=state, side_effects=[_reply("list_empty")])
    return Transition(
        next_state=state,
        side_effects=[_reply("list", subscriptions=format_subscriptions(coins))],
    )


def _on_unsubscribe(state: ConversationState, payload: dict[str, Any]) -> Transition:
    coin = normalize_coin(payload.get("coin"))
    if coin is None:
        return Transition(next_state=state, side_effects=[_reply("unsubscribe_usage")])

    coins = state.subscriptions
    if coin not in coins:
        return Transition(
            next_state=state, side_effects=[_reply("not_subscribed", coin=coin)]
        )

    coins.remove(coin)
    next_state = state.model_copy(
        update={"context": {**state.context, "subscriptions": coins}}
    )
    return Transition(
        next_state=next_state, side_effects=[_reply("unsubscribed", coin=coin)]
    )


def _on_start(state: ConversationState, payload: dict[str, Any]) -> Transition:
    base = _persistent(state.context)
    raw_coin = payload.get("coin")
    if raw_coin is None:
        return Transition(
            next_state=ConversationState.awaiting_input(STAGE_ASK_COIN, base),
            side_effects=[_reply("welcome")],
        )

    coin = normalize_coin(raw_coin)
    if coin is None:
        return Transition(
            next_state=ConversationState.awaiting_input(STAGE_ASK_COIN, base),
            side_effects=[_reply("invalid_coin", coin=raw_coin)],
        )
    return _ask_confirmation(state, coin, base, payload)


def _on_coin_text(state: ConversationState, payload: dict[str, Any]) -> Transition:
    if state.stage != STAGE_ASK_COIN:
        return reject(state)

    raw = payload.get("text", "")
    coin = normalize_coin(raw)
    if coin is None:
        return Transition(
            next_state=state, side_effects=[_reply("invalid_coin", coin=raw)]
        )
    return _ask_confirmation(state, coin, dict(state.context), payload)


def _on_confirm(state: ConversationState, payload: dict[str, Any]) -> Transition:
    coin = state.context.get("pending_coin")
    if state.stage != STAGE_CONFIRM or coin is None:
        return reject(state)

    coins = sorted({*state.subscriptions, coin})
    context = {**state.context, "subscriptions": coins}
    return Transition(
        next_state=ConversationState.processing(context),
        side_effects=[
            SendMessage(
                text=format_template(
                    "subscribed", coin=coin, subscriptions=format_subscriptions(coins)
                ),
                report_outcome=True,
            )
        ],
    )


def _on_deny(state: ConversationState, payload: dict[str, Any]) -> Transition:
    if state.stage != STAGE_CONFIRM:
        return reject(state)
    return Transition(
        next_state=ConversationState.awaiting_input(
            STAGE_ASK_COIN, _persistent(state.context)
        ),
        side_effects=[_reply("ask_coin_again")],
    )


def _on_cancel(state: ConversationState, payload: dict[str, Any]) -> Transition:
    return Transition(
        next_state=ConversationState.idle(_persistent(state.context)),
        side_effects=[_reply("cancelled")],
    )


def _on_delivered(state: ConversationState, payload: dict[str, Any]) -> Transition:
    return Transition(
        next_state=ConversationState.completed(_persistent(state.context))
    )


def _on_delivery_failed(state: ConversationState, payload: dict[str, Any]) -> Transition:
    reason = str(payload.get("reason") or "delivery_failed")
    context = _persistent(state.context)

    # The user never saw the confirmation, so the subscription doesn't stick
    pending = state.context.get("pending_coin")
    if state.tag == StateTag.PROCESSING and pending:
        context["subscriptions"] = [c for c in state.subscriptions if c != pending]

    return Transition(
        next_state=ConversationState.failed(reason, context),
        side_effects=[
            SendDiagnostic(reason=reason, text=format_template("delivery_failed"))
        ],
    )


def _on_failure_repeat(state: ConversationState, payload: dict[str, Any]) -> Transition:
    # Already failed; a diagnostic has been sent once
    return Transition(next_state=state)


TRANSITIONS: dict[tuple[StateTag, InputKind], Handler] = {}

for _tag in StateTag:
    TRANSITIONS[(_tag, InputKind.HELP)] = _on_help
    TRANSITIONS[(_tag, InputKind.CANCEL)] = _on_cancel
    if _tag != StateTag.PROCESSING:
        TRANSITIONS[(_tag, InputKind.LIST)] = _on_list
        TRANSITIONS[(_tag, InputKind.UNSUBSCRIBE)] = _on_unsubscribe
    TRANSITIONS[(_tag, InputKind.DELIVERY_FAILED)] = (
        _on_failure_repeat if _tag == StateTag.FAILED else _on_delivery_failed
    )

# A user only sees Processing when its delivery feedback was lost;
# cancel and start both leave it.
TRANSITIONS.update(
    {
        (StateTag.IDLE, InputKind.START): _on_start,
        (StateTag.PROCESSING, InputKind.START): _on_start,
        (StateTag.COMPLETED, InputKind.START): _on_start,
        (StateTag.FAILED, InputKind.START): _on_start,
        (StateTag.AWAITING_INPUT, InputKind.TEXT): _on_coin_text,
        (StateTag.AWAITING_INPUT, InputKind.CONFIRM): _on_confirm,
        (StateTag.AWAITING_INPUT, InputKind.DENY): _on_deny,
        (StateTag.PROCESSING, InputKind.DELIVERY_SUCCEEDED): _on_delivered,
    }
)


def reject(state: ConversationState, reason: str = "unexpected_input") -> Transition:
    """Explicit transition for pairs outside the table.

    The state is left untouched and the user gets a diagnostic.
    """
    return Transition(
        next_state=state,
        side_effects=[SendDiagnostic(reason=reason, text=format_template(reason))],
        accepted=False,
    )


def is_defined(tag: StateTag, input_kind: InputKind) -> bool:
    """Valida se o par (estado, entrada) está na tabela."""
    return (tag, input_kind) in TRANSITIONS


def transition(
    state: ConversationState,
    input_kind: InputKind,
    payload: dict[str, Any] | None = None,
) -> Transition:
    """Apply one input to a state.

    Args:
        state: Current conversation state.
        input_kind: Classified input.
        payload: Input data (coin, text, failure reason).

    Returns:
        Transition with next state and side effects. Pairs not in the
        table yield the reject transition.
    """
    handler = TRANSITIONS.get((state.tag, input_kind))
    if handler is None:
        return reject(state)
    return handler(state, payload or {})
