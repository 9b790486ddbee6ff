"""Side Effects - Closed set of outbound work descriptions.

Transitions return these; the dispatcher turns them into outbound
requests. Nothing here performs I/O.
"""

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class SendMessage(BaseModel):
    """Reply to the user.

    When ``report_outcome`` is set, a successful delivery is fed back to
    the conversation as ``delivery_succeeded``. Failures are always fed
    back.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["send_message"] = "send_message"
    text: str = Field(..., min_length=1)
    report_outcome: bool = False


class SendDiagnostic(BaseModel):
    """Tell the user something went wrong. Its outcome is never fed back."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["send_diagnostic"] = "send_diagnostic"
    reason: str
    text: str = Field(..., min_length=1)


SideEffect = Annotated[SendMessage | SendDiagnostic, Field(discriminator="kind")]
