from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class InboundMessage(BaseModel):
    """One customer delivery after envelope unwrapping."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    from_: str = Field(validation_alias=AliasChoices("from", "from_", "sender"))
    type: str = "text"
    body: Optional[str] = None
    timestamp: Optional[int] = None
    name: Optional[str] = None
    button_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("button_id", "buttonId"))


class WebhookAck(BaseModel):
    status: str = "EVENT_RECEIVED"
    accepted: int = 0
    ignored: int = 0
