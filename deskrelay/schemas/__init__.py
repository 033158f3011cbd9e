from deskrelay.schemas.conversation import ConversationResponse, TransitionResponse
from deskrelay.schemas.webhook import InboundMessage, WebhookAck

__all__ = ["InboundMessage", "WebhookAck", "ConversationResponse", "TransitionResponse"]
