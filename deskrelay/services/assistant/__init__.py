from deskrelay.services.assistant.base import AssistantProvider, Run, ThreadMessage, ToolCall
from deskrelay.services.assistant.openai_provider import OpenAIAssistantProvider

__all__ = ["AssistantProvider", "OpenAIAssistantProvider", "Run", "ThreadMessage", "ToolCall"]
