"""Provider implementations."""

from app.ai.providers.base import ChatStep, ChatTransport, ToolCall
from app.ai.providers.openai_chat import OpenAIChatTransport
from app.ai.providers.tavily import TavilyProvider

__all__ = ["ChatStep", "ChatTransport", "ToolCall", "OpenAIChatTransport", "TavilyProvider"]
