"""模型客户端协作方接口（ChatBackend）与离线 fake 实现。"""

from __future__ import annotations

from cowork_runtime.core.errors import ProviderError
from cowork_runtime.llm.fake import FakeChatBackend, FakeChatCall
from cowork_runtime.llm.protocol import ChatBackend, ChatRequest, ChatStreamEvent

__all__ = ["ChatBackend", "ChatRequest", "ChatStreamEvent", "FakeChatBackend", "FakeChatCall", "ProviderError"]
