"""Chat Core 顶层包。

该包提供单个对话会话的核心实现，包括配置加载、领域模型、
OpenAI 兼容 Provider 适配、流式消息状态机与凭据持久化等能力。
"""

from chat_core.providers import OpenAICompatibleClient, create_client
from chat_core.session import ConversationSession

__all__ = ["ConversationSession", "OpenAICompatibleClient", "create_client"]
