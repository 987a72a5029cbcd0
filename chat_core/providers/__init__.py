"""LLM Provider 集成层。

该包下的模块负责：
- 定义 CompletionClient 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供 OpenAI 兼容端点的具体实现 (openai_client)。
"""

from typing import Optional

from chat_core.config.settings import settings
from chat_core.providers.base import CompletionClient
from chat_core.providers.openai_client import OpenAICompatibleClient
from chat_core.providers.registry import get_provider_config


def create_client(name: Optional[str] = None) -> OpenAICompatibleClient:
    """根据名称创建客户端实例，默认取配置中的 provider。"""

    provider_name = name or getattr(settings, "default_provider", "openai")
    return OpenAICompatibleClient(get_provider_config(provider_name), settings)


__all__ = ["CompletionClient", "OpenAICompatibleClient", "create_client"]
