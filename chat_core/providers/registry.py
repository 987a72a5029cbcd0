"""Provider 与模型配置。

所有已登记的 Provider 都暴露 OpenAI 兼容的 chat/completions 端点，
区别只在基础 URL 与默认模型。上层只需要选择 Provider 名称，
具体地址与模型由这里集中配置，也可以被 settings 覆盖。"""

from dataclasses import dataclass
from typing import Dict, Mapping


@dataclass
class ModelConfig:
    """单个模型的默认参数。"""

    provider_model: str
    max_tokens: int


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    default_model: str
    models: Dict[str, ModelConfig]

    def model_config(self, model: str) -> ModelConfig:
        """未登记的模型沿用默认模型的参数，只替换模型 ID。"""

        cfg = self.models.get(model)
        if cfg is not None:
            return cfg
        base = self.models[self.default_model]
        return ModelConfig(
            provider_model=model,
            max_tokens=base.max_tokens,
        )


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    default_model="gpt-4o-mini",
    models={
        "gpt-4o-mini": ModelConfig(provider_model="gpt-4o-mini", max_tokens=1000),
        "gpt-4o": ModelConfig(provider_model="gpt-4o", max_tokens=1000),
    },
)

KIMI_CONFIG = ProviderConfig(
    name="kimi",
    base_url="https://api.moonshot.cn/v1",
    default_model="kimi-k2-turbo-preview",
    models={
        "kimi-k2-turbo-preview": ModelConfig(
            provider_model="kimi-k2-turbo-preview",
            max_tokens=8192,
        )
    },
)

GLM_CONFIG = ProviderConfig(
    name="glm",
    base_url="https://open.bigmodel.cn/api/paas/v4",
    default_model="glm-4.6",
    models={
        "glm-4.6": ModelConfig(provider_model="glm-4.6", max_tokens=8192),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
    "kimi": KIMI_CONFIG,
    "glm": GLM_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
