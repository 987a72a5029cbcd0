"""配置管理模块。

支持从初始化参数、环境变量、.env 以及 config.yaml 加载配置，
优先级依次递减。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openai",
        description="默认使用的 Provider 名称，例如 openai、kimi、glm",
    )
    base_url: Optional[str] = Field(
        default=None,
        description="覆盖 Provider 默认的 API 基础 URL",
    )
    default_model: Optional[str] = Field(
        default=None,
        description="覆盖 Provider 默认的模型 ID",
    )
    openai_api_key: Optional[str] = Field(default=None, description="API 密钥（未持久化时的兜底）")

    # ---- 采样参数 ----
    temperature: float = Field(default=0.7, ge=0.0, le=1.0, description="生成温度")
    top_p: float = Field(default=1.0, ge=0.0, le=1.0, description="nucleus sampling 参数")
    max_tokens: int = Field(default=1000, ge=1, description="最大输出 token 数")
    http_timeout: Optional[float] = Field(
        default=None,
        description="HTTP 超时时间（秒），为空表示不设超时",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    credential_key: str = Field(default="chatgpt_api_key", description="凭据在本地存储中的键名")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("http_timeout")
    @classmethod
    def validate_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("http_timeout must be positive")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
