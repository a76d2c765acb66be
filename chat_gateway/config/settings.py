"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。

读取优先级：构造参数 > 环境变量 > .env > config.yaml。
启动时只构造一次 Settings，随后转换成不可变的 ChatDefaults / RetryPolicy
注入到每个请求任务，运行期间不再修改。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from chat_gateway.domain.models import ChatDefaults
from chat_gateway.providers.registry import PROVIDER_REGISTRY, get_provider_config


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("GATEWAY_CONFIG_FILE")
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
    """网关配置（使用 Pydantic）。"""

    # ---- 上游 Provider ----
    upstream_provider: str = Field(
        default="gemini",
        description="上游 Provider 名称：gemini 或 openai（任意 OpenAI 兼容端点）",
    )
    gemini_api_key: Optional[str] = Field(default=None, description="Gemini API 密钥")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini REST 基础URL",
    )
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI 兼容端点的 API 密钥")
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI 兼容端点基础URL（GLM、Kimi 等同样适用）",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- 请求默认值 ----
    default_system: str = Field(default="You are a helpful assistant.")
    default_model: Optional[str] = Field(
        default=None,
        description="为空时使用 upstream_provider 在 registry 中的默认模型",
    )
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    history_pairs: int = Field(default=3, ge=1, le=50, description="转发给上游的最近对话轮数")
    max_output_tokens: int = Field(default=96, ge=1)
    stream_max_output_tokens: int = Field(default=400, ge=1)

    # ---- 超时 / 重试 / 流 ----
    upstream_deadline_ms: int = Field(default=10_000, ge=1)
    retry_deadline_ms: Optional[int] = Field(
        default=20_000,
        description="第二次尝试的截止时间；为空表示不设上限，仅等待上游自身失败",
    )
    backoff_base_ms: int = Field(default=300, ge=0)
    backoff_jitter_ms: int = Field(default=200, ge=0)
    stall_ms: int = Field(default=4_000, ge=1)
    keepalive_marker: str = Field(default="...")

    # ---- 服务 ----
    port: int = Field(default=8787)
    app_env: str = Field(default="development", description="production 时启用限流")
    api_prefix: str = Field(default="", description="路由前缀，例如 /api")
    allowed_origins: str = Field(default="*", description="CORS 允许的来源，逗号分隔")
    rate_limit_window_s: float = Field(default=15.0, gt=0)
    rate_limit_max: int = Field(default=3, ge=1)

    # ---- 会话存储 ----
    store_backend: Optional[str] = Field(
        default=None,
        description="json / supabase / none；为空时按 Supabase 配置自动判断",
    )
    supabase_url: Optional[str] = Field(default=None)
    supabase_service_role: Optional[str] = Field(default=None)
    storage_root: str = Field(default=".storage", description="JSON 存储根目录")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_to_file: bool = Field(default=True)
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

    @field_validator(
        "gemini_api_key",
        "openai_api_key",
        "supabase_url",
        "supabase_service_role",
        mode="before",
    )
    @classmethod
    def strip_secret(cls, v: Optional[str]) -> Optional[str]:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v

    @field_validator("upstream_provider")
    @classmethod
    def known_provider(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in PROVIDER_REGISTRY:
            raise ValueError(f"upstream_provider must be one of {sorted(PROVIDER_REGISTRY)}")
        return v

    @field_validator("api_prefix")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        v = (v or "").strip().rstrip("/")
        if v and not v.startswith("/"):
            v = "/" + v
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

    # ---- 派生属性 ----

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    @property
    def upstream_api_key(self) -> Optional[str]:
        if self.upstream_provider == "openai":
            return self.openai_api_key
        return self.gemini_api_key

    @property
    def key_preview(self) -> Optional[str]:
        key = self.upstream_api_key
        if not key:
            return None
        return f"{key[:4]}...{key[-4:]}"

    def as_defaults(self) -> ChatDefaults:
        """把请求默认值收拢为不可变的 ChatDefaults。"""

        return ChatDefaults(
            system=self.default_system,
            model=self.default_model or get_provider_config(self.upstream_provider).default_model,
            temperature=self.default_temperature,
            history_pairs=self.history_pairs,
            max_output_tokens=self.max_output_tokens,
            stream_max_output_tokens=self.stream_max_output_tokens,
        )


settings = Settings()
