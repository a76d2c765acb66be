"""Provider 配置。

本模块集中维护每个上游厂商的基础 URL、默认模型以及
"内部 assistant 角色"在该厂商 API 中的名称：

- Gemini 把模型回复称为 "model"。
- OpenAI 兼容接口（OpenAI、GLM、Kimi 等）沿用 "assistant"。
"""

from dataclasses import dataclass
from typing import Mapping


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    default_model: str
    assistant_role: str


GEMINI_CONFIG = ProviderConfig(
    name="gemini",
    base_url="https://generativelanguage.googleapis.com/v1beta",
    default_model="gemini-1.5-flash",
    assistant_role="model",
)

OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    default_model="gpt-4o-mini",
    assistant_role="assistant",
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "gemini": GEMINI_CONFIG,
    "openai": OPENAI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """按名称（不区分大小写）查找 ProviderConfig，未知名称抛 KeyError。"""

    try:
        return PROVIDER_REGISTRY[(name or "").strip().lower()]
    except KeyError:
        raise KeyError(f"Unknown provider: {name!r}") from None
