"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护各厂商的基础配置与角色词汇 (registry)。
- 提供各厂商的具体实现 (gemini_client、openai_compat_client)。
"""

from typing import Optional

from chat_gateway.domain.exceptions import ValidationError
from chat_gateway.providers.base import ProviderClient
from chat_gateway.providers.gemini_client import GeminiClient
from chat_gateway.providers.openai_compat_client import OpenAICompatClient
from chat_gateway.providers.registry import get_provider_config

_CLIENTS = {
    "gemini": GeminiClient,
    "openai": OpenAICompatClient,
}


def create_provider(name: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，默认取配置中的 upstream_provider。"""

    if cfg is None:
        # config.settings 在导入时会读取 registry，这里延迟导入以避免循环
        from chat_gateway.config.settings import settings as cfg
    try:
        provider = get_provider_config(name or cfg.upstream_provider)
    except KeyError as e:
        raise ValidationError(code="UNKNOWN_PROVIDER", message=str(e.args[0]))
    return _CLIENTS[provider.name](cfg)
