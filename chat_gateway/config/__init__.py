"""配置加载（.env / config.yaml / 环境变量）。"""

from chat_gateway.config.settings import Settings, settings

__all__ = ["Settings", "settings"]
