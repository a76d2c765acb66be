"""会话存储实现。

- json_store: 本地文件存储，适合单机部署与测试。
- supabase_store: 通过 PostgREST 访问托管 Postgres（Supabase）。
"""

from typing import Optional

from chat_gateway.domain.conversation import ConversationStore
from chat_gateway.domain.exceptions import ValidationError


def create_store(cfg) -> Optional[ConversationStore]:
    """根据配置创建会话存储；未配置时返回 None（存储端点返回 501）。"""

    backend = (cfg.store_backend or "").strip().lower()
    if not backend:
        backend = "supabase" if cfg.supabase_url and cfg.supabase_service_role else "none"
    if backend == "none":
        return None
    if backend == "json":
        from chat_gateway.infrastructure.storage.json_store import JsonConversationStore

        return JsonConversationStore(root=cfg.storage_root)
    if backend == "supabase":
        if not (cfg.supabase_url and cfg.supabase_service_role):
            raise ValidationError(
                code="MISSING_STORE_CONFIG",
                message="SUPABASE_URL and SUPABASE_SERVICE_ROLE are required for the supabase store",
            )
        from chat_gateway.infrastructure.storage.supabase_store import SupabaseConversationStore

        return SupabaseConversationStore(cfg)
    raise ValidationError(code="UNKNOWN_STORE", message=f"Unknown store backend: {backend!r}")
