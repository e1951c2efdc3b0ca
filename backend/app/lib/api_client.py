import os
from typing import Any, Callable, Optional

from supabase import Client, create_client

from app.core.config import app_config


def _anon_key() -> str:
    # 部署环境里 SUPABASE_KEY 与 SUPABASE_ANON_KEY 并存，优先读 SUPABASE_ANON_KEY
    return (os.environ.get("SUPABASE_ANON_KEY") or os.environ.get("SUPABASE_KEY") or "").strip()


def _service_role_key() -> str:
    return app_config.supabase_key or (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()


class _LazySupabaseClient:
    """
    延迟初始化 Supabase Client，import 时不读取/校验任何凭证。

    中文注释:
    - 单元测试直接向各 Service 注入内存 client，因此这里必须保证“可导入”；
    - 真实运行时，缺少 URL/KEY 会在第一次访问 client 时抛出清晰的 RuntimeError。
    """

    def __init__(self, factory: Callable[[], Client], *, name: str):
        self._factory = factory
        self._name = name
        self._client: Optional[Client] = None

    def _get(self) -> Client:
        if self._client is None:
            self._client = self._factory()
        return self._client

    def __getattr__(self, item: str) -> Any:
        return getattr(self._get(), item)

    def __repr__(self) -> str:
        state = "ready" if self._client is not None else "lazy"
        return f"<{self._name} supabase client ({state})>"


def _require_supabase_url() -> str:
    url = app_config.supabase_url
    if not url:
        raise RuntimeError("SUPABASE_URL is required")
    return url


def _create_supabase() -> Client:
    key = _anon_key()
    if not key:
        raise RuntimeError("SUPABASE_ANON_KEY or SUPABASE_KEY is required")
    return create_client(_require_supabase_url(), key)


def _create_supabase_admin() -> Client:
    admin_key = _service_role_key() or _anon_key()
    if not admin_key:
        raise RuntimeError("SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_KEY) is required")
    return create_client(_require_supabase_url(), admin_key)


# === 匿名 client：仅用于 Auth API 校验 token ===
supabase: Client = _LazySupabaseClient(_create_supabase, name="supabase")  # type: ignore[assignment]

# === service_role client：稿件/通知/设置的全部读写 ===
supabase_admin: Client = _LazySupabaseClient(_create_supabase_admin, name="supabase_admin")  # type: ignore[assignment]
