from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from app.core.config import IdentityCacheConfig
from app.core.short_ttl_cache import ShortTTLCache
from app.lib.api_client import supabase_admin
from app.models.user import UserProfile, UserRole

logger = logging.getLogger("reviewflow.identity")

PROFILES_TABLE = "user_profiles"

_MISSING = object()


class IdentityService:
    """
    身份/角色协作方：user id -> 角色与基础资料（纯查询）。

    中文注释:
    - 缓存由调用方注入（ShortTTLCache），默认 5 分钟；只在过期时失效，写入方不主动通知，
      因此角色变更最多陈旧一个 TTL 窗口。
    - `invalidate` / `invalidate_all` 作为手动失效钩子（如管理员改角色后立即生效）。
    """

    def __init__(
        self,
        client: Any = None,
        cache: Optional[ShortTTLCache] = None,
        config: Optional[IdentityCacheConfig] = None,
    ) -> None:
        cfg = config or IdentityCacheConfig.from_env()
        self.client = client or supabase_admin
        self.cache: ShortTTLCache = cache or ShortTTLCache(
            max_entries=cfg.max_entries,
            default_ttl_sec=cfg.ttl_sec,
        )

    @staticmethod
    def _profile_key(user_id: str) -> str:
        return f"profile:{user_id}"

    @staticmethod
    def _role_key(role: UserRole) -> str:
        return f"role:{role.value}"

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        uid = str(user_id or "").strip()
        if not uid:
            return None
        key = self._profile_key(uid)
        cached = self.cache.get(key)
        if cached is not None:
            return None if cached is _MISSING else cached

        resp = self.client.table(PROFILES_TABLE).select("id,email,full_name,role").eq("id", uid).limit(1).execute()
        rows = getattr(resp, "data", None) or []
        profile = UserProfile.model_validate(rows[0]) if rows else None
        # 不存在的用户也缓存（负缓存），避免批量通知时反复打库
        self.cache.set(key, profile if profile is not None else _MISSING)
        return profile

    def get_role(self, user_id: str) -> Optional[UserRole]:
        profile = self.get_profile(user_id)
        return profile.role if profile else None

    def display_name(self, user_id: str) -> str:
        profile = self.get_profile(user_id)
        return profile.display_name if profile else "Unknown user"

    def existing_user_ids(self, user_ids: Iterable[str]) -> set[str]:
        """
        批量确认哪些 id 存在：命中缓存的直接判定，其余一次 `in_` 查询补齐。
        """
        ids = list(dict.fromkeys(str(u).strip() for u in user_ids if str(u or "").strip()))
        found: set[str] = set()
        unknown: list[str] = []
        for uid in ids:
            cached = self.cache.get(self._profile_key(uid))
            if cached is None:
                unknown.append(uid)
            elif cached is not _MISSING:
                found.add(uid)

        if unknown:
            resp = (
                self.client.table(PROFILES_TABLE)
                .select("id,email,full_name,role")
                .in_("id", unknown)
                .execute()
            )
            rows = getattr(resp, "data", None) or []
            seen: set[str] = set()
            for row in rows:
                profile = UserProfile.model_validate(row)
                seen.add(profile.id)
                self.cache.set(self._profile_key(profile.id), profile)
            for uid in unknown:
                if uid not in seen:
                    self.cache.set(self._profile_key(uid), _MISSING)
            found.update(seen)
        return found

    def list_ids_by_role(self, role: UserRole) -> list[str]:
        key = self._role_key(role)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)
        resp = self.client.table(PROFILES_TABLE).select("id").eq("role", role.value).execute()
        rows = getattr(resp, "data", None) or []
        ids = [str(r.get("id")) for r in rows if r.get("id")]
        self.cache.set(key, ids)
        return list(ids)

    def list_admin_ids(self) -> list[str]:
        return self.list_ids_by_role(UserRole.ADMIN)

    def ensure_profile(self, user_id: str, *, email: Optional[str], role: UserRole = UserRole.RESEARCHER) -> UserProfile:
        """
        首次访问时补建 user_profiles 记录（默认 Researcher）。
        """
        existing = self.get_profile(user_id)
        if existing is not None:
            return existing
        payload = {"id": str(user_id), "email": email, "role": role.value}
        resp = self.client.table(PROFILES_TABLE).insert(payload).execute()
        rows = getattr(resp, "data", None) or [payload]
        profile = UserProfile.model_validate(rows[0])
        self.cache.set(self._profile_key(profile.id), profile)
        self.cache.invalidate(self._role_key(profile.role))
        logger.info("created profile for %s with role %s", profile.id, profile.role.value)
        return profile

    def invalidate(self, user_id: str) -> None:
        self.cache.invalidate(self._profile_key(str(user_id)))

    def invalidate_all(self) -> None:
        self.cache.clear()
