import logging
from typing import Callable, Iterable, Optional

from fastapi import Depends, HTTPException

from app.api.v1.deps import get_identity_service
from app.core.auth_utils import get_current_user
from app.core.config import get_admin_emails
from app.models.user import UserProfile, UserRole
from app.services.identity_service import IdentityService

logger = logging.getLogger("reviewflow.identity")


def _is_admin_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return email.strip().lower() in get_admin_emails()


async def get_current_profile(
    current_user: dict = Depends(get_current_user),
    identity: IdentityService = Depends(get_identity_service),
) -> UserProfile:
    """
    获取当前用户的 profile（含 role）。

    中文注释:
    1) 角色查询走 IdentityService（带短 TTL 缓存），首次访问时自动补建 Researcher profile。
    2) 若 email 在 ADMIN_EMAILS 中，则本次请求视为 Admin，便于本地/演示测试。
    3) 身份服务异常时降级为 Researcher，避免 UI 完全不可用。
    """
    user_id = current_user["id"]
    email = current_user.get("email")

    try:
        profile = identity.ensure_profile(user_id, email=email)
    except Exception as e:
        logger.warning("Failed to fetch/create user profile for %s: %s", user_id, e)
        profile = UserProfile(id=user_id, email=email)

    if _is_admin_email(email) and profile.role != UserRole.ADMIN:
        profile = profile.model_copy(update={"role": UserRole.ADMIN})
    return profile


def require_any_role(required: Iterable[UserRole]) -> Callable[..., UserProfile]:
    required_set = {UserRole(r) for r in required}

    async def _dep(profile: UserProfile = Depends(get_current_profile)) -> UserProfile:
        if profile.role not in required_set:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return profile

    return _dep
