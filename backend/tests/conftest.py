import os
import sys
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("SUPABASE_JWT_SECRET", "mock-secret-replace-later")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")

from main import app  # noqa: E402
from app.api.v1 import deps  # noqa: E402
from app.core.short_ttl_cache import ShortTTLCache  # noqa: E402
from app.services.deadline_service import DeadlineSettingsService  # noqa: E402
from app.services.identity_service import IdentityService  # noqa: E402
from app.services.manuscript_repository import ManuscriptRepository  # noqa: E402
from app.services.notification_service import NotificationService  # noqa: E402
from app.services.workflow_service import WorkflowService  # noqa: E402
from tests.utils.factories import DEFAULTS, FixedClock, profiles, workflow_config  # noqa: E402
from tests.utils.api_client import auth_headers as bearer, generate_test_token  # noqa: E402
from tests.utils.supabase_stub import StubSupabase  # noqa: E402

# === 全局测试配置 ===
# 中文注释:
# 1. Supabase 一律替换为内存 stub，单元/接口测试不依赖网络。
# 2. 服务端时钟固定，便于断言期限与紧急度。
# 3. JWT 令牌用 PyJWT 按 HS256 签发，与后端 python-jose 校验逻辑一致。


@pytest.fixture
def stub() -> StubSupabase:
    return StubSupabase({"user_profiles": profiles()})


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def repo(stub: StubSupabase) -> ManuscriptRepository:
    return ManuscriptRepository(client=stub)


@pytest.fixture
def identity(stub: StubSupabase) -> IdentityService:
    return IdentityService(client=stub, cache=ShortTTLCache(max_entries=64, default_ttl_sec=300))


@pytest.fixture
def notifications(stub: StubSupabase, identity: IdentityService, clock: FixedClock) -> NotificationService:
    return NotificationService(client=stub, identity=identity, clock=clock)


@pytest.fixture
def workflow(stub: StubSupabase, repo: ManuscriptRepository, clock: FixedClock) -> WorkflowService:
    return WorkflowService(
        repo=repo,
        deadline_settings=DeadlineSettingsService(client=stub, defaults=DEFAULTS),
        config=workflow_config(),
        clock=clock,
    )


@pytest.fixture
def override_services(repo, identity, notifications, workflow):
    app.dependency_overrides[deps.get_manuscript_repository] = lambda: repo
    app.dependency_overrides[deps.get_identity_service] = lambda: identity
    app.dependency_overrides[deps.get_notification_service] = lambda: notifications
    app.dependency_overrides[deps.get_workflow_service] = lambda: workflow
    yield
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(override_services) -> AsyncGenerator:
    """
    提供一个注入了内存服务的异步测试客户端
    """
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac


@pytest.fixture
def auth_headers():
    def _make(user_id: str, email: str = "test@example.com") -> dict[str, str]:
        return bearer(generate_test_token(user_id, email))

    return _make
