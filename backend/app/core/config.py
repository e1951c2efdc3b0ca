import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int, *, min_value: int = 0) -> int:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return max(min_value, default)
    try:
        value = int(raw)
    except ValueError:
        value = default
    return max(min_value, value)


def _env_float(key: str, default: float, *, min_value: float = 0.0) -> float:
    raw = (os.environ.get(key) or "").strip()
    if not raw:
        return max(min_value, default)
    try:
        value = float(raw)
    except ValueError:
        value = default
    return max(min_value, value)


@dataclass(frozen=True)
class AppConfig:
    """
    Application Environment Config
    """
    env: str  # 'development', 'staging', 'production'
    supabase_url: str
    supabase_key: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()

        # Staging 与生产共用同一套变量名，由部署平台切换 SUPABASE_URL。
        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()

        return AppConfig(
            env=env,
            supabase_url=supabase_url,
            supabase_key=supabase_key
        )

# Global Config Instance
app_config = AppConfig.from_env()


@dataclass(frozen=True)
class WorkflowConfig:
    """
    审稿工作流引擎配置（从环境变量读取）

    中文注释:
    1) max_cas_retries: 稿件文档 compare-and-set 冲突时的重读/重算次数上限。
    2) watched_status: 触发“通知全部管理员”的目标状态。
    3) outbox_batch_size / outbox_max_attempts: outbox worker 单次处理量与单事件最大投递次数。
    """

    max_cas_retries: int
    watched_status: str
    outbox_batch_size: int
    outbox_max_attempts: int

    @staticmethod
    def from_env() -> "WorkflowConfig":
        watched = (os.environ.get("NOTIFY_WATCHED_STATUS") or "Back to Admin").strip()
        return WorkflowConfig(
            max_cas_retries=_env_int("WORKFLOW_MAX_CAS_RETRIES", 5, min_value=1),
            watched_status=watched or "Back to Admin",
            outbox_batch_size=_env_int("OUTBOX_BATCH_SIZE", 50, min_value=1),
            outbox_max_attempts=_env_int("OUTBOX_MAX_ATTEMPTS", 3, min_value=1),
        )


@dataclass(frozen=True)
class IdentityCacheConfig:
    """
    用户角色/资料缓存配置（默认 5 分钟过期，允许该窗口内的角色陈旧）
    """

    ttl_sec: float
    max_entries: int

    @staticmethod
    def from_env() -> "IdentityCacheConfig":
        return IdentityCacheConfig(
            ttl_sec=_env_float("ROLE_CACHE_TTL_SEC", 300.0),
            max_entries=_env_int("ROLE_CACHE_MAX_ENTRIES", 512, min_value=32),
        )


@dataclass(frozen=True)
class DeadlineDefaults:
    """
    Settings 文档缺失或字段为空时使用的兜底期限（天）。
    """

    invitation_days: int
    review_days: int
    revision_days: int
    finalization_days: int

    @staticmethod
    def from_env() -> "DeadlineDefaults":
        return DeadlineDefaults(
            invitation_days=_env_int("DEADLINE_DEFAULT_DAYS_INVITATION", 5, min_value=1),
            review_days=_env_int("DEADLINE_DEFAULT_DAYS_REVIEW", 6, min_value=1),
            revision_days=_env_int("DEADLINE_DEFAULT_DAYS_REVISION", 6, min_value=1),
            finalization_days=_env_int("DEADLINE_DEFAULT_DAYS_FINALIZATION", 5, min_value=1),
        )


@dataclass(frozen=True)
class SentryConfig:
    """
    错误上报配置：未配置 SENTRY_DSN 时整体关闭
    """

    enabled: bool
    dsn: str
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip()
        rate = min(1.0, _env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0))
        return SentryConfig(
            enabled=_env_bool("SENTRY_ENABLED", bool(dsn)),
            dsn=dsn,
            environment=AppConfig.from_env().env,
            traces_sample_rate=rate,
        )


def get_admin_api_key() -> Optional[str]:
    """
    内部 Cron 接口鉴权 Key

    中文注释:
    - 仅用于 `/api/v1/internal/cron/*`（outbox 投递、审稿提醒），避免暴露到公网用户接口。
    """

    raw = os.environ.get("ADMIN_API_KEY")
    return raw.strip() if raw else None


def get_admin_emails() -> set[str]:
    raw = os.environ.get("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def is_debug_logging() -> bool:
    return _env_bool("REVIEWFLOW_DEBUG", False)
