import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(key: str, default: bool) -> bool:
    raw = os.environ.get(key)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    return lowered in {"1", "true", "yes", "y", "on"}


def _env_int(key: str, default: int, *, min_value: int | None = None) -> int:
    raw = (os.environ.get(key) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    if min_value is not None:
        value = max(min_value, value)
    return value


def _env_float(key: str, default: float) -> float:
    raw = (os.environ.get(key) or "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_csv(key: str) -> tuple[str, ...]:
    raw = os.environ.get(key) or ""
    return tuple(dict.fromkeys(x.strip() for x in raw.split(",") if x.strip()))


@dataclass(frozen=True)
class AppConfig:
    """
    Application Environment Config
    """
    env: str  # 'development', 'staging', 'production', 'test'
    is_staging: bool
    supabase_url: str
    supabase_key: str
    database_url: str

    @staticmethod
    def from_env() -> "AppConfig":
        env = (os.environ.get("APP_ENV") or "development").strip().lower()
        is_staging = env == "staging"

        supabase_url = (os.environ.get("SUPABASE_URL") or "").strip()
        supabase_key = (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()

        # 中文注释:
        # - 工作流引擎需要真正的多文档事务，PostgREST 不支持，因此直连 Postgres。
        # - 优先 DATABASE_URL，缺省回退到 SUPABASE_DB_URL（Supabase 项目直连串）。
        database_url = ""
        for key in ("DATABASE_URL", "SUPABASE_DB_URL"):
            raw = (os.environ.get(key) or "").strip()
            if raw:
                database_url = raw
                break

        return AppConfig(
            env=env,
            is_staging=is_staging,
            supabase_url=supabase_url,
            supabase_key=supabase_key,
            database_url=database_url,
        )


# Global Config Instance
app_config = AppConfig.from_env()


@dataclass(frozen=True)
class WorkflowConfig:
    """
    审稿工作流参数

    中文注释:
    - quorum / 审稿期限 / 版面费规则都必须可配置，避免散落的硬编码。
    - 默认值与线上规则一致：2 份审稿意见成团，14 天期限，前 6 页免额外费用。
    """

    review_quorum: int = 2
    review_due_days: int = 14
    fee_base_amount: int = 5
    fee_free_pages: int = 6
    fee_per_extra_page: int = 10
    legacy_reject_workflow_marker: bool = False

    @staticmethod
    def from_env() -> "WorkflowConfig":
        return WorkflowConfig(
            review_quorum=_env_int("REVIEW_QUORUM", 2, min_value=1),
            review_due_days=_env_int("REVIEW_DUE_DAYS", 14, min_value=1),
            fee_base_amount=_env_int("PUBLICATION_FEE_BASE", 5, min_value=0),
            fee_free_pages=_env_int("PUBLICATION_FEE_FREE_PAGES", 6, min_value=0),
            fee_per_extra_page=_env_int("PUBLICATION_FEE_PER_PAGE", 10, min_value=0),
            legacy_reject_workflow_marker=_env_bool("LEGACY_REJECT_WORKFLOW_MARKER", False),
        )


@dataclass(frozen=True)
class PaymentConfig:
    """
    支付网关配置（Razorpay Orders API）

    中文注释:
    1) key_secret 用于 Razorpay checkout 回调验签；payment_secret 用于通用 webhook 验签。
    2) 两者都只存在于后端进程内，严禁下发到前端。
    """

    key_id: str
    key_secret: str
    payment_secret: str
    api_base: str
    currency: str
    timeout_sec: float
    max_attempts: int

    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def signing_secret(self) -> str:
        return self.payment_secret or self.key_secret

    @staticmethod
    def from_env() -> "PaymentConfig":
        return PaymentConfig(
            key_id=(os.environ.get("RAZORPAY_KEY_ID") or "").strip(),
            key_secret=(os.environ.get("RAZORPAY_KEY_SECRET") or "").strip(),
            payment_secret=(os.environ.get("PAYMENT_SECRET") or "").strip(),
            api_base=(os.environ.get("RAZORPAY_API_BASE") or "https://api.razorpay.com/v1").strip().rstrip("/"),
            currency=(os.environ.get("PAYMENT_CURRENCY") or "INR").strip().upper(),
            timeout_sec=_env_float("PAYMENT_GATEWAY_TIMEOUT_SEC", 10.0),
            max_attempts=_env_int("PAYMENT_GATEWAY_MAX_ATTEMPTS", 3, min_value=1),
        )


@dataclass(frozen=True)
class EditorialRoleConfig:
    """
    编辑角色注册表配置

    中文注释:
    - 原先通知主编时在各处临时查询“谁是主编”，这里改为显式配置注入引擎。
    """

    editor_in_chief_ids: tuple[str, ...] = field(default_factory=tuple)

    @staticmethod
    def from_env() -> "EditorialRoleConfig":
        return EditorialRoleConfig(editor_in_chief_ids=_env_csv("EDITOR_IN_CHIEF_IDS"))


@dataclass(frozen=True)
class SentryConfig:
    enabled: bool
    dsn: Optional[str]
    environment: str
    traces_sample_rate: float

    @staticmethod
    def from_env() -> "SentryConfig":
        dsn = (os.environ.get("SENTRY_DSN") or "").strip() or None
        return SentryConfig(
            enabled=_env_bool("SENTRY_ENABLED", bool(dsn)),
            dsn=dsn,
            environment=(os.environ.get("SENTRY_ENVIRONMENT") or app_config.env).strip(),
            traces_sample_rate=_env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        )
