from typing import Any, Optional

from app.core.config import SentryConfig

_SENSITIVE_KEYS = {
    "password",
    "access_token",
    "token",
    "authorization",
    "cookie",
    "set-cookie",
    "supabase_key",
    "service_role_key",
    "database_url",
    "signature",
    "razorpay_signature",
    "key_secret",
    "razorpay_key_secret",
    "payment_secret",
    "confidential_comments",
}


def _scrub(value: Any) -> Any:
    """
    隐私清洗：递归去除敏感字段（密钥、支付签名、保密审稿意见）。
    """
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if str(k).strip().lower() in _SENSITIVE_KEYS:
                out[str(k)] = "[Filtered]"
                continue
            out[str(k)] = _scrub(v)
        return out

    if isinstance(value, (list, tuple)):
        return [_scrub(v) for v in value]

    return value


def _before_send(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    # 中文注释: 不上传请求体（支付回调里带签名），header 里的凭证直接丢弃。
    request = event.get("request")
    if isinstance(request, dict):
        headers = request.get("headers")
        if isinstance(headers, dict):
            request["headers"] = {
                k: v for k, v in headers.items() if str(k).strip().lower() not in _SENSITIVE_KEYS
            }
        for key in ("cookies", "data", "body"):
            if key in request:
                request[key] = "[Filtered]"
        event["request"] = request

    for section in ("extra", "contexts"):
        obj = event.get(section)
        if isinstance(obj, dict):
            event[section] = _scrub(obj)

    return event


def init_sentry(config: Optional[SentryConfig] = None) -> bool:
    """
    初始化 Sentry（可选）。

    零崩溃原则：
    - 若未配置 DSN / 显式禁用，则直接返回 False。
    - 初始化异常由调用方处理，不得阻塞引擎启动。
    """
    cfg = config or SentryConfig.from_env()
    if not cfg.enabled or not cfg.dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=cfg.dsn,
        environment=cfg.environment,
        traces_sample_rate=cfg.traces_sample_rate,
        integrations=[LoggingIntegration()],
        send_default_pii=False,
        before_send=_before_send,
        max_request_body_size="never",
    )
    return True
