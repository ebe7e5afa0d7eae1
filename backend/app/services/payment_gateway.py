"""
Payment Gateway Port（Razorpay Orders API）

中文注释:
- create_order: 调用网关创建外部订单，拿到 external_order_id；网络/鉴权失败统一抛 GatewayUnavailable。
- verify_signature: HMAC-SHA256 校验回调签名（常量时间比较），必须在读写任何状态之前完成。
- 网关调用只允许发生在事务之外（不持锁等网络）。
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
from decimal import Decimal
from typing import Any, Optional

import httpx
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.core.config import PaymentConfig
from app.core.errors import GatewayUnavailable, ValidationFailed

logger = logging.getLogger("reviewflow.payment_gateway")


class _RetryableGatewayError(Exception):
    """5xx / 网络错误：可重试"""


def format_amount(amount: Any) -> str:
    """
    金额规范化为签名串里的文本形式。

    中文注释: 整数值的浮点数（45.0）按整数输出（"45"），与前端/网关生成签名时的格式一致。
    """
    if isinstance(amount, bool):
        raise ValidationFailed("Amount must be numeric", amount=amount)
    if isinstance(amount, int):
        return str(amount)
    if isinstance(amount, float):
        if not math.isfinite(amount):
            raise ValidationFailed("Amount must be a finite number", amount=repr(amount))
        return str(int(amount)) if amount.is_integer() else repr(amount)
    if isinstance(amount, Decimal):
        if not amount.is_finite():
            raise ValidationFailed("Amount must be a finite number", amount=str(amount))
        return str(int(amount)) if amount == amount.to_integral_value() else str(amount.normalize())
    text = str(amount).strip()
    try:
        return format_amount(Decimal(text))
    except ArithmeticError:
        return text


def canonical_payload(manuscript_id: str, payment_id: str, amount: Any, status: str) -> str:
    return f"{manuscript_id}|{payment_id}|{format_amount(amount)}|{status}"


def sign_payload(secret: str, payload: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


class RazorpayGateway:
    """
    Razorpay Orders API 客户端

    中文注释:
    - 认证：HTTP Basic（key_id / key_secret）。
    - 金额以最小货币单位（paise）传给网关，调用方负责 amount * 100。
    """

    def __init__(
        self,
        config: Optional[PaymentConfig] = None,
        *,
        transport: httpx.BaseTransport | None = None,
        retry_wait: Any = None,
    ) -> None:
        self.config = config or PaymentConfig.from_env()
        self._transport = transport
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.config.api_base,
            auth=(self.config.key_id, self.config.key_secret),
            timeout=self.config.timeout_sec,
            transport=self._transport,
        )

    def _post_order(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            with self._client() as client:
                resp = client.post("/orders", json=body)
        except httpx.HTTPError as e:
            raise _RetryableGatewayError(str(e)) from e

        if resp.status_code >= 500:
            raise _RetryableGatewayError(f"gateway returned {resp.status_code}")
        if resp.status_code >= 400:
            raise GatewayUnavailable(
                "Payment gateway rejected the order request",
                gateway_status=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayUnavailable("Payment gateway returned a malformed response") from e
        if not isinstance(data, dict) or not data.get("id"):
            raise GatewayUnavailable("Payment gateway response missing order id")
        return data

    def create_order(self, amount_minor_units: int, currency: str, receipt_ref: str) -> dict[str, Any]:
        """
        创建外部订单，返回 {external_order_id, raw}。
        """
        if not self.config.is_configured():
            raise GatewayUnavailable("Payment gateway is not configured")
        if int(amount_minor_units) <= 0:
            raise GatewayUnavailable("Order amount must be positive", amount_minor_units=amount_minor_units)

        body = {
            "amount": int(amount_minor_units),
            "currency": (currency or self.config.currency).upper(),
            "receipt": str(receipt_ref)[:40],
            "payment_capture": 1,
        }
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self.config.max_attempts),
                wait=self._retry_wait,
                retry=retry_if_exception_type(_RetryableGatewayError),
                reraise=True,
            ):
                with attempt:
                    data = self._post_order(body)
        except _RetryableGatewayError as e:
            logger.error("create_order failed after retries receipt=%s: %s", receipt_ref, e)
            raise GatewayUnavailable("Payment gateway unavailable", reason=str(e)) from e

        logger.info("gateway order created receipt=%s order_id=%s", receipt_ref, data.get("id"))
        return {"external_order_id": str(data["id"]), "raw": data}

    def verify_signature(self, payload: str, signature: str | None) -> bool:
        secret = self.config.signing_secret()
        if not secret or not signature:
            return False
        expected = sign_payload(secret, payload)
        return hmac.compare_digest(expected, str(signature).strip().lower())

    def verify_checkout_signature(self, order_id: str, payment_id: str, signature: str | None) -> bool:
        """
        Razorpay checkout 回调验签：HMAC(key_secret, "order_id|payment_id")。
        """
        if not self.config.key_secret or not signature:
            return False
        expected = sign_payload(self.config.key_secret, f"{order_id}|{payment_id}")
        return hmac.compare_digest(expected, str(signature).strip().lower())
