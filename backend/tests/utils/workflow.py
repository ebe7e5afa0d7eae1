from typing import Any

from app.core.config import PaymentConfig
from app.core.errors import GatewayUnavailable
from app.services.notification_service import NotificationService
from app.services.payment_gateway import RazorpayGateway, canonical_payload, sign_payload

PAYMENT_SECRET = "test-payment-secret"
KEY_SECRET = "test-key-secret"
EIC_ID = "eic-1"


class RecordingNotifier(NotificationService):
    def __init__(self) -> None:
        super().__init__(client=object())
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def notify(self, event_name, recipient_id, payload=None) -> bool:
        if not recipient_id:
            return False
        self.sent.append((event_name, str(recipient_id), dict(payload or {})))
        return True

    def events_for(self, recipient_id: str) -> list[str]:
        return [e for e, rid, _ in self.sent if rid == recipient_id]


class FakeGateway(RazorpayGateway):
    """真实 HMAC 验签 + 可控的下单结果"""

    def __init__(self, config: PaymentConfig) -> None:
        super().__init__(config)
        self.orders: list[dict[str, Any]] = []
        self.fail = False

    def create_order(self, amount_minor_units, currency, receipt_ref):
        if self.fail:
            raise GatewayUnavailable("Payment gateway unavailable")
        order_id = f"order_{len(self.orders) + 1}"
        self.orders.append(
            {"amount": amount_minor_units, "currency": currency, "receipt": receipt_ref, "id": order_id}
        )
        return {"external_order_id": order_id, "raw": {"id": order_id}}


def make_payment_config() -> PaymentConfig:
    return PaymentConfig(
        key_id="rzp_test_key",
        key_secret=KEY_SECRET,
        payment_secret=PAYMENT_SECRET,
        api_base="https://gateway.test/v1",
        currency="INR",
        timeout_sec=1.0,
        max_attempts=3,
    )


def reviewer(rid: str) -> dict:
    return {"id": rid, "roles": ["reviewer"]}


def review_payload(recommendation: str, score: int = 4) -> dict:
    return {
        "scores": {
            "originality": score,
            "methodology": score,
            "contribution": score,
            "clarity": score,
            "references": score,
        },
        "recommendation": recommendation,
        "comments_to_author": "Solid work, see detailed comments.",
        "comments_to_editor": "",
    }


def signed(manuscript_id: str, payment_id: str, amount, status: str, secret: str = PAYMENT_SECRET) -> str:
    return sign_payload(secret, canonical_payload(manuscript_id, payment_id, amount, status))
