"""
Payment Settlement：创建支付订单 + 幂等确认支付

中文注释:
1) 验签必须最先做：签名不对时不读不写任何稿件状态。
2) 确认支付是一个原子事务：payment -> confirmed、is_paid、published_at、PUBLISHED 同时落库，
   任何一步失败整体回滚，绝不会出现“已付款但未发布”或反之。
3) 网关回调可能重放：同一 payment_id 已 confirmed 时直接返回成功（already_processed=True）。
4) 网关调用在事务之外；通知在事务提交之后。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from app.core.config import PaymentConfig, WorkflowConfig
from app.core.errors import Forbidden, InvalidSignature, InvalidState, NotFound
from app.core.role_matrix import EditorialRoleRegistry
from app.lib.store import StoreTransaction, WorkflowStore
from app.models.invoices import CONFIRMED_GATEWAY_STATUSES, PaymentEntry, compute_publication_charges
from app.models.manuscript import Manuscript, WorkflowEvent, WorkflowState
from app.services.notification_service import NotificationService
from app.services.payment_gateway import RazorpayGateway, canonical_payload

logger = logging.getLogger("reviewflow.payments")

ORDERABLE_STATES = frozenset({WorkflowState.EDITOR_ACCEPTED, WorkflowState.PAYMENT_PENDING})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentService:
    def __init__(
        self,
        store: WorkflowStore,
        gateway: RazorpayGateway,
        notifier: NotificationService,
        roles: EditorialRoleRegistry,
        *,
        workflow_config: Optional[WorkflowConfig] = None,
        payment_config: Optional[PaymentConfig] = None,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.roles = roles
        self.workflow_config = workflow_config or WorkflowConfig.from_env()
        self.payment_config = payment_config or PaymentConfig.from_env()

    def _charges(self, manuscript: Manuscript):
        cfg = self.workflow_config
        return compute_publication_charges(
            manuscript.file.pages,
            base_amount=cfg.fee_base_amount,
            free_pages=cfg.fee_free_pages,
            per_extra_page=cfg.fee_per_extra_page,
        )

    def _check_orderable(self, manuscript: Manuscript) -> None:
        if manuscript.state not in ORDERABLE_STATES:
            raise InvalidState(
                "Manuscript is not awaiting payment",
                manuscript_id=manuscript.id,
                state=manuscript.state.value,
            )

    def _order_result(self, manuscript: Manuscript, payment: PaymentEntry, *, reused: bool) -> dict[str, Any]:
        return {
            "success": True,
            "reused": reused,
            "manuscript": manuscript,
            "payment": payment,
            "order": {
                "order_id": payment.payment_id,
                "amount": payment.amount,
                "amount_minor_units": payment.amount * 100,
                "currency": payment.currency,
                "key_id": self.payment_config.key_id,
            },
        }

    # === CreateOrder ===
    def create_order(
        self,
        manuscript_id: str,
        *,
        requested_by: Optional[str] = None,
        actor: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        为已录用稿件创建（或复用）支付订单。

        - 仍有同金额的 pending 订单：直接复用，不再调网关；
        - pending 订单金额已过期（页数变化）：旧订单标记 failed（superseded），新建订单；
        - 网关失败：抛 GatewayUnavailable，不落任何 payment 记录。
        """
        manuscript = self.store.run_in_transaction(lambda tx: tx.get_manuscript(manuscript_id))
        if actor is not None:
            is_author = str(actor.get("id") or "") == manuscript.author_id
            author_may_pay = is_author and self.roles.can(actor, "author:pay")
            if not (author_may_pay or self.roles.can(actor, "payment:create_order")):
                raise Forbidden("Not allowed to create a payment order for this manuscript")
        self._check_orderable(manuscript)

        charges = self._charges(manuscript)
        pending = manuscript.pending_payment()
        if pending is not None and pending.amount == charges.total_amount:
            logger.info("reusing pending order manuscript=%s order=%s", manuscript.id, pending.payment_id)
            return self._order_result(manuscript, pending, reused=True)

        currency = self.payment_config.currency
        order = self.gateway.create_order(charges.total_amount * 100, currency, f"rcpt_{manuscript.id}")
        order_id = str(order["external_order_id"])

        def _tx(tx: StoreTransaction) -> tuple[Manuscript, PaymentEntry]:
            ms = tx.get_manuscript(manuscript_id, for_update=True)
            self._check_orderable(ms)
            now = _utc_now()
            for existing in ms.payments:
                if existing.status == "pending":
                    existing.status = "failed"
                    existing.metadata = {**existing.metadata, "reason": "superseded", "superseded_by": order_id}
            payment = PaymentEntry(
                payment_id=order_id,
                amount=charges.total_amount,
                currency=currency,
                timestamp=now,
                status="pending",
                metadata={"receipt": f"rcpt_{ms.id}", "gateway": "razorpay"},
            )
            ms.payments.append(payment)
            ms.publication_charges = self._charges(ms)
            ms.apply(WorkflowEvent.PAYMENT_ORDER_CREATED, changed_by=requested_by, comment=f"order {order_id}")
            tx.save_manuscript(ms)
            return ms, payment

        ms, payment = self.store.run_in_transaction(_tx)
        logger.info("payment order created manuscript=%s order=%s amount=%s", ms.id, order_id, payment.amount)
        return self._order_result(ms, payment, reused=False)

    # === VerifyPayment ===
    def verify_payment(
        self,
        manuscript_id: str,
        payment_id: str,
        amount: Any,
        status: str,
        signature: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        应用网关的支付结果（幂等）。签名串："{manuscript_id}|{payment_id}|{amount}|{status}"。
        """
        payload = canonical_payload(str(manuscript_id), str(payment_id), amount, str(status))
        if not self.gateway.verify_signature(payload, signature):
            logger.warning("payment signature mismatch manuscript=%s payment=%s", manuscript_id, payment_id)
            raise InvalidSignature("Invalid payment signature")
        return self._settle(str(manuscript_id), str(payment_id), str(status), metadata)

    def verify_checkout(
        self,
        manuscript_id: str,
        razorpay_order_id: str,
        razorpay_payment_id: str,
        razorpay_signature: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Razorpay checkout 成功回调：验签通过即视为 confirmed。

        中文注释: 稿件里的 payment_id 存的是 order id，因此用 razorpay_order_id 查找。
        """
        if not self.gateway.verify_checkout_signature(razorpay_order_id, razorpay_payment_id, razorpay_signature):
            logger.warning("checkout signature mismatch manuscript=%s order=%s", manuscript_id, razorpay_order_id)
            raise InvalidSignature("Invalid Razorpay signature")
        meta = {**(metadata or {}), "razorpay_payment_id": razorpay_payment_id}
        return self._settle(str(manuscript_id), str(razorpay_order_id), "confirmed", meta)

    def _settle(
        self,
        manuscript_id: str,
        payment_id: str,
        status: str,
        metadata: Optional[dict[str, Any]],
    ) -> dict[str, Any]:
        confirmed = str(status).strip().lower() in CONFIRMED_GATEWAY_STATUSES

        def _tx(tx: StoreTransaction) -> dict[str, Any]:
            ms = tx.get_manuscript(manuscript_id, for_update=True)
            pending = ms.find_payment(payment_id, status="pending")
            if pending is None:
                already = ms.find_payment(payment_id, status="confirmed")
                if already is not None:
                    return {"already_processed": True, "manuscript": ms, "payment": already}
                raise NotFound("Pending payment not found", manuscript_id=ms.id, payment_id=payment_id)

            now = _utc_now()
            pending.timestamp = now
            if metadata:
                pending.metadata = {**pending.metadata, **metadata}
            if confirmed:
                pending.status = "confirmed"
                ms.publication_charges.is_paid = True
                ms.published_at = now
                ms.apply(WorkflowEvent.PAYMENT_CONFIRMED, changed_by="payment_gateway", comment=f"payment {payment_id}")
            else:
                pending.status = "failed"
                pending.metadata = {**pending.metadata, "gateway_status": str(status)}
                ms.publication_charges.is_paid = False
                ms.apply(WorkflowEvent.PAYMENT_FAILED, changed_by="payment_gateway", comment=f"payment {payment_id}")
            tx.save_manuscript(ms)
            return {"already_processed": False, "manuscript": ms, "payment": pending}

        result = self.store.run_in_transaction(_tx)
        ms: Manuscript = result["manuscript"]
        payment: PaymentEntry = result["payment"]
        result["success"] = True
        result["outcome"] = payment.status
        if result["already_processed"]:
            logger.info("payment already confirmed manuscript=%s payment=%s", ms.id, payment_id)
            return result

        logger.info("payment %s manuscript=%s payment=%s", payment.status, ms.id, payment_id)
        event_name = "payment_confirmed" if payment.status == "confirmed" else "payment_failed"
        note = {"manuscript_id": ms.id, "payment_id": payment_id, "amount": payment.amount}
        self.notifier.notify(event_name, ms.author_id, note)
        if payment.status == "confirmed":
            self.notifier.notify_many(event_name, self.roles.editors_in_chief(), note)
        return result
