from decimal import Decimal

import pytest

from app.core.errors import (
    Forbidden,
    GatewayUnavailable,
    InvalidSignature,
    InvalidState,
    NotFound,
    OperationFailed,
    ValidationFailed,
)
from app.lib.store import _MemoryTransaction
from app.models.manuscript import WorkflowState
from app.models.revision import ManuscriptFile
from app.services.payment_gateway import sign_payload
from tests.utils.workflow import EIC_ID, KEY_SECRET, signed


@pytest.fixture
def awaiting_payment(engine, reviewed, editor):
    ms_id = reviewed("accept", "accept")
    engine.editorial.record_editor_decision(ms_id, "accept", editor)
    return ms_id


def _pages(store, manuscript_id, pages):
    def _tx(tx):
        ms = tx.get_manuscript(manuscript_id, for_update=True)
        ms.file = ManuscriptFile(file_path=ms.file.file_path, pages=pages)
        return tx.save_manuscript(ms)

    store.run_in_transaction(_tx)


def test_pending_order_is_reused(engine, awaiting_payment, gateway):
    again = engine.payments.create_order(awaiting_payment, actor={"id": "author-1", "roles": ["author"]})

    assert again["reused"] is True
    assert again["order"]["order_id"] == "order_1"
    assert again["order"]["key_id"] == "rzp_test_key"
    assert len(gateway.orders) == 1
    assert len(engine.editorial.get_manuscript(awaiting_payment).payments) == 1


def test_stale_order_is_superseded(engine, store, awaiting_payment, gateway):
    _pages(store, awaiting_payment, 12)

    out = engine.payments.create_order(awaiting_payment)

    assert out["reused"] is False
    assert out["order"]["amount"] == 65
    assert gateway.orders[-1]["amount"] == 6500
    ms = engine.editorial.get_manuscript(awaiting_payment)
    assert [(p.payment_id, p.status) for p in ms.payments] == [("order_1", "failed"), ("order_2", "pending")]
    assert ms.payments[0].metadata["reason"] == "superseded"
    assert ms.payments[0].metadata["superseded_by"] == "order_2"
    assert ms.publication_charges.total_amount == 65
    assert ms.state == WorkflowState.PAYMENT_PENDING


def test_order_requires_accepted_manuscript(engine, submit):
    ms = submit()
    with pytest.raises(InvalidState):
        engine.payments.create_order(ms.id)


def test_order_actor_must_be_author_or_staff(engine, awaiting_payment):
    with pytest.raises(Forbidden):
        engine.payments.create_order(awaiting_payment, actor={"id": "reviewer-1", "roles": ["reviewer"]})
    out = engine.payments.create_order(awaiting_payment, actor={"id": EIC_ID, "roles": ["editor"]})
    assert out["reused"] is True


def test_author_needs_pay_permission(engine, awaiting_payment):
    # 本人但没有 author 角色（例如只以审稿人身份登录）不能下单
    with pytest.raises(Forbidden):
        engine.payments.create_order(awaiting_payment, actor={"id": "author-1", "roles": ["reviewer"]})
    out = engine.payments.create_order(awaiting_payment, actor={"id": "author-1", "roles": ["author"]})
    assert out["reused"] is True


def test_gateway_failure_persists_nothing(engine, reviewed, editor, gateway):
    ms_id = reviewed("accept", "accept")
    gateway.fail = True
    engine.editorial.record_editor_decision(ms_id, "accept", editor)

    with pytest.raises(GatewayUnavailable):
        engine.payments.create_order(ms_id)
    ms = engine.editorial.get_manuscript(ms_id)
    assert ms.payments == []
    assert ms.state == WorkflowState.EDITOR_ACCEPTED


def test_confirmed_payment_publishes(engine, awaiting_payment, notifier):
    sig = signed(awaiting_payment, "order_1", 45, "confirmed")

    result = engine.payments.verify_payment(awaiting_payment, "order_1", 45, "confirmed", sig, {"source": "webhook"})

    assert result["success"] is True
    assert result["outcome"] == "confirmed"
    assert result["already_processed"] is False
    ms = engine.editorial.get_manuscript(awaiting_payment)
    assert ms.state == WorkflowState.PUBLISHED
    assert ms.publication_charges.is_paid is True
    assert ms.published_at is not None
    assert ms.payments[0].status == "confirmed"
    assert ms.payments[0].metadata["source"] == "webhook"
    assert "payment_confirmed" in notifier.events_for(ms.author_id)
    assert "payment_confirmed" in notifier.events_for(EIC_ID)


def test_replayed_confirmation_is_idempotent(engine, awaiting_payment, notifier):
    sig = signed(awaiting_payment, "order_1", 45, "confirmed")
    engine.payments.verify_payment(awaiting_payment, "order_1", 45, "confirmed", sig)
    sent_before = len(notifier.sent)
    published_at = engine.editorial.get_manuscript(awaiting_payment).published_at

    replay = engine.payments.verify_payment(awaiting_payment, "order_1", 45.0, "confirmed", sig)

    assert replay["success"] is True
    assert replay["already_processed"] is True
    assert len(notifier.sent) == sent_before
    ms = engine.editorial.get_manuscript(awaiting_payment)
    assert ms.published_at == published_at
    assert [h.event.value for h in ms.history].count("payment_confirmed") == 1


@pytest.mark.parametrize("status", ["success", "paid", "CONFIRMED"])
def test_gateway_success_aliases(engine, awaiting_payment, status):
    sig = signed(awaiting_payment, "order_1", 45, status)
    result = engine.payments.verify_payment(awaiting_payment, "order_1", 45, status, sig)
    assert result["outcome"] == "confirmed"


def test_tampered_signature_changes_nothing(engine, awaiting_payment):
    sig = signed(awaiting_payment, "order_1", 45, "confirmed")
    with pytest.raises(InvalidSignature):
        engine.payments.verify_payment(awaiting_payment, "order_1", 1, "confirmed", sig)
    with pytest.raises(InvalidSignature):
        engine.payments.verify_payment(awaiting_payment, "order_1", 45, "confirmed", None)
    # 签名错误时连稿件是否存在都不检查
    with pytest.raises(InvalidSignature):
        engine.payments.verify_payment("missing", "order_1", 45, "confirmed", sig)

    ms = engine.editorial.get_manuscript(awaiting_payment)
    assert ms.state == WorkflowState.PAYMENT_PENDING
    assert ms.payments[0].status == "pending"


@pytest.mark.parametrize("amount", ["Infinity", Decimal("Infinity"), float("nan")])
def test_non_finite_amount_is_a_validation_error(engine, awaiting_payment, amount):
    with pytest.raises(ValidationFailed):
        engine.payments.verify_payment(awaiting_payment, "order_1", amount, "confirmed", "0" * 64)
    assert engine.editorial.get_manuscript(awaiting_payment).state == WorkflowState.PAYMENT_PENDING


def test_failed_payment_keeps_manuscript_pending(engine, awaiting_payment, notifier):
    sig = signed(awaiting_payment, "order_1", 45, "failed")
    result = engine.payments.verify_payment(awaiting_payment, "order_1", 45, "failed", sig)

    assert result["outcome"] == "failed"
    ms = engine.editorial.get_manuscript(awaiting_payment)
    assert ms.state == WorkflowState.PAYMENT_PENDING
    assert ms.publication_charges.is_paid is False
    assert ms.payments[0].metadata["gateway_status"] == "failed"
    assert "payment_failed" in notifier.events_for(ms.author_id)

    # 失败的订单不再是 pending，重放得到 NotFound
    with pytest.raises(NotFound):
        engine.payments.verify_payment(awaiting_payment, "order_1", 45, "failed", sig)

    # 作者可以重新下单
    retry = engine.payments.create_order(awaiting_payment)
    assert retry["reused"] is False
    assert retry["order"]["order_id"] == "order_2"


def test_unknown_payment_id(engine, awaiting_payment):
    sig = signed(awaiting_payment, "order_404", 45, "confirmed")
    with pytest.raises(NotFound):
        engine.payments.verify_payment(awaiting_payment, "order_404", 45, "confirmed", sig)


def test_verify_checkout(engine, awaiting_payment):
    sig = sign_payload(KEY_SECRET, "order_1|pay_77")
    with pytest.raises(InvalidSignature):
        engine.payments.verify_checkout(awaiting_payment, "order_1", "pay_78", sig)

    result = engine.payments.verify_checkout(awaiting_payment, "order_1", "pay_77", sig)
    assert result["outcome"] == "confirmed"
    ms = engine.editorial.get_manuscript(awaiting_payment)
    assert ms.state == WorkflowState.PUBLISHED
    assert ms.payments[0].metadata["razorpay_payment_id"] == "pay_77"


def test_store_failure_rolls_back_confirmation(engine, awaiting_payment, monkeypatch, notifier):
    def _boom(self, manuscript):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(_MemoryTransaction, "save_manuscript", _boom)
    sent_before = len(notifier.sent)
    sig = signed(awaiting_payment, "order_1", 45, "confirmed")

    with pytest.raises(OperationFailed):
        engine.payments.verify_payment(awaiting_payment, "order_1", 45, "confirmed", sig)

    monkeypatch.undo()
    ms = engine.editorial.get_manuscript(awaiting_payment)
    assert ms.state == WorkflowState.PAYMENT_PENDING
    assert ms.payments[0].status == "pending"
    assert ms.publication_charges.is_paid is False
    assert ms.published_at is None
    assert len(notifier.sent) == sent_before
