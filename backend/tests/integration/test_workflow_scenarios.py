import pytest

from app.core.errors import InvalidSignature, InvalidState
from app.models.manuscript import WorkflowEvent, WorkflowState, project_state
from tests.utils.workflow import EIC_ID, review_payload, reviewer, signed

# === 端到端场景：投稿 -> 审稿 -> 修回 -> 录用 -> 支付 -> 发表 ===


def _assert_consistent(engine, manuscript_id):
    ms = engine.editorial.get_manuscript(manuscript_id)
    assert (ms.status, ms.workflow_status) == project_state(ms.state)
    # 审计日志首尾相接
    for prev, cur in zip(ms.history, ms.history[1:]):
        assert cur.from_state == prev.to_state
    assert ms.history[-1].to_state == ms.state
    return ms


def test_full_lifecycle_with_revision_round(engine, editor, notifier, gateway):
    ms = engine.editorial.submit_manuscript(
        title="Sparse attention for long documents",
        author_id="author-1",
        file={"file_path": "manuscripts/v1.pdf", "pages": 8},
    )
    _assert_consistent(engine, ms.id)

    a1 = engine.assignments.create_assignment(ms.id, reviewer("r1"), editor["id"])
    a2 = engine.assignments.create_assignment(ms.id, reviewer("r2"), editor["id"])
    engine.assignments.accept(a1.id, "r1")
    engine.assignments.accept(a2.id, "r2")
    _assert_consistent(engine, ms.id)

    engine.reviews.save_draft(ms.id, "r1", {"comments_to_author": "draft"})
    engine.reviews.submit_review(ms.id, "r1", review_payload("minor_revisions"))
    engine.reviews.submit_review(ms.id, "r2", review_payload("accept"))
    current = _assert_consistent(engine, ms.id)
    assert current.state == WorkflowState.REVISIONS_REQUIRED

    revision = engine.revisions.submit_revision(
        ms.id, "author-1", {"file_path": "manuscripts/v2.pdf", "pages": 11}, notes="Fixed section 3"
    )
    assert {a.reviewer_id for a in revision["assignments"]} == {"r1", "r2"}
    _assert_consistent(engine, ms.id)

    for rid in ("r1", "r2"):
        engine.reviews.submit_review(ms.id, rid, review_payload("accept", score=5))
    current = _assert_consistent(engine, ms.id)
    assert current.state == WorkflowState.REVIEW_ACCEPTED
    assert current.current_round == 2

    summary = engine.reviews.review_summary(ms.id, actor=editor)
    assert summary["round"] == 2
    assert summary["decision"] == "accept"
    assert summary["average_score"] == 5.0
    assert engine.reviews.review_summary(ms.id, actor=editor, round=1)["decision"] == "minor_revisions"

    decision = engine.editorial.record_editor_decision(ms.id, "accept", editor)
    # 修回后 11 页：5 + 5 * 10
    assert decision["order"]["amount"] == 55
    assert gateway.orders[-1]["amount"] == 5500
    _assert_consistent(engine, ms.id)

    order_id = decision["order"]["order_id"]
    with pytest.raises(InvalidSignature):
        engine.payments.verify_payment(ms.id, order_id, 1, "confirmed", signed(ms.id, order_id, 55, "confirmed"))

    sig = signed(ms.id, order_id, 55, "confirmed")
    engine.payments.verify_payment(ms.id, order_id, 55, "confirmed", sig)
    published = _assert_consistent(engine, ms.id)
    assert published.state == WorkflowState.PUBLISHED
    assert published.status.value == "published"
    assert published.publication_charges.is_paid is True

    assert engine.payments.verify_payment(ms.id, order_id, 55, "confirmed", sig)["already_processed"] is True

    # 发表后不可再拒稿
    with pytest.raises(InvalidState):
        engine.editorial.record_editor_decision(ms.id, "reject", editor)

    events = [h.event for h in published.history]
    assert events == [
        WorkflowEvent.SUBMIT,
        WorkflowEvent.ASSIGN_FIRST_REVIEWER,
        WorkflowEvent.REVIEWER_ACCEPTS,
        WorkflowEvent.QUORUM_ANY_REVISION,
        WorkflowEvent.AUTHOR_RESUBMITS,
        WorkflowEvent.QUORUM_ALL_ACCEPT,
        WorkflowEvent.EDITOR_ACCEPT,
        WorkflowEvent.PAYMENT_ORDER_CREATED,
        WorkflowEvent.PAYMENT_CONFIRMED,
    ]
    assert "payment_confirmed" in notifier.events_for(EIC_ID)


def test_reject_outranks_revision_and_accept(engine, editor):
    ms = engine.editorial.submit_manuscript(
        title="A negative result", author_id="author-2", file={"file_path": "m.pdf", "pages": 4}
    )
    for rid in ("r1", "r2", "r3"):
        engine.assignments.create_assignment(ms.id, reviewer(rid), editor["id"])

    engine.reviews.submit_review(ms.id, "r1", review_payload("accept"))
    engine.reviews.submit_review(ms.id, "r2", review_payload("major_revisions"))
    current = _assert_consistent(engine, ms.id)
    assert current.state == WorkflowState.REVISIONS_REQUIRED

    # 成团后迟到的审稿意见照常记录，但不再驱动状态
    late = engine.reviews.submit_review(ms.id, "r3", review_payload("reject"))
    assert late["transition"] is None
    assert _assert_consistent(engine, ms.id).state == WorkflowState.REVISIONS_REQUIRED


def test_any_reject_in_quorum_rejects(engine, editor, notifier):
    ms = engine.editorial.submit_manuscript(
        title="Overclaimed", author_id="author-3", file={"file_path": "m.pdf", "pages": 4}
    )
    engine.assignments.create_assignment(ms.id, reviewer("r1"), editor["id"])
    engine.assignments.create_assignment(ms.id, reviewer("r2"), editor["id"])
    engine.reviews.submit_review(ms.id, "r1", review_payload("minor_revisions"))
    engine.reviews.submit_review(ms.id, "r2", review_payload("reject"))

    current = _assert_consistent(engine, ms.id)
    assert current.state == WorkflowState.REJECTED
    with pytest.raises(InvalidState):
        engine.revisions.submit_revision(ms.id, "author-3", {"file_path": "m2.pdf", "pages": 4})
