from __future__ import annotations

import logging
from typing import Any, Iterable, Literal, Mapping, Optional

from app.core.config import WorkflowConfig
from app.core.errors import Forbidden, GatewayUnavailable, ValidationFailed
from app.core.role_matrix import EditorialRoleRegistry
from app.lib.store import StoreTransaction, WorkflowStore
from app.models.invoices import compute_publication_charges
from app.models.manuscript import Manuscript, StatusTransition, WorkflowEvent, WorkflowState, can_apply
from app.models.revision import ManuscriptFile
from app.services.notification_service import NotificationService
from app.services.payment_service import PaymentService

logger = logging.getLogger("reviewflow.editorial")

EditorDecision = Literal["accept", "reject"]

# 编辑待办队列的默认状态（尚无审稿结论）
EDITOR_QUEUE_STATES = (WorkflowState.SUBMITTED, WorkflowState.UNDER_REVIEW, WorkflowState.REVIEW_IN_PROGRESS)


class EditorialService:
    """
    稿件状态机的持久化入口：投稿、编辑决策、状态流转、审计日志。

    中文注释:
    - 核心状态流转必须显性可见：所有流转都经 Manuscript.apply()（纯函数状态表）。
    - 状态与审计记录（history）在同一次保存中写入，绝不出现“状态变了但没有日志”。
    - 对外展示的 status / workflow_status 只由 state 推导，两者不可能漂移。
    """

    def __init__(
        self,
        store: WorkflowStore,
        notifier: NotificationService,
        roles: EditorialRoleRegistry,
        payments: PaymentService,
        config: Optional[WorkflowConfig] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.roles = roles
        self.payments = payments
        self.config = config or WorkflowConfig.from_env()

    def _charges(self, pages: int):
        cfg = self.config
        return compute_publication_charges(
            pages,
            base_amount=cfg.fee_base_amount,
            free_pages=cfg.fee_free_pages,
            per_extra_page=cfg.fee_per_extra_page,
        )

    def present(self, manuscript: Manuscript) -> dict[str, Any]:
        return manuscript.to_public_dict(legacy_reject_marker=self.config.legacy_reject_workflow_marker)

    def get_manuscript(self, manuscript_id: str) -> Manuscript:
        return self.store.run_in_transaction(lambda tx: tx.get_manuscript(manuscript_id))

    def list_transitions(self, manuscript_id: str) -> list[StatusTransition]:
        return list(self.get_manuscript(manuscript_id).history)

    def list_for_author(self, author_id: str) -> list[Manuscript]:
        """作者本人的稿件（最新投稿在前）"""
        return self.store.run_in_transaction(lambda tx: tx.find_manuscripts(author_id=str(author_id)))

    def list_by_state(
        self,
        states: Optional[Iterable[WorkflowState | str]] = None,
        *,
        editor_id: Optional[str] = None,
        actor: Mapping[str, Any] | None = None,
    ) -> list[Manuscript]:
        """
        编辑待办队列：默认返回尚未形成审稿结论的稿件（已投稿 / 审稿中）。

        editor_id 用于只看自己负责的稿件。
        """
        if actor is not None and not self.roles.can(actor, "decision:record"):
            raise Forbidden("Only editors can view the manuscript queue")
        try:
            wanted = [WorkflowState(s) for s in (EDITOR_QUEUE_STATES if states is None else states)]
        except ValueError as e:
            raise ValidationFailed("Unknown workflow state", reason=str(e)) from e
        return self.store.run_in_transaction(
            lambda tx: tx.find_manuscripts(
                states=wanted,
                editor_id=str(editor_id) if editor_id else None,
            )
        )

    def submit_manuscript(
        self,
        *,
        title: str,
        author_id: str,
        file: ManuscriptFile | Mapping[str, Any],
        editor_ids: Optional[list[str]] = None,
        actor: Mapping[str, Any] | None = None,
    ) -> Manuscript:
        """
        作者投稿：稿件以 SUBMITTED、第 1 轮、初始版面费入库，随后通知主编。

        传入 actor 时要求其具备 author:submit 权限，且只能以本人身份投稿。
        """
        if actor is not None:
            if not self.roles.can(actor, "author:submit"):
                raise Forbidden("Only authors can submit manuscripts")
            if str(actor.get("id") or "") != str(author_id or ""):
                raise Forbidden("Authors can only submit on their own behalf")
        try:
            manuscript_file = file if isinstance(file, ManuscriptFile) else ManuscriptFile.model_validate(dict(file))
            manuscript = Manuscript(
                title=(title or "").strip(),
                author_id=str(author_id or ""),
                editor_ids=[str(x) for x in editor_ids or []],
                file=manuscript_file,
                publication_charges=self._charges(manuscript_file.pages),
            )
        except ValueError as e:
            # pydantic.ValidationError 是 ValueError 的子类
            raise ValidationFailed("Invalid manuscript submission", reason=str(e)) from e

        manuscript.history.append(
            StatusTransition(
                from_state=None,
                to_state=WorkflowState.SUBMITTED,
                event=WorkflowEvent.SUBMIT,
                changed_by=manuscript.author_id,
                created_at=manuscript.submitted_at,
            )
        )

        def _tx(tx: StoreTransaction) -> Manuscript:
            return tx.insert_manuscript(manuscript)

        created = self.store.run_in_transaction(_tx)
        logger.info("manuscript submitted id=%s author=%s", created.id, created.author_id)
        self.notifier.notify_many(
            "manuscript_submitted",
            self.roles.editors_in_chief(),
            {"manuscript_id": created.id, "title": created.title},
        )
        return created

    def transition(
        self,
        manuscript_id: str,
        event: WorkflowEvent,
        *,
        changed_by: Optional[str] = None,
        comment: Optional[str] = None,
        override: bool = False,
    ) -> Manuscript:
        """单步状态流转（非法流转抛 InvalidState，不做任何修改）"""

        def _tx(tx: StoreTransaction) -> Manuscript:
            manuscript = tx.get_manuscript(manuscript_id, for_update=True)
            manuscript.apply(event, changed_by=changed_by, comment=comment, override=override)
            return tx.save_manuscript(manuscript)

        return self.store.run_in_transaction(_tx)

    def record_editor_decision(
        self,
        manuscript_id: str,
        decision: EditorDecision,
        editor: Mapping[str, Any],
        *,
        comment: Optional[str] = None,
        override: bool = False,
    ) -> dict[str, Any]:
        """
        编辑终审决策。

        - accept：REVIEW_ACCEPTED（或主编 override 时的审稿中状态）-> EDITOR_ACCEPTED，重新计算版面费，
          事务提交后创建支付订单（-> PAYMENT_PENDING）。网关失败时稿件停在 EDITOR_ACCEPTED，结果中带 payment_error。
        - reject：除 PUBLISHED 外任意状态 -> REJECTED（审稿人已拒稿时作为编辑终审写入审计记录）；
          未完成的 pending 订单一并作废。
        """
        decision_norm = str(decision or "").strip().lower()
        if decision_norm not in {"accept", "reject"}:
            raise ValidationFailed("Decision must be 'accept' or 'reject'", decision=decision)
        if not self.roles.can(editor, "decision:record"):
            raise Forbidden("Only editors can record decisions")
        if override and not self.roles.can(editor, "decision:override"):
            raise Forbidden("Only the editor-in-chief can override the review outcome")
        editor_id = str(editor.get("id") or "")

        def _tx(tx: StoreTransaction) -> Manuscript:
            manuscript = tx.get_manuscript(manuscript_id, for_update=True)
            if decision_norm == "accept":
                manuscript.apply(WorkflowEvent.EDITOR_ACCEPT, changed_by=editor_id, comment=comment, override=override)
                manuscript.publication_charges = self._charges(manuscript.file.pages)
            else:
                manuscript.apply(WorkflowEvent.EDITOR_REJECT, changed_by=editor_id, comment=comment)
                for payment in manuscript.payments:
                    if payment.status == "pending":
                        payment.status = "failed"
                        payment.metadata = {**payment.metadata, "reason": "manuscript_rejected"}
            if editor_id and editor_id not in manuscript.editor_ids:
                manuscript.editor_ids.append(editor_id)
            return tx.save_manuscript(manuscript)

        manuscript = self.store.run_in_transaction(_tx)
        logger.info("editor decision manuscript=%s decision=%s by=%s", manuscript.id, decision_norm, editor_id)

        result: dict[str, Any] = {"success": True, "decision": decision_norm, "payment_error": None, "order": None}
        if decision_norm == "accept" and can_apply(manuscript.state, WorkflowEvent.PAYMENT_ORDER_CREATED):
            try:
                order = self.payments.create_order(manuscript.id, requested_by=editor_id)
                manuscript = order["manuscript"]
                result["order"] = order["order"]
            except GatewayUnavailable as e:
                # 中文注释: 录用已提交，不回滚；稍后可重新调用 PaymentService.create_order。
                logger.warning("payment order creation failed manuscript=%s: %s", manuscript.id, e.message)
                result["payment_error"] = e.to_dict()

        result["manuscript"] = self.present(manuscript)
        self.notifier.notify(
            "editor_decision",
            manuscript.author_id,
            {"manuscript_id": manuscript.id, "message": f"Your manuscript was {decision_norm}ed", "decision": decision_norm},
        )
        return result
