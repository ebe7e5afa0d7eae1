"""
Revision Service: 作者修回 + 审稿人结转

中文注释:
1. 修回只能由通讯作者在 REVISIONS_REQUIRED 状态下发起，否则 NotEligibleForRevision。
2. 轮次递增、替换文件、追加 revision 记录、状态流转、结转审稿人，全部在同一个事务里完成。
3. 结转规则：此前任一轮完成过审稿的 reviewer，每人在新一轮最多一条任务（幂等，可重复调用）。
4. 通知在事务提交之后发送，best-effort。
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from app.core.config import WorkflowConfig
from app.core.errors import Forbidden, NotEligibleForRevision, ValidationFailed
from app.core.role_matrix import EditorialRoleRegistry
from app.lib.store import StoreTransaction, WorkflowStore
from app.models.manuscript import Manuscript, WorkflowEvent, WorkflowState
from app.models.reviews import Assignment
from app.models.revision import ManuscriptFile, RevisionEntry
from app.services.notification_service import NotificationService

logger = logging.getLogger("reviewflow.revisions")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RevisionService:
    """Revision 工作流的核心服务类"""

    def __init__(
        self,
        store: WorkflowStore,
        notifier: NotificationService,
        roles: Optional[EditorialRoleRegistry] = None,
        config: Optional[WorkflowConfig] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.roles = roles or EditorialRoleRegistry()
        self.config = config or WorkflowConfig.from_env()

    def _carry_forward(self, tx: StoreTransaction, manuscript: Manuscript) -> list[Assignment]:
        new_round = manuscript.current_round
        history = tx.find_assignments(manuscript_id=manuscript.id)

        # 新一轮已有任务（任意状态）的 reviewer 不再重复指派
        already = {a.reviewer_id for a in history if a.round == new_round}

        # reviewer -> 最近一次已完成任务（保留原编辑）
        latest_completed: dict[str, Assignment] = {}
        for a in history:
            if a.round < new_round and a.status == "completed":
                latest_completed[a.reviewer_id] = a

        created: list[Assignment] = []
        due_date = _utc_now() + timedelta(days=self.config.review_due_days)
        for reviewer_id, prev in latest_completed.items():
            if reviewer_id in already:
                continue
            created.append(
                tx.insert_assignment(
                    Assignment(
                        manuscript_id=manuscript.id,
                        reviewer_id=reviewer_id,
                        editor_id=prev.editor_id,
                        assigned_by=prev.editor_id,
                        round=new_round,
                        due_date=due_date,
                    )
                )
            )
        return created

    def _notify(self, manuscript: Manuscript, created: list[Assignment]) -> None:
        for a in created:
            self.notifier.notify(
                "assignment_created",
                a.reviewer_id,
                {"manuscript_id": manuscript.id, "assignment_id": a.id, "round": a.round},
            )

    def submit_revision(
        self,
        manuscript_id: str,
        author_id: str,
        new_file: ManuscriptFile | Mapping[str, Any],
        notes: str = "",
        *,
        actor: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Author 提交修订稿。

        返回 {manuscript, revision, assignments}，assignments 为本次新结转的审稿任务。
        """
        if actor is not None and not self.roles.can(actor, "author:submit_revision"):
            raise Forbidden("Only authors can submit revisions")
        try:
            file = new_file if isinstance(new_file, ManuscriptFile) else ManuscriptFile.model_validate(dict(new_file))
        except ValueError as e:
            raise ValidationFailed("Invalid revision file", reason=str(e)) from e

        def _tx(tx: StoreTransaction) -> dict[str, Any]:
            manuscript = tx.get_manuscript(manuscript_id, for_update=True)
            if manuscript.state != WorkflowState.REVISIONS_REQUIRED:
                raise NotEligibleForRevision(
                    "Manuscript is not awaiting revisions",
                    manuscript_id=manuscript.id,
                    state=manuscript.state.value,
                )
            if str(manuscript.author_id) != str(author_id):
                raise NotEligibleForRevision(
                    "Only the corresponding author can submit revisions",
                    manuscript_id=manuscript.id,
                )

            manuscript.current_round += 1
            manuscript.file = file
            revision = RevisionEntry(
                round=manuscript.current_round,
                submitted_at=_utc_now(),
                notes=(notes or "").strip(),
                file=file,
            )
            manuscript.revisions.append(revision)
            manuscript.apply(
                WorkflowEvent.AUTHOR_RESUBMITS,
                changed_by=str(author_id),
                comment=f"round {manuscript.current_round}",
            )
            created = self._carry_forward(tx, manuscript)
            tx.save_manuscript(manuscript)
            return {"manuscript": manuscript, "revision": revision, "assignments": created}

        result = self.store.run_in_transaction(_tx)
        manuscript: Manuscript = result["manuscript"]
        logger.info(
            "revision submitted manuscript=%s round=%s carried_forward=%s",
            manuscript.id,
            manuscript.current_round,
            len(result["assignments"]),
        )
        self._notify(manuscript, result["assignments"])
        self.notifier.notify_many(
            "revision_submitted",
            manuscript.editor_ids,
            {"manuscript_id": manuscript.id, "round": manuscript.current_round},
        )
        return result

    def carry_forward_reviewers(self, manuscript_id: str) -> list[Assignment]:
        """
        为当前轮次补齐结转任务（幂等：重复调用不会产生重复任务）。
        """

        def _tx(tx: StoreTransaction) -> tuple[Manuscript, list[Assignment]]:
            manuscript = tx.get_manuscript(manuscript_id, for_update=True)
            if manuscript.current_round <= 1:
                return manuscript, []
            return manuscript, self._carry_forward(tx, manuscript)

        manuscript, created = self.store.run_in_transaction(_tx)
        if created:
            logger.info("carried forward %s reviewer(s) manuscript=%s", len(created), manuscript.id)
            self._notify(manuscript, created)
        return created
