from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from app.core.config import WorkflowConfig
from app.core.errors import (
    AlreadyProcessed,
    DuplicateAssignment,
    Forbidden,
    InvalidState,
    NotAReviewer,
)
from app.core.role_matrix import EditorialRoleRegistry
from app.lib.store import StoreTransaction, WorkflowStore
from app.models.manuscript import Manuscript, WorkflowEvent, WorkflowState, can_apply
from app.models.reviews import OPEN_ASSIGNMENT_STATUSES, RECOMMENDATIONS, Assignment, Review, ReviewSubmission
from app.services.decision_aggregator import evaluate_quorum
from app.services.notification_service import NotificationService

logger = logging.getLogger("reviewflow.assignments")

# 允许继续指派审稿人的稿件状态
ASSIGNABLE_STATES = frozenset(
    {WorkflowState.SUBMITTED, WorkflowState.UNDER_REVIEW, WorkflowState.REVIEW_IN_PROGRESS}
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AssignmentService:
    """
    审稿任务生命周期（指派 / 接受 / 拒绝 / 完成 / 列表）

    中文注释:
    - 所有写操作都在 store.run_in_transaction 中完成：任务状态、审稿报告、稿件状态一起提交或一起回滚。
    - 加锁顺序固定为“先稿件、后任务”，避免并发时死锁。
    - 通知一律在事务提交之后发送，失败不影响主流程。
    """

    def __init__(
        self,
        store: WorkflowStore,
        notifier: NotificationService,
        roles: EditorialRoleRegistry,
        config: Optional[WorkflowConfig] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.roles = roles
        self.config = config or WorkflowConfig.from_env()

    # --- helpers ---
    def _lock(self, tx: StoreTransaction, assignment_id: str, reviewer_id: str) -> tuple[Manuscript, Assignment]:
        probe = tx.get_assignment(assignment_id)
        manuscript = tx.get_manuscript(probe.manuscript_id, for_update=True)
        assignment = tx.get_assignment(assignment_id, for_update=True)
        if str(assignment.reviewer_id) != str(reviewer_id):
            raise Forbidden("Assignment belongs to another reviewer", assignment_id=str(assignment_id))
        return manuscript, assignment

    def _due_date(self, due_date: Optional[datetime]) -> datetime:
        if due_date is not None:
            return due_date if due_date.tzinfo else due_date.replace(tzinfo=timezone.utc)
        return _utc_now() + timedelta(days=self.config.review_due_days)

    # --- operations ---
    def create_assignment(
        self,
        manuscript_id: str,
        reviewer: Mapping[str, Any],
        editor_id: str,
        *,
        due_date: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
        actor: Mapping[str, Any] | None = None,
    ) -> Assignment:
        """
        指派审稿人。首个指派会把稿件从 SUBMITTED 推进到 UNDER_REVIEW。
        """
        if actor is not None and not self.roles.can(actor, "assignment:create"):
            raise Forbidden("Only editors can assign reviewers")
        reviewer_id = str((reviewer or {}).get("id") or "").strip()
        if not reviewer_id or not self.roles.is_reviewer(reviewer):
            raise NotAReviewer("Target user lacks the reviewer role", reviewer_id=reviewer_id or None)
        editor_id = str(editor_id)

        def _tx(tx: StoreTransaction) -> Assignment:
            manuscript = tx.get_manuscript(manuscript_id, for_update=True)
            if manuscript.state not in ASSIGNABLE_STATES:
                raise InvalidState(
                    "Manuscript is not open for review",
                    manuscript_id=manuscript.id,
                    state=manuscript.state.value,
                )
            if tx.find_assignments(
                manuscript_id=manuscript.id,
                reviewer_id=reviewer_id,
                round=manuscript.current_round,
                statuses=OPEN_ASSIGNMENT_STATUSES,
            ):
                raise DuplicateAssignment(
                    "Reviewer already has an open assignment for this round",
                    manuscript_id=manuscript.id,
                    reviewer_id=reviewer_id,
                    round=manuscript.current_round,
                )
            assignment = tx.insert_assignment(
                Assignment(
                    manuscript_id=manuscript.id,
                    reviewer_id=reviewer_id,
                    editor_id=editor_id,
                    assigned_by=str(assigned_by or editor_id),
                    round=manuscript.current_round,
                    due_date=self._due_date(due_date),
                )
            )

            changed = False
            if manuscript.state == WorkflowState.SUBMITTED:
                manuscript.apply(WorkflowEvent.ASSIGN_FIRST_REVIEWER, changed_by=assignment.assigned_by)
                changed = True
            if editor_id not in manuscript.editor_ids:
                manuscript.editor_ids.append(editor_id)
                changed = True
            if changed:
                tx.save_manuscript(manuscript)
            return assignment

        assignment = self.store.run_in_transaction(_tx)
        logger.info(
            "assignment created id=%s manuscript=%s reviewer=%s round=%s",
            assignment.id,
            assignment.manuscript_id,
            assignment.reviewer_id,
            assignment.round,
        )
        self.notifier.notify(
            "assignment_created",
            assignment.reviewer_id,
            {"manuscript_id": assignment.manuscript_id, "assignment_id": assignment.id, "round": assignment.round},
        )
        return assignment

    def _check_reviewer_actor(self, actor: Mapping[str, Any] | None, action: str) -> None:
        if actor is not None and not self.roles.can(actor, action):
            raise Forbidden("Only reviewers can perform this action", action=action)

    def accept(self, assignment_id: str, reviewer_id: str, *, actor: Mapping[str, Any] | None = None) -> Assignment:
        self._check_reviewer_actor(actor, "reviewer:respond_assignment")

        def _tx(tx: StoreTransaction) -> Assignment:
            manuscript, assignment = self._lock(tx, assignment_id, reviewer_id)
            if assignment.status != "pending":
                raise AlreadyProcessed(
                    f"Assignment already {assignment.status}",
                    assignment_id=assignment.id,
                    status=assignment.status,
                )
            assignment.status = "accepted"
            tx.save_assignment(assignment)
            if manuscript.state == WorkflowState.UNDER_REVIEW:
                manuscript.apply(WorkflowEvent.REVIEWER_ACCEPTS, changed_by=str(reviewer_id))
                tx.save_manuscript(manuscript)
            return assignment

        assignment = self.store.run_in_transaction(_tx)
        self.notifier.notify(
            "assignment_accepted",
            assignment.editor_id,
            {"manuscript_id": assignment.manuscript_id, "assignment_id": assignment.id, "reviewer_id": assignment.reviewer_id},
        )
        return assignment

    def decline(
        self,
        assignment_id: str,
        reviewer_id: str,
        reason: str | None = None,
        *,
        actor: Mapping[str, Any] | None = None,
    ) -> Assignment:
        self._check_reviewer_actor(actor, "reviewer:respond_assignment")

        def _tx(tx: StoreTransaction) -> Assignment:
            _, assignment = self._lock(tx, assignment_id, reviewer_id)
            if assignment.status != "pending":
                raise AlreadyProcessed(
                    f"Assignment already {assignment.status}",
                    assignment_id=assignment.id,
                    status=assignment.status,
                )
            assignment.status = "declined"
            assignment.decline_reason = (reason or "").strip() or None
            return tx.save_assignment(assignment)

        assignment = self.store.run_in_transaction(_tx)
        self.notifier.notify(
            "assignment_declined",
            assignment.editor_id,
            {
                "manuscript_id": assignment.manuscript_id,
                "assignment_id": assignment.id,
                "reviewer_id": assignment.reviewer_id,
                "message": assignment.decline_reason,
            },
        )
        return assignment

    def complete(self, assignment_id: str, reviewer_id: str, submission: ReviewSubmission) -> dict[str, Any]:
        """
        审稿人提交报告：任务 -> completed，报告 upsert 为 submitted，并在同一事务内做成团判定。
        """

        def _tx(tx: StoreTransaction) -> dict[str, Any]:
            manuscript, assignment = self._lock(tx, assignment_id, reviewer_id)
            if not assignment.is_open:
                raise AlreadyProcessed(
                    f"Assignment already {assignment.status}",
                    assignment_id=assignment.id,
                    status=assignment.status,
                )
            manuscript_changed = False
            if assignment.status == "pending" and manuscript.state == WorkflowState.UNDER_REVIEW:
                manuscript.apply(WorkflowEvent.REVIEWER_ACCEPTS, changed_by=str(reviewer_id))
                manuscript_changed = True

            review = tx.find_review(
                manuscript_id=manuscript.id,
                reviewer_id=assignment.reviewer_id,
                round=assignment.round,
            )
            if review is not None and review.status == "submitted":
                raise AlreadyProcessed("Review already submitted for this round", review_id=review.id)
            if review is None:
                review = Review(
                    manuscript_id=manuscript.id,
                    reviewer_id=assignment.reviewer_id,
                    round=assignment.round,
                )
            review.set_scores(submission.scores)
            review.recommendation = submission.recommendation
            review.comments_to_author = submission.comments_to_author
            review.comments_to_editor = submission.comments_to_editor
            review.confidential_comments = submission.confidential_comments
            review.status = "submitted"
            review.submitted_at = _utc_now()
            tx.save_review(review)

            assignment.status = "completed"
            assignment.review_id = review.id
            tx.save_assignment(assignment)

            event = None
            if assignment.round == manuscript.current_round:
                current = tx.find_reviews(
                    manuscript_id=manuscript.id,
                    round=manuscript.current_round,
                    status="submitted",
                )
                event = evaluate_quorum(current, quorum=self.config.review_quorum)
                if event is not None and can_apply(manuscript.state, event):
                    manuscript.apply(event, changed_by="system", comment=f"quorum reached ({len(current)} reviews)")
                    manuscript_changed = True
                else:
                    event = None
            if manuscript_changed:
                tx.save_manuscript(manuscript)

            return {
                "assignment": assignment,
                "review": review,
                "manuscript_id": manuscript.id,
                "manuscript_state": manuscript.state,
                "transition": event.value if event else None,
                "author_id": manuscript.author_id,
            }

        result = self.store.run_in_transaction(_tx)
        assignment: Assignment = result["assignment"]
        logger.info(
            "review submitted assignment=%s manuscript=%s transition=%s",
            assignment.id,
            assignment.manuscript_id,
            result["transition"],
        )
        self.notifier.notify(
            "review_submitted",
            assignment.editor_id,
            {"manuscript_id": assignment.manuscript_id, "assignment_id": assignment.id, "reviewer_id": assignment.reviewer_id},
        )
        if result["manuscript_state"] == WorkflowState.REVISIONS_REQUIRED and result["transition"]:
            self.notifier.notify(
                "revisions_required",
                result["author_id"],
                {"manuscript_id": assignment.manuscript_id, "round": assignment.round},
            )
        return result

    def list_for_reviewer(self, reviewer_id: str, status: str | None = None) -> list[Assignment]:
        """
        审稿人的任务列表（最新优先）。

        中文注释: 同一 (manuscript, round) 若出现多条（历史重复指派数据），只保留最新创建的一条。
        """
        rows = self.store.run_in_transaction(
            lambda tx: tx.find_assignments(
                reviewer_id=str(reviewer_id),
                statuses={status} if status else None,
            )
        )
        rows.sort(key=lambda a: a.created_at, reverse=True)
        seen: set[tuple[str, int]] = set()
        out: list[Assignment] = []
        for a in rows:
            key = (a.manuscript_id, a.round)
            if key in seen:
                continue
            seen.add(key)
            out.append(a)
        return out

    def reviewer_statistics(self, reviewer_id: str) -> dict[str, Any]:
        """
        审稿人工作量统计。

        中文注释:
        - 任务计数按状态统计（含历史重复指派，不去重）；
        - 响应时长 = 审稿报告提交时间 - 任务创建时间（天），只统计已完成且报告已提交的任务。
        """
        reviewer_id = str(reviewer_id)

        def _tx(tx: StoreTransaction) -> tuple[list[Assignment], list[tuple[Assignment, Review]]]:
            rows = tx.find_assignments(reviewer_id=reviewer_id)
            pairs: list[tuple[Assignment, Review]] = []
            for a in rows:
                if a.status != "completed" or not a.review_id:
                    continue
                review = tx.get_review(a.review_id)
                if review.status == "submitted":
                    pairs.append((a, review))
            return rows, pairs

        assignments, completed = self.store.run_in_transaction(_tx)
        by_status = {status: 0 for status in ("pending", "accepted", "declined", "completed")}
        for a in assignments:
            by_status[a.status] += 1

        recommendations = {rec: 0 for rec in RECOMMENDATIONS}
        scores: list[float] = []
        response_days: list[float] = []
        for a, review in completed:
            if review.recommendation:
                recommendations[review.recommendation] += 1
            if review.overall_score is not None:
                scores.append(review.overall_score)
            if review.submitted_at is not None:
                response_days.append((review.submitted_at - a.created_at).total_seconds() / 86400)

        return {
            "reviewer_id": reviewer_id,
            "total_assignments": len(assignments),
            "pending": by_status["pending"],
            "accepted": by_status["accepted"],
            "declined": by_status["declined"],
            "completed": by_status["completed"],
            "awaiting_review": by_status["pending"] + by_status["accepted"],
            "reviews_submitted": len(completed),
            "recommendations": recommendations,
            "average_score": round(sum(scores) / len(scores), 2) if scores else 0,
            "average_response_days": round(sum(response_days) / len(response_days), 1) if response_days else 0,
            "fastest_review_days": round(min(response_days), 1) if response_days else 0,
        }
