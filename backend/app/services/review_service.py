from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from app.core.errors import AlreadyProcessed, Forbidden, NotFound, ValidationFailed
from app.core.role_matrix import EditorialRoleRegistry
from app.lib.store import StoreTransaction, WorkflowStore
from app.models.reviews import OPEN_ASSIGNMENT_STATUSES, Review, ReviewDraft, ReviewSubmission
from app.services.assignment_service import AssignmentService
from app.services.decision_aggregator import summarize_reviews

logger = logging.getLogger("reviewflow.reviews")


def _validation_errors(e: ValidationError) -> list[dict[str, Any]]:
    return [{"loc": list(err.get("loc") or []), "msg": err.get("msg")} for err in e.errors()]


class ReviewService:
    """
    审稿报告：草稿暂存 / 正式提交 / 编辑端汇总

    中文注释:
    - 草稿与正式提交共用同一条 Review 记录（manuscript + reviewer + round 唯一），upsert 语义。
    - 正式提交走 AssignmentService.complete，保证成团判定与任务完成在同一事务里。
    """

    def __init__(
        self,
        store: WorkflowStore,
        assignments: AssignmentService,
        roles: EditorialRoleRegistry,
    ) -> None:
        self.store = store
        self.assignments = assignments
        self.roles = roles

    @staticmethod
    def _open_assignment(tx: StoreTransaction, manuscript_id: str, reviewer_id: str):
        manuscript = tx.get_manuscript(manuscript_id)
        rows = tx.find_assignments(
            manuscript_id=manuscript.id,
            reviewer_id=str(reviewer_id),
            round=manuscript.current_round,
            statuses=OPEN_ASSIGNMENT_STATUSES,
        )
        if not rows:
            done = tx.find_review(
                manuscript_id=manuscript.id,
                reviewer_id=str(reviewer_id),
                round=manuscript.current_round,
            )
            if done is not None and done.status == "submitted":
                raise AlreadyProcessed("Review already submitted for this round", review_id=done.id)
            raise Forbidden(
                "No open review assignment for this manuscript",
                manuscript_id=manuscript.id,
                reviewer_id=str(reviewer_id),
            )
        return manuscript, rows[-1]

    def save_draft(self, manuscript_id: str, reviewer_id: str, draft: ReviewDraft | Mapping[str, Any]) -> Review:
        """暂存审稿草稿（in_progress）；已提交的报告不可再改"""
        try:
            data = draft if isinstance(draft, ReviewDraft) else ReviewDraft.model_validate(dict(draft or {}))
        except ValidationError as e:
            raise ValidationFailed("Invalid review draft", errors=_validation_errors(e)) from e

        def _tx(tx: StoreTransaction) -> Review:
            manuscript, assignment = self._open_assignment(tx, manuscript_id, reviewer_id)
            review = tx.find_review(
                manuscript_id=manuscript.id,
                reviewer_id=str(reviewer_id),
                round=assignment.round,
            )
            if review is not None and review.status == "submitted":
                raise AlreadyProcessed("Review already submitted and can no longer be edited", review_id=review.id)
            if review is None:
                review = Review(manuscript_id=manuscript.id, reviewer_id=str(reviewer_id), round=assignment.round)
            if data.scores is not None:
                review.set_scores(data.scores)
            if data.recommendation is not None:
                review.recommendation = data.recommendation
            for name in ("comments_to_author", "comments_to_editor", "confidential_comments"):
                value = getattr(data, name)
                if value is not None:
                    setattr(review, name, value)
            return tx.save_review(review)

        return self.store.run_in_transaction(_tx)

    def submit_review(
        self,
        manuscript_id: str,
        reviewer_id: str,
        payload: ReviewSubmission | Mapping[str, Any],
        *,
        actor: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        正式提交审稿意见：校验五项评分与推荐结论，然后完成对应的审稿任务。
        """
        if actor is not None and not self.roles.can(actor, "reviewer:submit_report"):
            raise Forbidden("Only reviewers can submit review reports")
        try:
            submission = (
                payload if isinstance(payload, ReviewSubmission) else ReviewSubmission.model_validate(dict(payload or {}))
            )
        except ValidationError as e:
            raise ValidationFailed("Invalid review submission", errors=_validation_errors(e)) from e

        _, assignment = self.store.run_in_transaction(
            lambda tx: self._open_assignment(tx, manuscript_id, reviewer_id)
        )
        return self.assignments.complete(assignment.id, str(reviewer_id), submission)

    def review_summary(
        self,
        manuscript_id: str,
        *,
        actor: Mapping[str, Any] | None = None,
        round: Optional[int] = None,
    ) -> dict[str, Any]:
        """编辑端审稿汇总（展示用结论，不驱动状态）"""
        if actor is not None and not self.roles.can(actor, "review:view_summary"):
            raise Forbidden("Only editors can view the review summary")

        def _tx(tx: StoreTransaction) -> dict[str, Any]:
            manuscript = tx.get_manuscript(manuscript_id)
            target_round = int(round or manuscript.current_round)
            if target_round < 1 or target_round > manuscript.current_round:
                raise NotFound("Review round not found", round=target_round)
            reviews = tx.find_reviews(manuscript_id=manuscript.id, round=target_round)
            return {"manuscript": manuscript, "round": target_round, "reviews": reviews}

        data = self.store.run_in_transaction(_tx)
        reviews: list[Review] = data["reviews"]
        summary = summarize_reviews(reviews)
        summary.update(
            {
                "manuscript_id": data["manuscript"].id,
                "round": data["round"],
                "in_progress_count": sum(1 for r in reviews if r.status == "in_progress"),
                "reviews": [r.model_dump(mode="json") for r in reviews if r.status == "submitted"],
            }
        )
        return summary
