from datetime import datetime, timezone
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


Recommendation = Literal["accept", "minor_revisions", "major_revisions", "reject"]
AssignmentStatus = Literal["pending", "accepted", "declined", "completed"]
ReviewStatus = Literal["in_progress", "submitted"]

RECOMMENDATIONS: tuple[str, ...] = ("accept", "minor_revisions", "major_revisions", "reject")
REVISION_RECOMMENDATIONS = frozenset({"minor_revisions", "major_revisions"})
OPEN_ASSIGNMENT_STATUSES = frozenset({"pending", "accepted"})
SCORE_CRITERIA: tuple[str, ...] = ("originality", "methodology", "contribution", "clarity", "references")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReviewScores(BaseModel):
    """五项评分，每项 1-5 的整数"""

    originality: int = Field(..., ge=1, le=5)
    methodology: int = Field(..., ge=1, le=5)
    contribution: int = Field(..., ge=1, le=5)
    clarity: int = Field(..., ge=1, le=5)
    references: int = Field(..., ge=1, le=5)

    def overall(self) -> float:
        values = [getattr(self, name) for name in SCORE_CRITERIA]
        return sum(values) / len(values)


class Assignment(BaseModel):
    """审稿任务（reviewer <-> manuscript <-> round）"""

    id: str = Field(default_factory=lambda: str(uuid4()))
    manuscript_id: str
    reviewer_id: str
    editor_id: str
    assigned_by: str
    round: int = Field(1, ge=1)
    status: AssignmentStatus = "pending"
    due_date: datetime
    review_id: Optional[str] = None
    decline_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_ASSIGNMENT_STATUSES


class Review(BaseModel):
    """
    审稿报告

    中文注释:
    - 同一 (manuscript, reviewer, round) 只有一份，采用 upsert 语义；
    - overall_score 随评分更新重新计算，提交后对审稿人只读。
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    manuscript_id: str
    reviewer_id: str
    round: int = Field(1, ge=1)
    scores: Optional[ReviewScores] = None
    overall_score: Optional[float] = None
    recommendation: Optional[Recommendation] = None
    comments_to_author: str = ""
    comments_to_editor: str = ""
    confidential_comments: str = ""
    status: ReviewStatus = "in_progress"
    submitted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    version: int = 0

    @model_validator(mode="after")
    def _sync_overall_score(self) -> "Review":
        self.overall_score = self.scores.overall() if self.scores else None
        return self

    def set_scores(self, scores: ReviewScores) -> None:
        self.scores = scores
        self.overall_score = scores.overall()


class ReviewDraft(BaseModel):
    """审稿人暂存草稿的载荷（全部可选）"""

    scores: Optional[ReviewScores] = None
    recommendation: Optional[Recommendation] = None
    comments_to_author: Optional[str] = Field(None, max_length=20000)
    comments_to_editor: Optional[str] = Field(None, max_length=20000)
    confidential_comments: Optional[str] = Field(None, max_length=20000)


class ReviewSubmission(BaseModel):
    """审稿人正式提交的载荷"""

    scores: ReviewScores
    recommendation: Recommendation
    comments_to_author: str = Field(..., min_length=10, max_length=20000)
    comments_to_editor: str = Field("", max_length=20000)
    confidential_comments: str = Field("", max_length=20000)
