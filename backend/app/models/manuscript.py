from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field

from app.core.errors import InvalidState
from app.models.invoices import PaymentEntry, PublicationCharges
from app.models.revision import ManuscriptFile, RevisionEntry


class ManuscriptStatus(str, Enum):
    """粗粒度生命周期状态（对外展示用）"""

    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    REVISIONS_REQUIRED = "revisions_required"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PUBLISHED = "published"


class WorkflowStatus(str, Enum):
    """细粒度运营子状态"""

    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"
    REVIEW_ACCEPTED = "REVIEW_ACCEPTED"
    EDITOR_ACCEPTED = "EDITOR_ACCEPTED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PUBLISHED = "PUBLISHED"
    REJECTED = "REJECTED"


class WorkflowState(str, Enum):
    """
    唯一权威状态。

    中文注释:
    - 历史上 status 与 workflowStatus 两个字段分别写入，容易漂移；
    - 现在只存一个 state，status / workflow_status 都由 project_state() 纯函数推导。
    """

    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    REVIEW_IN_PROGRESS = "review_in_progress"
    REVISIONS_REQUIRED = "revisions_required"
    REVIEW_ACCEPTED = "review_accepted"
    EDITOR_ACCEPTED = "editor_accepted"
    PAYMENT_PENDING = "payment_pending"
    REJECTED = "rejected"
    PUBLISHED = "published"


class WorkflowEvent(str, Enum):
    SUBMIT = "submit"
    ASSIGN_FIRST_REVIEWER = "assign_first_reviewer"
    REVIEWER_ACCEPTS = "reviewer_accepts"
    QUORUM_ALL_ACCEPT = "quorum_all_accept"
    QUORUM_ANY_REJECT = "quorum_any_reject"
    QUORUM_ANY_REVISION = "quorum_any_revision"
    AUTHOR_RESUBMITS = "author_resubmits"
    EDITOR_ACCEPT = "editor_accept"
    PAYMENT_ORDER_CREATED = "payment_order_created"
    EDITOR_REJECT = "editor_reject"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"


_S = WorkflowState
_IN_REVIEW = frozenset({_S.UNDER_REVIEW, _S.REVIEW_IN_PROGRESS})

_PROJECTION: dict[WorkflowState, tuple[ManuscriptStatus, WorkflowStatus]] = {
    _S.SUBMITTED: (ManuscriptStatus.SUBMITTED, WorkflowStatus.SUBMITTED),
    _S.UNDER_REVIEW: (ManuscriptStatus.UNDER_REVIEW, WorkflowStatus.UNDER_REVIEW),
    _S.REVIEW_IN_PROGRESS: (ManuscriptStatus.UNDER_REVIEW, WorkflowStatus.REVIEW_IN_PROGRESS),
    _S.REVISIONS_REQUIRED: (ManuscriptStatus.REVISIONS_REQUIRED, WorkflowStatus.REVIEW_IN_PROGRESS),
    _S.REVIEW_ACCEPTED: (ManuscriptStatus.ACCEPTED, WorkflowStatus.REVIEW_ACCEPTED),
    _S.EDITOR_ACCEPTED: (ManuscriptStatus.ACCEPTED, WorkflowStatus.EDITOR_ACCEPTED),
    _S.PAYMENT_PENDING: (ManuscriptStatus.ACCEPTED, WorkflowStatus.PAYMENT_PENDING),
    _S.REJECTED: (ManuscriptStatus.REJECTED, WorkflowStatus.REJECTED),
    _S.PUBLISHED: (ManuscriptStatus.PUBLISHED, WorkflowStatus.PUBLISHED),
}

# event -> (允许的来源状态, 目标状态)；SUBMIT 是初始事件，没有来源状态
TRANSITIONS: dict[WorkflowEvent, tuple[frozenset[WorkflowState], WorkflowState]] = {
    WorkflowEvent.SUBMIT: (frozenset(), _S.SUBMITTED),
    WorkflowEvent.ASSIGN_FIRST_REVIEWER: (frozenset({_S.SUBMITTED}), _S.UNDER_REVIEW),
    WorkflowEvent.REVIEWER_ACCEPTS: (_IN_REVIEW, _S.REVIEW_IN_PROGRESS),
    WorkflowEvent.QUORUM_ALL_ACCEPT: (_IN_REVIEW, _S.REVIEW_ACCEPTED),
    WorkflowEvent.QUORUM_ANY_REJECT: (_IN_REVIEW, _S.REJECTED),
    WorkflowEvent.QUORUM_ANY_REVISION: (_IN_REVIEW, _S.REVISIONS_REQUIRED),
    WorkflowEvent.AUTHOR_RESUBMITS: (frozenset({_S.REVISIONS_REQUIRED}), _S.REVIEW_IN_PROGRESS),
    WorkflowEvent.EDITOR_ACCEPT: (frozenset({_S.REVIEW_ACCEPTED}), _S.EDITOR_ACCEPTED),
    WorkflowEvent.PAYMENT_ORDER_CREATED: (
        frozenset({_S.EDITOR_ACCEPTED, _S.PAYMENT_PENDING}),
        _S.PAYMENT_PENDING,
    ),
    WorkflowEvent.EDITOR_REJECT: (
        frozenset(set(WorkflowState) - {_S.PUBLISHED}),
        _S.REJECTED,
    ),
    WorkflowEvent.PAYMENT_CONFIRMED: (frozenset({_S.PAYMENT_PENDING}), _S.PUBLISHED),
    WorkflowEvent.PAYMENT_FAILED: (frozenset({_S.PAYMENT_PENDING}), _S.PAYMENT_PENDING),
}

# 主编可越过审稿结论直接录用的状态
EDITOR_OVERRIDE_ACCEPT_FROM = frozenset(
    {_S.SUBMITTED, _S.UNDER_REVIEW, _S.REVIEW_IN_PROGRESS, _S.REVISIONS_REQUIRED}
)


def project_state(
    state: WorkflowState | str,
    *,
    legacy_reject_marker: bool = False,
    rejected_by: Optional[WorkflowEvent] = None,
) -> tuple[ManuscriptStatus, WorkflowStatus]:
    """
    state -> (status, workflow_status) 的纯映射。

    legacy_reject_marker=True 时，拒稿的子状态沿用旧系统的标记：
    - 编辑拒稿（或来源未知）-> REVIEW_ACCEPTED
    - 审稿人多数拒稿（QUORUM_ANY_REJECT）-> REVIEW_IN_PROGRESS（旧系统此时不改 workflowStatus）
    """
    st = WorkflowState(state)
    status, workflow_status = _PROJECTION[st]
    if st == _S.REJECTED and legacy_reject_marker:
        if rejected_by == WorkflowEvent.QUORUM_ANY_REJECT:
            workflow_status = WorkflowStatus.REVIEW_IN_PROGRESS
        else:
            workflow_status = WorkflowStatus.REVIEW_ACCEPTED
    return status, workflow_status


def allowed_events(state: WorkflowState | str) -> set[WorkflowEvent]:
    st = WorkflowState(state)
    return {event for event, (sources, _) in TRANSITIONS.items() if st in sources}


def can_apply(state: WorkflowState | str | None, event: WorkflowEvent, *, override: bool = False) -> bool:
    sources, _ = TRANSITIONS[event]
    if state is None:
        return event == WorkflowEvent.SUBMIT
    st = WorkflowState(state)
    if st in sources:
        return True
    return bool(override and event == WorkflowEvent.EDITOR_ACCEPT and st in EDITOR_OVERRIDE_ACCEPT_FROM)


def next_state(
    state: WorkflowState | str | None,
    event: WorkflowEvent,
    *,
    override: bool = False,
) -> WorkflowState:
    """
    计算事件触发后的新状态；非法流转抛出 InvalidState。
    """
    if not can_apply(state, event, override=override):
        current = WorkflowState(state).value if state is not None else None
        raise InvalidState(
            f"Invalid transition: {current} --{event.value}-->",
            state=current,
            event=event.value,
        )
    return TRANSITIONS[event][1]


def normalize_legacy_status(status: str | None, workflow_status: str | None = None) -> WorkflowState | None:
    """
    把历史数据中的 (status, workflowStatus) 组合折叠成唯一 state。

    中文注释: 迁移旧库时使用；无法识别时返回 None，由调用方决定如何处理。
    """
    s = str(status or "").strip().lower()
    ws = str(workflow_status or "").strip().upper()
    if s == "published" or ws == "PUBLISHED":
        return _S.PUBLISHED
    if s == "rejected":
        return _S.REJECTED
    if s == "revisions_required":
        return _S.REVISIONS_REQUIRED
    if s == "accepted":
        if ws == "PAYMENT_PENDING":
            return _S.PAYMENT_PENDING
        if ws == "EDITOR_ACCEPTED":
            return _S.EDITOR_ACCEPTED
        return _S.REVIEW_ACCEPTED
    if s == "under_review":
        return _S.REVIEW_IN_PROGRESS if ws == "REVIEW_IN_PROGRESS" else _S.UNDER_REVIEW
    if s == "submitted":
        return _S.SUBMITTED
    return None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StatusTransition(BaseModel):
    from_state: Optional[WorkflowState] = None
    to_state: WorkflowState
    event: WorkflowEvent
    changed_by: Optional[str] = None
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)


class Manuscript(BaseModel):
    """
    稿件聚合根（仅由工作流引擎修改）
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str = Field(..., min_length=1, max_length=500)
    author_id: str = Field(..., min_length=1)
    editor_ids: list[str] = Field(default_factory=list)
    file: ManuscriptFile
    state: WorkflowState = WorkflowState.SUBMITTED
    current_round: int = Field(1, ge=1)
    revisions: list[RevisionEntry] = Field(default_factory=list)
    publication_charges: PublicationCharges = Field(default_factory=PublicationCharges)
    payments: list[PaymentEntry] = Field(default_factory=list)
    history: list[StatusTransition] = Field(default_factory=list)
    submitted_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    published_at: Optional[datetime] = None
    version: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> ManuscriptStatus:
        return project_state(self.state)[0]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def workflow_status(self) -> WorkflowStatus:
        return project_state(self.state)[1]

    def pending_payment(self) -> Optional[PaymentEntry]:
        for payment in self.payments:
            if payment.status == "pending":
                return payment
        return None

    def find_payment(self, payment_id: str, *, status: str | None = None) -> Optional[PaymentEntry]:
        for payment in self.payments:
            if payment.payment_id != payment_id:
                continue
            if status is None or payment.status == status:
                return payment
        return None

    def rejected_by(self) -> Optional[WorkflowEvent]:
        """最近一次进入 REJECTED 的事件（未被拒稿时为 None）"""
        if self.state != WorkflowState.REJECTED:
            return None
        for entry in reversed(self.history):
            if entry.to_state == WorkflowState.REJECTED:
                return entry.event
        return None

    def apply(
        self,
        event: WorkflowEvent,
        *,
        changed_by: str | None = None,
        comment: str | None = None,
        override: bool = False,
    ) -> WorkflowState:
        """
        在内存中推进状态并追加审计记录；持久化由调用方在同一事务里完成。
        """
        to_state = next_state(self.state, event, override=override)
        now = _utc_now()
        self.history.append(
            StatusTransition(
                from_state=self.state,
                to_state=to_state,
                event=event,
                changed_by=changed_by,
                comment=comment,
                created_at=now,
            )
        )
        self.state = to_state
        self.updated_at = now
        return to_state

    def to_public_dict(self, *, legacy_reject_marker: bool = False) -> dict:
        data = self.model_dump(mode="json")
        status, workflow_status = project_state(
            self.state,
            legacy_reject_marker=legacy_reject_marker,
            rejected_by=self.rejected_by(),
        )
        data["status"] = status.value
        data["workflow_status"] = workflow_status.value
        return data
