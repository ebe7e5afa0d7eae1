"""
Workflow Store: 工作流引擎的持久化端口

中文注释:
1. 引擎只依赖这里定义的事务接口（run_in_transaction + 文档读写），具体存储可替换。
2. 所有状态变更都必须在一个事务内完成：要么全部提交，要么全部回滚。
3. 每个文档带 version，保存时做乐观并发校验；落后的写入抛 AlreadyProcessed，而不是静默覆盖。
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

from app.core.errors import (
    AlreadyProcessed,
    DuplicateAssignment,
    NotFound,
    OperationFailed,
    WorkflowError,
)
from app.models.manuscript import Manuscript, WorkflowState
from app.models.reviews import Assignment, Review

T = TypeVar("T")

logger = logging.getLogger("reviewflow.store")


class StoreTransaction(ABC):
    """单个事务内可用的读写操作"""

    # === Manuscript ===
    @abstractmethod
    def get_manuscript(self, manuscript_id: str, *, for_update: bool = False) -> Manuscript: ...

    @abstractmethod
    def insert_manuscript(self, manuscript: Manuscript) -> Manuscript: ...

    @abstractmethod
    def save_manuscript(self, manuscript: Manuscript) -> Manuscript: ...

    @abstractmethod
    def find_manuscripts(
        self,
        *,
        author_id: str | None = None,
        editor_id: str | None = None,
        states: Iterable[str] | None = None,
    ) -> list[Manuscript]:
        """按作者 / 负责编辑 / 状态过滤，按投稿时间倒序（最新在前）"""

    # === Assignment ===
    @abstractmethod
    def get_assignment(self, assignment_id: str, *, for_update: bool = False) -> Assignment: ...

    @abstractmethod
    def insert_assignment(self, assignment: Assignment) -> Assignment: ...

    @abstractmethod
    def save_assignment(self, assignment: Assignment) -> Assignment: ...

    @abstractmethod
    def find_assignments(
        self,
        *,
        manuscript_id: str | None = None,
        reviewer_id: str | None = None,
        round: int | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[Assignment]: ...

    # === Review ===
    @abstractmethod
    def get_review(self, review_id: str) -> Review: ...

    @abstractmethod
    def find_review(self, *, manuscript_id: str, reviewer_id: str, round: int) -> Optional[Review]: ...

    @abstractmethod
    def save_review(self, review: Review) -> Review: ...

    @abstractmethod
    def find_reviews(
        self,
        *,
        manuscript_id: str,
        round: int | None = None,
        status: str | None = None,
        reviewer_id: str | None = None,
    ) -> list[Review]: ...


class WorkflowStore(ABC):
    @abstractmethod
    def run_in_transaction(self, fn: Callable[[StoreTransaction], T]) -> T:
        """
        在一个原子事务中执行 fn。

        - fn 抛出 WorkflowError：回滚后原样抛出；
        - fn 抛出其它异常（存储故障等）：回滚后包装为 OperationFailed。
        """


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _MemoryTransaction(StoreTransaction):
    """
    内存事务：写入先暂存在 staged 中，commit 时一次性落到 store。

    中文注释: 读写都返回深拷贝，调用方对对象的修改在 save_* 之前不会影响存储。
    """

    def __init__(self, store: "MemoryStore") -> None:
        self._store = store
        self._staged: dict[str, dict[str, object]] = {
            "manuscripts": {},
            "assignments": {},
            "reviews": {},
        }

    # --- helpers ---
    def _current(self, table: str, key: str):
        staged = self._staged[table]
        if key in staged:
            return staged[key]
        return getattr(self._store, f"_{table}").get(key)

    def _all(self, table: str) -> list:
        merged = dict(getattr(self._store, f"_{table}"))
        merged.update(self._staged[table])
        return list(merged.values())

    def _save(self, table: str, obj, *, label: str):
        current = self._current(table, obj.id)
        if current is None:
            raise NotFound(f"{label} not found", id=obj.id)
        if current.version != obj.version:
            raise AlreadyProcessed(
                f"{label} was modified concurrently",
                id=obj.id,
                expected_version=obj.version,
                actual_version=current.version,
            )
        obj.version = current.version + 1
        obj.updated_at = _utc_now()
        self._staged[table][obj.id] = obj.model_copy(deep=True)
        return obj

    def _insert(self, table: str, obj, *, label: str):
        if self._current(table, obj.id) is not None:
            raise OperationFailed(f"{label} already exists", id=obj.id)
        obj.version = 0
        self._staged[table][obj.id] = obj.model_copy(deep=True)
        return obj

    def commit(self) -> None:
        for table, staged in self._staged.items():
            getattr(self._store, f"_{table}").update(staged)

    # --- Manuscript ---
    def get_manuscript(self, manuscript_id: str, *, for_update: bool = False) -> Manuscript:
        found = self._current("manuscripts", str(manuscript_id))
        if found is None:
            raise NotFound("Manuscript not found", manuscript_id=str(manuscript_id))
        return found.model_copy(deep=True)

    def insert_manuscript(self, manuscript: Manuscript) -> Manuscript:
        return self._insert("manuscripts", manuscript, label="Manuscript")

    def save_manuscript(self, manuscript: Manuscript) -> Manuscript:
        return self._save("manuscripts", manuscript, label="Manuscript")

    def find_manuscripts(
        self,
        *,
        author_id: str | None = None,
        editor_id: str | None = None,
        states: Iterable[str] | None = None,
    ) -> list[Manuscript]:
        wanted = {WorkflowState(s) for s in states} if states is not None else None
        rows = [
            m
            for m in self._all("manuscripts")
            if (author_id is None or m.author_id == str(author_id))
            and (editor_id is None or str(editor_id) in m.editor_ids)
            and (wanted is None or m.state in wanted)
        ]
        rows.sort(key=lambda m: m.submitted_at, reverse=True)
        return [m.model_copy(deep=True) for m in rows]

    # --- Assignment ---
    def get_assignment(self, assignment_id: str, *, for_update: bool = False) -> Assignment:
        found = self._current("assignments", str(assignment_id))
        if found is None:
            raise NotFound("Assignment not found", assignment_id=str(assignment_id))
        return found.model_copy(deep=True)

    def _check_open_unique(self, assignment: Assignment) -> None:
        if not assignment.is_open:
            return
        for other in self._all("assignments"):
            if other.id == assignment.id or not other.is_open:
                continue
            if (
                other.manuscript_id == assignment.manuscript_id
                and other.reviewer_id == assignment.reviewer_id
                and other.round == assignment.round
            ):
                raise DuplicateAssignment(
                    "Reviewer already has an open assignment for this round",
                    manuscript_id=assignment.manuscript_id,
                    reviewer_id=assignment.reviewer_id,
                    round=assignment.round,
                )

    def insert_assignment(self, assignment: Assignment) -> Assignment:
        self._check_open_unique(assignment)
        return self._insert("assignments", assignment, label="Assignment")

    def save_assignment(self, assignment: Assignment) -> Assignment:
        self._check_open_unique(assignment)
        return self._save("assignments", assignment, label="Assignment")

    def find_assignments(
        self,
        *,
        manuscript_id: str | None = None,
        reviewer_id: str | None = None,
        round: int | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[Assignment]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            a
            for a in self._all("assignments")
            if (manuscript_id is None or a.manuscript_id == str(manuscript_id))
            and (reviewer_id is None or a.reviewer_id == str(reviewer_id))
            and (round is None or a.round == round)
            and (wanted is None or a.status in wanted)
        ]
        rows.sort(key=lambda a: a.created_at)
        return [a.model_copy(deep=True) for a in rows]

    # --- Review ---
    def get_review(self, review_id: str) -> Review:
        found = self._current("reviews", str(review_id))
        if found is None:
            raise NotFound("Review not found", review_id=str(review_id))
        return found.model_copy(deep=True)

    def find_review(self, *, manuscript_id: str, reviewer_id: str, round: int) -> Optional[Review]:
        rows = self.find_reviews(manuscript_id=manuscript_id, round=round, reviewer_id=reviewer_id)
        return rows[0] if rows else None

    def save_review(self, review: Review) -> Review:
        for other in self._all("reviews"):
            if other.id == review.id:
                continue
            if (other.manuscript_id, other.reviewer_id, other.round) == (
                review.manuscript_id,
                review.reviewer_id,
                review.round,
            ):
                raise AlreadyProcessed(
                    "Review already exists for this reviewer and round",
                    manuscript_id=review.manuscript_id,
                    reviewer_id=review.reviewer_id,
                    round=review.round,
                )
        if self._current("reviews", review.id) is None:
            return self._insert("reviews", review, label="Review")
        return self._save("reviews", review, label="Review")

    def find_reviews(
        self,
        *,
        manuscript_id: str,
        round: int | None = None,
        status: str | None = None,
        reviewer_id: str | None = None,
    ) -> list[Review]:
        rows = [
            r
            for r in self._all("reviews")
            if r.manuscript_id == str(manuscript_id)
            and (round is None or r.round == round)
            and (status is None or r.status == status)
            and (reviewer_id is None or r.reviewer_id == str(reviewer_id))
        ]
        rows.sort(key=lambda r: (r.submitted_at or r.created_at, r.created_at))
        return [r.model_copy(deep=True) for r in rows]


class MemoryStore(WorkflowStore):
    """
    进程内存储（单测 / 本地开发使用）。

    中文注释:
    - 事务整体串行化（一把锁），等价于“每个稿件互斥”的更强版本；
    - 不跨进程，不持久化。
    """

    def __init__(self) -> None:
        self._manuscripts: dict[str, Manuscript] = {}
        self._assignments: dict[str, Assignment] = {}
        self._reviews: dict[str, Review] = {}
        self._lock = threading.Lock()

    def run_in_transaction(self, fn: Callable[[StoreTransaction], T]) -> T:
        with self._lock:
            tx = _MemoryTransaction(self)
            try:
                result = fn(tx)
            except WorkflowError:
                raise
            except Exception as e:
                logger.error("transaction rolled back: %s", e, exc_info=True)
                raise OperationFailed(f"Store transaction failed: {e}") from e
            tx.commit()
            return result
