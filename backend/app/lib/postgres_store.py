"""
PostgreSQL 事务存储（Supabase 数据库直连）

中文注释:
- PostgREST 无法跨表事务，因此工作流写入走 psycopg2 直连，一次 run_in_transaction 对应一次 BEGIN/COMMIT。
- 文档以 JSONB 存储，查询用到的列（manuscript_id / reviewer_id / round / status）单独冗余存列并建索引。
- 稿件行用 SELECT ... FOR UPDATE 加锁，保证同一稿件的审稿完成/成团判定串行执行。
- “同一审稿人同一轮只能有一个未关闭任务”由部分唯一索引兜底，并发插入时第二个写入会失败。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional, TypeVar

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import pool as pg_pool
from psycopg2.extras import Json

from app.core.errors import AlreadyProcessed, DuplicateAssignment, NotFound, OperationFailed, WorkflowError
from app.lib.store import StoreTransaction, WorkflowStore, _utc_now
from app.models.manuscript import Manuscript, WorkflowState
from app.models.reviews import Assignment, Review

T = TypeVar("T")

logger = logging.getLogger("reviewflow.store.postgres")


SCHEMA_SQL = """
create table if not exists workflow_manuscripts (
    id text primary key,
    author_id text not null,
    state text not null,
    version integer not null default 0,
    doc jsonb not null,
    updated_at timestamptz not null default now()
);

create table if not exists workflow_review_assignments (
    id text primary key,
    manuscript_id text not null references workflow_manuscripts(id),
    reviewer_id text not null,
    round integer not null,
    status text not null,
    created_at timestamptz not null,
    version integer not null default 0,
    doc jsonb not null
);

create index if not exists idx_workflow_assignments_manuscript
    on workflow_review_assignments (manuscript_id, round);
create index if not exists idx_workflow_assignments_reviewer
    on workflow_review_assignments (reviewer_id, created_at desc);
create unique index if not exists uq_workflow_open_assignment
    on workflow_review_assignments (manuscript_id, reviewer_id, round)
    where status in ('pending', 'accepted');

create table if not exists workflow_review_reports (
    id text primary key,
    manuscript_id text not null references workflow_manuscripts(id),
    reviewer_id text not null,
    round integer not null,
    status text not null,
    version integer not null default 0,
    doc jsonb not null,
    unique (manuscript_id, reviewer_id, round)
);
"""


class _PostgresTransaction(StoreTransaction):
    def __init__(self, cursor: Any) -> None:
        self._cur = cursor

    def _fetch_doc(self, sql: str, params: tuple) -> Optional[dict]:
        self._cur.execute(sql, params)
        row = self._cur.fetchone()
        if not row:
            return None
        return row[0]

    def _fetch_docs(self, sql: str, params: tuple) -> list[dict]:
        self._cur.execute(sql, params)
        return [r[0] for r in self._cur.fetchall() or []]

    def _bump(self, obj) -> tuple[int, dict]:
        expected = obj.version
        obj.version = expected + 1
        obj.updated_at = _utc_now()
        return expected, obj.model_dump(mode="json")

    # === Manuscript ===
    def get_manuscript(self, manuscript_id: str, *, for_update: bool = False) -> Manuscript:
        sql = "select doc from workflow_manuscripts where id = %s"
        if for_update:
            sql += " for update"
        doc = self._fetch_doc(sql, (str(manuscript_id),))
        if doc is None:
            raise NotFound("Manuscript not found", manuscript_id=str(manuscript_id))
        return Manuscript.model_validate(doc)

    def insert_manuscript(self, manuscript: Manuscript) -> Manuscript:
        manuscript.version = 0
        self._cur.execute(
            "insert into workflow_manuscripts (id, author_id, state, version, doc, updated_at) "
            "values (%s, %s, %s, 0, %s, %s)",
            (
                manuscript.id,
                manuscript.author_id,
                manuscript.state.value,
                Json(manuscript.model_dump(mode="json")),
                manuscript.updated_at,
            ),
        )
        return manuscript

    def save_manuscript(self, manuscript: Manuscript) -> Manuscript:
        expected, doc = self._bump(manuscript)
        self._cur.execute(
            "update workflow_manuscripts set doc = %s, state = %s, version = version + 1, updated_at = %s "
            "where id = %s and version = %s",
            (Json(doc), manuscript.state.value, manuscript.updated_at, manuscript.id, expected),
        )
        if self._cur.rowcount != 1:
            manuscript.version = expected
            raise AlreadyProcessed("Manuscript was modified concurrently", id=manuscript.id)
        return manuscript

    def find_manuscripts(
        self,
        *,
        author_id: str | None = None,
        editor_id: str | None = None,
        states: Iterable[str] | None = None,
    ) -> list[Manuscript]:
        clauses: list[str] = []
        params: list[Any] = []
        if author_id is not None:
            clauses.append("author_id = %s")
            params.append(str(author_id))
        if editor_id is not None:
            # 中文注释: editor_ids 只在 JSONB 文档里，用 jsonb 包含判断
            clauses.append("doc->'editor_ids' @> %s::jsonb")
            params.append(Json([str(editor_id)]))
        if states is not None:
            wanted = sorted(WorkflowState(s).value for s in states)
            if not wanted:
                return []
            clauses.append("state = any(%s)")
            params.append(wanted)
        where = f" where {' and '.join(clauses)}" if clauses else ""
        docs = self._fetch_docs(
            f"select doc from workflow_manuscripts{where} "
            "order by (doc->>'submitted_at')::timestamptz desc",
            tuple(params),
        )
        return [Manuscript.model_validate(d) for d in docs]

    # === Assignment ===
    def get_assignment(self, assignment_id: str, *, for_update: bool = False) -> Assignment:
        sql = "select doc from workflow_review_assignments where id = %s"
        if for_update:
            sql += " for update"
        doc = self._fetch_doc(sql, (str(assignment_id),))
        if doc is None:
            raise NotFound("Assignment not found", assignment_id=str(assignment_id))
        return Assignment.model_validate(doc)

    def insert_assignment(self, assignment: Assignment) -> Assignment:
        assignment.version = 0
        try:
            self._cur.execute(
                "insert into workflow_review_assignments "
                "(id, manuscript_id, reviewer_id, round, status, created_at, version, doc) "
                "values (%s, %s, %s, %s, %s, %s, 0, %s)",
                (
                    assignment.id,
                    assignment.manuscript_id,
                    assignment.reviewer_id,
                    assignment.round,
                    assignment.status,
                    assignment.created_at,
                    Json(assignment.model_dump(mode="json")),
                ),
            )
        except pg_errors.UniqueViolation as e:
            raise DuplicateAssignment(
                "Reviewer already has an open assignment for this round",
                manuscript_id=assignment.manuscript_id,
                reviewer_id=assignment.reviewer_id,
                round=assignment.round,
            ) from e
        return assignment

    def save_assignment(self, assignment: Assignment) -> Assignment:
        expected, doc = self._bump(assignment)
        try:
            self._cur.execute(
                "update workflow_review_assignments set doc = %s, status = %s, version = version + 1 "
                "where id = %s and version = %s",
                (Json(doc), assignment.status, assignment.id, expected),
            )
        except pg_errors.UniqueViolation as e:
            assignment.version = expected
            raise DuplicateAssignment("Reviewer already has an open assignment for this round") from e
        if self._cur.rowcount != 1:
            assignment.version = expected
            raise AlreadyProcessed("Assignment was modified concurrently", id=assignment.id)
        return assignment

    def find_assignments(
        self,
        *,
        manuscript_id: str | None = None,
        reviewer_id: str | None = None,
        round: int | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[Assignment]:
        clauses: list[str] = []
        params: list[Any] = []
        if manuscript_id is not None:
            clauses.append("manuscript_id = %s")
            params.append(str(manuscript_id))
        if reviewer_id is not None:
            clauses.append("reviewer_id = %s")
            params.append(str(reviewer_id))
        if round is not None:
            clauses.append("round = %s")
            params.append(int(round))
        if statuses is not None:
            wanted = sorted(set(statuses))
            if not wanted:
                return []
            clauses.append("status = any(%s)")
            params.append(wanted)
        where = f" where {' and '.join(clauses)}" if clauses else ""
        docs = self._fetch_docs(
            f"select doc from workflow_review_assignments{where} order by created_at asc",
            tuple(params),
        )
        return [Assignment.model_validate(d) for d in docs]

    # === Review ===
    def get_review(self, review_id: str) -> Review:
        doc = self._fetch_doc("select doc from workflow_review_reports where id = %s", (str(review_id),))
        if doc is None:
            raise NotFound("Review not found", review_id=str(review_id))
        return Review.model_validate(doc)

    def find_review(self, *, manuscript_id: str, reviewer_id: str, round: int) -> Optional[Review]:
        doc = self._fetch_doc(
            "select doc from workflow_review_reports where manuscript_id = %s and reviewer_id = %s and round = %s",
            (str(manuscript_id), str(reviewer_id), int(round)),
        )
        return Review.model_validate(doc) if doc else None

    def save_review(self, review: Review) -> Review:
        self._cur.execute("select version from workflow_review_reports where id = %s", (review.id,))
        row = self._cur.fetchone()
        if row is None:
            review.version = 0
            try:
                self._cur.execute(
                    "insert into workflow_review_reports (id, manuscript_id, reviewer_id, round, status, version, doc) "
                    "values (%s, %s, %s, %s, %s, 0, %s)",
                    (
                        review.id,
                        review.manuscript_id,
                        review.reviewer_id,
                        review.round,
                        review.status,
                        Json(review.model_dump(mode="json")),
                    ),
                )
            except pg_errors.UniqueViolation as e:
                raise AlreadyProcessed("Review already exists for this reviewer and round") from e
            return review

        expected, doc = self._bump(review)
        self._cur.execute(
            "update workflow_review_reports set doc = %s, status = %s, version = version + 1 "
            "where id = %s and version = %s",
            (Json(doc), review.status, review.id, expected),
        )
        if self._cur.rowcount != 1:
            review.version = expected
            raise AlreadyProcessed("Review was modified concurrently", id=review.id)
        return review

    def find_reviews(
        self,
        *,
        manuscript_id: str,
        round: int | None = None,
        status: str | None = None,
        reviewer_id: str | None = None,
    ) -> list[Review]:
        clauses = ["manuscript_id = %s"]
        params: list[Any] = [str(manuscript_id)]
        if round is not None:
            clauses.append("round = %s")
            params.append(int(round))
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        if reviewer_id is not None:
            clauses.append("reviewer_id = %s")
            params.append(str(reviewer_id))
        docs = self._fetch_docs(
            "select doc from workflow_review_reports where "
            + " and ".join(clauses)
            + " order by coalesce((doc->>'submitted_at')::timestamptz, (doc->>'created_at')::timestamptz) asc,"
            + " (doc->>'created_at')::timestamptz asc",
            tuple(params),
        )
        return [Review.model_validate(d) for d in docs]


class PostgresStore(WorkflowStore):
    """
    基于连接池的 PostgreSQL 存储。

    中文注释: 每个事务独占一个连接，结束后归还；异常时 rollback，绝不留下半提交状态。
    """

    def __init__(self, dsn: str, *, min_connections: int = 1, max_connections: int = 5) -> None:
        if not (dsn or "").strip():
            raise ValueError("DATABASE_URL (or SUPABASE_DB_URL) is required for PostgresStore")
        self._pool = pg_pool.ThreadedConnectionPool(min_connections, max_connections, dsn.strip())

    def ensure_schema(self) -> None:
        conn = self._pool.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            self._pool.putconn(conn)

    def run_in_transaction(self, fn: Callable[[StoreTransaction], T]) -> T:
        conn = self._pool.getconn()
        try:
            with conn.cursor() as cur:
                result = fn(_PostgresTransaction(cur))
            conn.commit()
            return result
        except WorkflowError:
            conn.rollback()
            raise
        except psycopg2.Error as e:
            conn.rollback()
            logger.error("postgres transaction rolled back: %s", e, exc_info=True)
            raise OperationFailed(f"Database transaction failed: {e}") from e
        except Exception as e:
            conn.rollback()
            logger.error("transaction rolled back: %s", e, exc_info=True)
            raise OperationFailed(f"Store transaction failed: {e}") from e
        finally:
            self._pool.putconn(conn)

    def close(self) -> None:
        self._pool.closeall()
