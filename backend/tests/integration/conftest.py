import os

import psycopg2
import pytest

from app.lib.postgres_store import PostgresStore
from app.lib.store import MemoryStore

WORKFLOW_TABLES = ("workflow_review_reports", "workflow_review_assignments", "workflow_manuscripts")


@pytest.fixture(scope="session")
def test_db_url() -> str:
    url = (os.environ.get("TEST_DB_URL") or "").strip()
    if not url:
        pytest.skip("TEST_DB_URL must be set for Postgres integration tests")
    return url


@pytest.fixture(scope="session")
def postgres_store(test_db_url: str):
    try:
        # 中文注释：session 级探测，数据库不可达时统一 skip，而不是每个用例各自报连接错误。
        store = PostgresStore(test_db_url, max_connections=10)
        store.ensure_schema()
    except psycopg2.Error as e:
        pytest.skip(f"Postgres is not reachable in integration tests: {e}")
    yield store
    store.close()


def _truncate(url: str) -> None:
    conn = psycopg2.connect(url)
    try:
        with conn.cursor() as cur:
            cur.execute(f"truncate {', '.join(WORKFLOW_TABLES)}")
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def pg_store(postgres_store, test_db_url):
    _truncate(test_db_url)
    return postgres_store


@pytest.fixture(params=["memory", "postgres"])
def store(request):
    """
    集成场景同时跑在内存存储和真实 Postgres 上（后者缺少 TEST_DB_URL 时自动 skip）。
    """
    if request.param == "memory":
        return MemoryStore()
    return request.getfixturevalue("pg_store")
