import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import EditorialRoleConfig, SentryConfig, WorkflowConfig  # noqa: E402
from app.core.role_matrix import EditorialRoleRegistry  # noqa: E402
from app.engine import build_engine  # noqa: E402
from app.lib.store import MemoryStore  # noqa: E402
from tests.utils.workflow import (  # noqa: E402
    EIC_ID,
    FakeGateway,
    RecordingNotifier,
    make_payment_config,
    review_payload,
    reviewer,
)

# === 全局测试配置 ===
# 中文注释:
# 1. 引擎测试全部跑在 MemoryStore 上，不依赖 Supabase / Postgres。
# 2. 通知与支付网关替换为可记录调用的假对象，便于断言“事务提交后才通知”。


@pytest.fixture
def payment_config():
    return make_payment_config()


@pytest.fixture
def workflow_config() -> WorkflowConfig:
    return WorkflowConfig()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway(payment_config) -> FakeGateway:
    return FakeGateway(payment_config)


@pytest.fixture
def roles() -> EditorialRoleRegistry:
    return EditorialRoleRegistry(EditorialRoleConfig(editor_in_chief_ids=(EIC_ID,)))


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def engine(store, notifier, gateway, roles, workflow_config, payment_config):
    return build_engine(
        store=store,
        notifier=notifier,
        gateway=gateway,
        roles=roles,
        workflow_config=workflow_config,
        payment_config=payment_config,
        sentry_config=SentryConfig(enabled=False, dsn=None, environment="test", traces_sample_rate=0.0),
    )


@pytest.fixture
def editor() -> dict:
    return {"id": "editor-1", "roles": ["editor"]}


@pytest.fixture
def eic() -> dict:
    return {"id": EIC_ID, "roles": ["editor"]}


@pytest.fixture
def submit(engine):
    def _submit(pages: int = 10, author_id: str = "author-1"):
        return engine.editorial.submit_manuscript(
            title="Graph neural networks for protein folding",
            author_id=author_id,
            file={"file_path": "manuscripts/ms.pdf", "pages": pages},
        )

    return _submit


@pytest.fixture
def reviewed(engine, submit, editor):
    """
    投稿并让 reviewer-1..N 依次提交审稿意见，返回稿件 id。
    """

    def _reviewed(*recommendations: str, pages: int = 10):
        ms = submit(pages=pages)
        for idx, rec in enumerate(recommendations, start=1):
            rid = f"reviewer-{idx}"
            engine.assignments.create_assignment(ms.id, reviewer(rid), editor["id"])
            engine.reviews.submit_review(ms.id, rid, review_payload(rec))
        return ms.id

    return _reviewed
