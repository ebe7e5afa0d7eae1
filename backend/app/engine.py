"""
工作流引擎装配入口

中文注释:
- 控制器层（不在本仓库范围）只需要调用 build_engine()，拿到各个服务实例。
- 端口（存储 / 通知 / 支付网关 / 角色注册表）都可注入，测试时替换为内存实现或假对象。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from app.core.config import (
    EditorialRoleConfig,
    PaymentConfig,
    SentryConfig,
    WorkflowConfig,
    app_config,
)
from app.core.role_matrix import EditorialRoleRegistry
from app.core.sentry_init import init_sentry
from app.lib.store import MemoryStore, WorkflowStore
from app.services.assignment_service import AssignmentService
from app.services.editorial_service import EditorialService
from app.services.notification_service import NotificationService
from app.services.payment_gateway import RazorpayGateway
from app.services.payment_service import PaymentService
from app.services.review_service import ReviewService
from app.services.revision_service import RevisionService

logger = logging.getLogger("reviewflow.engine")


@dataclass
class WorkflowEngine:
    store: WorkflowStore
    roles: EditorialRoleRegistry
    notifications: NotificationService
    gateway: RazorpayGateway
    editorial: EditorialService
    assignments: AssignmentService
    reviews: ReviewService
    revisions: RevisionService
    payments: PaymentService
    config: WorkflowConfig


def _default_store() -> WorkflowStore:
    if app_config.database_url:
        from app.lib.postgres_store import PostgresStore

        store = PostgresStore(app_config.database_url)
        store.ensure_schema()
        return store
    logger.warning("DATABASE_URL not set; using in-memory workflow store")
    return MemoryStore()


def build_engine(
    *,
    store: Optional[WorkflowStore] = None,
    notifier: Optional[NotificationService] = None,
    gateway: Optional[RazorpayGateway] = None,
    roles: Optional[EditorialRoleRegistry] = None,
    workflow_config: Optional[WorkflowConfig] = None,
    payment_config: Optional[PaymentConfig] = None,
    sentry_config: Optional[SentryConfig] = None,
) -> WorkflowEngine:
    cfg = workflow_config or WorkflowConfig.from_env()
    pay_cfg = payment_config or PaymentConfig.from_env()

    try:
        init_sentry(sentry_config)
    except Exception as e:
        # 零崩溃原则：监控初始化失败不影响引擎
        logger.warning("sentry init failed (ignored): %s", e)

    store = store or _default_store()
    notifier = notifier or NotificationService()
    gateway = gateway or RazorpayGateway(pay_cfg)
    roles = roles or EditorialRoleRegistry(EditorialRoleConfig.from_env())

    payments = PaymentService(
        store,
        gateway,
        notifier,
        roles,
        workflow_config=cfg,
        payment_config=pay_cfg,
    )
    assignments = AssignmentService(store, notifier, roles, cfg)
    return WorkflowEngine(
        store=store,
        roles=roles,
        notifications=notifier,
        gateway=gateway,
        editorial=EditorialService(store, notifier, roles, payments, cfg),
        assignments=assignments,
        reviews=ReviewService(store, assignments, roles),
        revisions=RevisionService(store, notifier, roles, cfg),
        payments=payments,
        config=cfg,
    )
