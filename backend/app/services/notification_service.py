from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from postgrest.exceptions import APIError

from app.lib.api_client import supabase_admin

logger = logging.getLogger("reviewflow.notifications")


# 工作流事件 -> (通知类型, 标题, 跳转地址模板)
EVENT_TEMPLATES: dict[str, tuple[str, str, str]] = {
    "manuscript_submitted": ("submission", "New manuscript submitted", "/dashboard?tab=editor"),
    "assignment_created": ("review_invite", "New review invitation", "/dashboard?tab=reviewer"),
    "assignment_accepted": ("system", "Reviewer accepted invitation", "/dashboard?tab=editor"),
    "assignment_declined": ("system", "Reviewer declined invitation", "/dashboard?tab=editor"),
    "review_submitted": ("system", "Review submitted", "/dashboard?tab=editor"),
    "revisions_required": ("decision", "Revisions requested", "/dashboard/author/manuscripts/{manuscript_id}"),
    "revision_submitted": ("system", "Revision submitted", "/dashboard?tab=editor"),
    "editor_decision": ("decision", "Editorial decision", "/dashboard/author/manuscripts/{manuscript_id}"),
    "payment_confirmed": ("payment", "Payment confirmed", "/dashboard/author/manuscripts/{manuscript_id}"),
    "payment_failed": ("payment", "Payment failed", "/dashboard/author/manuscripts/{manuscript_id}"),
}


class NotificationService:
    """
    通知端口：工作流事件 -> notifications 表

    中文注释:
    1) 写入使用 supabase_admin（service_role），避免 RLS 导致写入失败。
    2) 通知是 best-effort：任何失败只记日志，绝不向工作流调用方抛出（状态已提交，不应回滚）。
    """

    def __init__(self, client: Any = None) -> None:
        self._client = client

    def _table(self):
        client = self._client if self._client is not None else supabase_admin
        return client.table("notifications")

    @staticmethod
    def _render(event_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        ntype, title, action_url = EVENT_TEMPLATES.get(
            event_name, ("system", event_name.replace("_", " ").capitalize(), "/dashboard/notifications")
        )
        manuscript_id = payload.get("manuscript_id")
        if "{manuscript_id}" in action_url:
            action_url = (
                action_url.format(manuscript_id=manuscript_id) if manuscript_id else "/dashboard/notifications"
            )
        content = str(payload.get("message") or payload.get("title") or title)
        return {
            "manuscript_id": manuscript_id,
            "action_url": action_url,
            "type": ntype,
            "title": title,
            "content": content,
        }

    def notify(self, event_name: str, recipient_id: Optional[str], payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        发送一条站内通知。成功返回 True，失败或跳过返回 False（从不抛异常）。
        """
        if not recipient_id:
            return False
        row = {"user_id": str(recipient_id), "is_read": False, **self._render(event_name, payload or {})}
        try:
            self._table().insert(row).execute()
            return True
        except APIError as e:
            # 中文注释:
            # - notifications.user_id 外键指向 auth.users(id)，演示用户写通知会触发 23503。
            # - 该情况对主流程无影响，降级为 debug 日志避免刷屏。
            text = str(e).lower()
            code = str(getattr(e, "code", "") or "").lower()
            if "23503" in code or "23503" in text:
                logger.debug("notification skipped (no auth user) event=%s recipient=%s", event_name, recipient_id)
                return False
            logger.warning("notification failed event=%s recipient=%s: %s", event_name, recipient_id, e)
            return False
        except Exception as e:
            logger.warning("notification failed event=%s recipient=%s: %s", event_name, recipient_id, e)
            return False

    def notify_many(self, event_name: str, recipient_ids, payload: Optional[Dict[str, Any]] = None) -> int:
        sent = 0
        for rid in dict.fromkeys(str(r) for r in recipient_ids or [] if r):
            if self.notify(event_name, rid, payload):
                sent += 1
        return sent
