from __future__ import annotations

from typing import Any, Iterable, Mapping

from app.core.config import EditorialRoleConfig

# 中文注释：
# - 这里集中定义“角色 -> 动作”权限矩阵，避免权限逻辑散落在各服务。
# - 工作流引擎只关心审稿/决策/修回/支付相关动作。

ADMIN_ROLE = "admin"
REVIEWER_ROLE = "reviewer"
EDITOR_IN_CHIEF_ROLE = "editor_in_chief"

ROLE_ACTIONS: dict[str, set[str]] = {
    "author": {
        "author:submit",
        "author:submit_revision",
        "author:pay",
    },
    REVIEWER_ROLE: {
        "reviewer:respond_assignment",
        "reviewer:submit_report",
    },
    "editor": {
        "assignment:create",
        "review:view_summary",
        "decision:record",
    },
    "managing_editor": {
        "assignment:create",
        "review:view_summary",
        "decision:record",
        "payment:create_order",
    },
    EDITOR_IN_CHIEF_ROLE: {
        "assignment:create",
        "review:view_summary",
        "decision:record",
        "decision:override",
        "payment:create_order",
    },
    ADMIN_ROLE: {
        "*",
    },
}


def normalize_roles(roles: Iterable[str] | None) -> set[str]:
    """
    将输入角色归一化（小写、去空）。
    """
    out: set[str] = set()
    for raw in roles or []:
        role = str(raw or "").strip().lower()
        if not role:
            continue
        out.add(role)
    return out


def can_perform_action(*, action: str, roles: Iterable[str] | None) -> bool:
    """
    判定角色集合是否可执行某动作。

    中文注释：
    - admin 拥有全局通配权限；
    - 其余角色按 ROLE_ACTIONS 显式授权。
    """
    normalized = normalize_roles(roles)
    if ADMIN_ROLE in normalized:
        return True

    for role in normalized:
        allowed = ROLE_ACTIONS.get(role) or set()
        if "*" in allowed or action in allowed:
            return True
    return False


def profile_roles(profile: Mapping[str, Any] | None) -> set[str]:
    if not profile:
        return set()
    return normalize_roles(profile.get("roles") or [])


class EditorialRoleRegistry:
    """
    显式的编辑角色注册表（注入引擎）。

    中文注释:
    - 替代“运行时到处查询主编是谁”的隐式全局查找；
    - 主编名单来自配置，审稿人资格来自调用方传入的 user profile（含 roles）。
    """

    def __init__(self, config: EditorialRoleConfig | None = None) -> None:
        cfg = config or EditorialRoleConfig.from_env()
        self._editor_in_chief_ids = tuple(cfg.editor_in_chief_ids)

    def editors_in_chief(self) -> list[str]:
        return list(self._editor_in_chief_ids)

    def is_editor_in_chief(self, user_id: str | None) -> bool:
        return bool(user_id) and str(user_id) in self._editor_in_chief_ids

    def is_reviewer(self, profile: Mapping[str, Any] | None) -> bool:
        return REVIEWER_ROLE in profile_roles(profile)

    def can(self, profile: Mapping[str, Any] | None, action: str) -> bool:
        roles = profile_roles(profile)
        if profile and self.is_editor_in_chief(str(profile.get("id") or "")):
            roles.add(EDITOR_IN_CHIEF_ROLE)
        return can_perform_action(action=action, roles=roles)
