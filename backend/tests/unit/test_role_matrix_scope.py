from app.core.config import EditorialRoleConfig
from app.core.role_matrix import EditorialRoleRegistry, can_perform_action, normalize_roles


def test_normalize_roles():
    assert normalize_roles([" Editor ", "", None, "REVIEWER"]) == {"editor", "reviewer"}
    assert normalize_roles(None) == set()


def test_admin_has_wildcard():
    assert can_perform_action(action="decision:override", roles=["admin"]) is True


def test_editor_cannot_override():
    assert can_perform_action(action="decision:record", roles=["editor"]) is True
    assert can_perform_action(action="decision:override", roles=["editor"]) is False
    assert can_perform_action(action="decision:record", roles=["reviewer", "author"]) is False


def test_registry_grants_editor_in_chief_by_config():
    registry = EditorialRoleRegistry(EditorialRoleConfig(editor_in_chief_ids=("eic-1",)))

    assert registry.editors_in_chief() == ["eic-1"]
    assert registry.is_editor_in_chief("eic-1") is True
    assert registry.is_editor_in_chief(None) is False
    assert registry.can({"id": "eic-1", "roles": []}, "decision:override") is True
    assert registry.can({"id": "editor-2", "roles": ["editor"]}, "decision:override") is False


def test_registry_reviewer_check():
    registry = EditorialRoleRegistry(EditorialRoleConfig())
    assert registry.is_reviewer({"id": "r1", "roles": ["Reviewer"]}) is True
    assert registry.is_reviewer({"id": "a1", "roles": ["author"]}) is False
    assert registry.is_reviewer(None) is False
