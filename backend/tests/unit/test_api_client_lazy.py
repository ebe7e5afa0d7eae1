import pytest

import app.lib.api_client as api_client


def test_lazy_admin_client_requires_url(monkeypatch):
    monkeypatch.setattr(api_client, "url", "")
    monkeypatch.setattr(api_client, "service_role_key", "k")
    monkeypatch.setattr(api_client.supabase_admin, "_client", None)

    with pytest.raises(RuntimeError, match="SUPABASE_URL is required"):
        api_client.supabase_admin.table("notifications")  # type: ignore[union-attr]


def test_lazy_admin_client_requires_service_role_key(monkeypatch):
    monkeypatch.setattr(api_client, "url", "https://example.supabase.co")
    monkeypatch.setattr(api_client, "service_role_key", "")
    monkeypatch.setattr(api_client.supabase_admin, "_client", None)

    with pytest.raises(RuntimeError, match="SUPABASE_SERVICE_ROLE_KEY"):
        api_client.supabase_admin.table("notifications")  # type: ignore[union-attr]


def test_lazy_admin_client_is_created_once(monkeypatch):
    created = []

    def _factory():
        created.append(1)
        return object()

    monkeypatch.setattr(api_client, "create_client", lambda url, key: _factory())
    monkeypatch.setattr(api_client, "url", "https://example.supabase.co")
    monkeypatch.setattr(api_client, "service_role_key", "service-key")
    monkeypatch.setattr(api_client.supabase_admin, "_client", None)

    first = api_client.supabase_admin._get()  # type: ignore[attr-defined]
    second = api_client.supabase_admin._get()  # type: ignore[attr-defined]
    assert first is second
    assert created == [1]
