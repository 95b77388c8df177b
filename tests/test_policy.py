"""Tests for the in-process RBAC policy engine."""

from unittest.mock import patch

import pytest

from authplane.service.policy import PolicyEngine, role_subject, user_subject


@pytest.fixture
def engine():
    engine = PolicyEngine()
    engine.add_policy("acme:editor", "articles", "write")
    engine.add_policy("acme:admin", "articles", "manage")
    engine.add_role_for_user("acme:7", "acme:editor")
    return engine


class TestEnforce:
    def test_granted_through_role(self, engine):
        assert engine.enforce("acme:7", "articles", "write")

    def test_action_not_granted(self, engine):
        assert not engine.enforce("acme:7", "articles", "delete")

    def test_manage_matches_every_action(self, engine):
        engine.add_role_for_user("acme:8", "acme:admin")
        assert engine.enforce("acme:8", "articles", "delete")
        assert not engine.enforce("acme:8", "billing", "read")

    def test_transitive_roles(self, engine):
        engine.add_role_for_user("acme:lead", "acme:admin")
        engine.add_role_for_user("acme:9", "acme:lead")
        assert engine.enforce("acme:9", "articles", "publish")

    def test_subjects_are_tenant_scoped(self, engine):
        """A user id in another tenant does not inherit acme grants."""
        assert not engine.enforce("globex:7", "articles", "write")

    def test_internal_error_denies(self, engine):
        with patch.object(engine, "_expand", side_effect=RuntimeError("boom")):
            assert engine.enforce("acme:7", "articles", "write") is False


class TestManagement:
    def test_add_remove_policy(self, engine):
        assert engine.add_policy("acme:viewer", "articles", "read")
        assert not engine.add_policy("acme:viewer", "articles", "read")
        assert engine.remove_policy("acme:viewer", "articles", "read")
        assert not engine.remove_policy("acme:viewer", "articles", "read")

    def test_role_grants(self, engine):
        assert engine.get_roles_for_user("acme:7") == ["acme:editor"]
        assert engine.get_users_for_role("acme:editor") == ["acme:7"]
        assert engine.delete_role_for_user("acme:7", "acme:editor")
        assert not engine.enforce("acme:7", "articles", "write")
        assert engine.get_roles_for_user("acme:7") == []

    def test_introspection(self, engine):
        assert engine.get_all_subjects() == ["acme:admin", "acme:editor"]
        assert engine.get_all_objects() == ["articles"]
        assert engine.get_all_actions() == ["manage", "write"]


class TestLoadFromStore:
    def test_load(self, store, company):
        other = store.create_company("Globex", "globex")
        user = store.create_user("carol@example.com", "x", company_id=company.id)
        perm = store.create_permission(company.id, "reports.read", "reports", "read")
        role = store.create_role(company.id, "analyst", [perm.id])
        store.assign_role(user.id, role.id)
        store.create_role(other.id, "analyst", [])

        engine = PolicyEngine()
        assert engine.load_from_store(store) == 1
        assert engine.enforce(user_subject("acme", user.id), "reports", "read")
        assert not engine.enforce(user_subject("globex", user.id), "reports", "read")
        assert engine.get_roles_for_user(user_subject("acme", user.id)) == [
            role_subject("acme", "analyst")
        ]

    def test_inactive_companies_are_skipped(self, store):
        dormant = store.create_company("Dormant", "dormant", is_active=False)
        perm = store.create_permission(dormant.id, "x.read", "x", "read")
        store.create_role(dormant.id, "r", [perm.id])
        assert PolicyEngine().load_from_store(store) == 0
