"""
Tests — TTLCache and the cached permission lookups built on it.
"""

import pytest

from app.services import permission_service
from app.services.cache import TTLCache


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestTTLCache:
    def test_rejects_non_positive_limits(self):
        with pytest.raises(ValueError):
            TTLCache(ttl_seconds=0)
        with pytest.raises(ValueError):
            TTLCache(max_entries=0)

    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=10, max_entries=8, clock=clock)
        cache.set("k", 1)
        clock.advance(9.9)
        assert cache.get("k") == 1
        clock.advance(0.1)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_least_recently_used_entry_is_evicted(self):
        cache = TTLCache(ttl_seconds=60, max_entries=2, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert cache.get("c") == 3

    def test_get_or_set_loads_once_until_expiry(self):
        clock = FakeClock()
        cache = TTLCache(ttl_seconds=5, clock=clock)
        calls = []

        def loader():
            calls.append(1)
            return len(calls)

        assert cache.get_or_set("x", loader) == 1
        assert cache.get_or_set("x", loader) == 1
        clock.advance(5)
        assert cache.get_or_set("x", loader) == 2
        assert cache.hits == 1

    def test_invalidate_by_predicate(self):
        cache = TTLCache(clock=FakeClock())
        cache.set(("user_roles", 1), "a")
        cache.set(("user_roles", 2), "b")
        cache.set(("role_users", 1), "c")
        assert cache.invalidate(lambda k: k[0] == "user_roles") == 2
        assert cache.get(("role_users", 1)) == "c"


class TestPermissionCache:
    def test_app_owns_the_cache(self, app):
        cache = app.extensions["permission_cache"]
        assert isinstance(cache, TTLCache)
        assert cache.ttl_seconds == app.config["PERMISSION_CACHE_TTL_SECONDS"]
        assert cache.max_entries == app.config["PERMISSION_CACHE_MAX_ENTRIES"]

    def test_assign_role_invalidates_membership(self, make_role, make_user):
        editor = make_role("editor", level=2)
        user = make_user("alice")
        assert permission_service.users_with_role(editor.id) == []
        assert not permission_service.user_has_role(user.id, editor.id)

        permission_service.assign_role(user.id, editor.id)
        assert permission_service.users_with_role(editor.id) == [user.id]
        assert permission_service.user_has_role(user.id, editor.id)
        assert permission_service.role_hierarchy_level(user.id) == 2

        permission_service.revoke_role(user.id, editor.id)
        assert permission_service.users_with_role(editor.id) == []

    def test_department_membership_follows_roles(self, make_department, make_role, make_user):
        finance = make_department("finance")
        analyst = make_role("analyst", department=finance)
        user = make_user("bob", roles=[analyst])
        assert permission_service.users_in_department(finance.id) == [user.id]
        assert permission_service.user_department_ids(user.id) == {finance.id}

    def test_superadmin_by_role_name(self, make_role, make_user):
        admin_role = make_role("platform_admin")
        admin = make_user("root", roles=[admin_role])
        other = make_user("carol")
        assert permission_service.is_superadmin(admin.id)
        assert not permission_service.is_superadmin(other.id)
