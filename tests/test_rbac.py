"""Tests for role/permission resolution and the permission cache."""

import pytest

from authkernel.service.errors import ForbiddenError, NotFoundError
from authkernel.service.rbac import MemoryPermissionCache, RbacService, permission_matches
from authkernel.service.security_events import SecurityEventService

from conftest import Clock


@pytest.fixture
def rbac(store, clock):
    return RbacService(
        store,
        MemoryPermissionCache(300, now=clock),
        security_events=SecurityEventService(store, now=clock),
    )


@pytest.fixture
def user(store):
    return store.create_user("rbac@example.com", "hash")


class TestPermissionMatching:
    """Tests for wildcard grants."""

    @pytest.mark.parametrize(
        "granted,required,expected",
        [
            ("report:read", "report:read", True),
            ("report:*", "report:read", True),
            ("report:*", "report:write", True),
            ("*:read", "orders:read", True),
            ("*", "anything:at-all", True),
            ("report:read", "report:write", False),
            ("report:*", "orders:read", False),
            ("*:read", "orders:write", False),
            ("report.*", "reportXread", False),
        ],
    )
    def test_permission_matches(self, granted, required, expected):
        assert permission_matches(granted, required) is expected


class TestRbacService:
    """Tests for RbacService."""

    @pytest.mark.asyncio
    async def test_permissions_are_union_of_direct_and_role(self, rbac, store, user):
        customer = store.get_role_by_name("customer")
        await rbac.assign_role(user.id, customer.id)
        await rbac.grant_permission(user.id, "wishlist:write")

        permissions = await rbac.get_user_permissions(user.id)

        assert permissions == ["orders:read", "wishlist:write"]

    @pytest.mark.asyncio
    async def test_wildcard_permission_property(self, rbac, user):
        await rbac.grant_permission(user.id, "report:*")

        assert await rbac.has_permission(user.id, "report:read")
        assert await rbac.has_permission(user.id, "report:write")
        assert not await rbac.has_permission(user.id, "orders:read")

    @pytest.mark.asyncio
    async def test_has_permission_any_of_list(self, rbac, user):
        await rbac.grant_permission(user.id, "orders:read")

        assert await rbac.has_permission(user.id, ["catalog:write", "orders:read"])
        assert not await rbac.has_permission(user.id, ["catalog:write", "orders:write"])
        assert await rbac.has_permission(user.id, [])

    @pytest.mark.asyncio
    async def test_has_role_case_insensitive_and_empty(self, rbac, store, user):
        await rbac.assign_role(user.id, store.get_role_by_name("customer").id)

        assert await rbac.has_role(user.id, ["CUSTOMER"])
        assert await rbac.has_role(user.id, ["admin", "Customer"])
        assert not await rbac.has_role(user.id, ["admin"])
        assert await rbac.has_role(user.id, [])

    @pytest.mark.asyncio
    async def test_single_role_name_is_not_split_into_characters(self, rbac, store, user):
        await rbac.assign_role(user.id, store.get_role_by_name("customer").id)
        assert await rbac.has_role(user.id, "customer")
        assert not await rbac.has_role(user.id, "c")

        with pytest.raises(ForbiddenError) as excinfo:
            await rbac.require_role(user.id, "admin")
        assert excinfo.value.detail["required_roles"] == ["admin"]

    @pytest.mark.asyncio
    async def test_mutations_invalidate_cache(self, rbac, user):
        assert await rbac.get_user_permissions(user.id) == []

        await rbac.grant_permission(user.id, "orders:read")
        assert await rbac.get_user_permissions(user.id) == ["orders:read"]

        await rbac.revoke_permission(user.id, "orders:read")
        assert await rbac.get_user_permissions(user.id) == []

    @pytest.mark.asyncio
    async def test_role_revocation_invalidates_cache(self, rbac, store, user):
        customer = store.get_role_by_name("customer")
        await rbac.assign_role(user.id, customer.id)
        assert "orders:read" in await rbac.get_user_permissions(user.id)

        assert await rbac.revoke_role(user.id, customer.id) is True
        assert await rbac.get_user_permissions(user.id) == []

    @pytest.mark.asyncio
    async def test_role_grant_visible_after_cache_ttl(self, store, user):
        clock = Clock()
        rbac = RbacService(store, MemoryPermissionCache(60, now=clock))
        await rbac.assign_role(user.id, store.get_role_by_name("customer").id)
        assert await rbac.get_user_permissions(user.id) == ["orders:read"]

        await rbac.grant_role_permission("customer", "returns:create")
        assert await rbac.get_user_permissions(user.id) == ["orders:read"]

        clock.advance(seconds=61)
        assert await rbac.get_user_permissions(user.id) == ["orders:read", "returns:create"]

    @pytest.mark.asyncio
    async def test_assign_unknown_role(self, rbac, user):
        with pytest.raises(NotFoundError):
            await rbac.assign_role(user.id, "missing-role")

    @pytest.mark.asyncio
    async def test_assign_role_twice_reports_no_change(self, rbac, store, user):
        customer = store.get_role_by_name("customer")

        assert await rbac.assign_role(user.id, customer.id) is True
        assert await rbac.assign_role(user.id, customer.id) is False

    @pytest.mark.asyncio
    async def test_require_permission_audits_denial(self, rbac, store, user):
        with pytest.raises(ForbiddenError) as excinfo:
            await rbac.require_permission(user.id, "admin:users")

        assert excinfo.value.detail["required_permissions"] == ["admin:users"]
        events = store.list_security_events(user_id=user.id, event_type="permission_denied")
        assert len(events) == 1
        assert events[0].severity.value == "warning"

    @pytest.mark.asyncio
    async def test_require_role(self, rbac, store, user):
        await rbac.require_role(user.id, [])
        with pytest.raises(ForbiddenError):
            await rbac.require_role(user.id, ["admin"])
        assert store.list_security_events(event_type="role_denied")

    @pytest.mark.asyncio
    async def test_ensure_helpers_are_idempotent(self, rbac):
        first = await rbac.ensure_role("Support")
        second = await rbac.ensure_role("support")
        perm_a = await rbac.ensure_permission("tickets:*")
        perm_b = await rbac.ensure_permission("tickets:*")

        assert first.id == second.id
        assert perm_a.id == perm_b.id
        assert await rbac.grant_role_permission("support", "tickets:*") is True
        assert await rbac.grant_role_permission("support", "tickets:*") is False


class TestMemoryPermissionCache:
    """Tests for the in-process permission cache."""

    @pytest.mark.asyncio
    async def test_entries_expire(self):
        clock = Clock()
        cache = MemoryPermissionCache(10, now=clock)
        await cache.set("u1", ["a"])

        assert await cache.get("u1") == ["a"]
        clock.advance(seconds=11)
        assert await cache.get("u1") is None

    @pytest.mark.asyncio
    async def test_prune_and_shutdown(self):
        clock = Clock()
        cache = MemoryPermissionCache(10, now=clock)
        await cache.set("old", ["a"])
        clock.advance(seconds=11)
        await cache.set("fresh", ["b"])

        assert await cache.prune() == 1
        await cache.shutdown()
        assert await cache.get("fresh") is None
