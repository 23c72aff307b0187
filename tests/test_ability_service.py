"""Tests for the ability service and the in-memory catalog."""

from datetime import datetime, timedelta, UTC

import pytest

from packages.ability.cache import RulesetCache
from packages.ability.catalog import (
    CatalogRole,
    CatalogUnavailable,
    CatalogUser,
    InMemoryPermissionCatalog,
    PermissionCatalog,
    UserNotFound,
)
from packages.ability.config import AbilitySettings
from packages.ability.models import Action, AuthorizeRequest, GrantSource, SubjectType
from packages.ability.policies import delete_policy, read_policy, update_policy
from packages.ability.service import AbilityService, get_ability_service, set_ability_service


ORG_SCOPE = {"organizationId": {"$eq": "$user.organizationId"}}


@pytest.fixture
def catalog():
    """Hospital catalog with super admin, org admin and staff users."""
    catalog = InMemoryPermissionCatalog()

    catalog.add_role(CatalogRole(
        "role-sa", "Super Admin", is_system_role=True,
        permissions=[(Action.MANAGE, SubjectType.ALL, None)],
    ))
    catalog.add_role(CatalogRole(
        "role-admin", "Org Admin", organization_id="org1",
        permissions=[
            (Action.MANAGE, SubjectType.STAFF_PROFILE, ORG_SCOPE),
            (Action.MANAGE, SubjectType.DEPARTMENT, ORG_SCOPE),
        ],
    ))
    catalog.add_role(CatalogRole(
        "role-staff", "Staff", organization_id="org1",
        permissions=[
            (Action.READ, SubjectType.SHIFT_SCHEDULE, {"staffProfileId": "$user.staffProfileId"}),
            (Action.UPDATE, SubjectType.USER, {"id": "$user.id"}),
        ],
    ))

    catalog.add_user(CatalogUser("root", organization_id=None))
    catalog.add_user(CatalogUser("admin-1", organization_id="org1"))
    catalog.add_user(CatalogUser("nurse-1", organization_id="org1", staff_profile_id="sp-1"))

    catalog.assign_role("root", "role-sa")
    catalog.assign_role("admin-1", "role-admin")
    catalog.assign_role("nurse-1", "role-staff")
    return catalog


@pytest.fixture
def settings():
    return AbilitySettings(cache_enabled=False, catalog_timeout_seconds=1.0)


@pytest.fixture
def service(catalog, settings):
    return AbilityService(catalog, settings=settings)


class TestInMemoryCatalog:
    """Tests for InMemoryPermissionCatalog."""

    @pytest.mark.asyncio
    async def test_user_context(self, catalog):
        context = await catalog.load_user_context("nurse-1")
        assert context == {
            "id": "nurse-1",
            "organizationId": "org1",
            "departmentIds": [],
            "headOfDepartmentIds": [],
            "staffProfileId": "sp-1",
        }

    @pytest.mark.asyncio
    async def test_role_grants_carry_role_identity(self, catalog):
        grants = await catalog.load_grants("root")
        assert len(grants) == 1
        assert grants[0].is_super_admin()
        assert grants[0].role_id == "role-sa"

    @pytest.mark.asyncio
    async def test_direct_grants_follow_role_grants(self, catalog):
        catalog.grant_direct("nurse-1", Action.READ, SubjectType.PATIENT, {"departmentId": "dep-a"})
        grants = await catalog.load_grants("nurse-1")

        assert [g.source for g in grants] == [GrantSource.ROLE, GrantSource.ROLE, GrantSource.DIRECT]

    @pytest.mark.asyncio
    async def test_unknown_user(self, catalog):
        with pytest.raises(UserNotFound) as exc_info:
            await catalog.load_grants("ghost-id")
        assert exc_info.value.code == "user_not_found"

    @pytest.mark.asyncio
    async def test_grants_detached_from_role_permissions(self, catalog):
        """Editing a role after loading does not change loaded grants."""
        grants = await catalog.load_grants("nurse-1")
        catalog.roles["role-staff"].permissions[0][2]["staffProfileId"] = "sp-other"

        assert grants[0].conditions == {"staffProfileId": "$user.staffProfileId"}

    def test_assign_unknown_role(self, catalog):
        with pytest.raises(KeyError):
            catalog.assign_role("nurse-1", "role-missing")

    def test_revoke_role(self, catalog):
        assert catalog.revoke_role("nurse-1", "role-staff") is True
        assert catalog.revoke_role("nurse-1", "role-staff") is False


class TestAuthorize:
    """Tests for AbilityService.authorize."""

    @pytest.mark.asyncio
    async def test_super_admin(self, service):
        allowed = await service.authorize(AuthorizeRequest(
            user_id="root",
            action=Action.DELETE,
            subject_type=SubjectType.ORGANIZATION,
            instance={"id": "org2"},
        ))
        assert allowed

    @pytest.mark.asyncio
    async def test_org_admin_scoped_to_organization(self, service):
        own = AuthorizeRequest(
            user_id="admin-1",
            action=Action.UPDATE,
            subject_type=SubjectType.STAFF_PROFILE,
            instance={"organizationId": "org1"},
        )
        other = own.model_copy(update={"instance": {"organizationId": "org2"}})

        assert await service.authorize(own)
        assert not await service.authorize(other)

    @pytest.mark.asyncio
    async def test_staff_reads_own_shifts(self, service):
        request = AuthorizeRequest(
            user_id="nurse-1",
            action=Action.READ,
            subject_type=SubjectType.SHIFT_SCHEDULE,
            instance={"staffProfileId": "sp-1"},
        )
        assert await service.authorize(request)

    @pytest.mark.asyncio
    async def test_staff_cannot_delete_patients(self, service):
        request = AuthorizeRequest(
            user_id="nurse-1",
            action=Action.DELETE,
            subject_type=SubjectType.PATIENT,
            instance={"organizationId": "org1"},
        )
        assert not await service.authorize(request)

    @pytest.mark.asyncio
    async def test_unknown_user_reads_public_only(self, service):
        public = AuthorizeRequest(
            user_id="ghost-id",
            action=Action.READ,
            subject_type=SubjectType.ORGANIZATION,
            instance={"isPublic": True},
        )
        private = public.model_copy(update={"instance": {"isPublic": False}})

        assert await service.authorize(public)
        assert not await service.authorize(private)

    @pytest.mark.asyncio
    async def test_request_context_reaches_templates(self, catalog, service):
        catalog.grant_direct(
            "nurse-1", Action.UPDATE, SubjectType.SHIFT_SCHEDULE, {"id": "$request.params.id"}
        )
        request = AuthorizeRequest(
            user_id="nurse-1",
            action=Action.UPDATE,
            subject_type=SubjectType.SHIFT_SCHEDULE,
            instance={"id": "shift-9"},
            context={"request": {"params": {"id": "shift-9"}}},
        )
        assert await service.authorize(request)
        assert not await service.authorize(request.model_copy(update={"context": {}}))


class TestExpiringGrants:
    """Tests for time-bounded assignments."""

    @pytest.mark.asyncio
    async def test_expired_role_assignment(self, catalog, service):
        catalog.assign_role("nurse-1", "role-admin", expires_at=datetime.now(UTC) - timedelta(minutes=1))
        ruleset = await service.ability_for("nurse-1")

        assert not service.can(ruleset, Action.UPDATE, SubjectType.STAFF_PROFILE, {"organizationId": "org1"})

    @pytest.mark.asyncio
    async def test_live_direct_grant_bounds_ruleset(self, catalog, service):
        until = datetime.now(UTC) + timedelta(hours=2)
        catalog.grant_direct("nurse-1", Action.ADMIT, SubjectType.PATIENT, expires_at=until)
        ruleset = await service.ability_for("nurse-1")

        assert service.can(ruleset, Action.ADMIT, SubjectType.PATIENT)
        assert ruleset.valid_until == until


class TestCheck:
    """Tests for AbilityService.check."""

    @pytest.mark.asyncio
    async def test_empty_policies_allow_anyone(self, service):
        assert await service.check(None, [])

    @pytest.mark.asyncio
    async def test_policies(self, service):
        assert await service.check("nurse-1", [update_policy(SubjectType.USER, {"id": "nurse-1"})])
        assert not await service.check("nurse-1", [update_policy(SubjectType.USER, {"id": "admin-1"})])
        assert not await service.check("nurse-1", [read_policy(SubjectType.SHIFT_SCHEDULE), delete_policy(SubjectType.USER)])

    @pytest.mark.asyncio
    async def test_filter_permitted(self, service):
        ruleset = await service.ability_for("nurse-1")
        shifts = [
            {"id": "s1", "staffProfileId": "sp-1", "shiftTypeId": "t", "startDateTime": "x"},
            {"id": "s2", "staffProfileId": "sp-2", "shiftTypeId": "t", "startDateTime": "x", "organizationId": "org2"},
        ]
        assert [s["id"] for s in service.filter_permitted(ruleset, Action.READ, shifts)] == ["s1"]


class FlakyCatalog(PermissionCatalog):
    """Catalog that fails until repaired."""

    def __init__(self, inner):
        self.inner = inner
        self.down = True
        self.calls = 0

    async def load_user_context(self, user_id):
        self.calls += 1
        if self.down:
            raise CatalogUnavailable("database is down")
        return await self.inner.load_user_context(user_id)

    async def load_grants(self, user_id):
        return await self.inner.load_grants(user_id)


class TestCaching:
    """Tests for cached rulesets."""

    @pytest.mark.asyncio
    async def test_cached_per_user_and_context(self, catalog, settings):
        service = AbilityService(catalog, settings=settings, cache=RulesetCache())

        first = await service.ability_for("nurse-1")
        assert await service.ability_for("nurse-1") is first
        assert await service.ability_for("nurse-1", {"request": {"path": "/x"}}) is not first

    @pytest.mark.asyncio
    async def test_invalidate_user_rebuilds(self, catalog, settings):
        service = AbilityService(catalog, settings=settings, cache=RulesetCache())
        first = await service.ability_for("nurse-1")

        catalog.grant_direct("nurse-1", Action.DISCHARGE, SubjectType.PATIENT)
        assert not service.can(await service.ability_for("nurse-1"), Action.DISCHARGE, SubjectType.PATIENT)

        service.invalidate_user("nurse-1")
        rebuilt = await service.ability_for("nurse-1")
        assert rebuilt is not first
        assert service.can(rebuilt, Action.DISCHARGE, SubjectType.PATIENT)

    @pytest.mark.asyncio
    async def test_invalidate_all(self, catalog, settings):
        service = AbilityService(catalog, settings=settings, cache=RulesetCache())
        first = await service.ability_for("admin-1")
        service.invalidate_all()
        assert await service.ability_for("admin-1") is not first

    @pytest.mark.asyncio
    async def test_degraded_rulesets_not_cached(self, catalog, settings):
        flaky = FlakyCatalog(catalog)
        service = AbilityService(flaky, settings=settings, cache=RulesetCache())

        degraded = await service.ability_for("nurse-1")
        assert degraded.degraded

        flaky.down = False
        recovered = await service.ability_for("nurse-1")
        assert not recovered.degraded
        assert service.can(recovered, Action.UPDATE, SubjectType.USER, {"id": "nurse-1"})

    @pytest.mark.asyncio
    async def test_settings_enable_cache(self, catalog):
        service = AbilityService(catalog, settings=AbilitySettings(cache_enabled=True, cache_ttl_seconds=60))
        assert service.cache is not None
        assert service.cache.ttl_seconds == 60


class TestServiceSingleton:
    """Tests for the process-wide service."""

    def test_set_and_get(self, service):
        try:
            set_ability_service(service)
            assert get_ability_service() is service
        finally:
            set_ability_service(None)

    def test_default_is_empty_catalog(self):
        set_ability_service(None)
        try:
            assert isinstance(get_ability_service().catalog, InMemoryPermissionCatalog)
        finally:
            set_ability_service(None)
