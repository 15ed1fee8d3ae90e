import pytest
from datetime import datetime, timezone
from uuid import uuid4

from sitewise.models import StaffActivity, TenantRole
from sitewise.modules.usage.domain.activity import (
    AV30_ALLOW_LISTS,
    Av30ActivityService,
    Av30ActivityType,
    qualifying_activity_types,
)
from sitewise.shared.core.exceptions import ConfigurationError
from sitewise.shared.db.base import as_utc

OCCURRED = datetime(2026, 10, 10, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
async def site(seed):
    org = await seed.org()
    return await seed.tenant(org)


@pytest.fixture
def activity_service(context_manager):
    return Av30ActivityService(context_manager)


class TestAllowList:
    def test_v1_covers_attendance_and_rota_actions(self):
        assert qualifying_activity_types("v1") == frozenset(Av30ActivityType)

    def test_default_version_comes_from_settings(self):
        assert qualifying_activity_types() == AV30_ALLOW_LISTS["v1"]

    def test_unknown_version_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            qualifying_activity_types("v0")
        assert exc_info.value.code == "av30_allow_list_unknown"


class TestRecordActivity:
    @pytest.mark.asyncio
    async def test_staff_activity_is_written(self, seed, context_manager, activity_service, site):
        teacher = uuid4()
        await seed.role(site, teacher, TenantRole.TEACHER)

        async with context_manager.scoped(site.id) as scope:
            written = await activity_service.record_activity(
                scope, Av30ActivityType.ATTENDANCE_RECORDED, teacher, OCCURRED
            )

        assert written is True
        async with context_manager.scoped(site.id) as scope:
            rows = await scope.select(StaffActivity)
        assert len(rows) == 1
        assert rows[0].staff_user_id == teacher
        assert rows[0].activity_type == "ATTENDANCE_RECORDED"
        assert rows[0].org_id == site.org_id
        assert as_utc(rows[0].occurred_at) == OCCURRED

    @pytest.mark.asyncio
    async def test_parent_activity_is_skipped(self, seed, context_manager, activity_service, site):
        parent = uuid4()
        await seed.role(site, parent, TenantRole.PARENT)

        async with context_manager.scoped(site.id) as scope:
            written = await activity_service.record_activity(scope, "ASSIGNMENT_ACCEPTED", parent)
            assert written is False
            assert await scope.count(StaffActivity) == 0

    @pytest.mark.asyncio
    async def test_role_in_another_site_does_not_count(self, seed, context_manager, activity_service, site):
        other_site = await seed.tenant(await seed.org("Other"))
        coordinator = uuid4()
        await seed.role(other_site, coordinator, TenantRole.COORDINATOR)

        async with context_manager.scoped(site.id) as scope:
            assert await activity_service.record_activity(scope, "ASSIGNMENT_PUBLISHED", coordinator) is False

    @pytest.mark.asyncio
    async def test_unlisted_activity_type_is_rejected(self, context_manager, activity_service, site):
        async with context_manager.scoped(site.id) as scope:
            with pytest.raises(ValueError):
                await activity_service.record_activity(scope, "PROFILE_VIEWED", uuid4())

    @pytest.mark.asyncio
    async def test_record_with_ids_opens_its_own_scope(self, seed, context_manager, activity_service, site):
        admin = uuid4()
        await seed.role(site, admin, TenantRole.ADMIN)

        written = await activity_service.record_activity_with_ids(
            site.id, site.org_id, Av30ActivityType.ASSIGNMENT_DECLINED, admin, OCCURRED
        )

        assert written is True
        async with context_manager.scoped(site.id) as scope:
            assert await scope.count(StaffActivity) == 1
