import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

from sqlalchemy import func, select

from sitewise.models import UsageCounter
from sitewise.modules.usage.domain.av30 import (
    AV30_WINDOW,
    Av30ComputeService,
    TenantOrgContext,
)
from sitewise.shared.core.exceptions import TenantNotAccessible, UsageAggregationError
from sitewise.shared.db.base import as_utc

NOW = datetime(2026, 10, 18, 2, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(session_maker, context_manager):
    return Av30ComputeService(session_maker, context_manager)


async def _counters(session_maker) -> dict:
    async with session_maker() as session:
        rows = (await session.execute(select(UsageCounter))).scalars().all()
    return {row.org_id: row for row in rows}


class TestAv30Compute:
    @pytest.mark.asyncio
    async def test_counts_distinct_staff_inside_window(self, seed, service, session_maker):
        org = await seed.org()
        site = await seed.tenant(org)
        active = [uuid4() for _ in range(3)]
        inactive = [uuid4() for _ in range(2)]
        for staff in active:
            await seed.activity(site, staff, NOW - timedelta(days=1))
            await seed.activity(site, staff, NOW - timedelta(days=5), "ASSIGNMENT_ACCEPTED")
        for staff in inactive:
            await seed.activity(site, staff, NOW - timedelta(days=45))

        results = await service.compute_for_tenants([TenantOrgContext(site.id, org.id)], NOW)

        assert [(r.org_id, r.av30) for r in results] == [(org.id, 3)]
        counters = await _counters(session_maker)
        assert counters[org.id].av30 == 3
        assert as_utc(counters[org.id].calculated_at) == NOW

    @pytest.mark.asyncio
    async def test_window_boundary_is_inclusive(self, seed, service):
        org = await seed.org()
        site = await seed.tenant(org)
        await seed.activity(site, uuid4(), NOW - AV30_WINDOW)
        await seed.activity(site, uuid4(), NOW - AV30_WINDOW - timedelta(milliseconds=1))

        results = await service.compute_for_tenants([TenantOrgContext(site.id, org.id)], NOW)

        assert results[0].av30 == 1

    @pytest.mark.asyncio
    async def test_non_qualifying_activity_is_ignored(self, seed, service):
        org = await seed.org()
        site = await seed.tenant(org)
        await seed.activity(site, uuid4(), NOW - timedelta(days=1), "PROFILE_VIEWED")

        results = await service.compute_for_tenants([TenantOrgContext(site.id, org.id)], NOW)

        assert results[0].av30 == 0

    @pytest.mark.asyncio
    async def test_person_active_in_two_sites_counts_once(self, seed, service):
        org = await seed.org()
        north = await seed.tenant(org, "North")
        south = await seed.tenant(org, "South")
        shared, north_only = uuid4(), uuid4()
        await seed.activity(north, shared, NOW - timedelta(days=2))
        await seed.activity(south, shared, NOW - timedelta(days=3))
        await seed.activity(north, north_only, NOW - timedelta(days=4))

        results = await service.compute_for_tenants(
            [TenantOrgContext(north.id, org.id), TenantOrgContext(south.id, org.id)], NOW
        )

        assert [(r.org_id, r.av30) for r in results] == [(org.id, 2)]

    @pytest.mark.asyncio
    async def test_orgs_are_counted_separately(self, seed, service):
        """Two orgs, one site each, with some staff active in the window."""
        org_one = await seed.org("One")
        org_two = await seed.org("Two")
        s1 = await seed.tenant(org_one, "S1")
        s2 = await seed.tenant(org_two, "S2")
        for staff in [uuid4(), uuid4()]:
            await seed.activity(s1, staff, NOW - timedelta(days=10))
        await seed.activity(s2, uuid4(), NOW - timedelta(days=29))
        await seed.activity(s2, uuid4(), NOW - timedelta(days=31))

        results = await service.compute_for_tenants(
            [TenantOrgContext(s1.id, org_one.id), TenantOrgContext(s2.id, org_two.id)], NOW
        )

        assert {r.org_id: r.av30 for r in results} == {org_one.id: 2, org_two.id: 1}

    @pytest.mark.asyncio
    async def test_org_without_activity_gets_zero_counter(self, seed, service, session_maker):
        org = await seed.org()
        site = await seed.tenant(org)

        results = await service.compute_for_tenants([TenantOrgContext(site.id, org.id)], NOW)

        assert results[0].av30 == 0
        assert (await _counters(session_maker))[org.id].av30 == 0

    @pytest.mark.asyncio
    async def test_rerun_overwrites_single_counter_row(self, seed, service, session_maker):
        org = await seed.org()
        site = await seed.tenant(org)
        await seed.activity(site, uuid4(), NOW - timedelta(days=1))
        contexts = [TenantOrgContext(site.id, org.id)]

        first = await service.compute_for_tenants(contexts, NOW)
        second = await service.compute_for_tenants(contexts, NOW)

        assert first == second
        async with session_maker() as session:
            count = (await session.execute(select(func.count()).select_from(UsageCounter))).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_returning_staff_member_updates_existing_counter(self, seed, service, session_maker):
        org = await seed.org()
        site = await seed.tenant(org)
        s1, s2 = uuid4(), uuid4()
        await seed.activity(site, s1, NOW - timedelta(days=5))
        await seed.activity(site, s2, NOW - timedelta(days=40))
        contexts = [TenantOrgContext(site.id, org.id)]

        first = await service.compute_for_tenants(contexts, NOW)
        first_row_id = (await _counters(session_maker))[org.id].id

        await seed.activity(site, s2, NOW - timedelta(days=1))
        second = await service.compute_for_tenants(contexts, NOW)

        assert [(r.org_id, r.av30) for r in first] == [(org.id, 1)]
        assert [(r.org_id, r.av30) for r in second] == [(org.id, 2)]
        counters = await _counters(session_maker)
        assert len(counters) == 1
        assert counters[org.id].id == first_row_id
        assert counters[org.id].av30 == 2

    @pytest.mark.asyncio
    async def test_later_run_reflects_new_window(self, seed, service, session_maker):
        org = await seed.org()
        site = await seed.tenant(org)
        await seed.activity(site, uuid4(), NOW - timedelta(days=20))
        contexts = [TenantOrgContext(site.id, org.id)]

        await service.compute_for_tenants(contexts, NOW)
        await service.compute_for_tenants(contexts, NOW + timedelta(days=15))

        assert (await _counters(session_maker))[org.id].av30 == 0

    @pytest.mark.asyncio
    async def test_duplicate_contexts_are_processed_once(self, seed, service):
        org = await seed.org()
        site = await seed.tenant(org)
        await seed.activity(site, uuid4(), NOW - timedelta(days=1))
        context = TenantOrgContext(site.id, org.id)

        results = await service.compute_for_tenants([context, context], NOW)

        assert [r.av30 for r in results] == [1]

    @pytest.mark.asyncio
    async def test_empty_input_writes_nothing(self, service, session_maker):
        assert await service.compute_for_tenants([], NOW) == []
        assert await _counters(session_maker) == {}


class TestTenantFailureIsolation:
    @pytest.mark.asyncio
    async def test_failing_tenant_leaves_its_org_untouched(self, seed, service, session_maker):
        split_org = await seed.org("Split")
        broken = await seed.tenant(split_org, "Broken")
        sibling = await seed.tenant(split_org, "Sibling")
        healthy_org = await seed.org("Healthy")
        healthy = await seed.tenant(healthy_org, "Healthy")
        for site in (broken, sibling, healthy):
            await seed.activity(site, uuid4(), NOW - timedelta(days=2))
        contexts = [TenantOrgContext(site.id, site.org_id) for site in (broken, sibling, healthy)]
        earlier = NOW - timedelta(hours=6)
        await service.compute_for_tenants(contexts, earlier)

        original = Av30ComputeService._active_staff_for_tenant

        async def flaky(self, context, window_start):
            if context.tenant_id == broken.id:
                raise RuntimeError("replica unavailable")
            return await original(self, context, window_start)

        await seed.activity(healthy, uuid4(), NOW - timedelta(hours=1))
        with patch.object(Av30ComputeService, "_active_staff_for_tenant", flaky):
            with pytest.raises(UsageAggregationError) as exc_info:
                await service.compute_for_tenants(contexts, NOW)

        details = exc_info.value.details
        assert details["failed_tenants"] == [
            {"tenant_id": str(broken.id), "org_id": str(split_org.id), "error": "RuntimeError"}
        ]
        assert details["persisted_orgs"] == [str(healthy_org.id)]
        assert isinstance(exc_info.value.__cause__, RuntimeError)

        counters = await _counters(session_maker)
        assert counters[split_org.id].av30 == 2
        assert as_utc(counters[split_org.id].calculated_at) == earlier
        assert counters[healthy_org.id].av30 == 2
        assert as_utc(counters[healthy_org.id].calculated_at) == NOW


class TestResolveContexts:
    @pytest.mark.asyncio
    async def test_resolves_owning_org(self, seed, service):
        org = await seed.org()
        site = await seed.tenant(org)

        contexts = await service.resolve_contexts([site.id])

        assert contexts == [TenantOrgContext(site.id, org.id)]

    @pytest.mark.asyncio
    async def test_unknown_tenant_fails_whole_batch(self, seed, service):
        org = await seed.org()
        site = await seed.tenant(org)
        missing = uuid4()

        with pytest.raises(TenantNotAccessible) as exc_info:
            await service.resolve_contexts([site.id, missing])
        assert exc_info.value.details["tenant_id"] == str(missing)
