import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from uuid import uuid4

from sitewise.models import Attendance, AuditEvent, RetentionPolicy, StaffActivity
from sitewise.modules.governance.domain.retention import (
    DeletionStrategy,
    HardDeleteStrategy,
    RetentionCategory,
    RetentionConfigService,
    RetentionSweeper,
)

NOW = datetime(2026, 10, 18, 3, 0, tzinfo=timezone.utc)


async def _add_policy(session_maker, **fields):
    async with session_maker() as session:
        async with session.begin():
            session.add(RetentionPolicy(**fields))


async def _seed_rows(context_manager, tenant, age_days: int):
    """One row per category, `age_days` old."""
    at = NOW - timedelta(days=age_days)
    async with context_manager.scoped(tenant.id) as scope:
        await scope.add(StaffActivity(staff_user_id=uuid4(), activity_type="ATTENDANCE_RECORDED", occurred_at=at))
        await scope.add(Attendance(child_id=uuid4(), session_id=uuid4(), status="present", timestamp=at))
        await scope.add(AuditEvent(action="attendance.recorded", entity_type="attendance", created_at=at))


async def _remaining(context_manager, tenant) -> dict:
    async with context_manager.scoped(tenant.id) as scope:
        return {
            RetentionCategory.STAFF_ACTIVITY: await scope.count(StaffActivity),
            RetentionCategory.ATTENDANCE: await scope.count(Attendance),
            RetentionCategory.AUDIT_EVENT: await scope.count(AuditEvent),
        }


@pytest.fixture
def sweeper(session_maker, context_manager):
    return RetentionSweeper(session_maker, context_manager, enabled=True)


class RecordingStrategy(HardDeleteStrategy):
    def __init__(self, fail_for=None):
        self.calls = []
        self.fail_for = fail_for

    async def expire(self, scope, category, cutoff):
        self.calls.append((scope.tenant_id, category, cutoff))
        # Fail on the last category so earlier deletes are already flushed.
        if scope.tenant_id == self.fail_for and category == RetentionCategory.AUDIT_EVENT:
            raise RuntimeError("storage unavailable")
        return await super().expire(scope, category, cutoff)


class TestRetentionConfig:
    @pytest.mark.asyncio
    async def test_defaults_without_policy(self, session_maker, seed):
        org = await seed.org()

        policy = await RetentionConfigService(session_maker).resolve_for_org(org.id)

        assert policy.is_default
        assert policy.days_for(RetentionCategory.ATTENDANCE) == 730
        assert policy.days_for(RetentionCategory.STAFF_ACTIVITY) == 365
        assert policy.days_for(RetentionCategory.AUDIT_EVENT) == 365

    @pytest.mark.asyncio
    async def test_org_policy_overrides_per_field(self, session_maker, seed):
        org = await seed.org()
        await _add_policy(session_maker, org_id=org.id, attendance_retention_days=90, audit_event_retention_days=0)

        policy = await RetentionConfigService(session_maker).resolve_for_org(org.id)

        assert not policy.is_default
        assert policy.attendance_retention_days == 90
        assert policy.staff_activity_retention_days == 365
        assert policy.audit_event_retention_days == 365


class TestRetentionSweeper:
    @pytest.mark.asyncio
    async def test_disabled_sweep_touches_nothing(self, session_maker, context_manager, seed):
        site = await seed.tenant(await seed.org())
        await _seed_rows(context_manager, site, age_days=1000)
        sweeper = RetentionSweeper(session_maker, context_manager, enabled=False)

        with patch("sitewise.modules.governance.domain.retention.sweeper.logger") as mock_logger:
            report = await sweeper.run(NOW)

        assert report.skipped
        assert report.tenants_processed == 0
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.args[0] == "retention_sweep_skipped"
        assert await _remaining(context_manager, site) == {category: 1 for category in RetentionCategory}

    @pytest.mark.asyncio
    async def test_default_windows_per_category(self, sweeper, context_manager, seed):
        site = await seed.tenant(await seed.org())
        await _seed_rows(context_manager, site, age_days=400)   # past 365, inside 730
        await _seed_rows(context_manager, site, age_days=800)   # past every window
        await _seed_rows(context_manager, site, age_days=10)

        report = await sweeper.run(NOW)

        assert report.ok
        assert report.tenants_processed == 1
        assert report.deleted == {
            RetentionCategory.STAFF_ACTIVITY: 2,
            RetentionCategory.ATTENDANCE: 1,
            RetentionCategory.AUDIT_EVENT: 2,
        }
        assert await _remaining(context_manager, site) == {
            RetentionCategory.STAFF_ACTIVITY: 1,
            RetentionCategory.ATTENDANCE: 2,
            RetentionCategory.AUDIT_EVENT: 1,
        }

    @pytest.mark.asyncio
    async def test_org_override_applies_to_its_sites_only(self, session_maker, sweeper, context_manager, seed):
        strict_org = await seed.org("Strict")
        relaxed_org = await seed.org("Relaxed")
        strict_site = await seed.tenant(strict_org)
        relaxed_site = await seed.tenant(relaxed_org)
        await _add_policy(session_maker, org_id=strict_org.id, attendance_retention_days=30)
        await _seed_rows(context_manager, strict_site, age_days=60)
        await _seed_rows(context_manager, relaxed_site, age_days=60)

        await sweeper.run(NOW)

        assert (await _remaining(context_manager, strict_site))[RetentionCategory.ATTENDANCE] == 0
        assert (await _remaining(context_manager, relaxed_site))[RetentionCategory.ATTENDANCE] == 1

    @pytest.mark.asyncio
    async def test_row_exactly_at_cutoff_is_kept(self, sweeper, context_manager, seed):
        site = await seed.tenant(await seed.org())
        await _seed_rows(context_manager, site, age_days=365)

        report = await sweeper.run(NOW)

        assert report.deleted[RetentionCategory.STAFF_ACTIVITY] == 0
        assert (await _remaining(context_manager, site))[RetentionCategory.STAFF_ACTIVITY] == 1

    @pytest.mark.asyncio
    async def test_categories_run_in_fixed_order(self, session_maker, context_manager, seed):
        site = await seed.tenant(await seed.org())
        strategy = RecordingStrategy()
        sweeper = RetentionSweeper(session_maker, context_manager, strategy=strategy, enabled=True)

        await sweeper.run(NOW)

        assert [category for _, category, _ in strategy.calls] == [
            RetentionCategory.STAFF_ACTIVITY,
            RetentionCategory.ATTENDANCE,
            RetentionCategory.AUDIT_EVENT,
        ]
        assert strategy.calls[1][2] == NOW - timedelta(days=730)

    @pytest.mark.asyncio
    async def test_failing_tenant_does_not_stop_the_sweep(self, session_maker, context_manager, seed):
        org = await seed.org()
        broken = await seed.tenant(org, "Broken")
        healthy = await seed.tenant(org, "Healthy")
        await _seed_rows(context_manager, broken, age_days=1000)
        await _seed_rows(context_manager, healthy, age_days=1000)
        sweeper = RetentionSweeper(
            session_maker, context_manager, strategy=RecordingStrategy(fail_for=broken.id), enabled=True
        )

        report = await sweeper.run(NOW)

        assert not report.ok
        assert report.tenants_processed == 1
        assert [(f.tenant_id, f.error) for f in report.failures] == [(broken.id, "RuntimeError")]
        assert await _remaining(context_manager, healthy) == {category: 0 for category in RetentionCategory}
        assert await _remaining(context_manager, broken) == {category: 1 for category in RetentionCategory}

    def test_strategy_contract_is_abstract(self):
        with pytest.raises(TypeError):
            DeletionStrategy()
