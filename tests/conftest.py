import os
# Disable DB SSL and secret validation for all tests BEFORE any sitewise imports
os.environ["DB_SSL_MODE"] = "disable"
os.environ["ENVIRONMENT"] = "development"
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RETENTION_ENABLED"] = "False"

import hashlib
import hmac
import json
import time
from datetime import datetime
from typing import AsyncGenerator
from uuid import UUID, uuid4

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Ensure all models are registered in the metadata
from sitewise.models import Org, Tenant, UserTenantRole, TenantRole, StaffActivity
from sitewise.modules.billing.domain.config import BillingProviderConfig, PaystackConfig, StripeConfig
from sitewise.modules.billing.domain.events import BillingProvider
from sitewise.modules.billing.domain.providers import build_webhook_providers
from sitewise.modules.billing.domain.reconciler import BillingReconciler
from sitewise.shared.db.base import Base
from sitewise.shared.db.tenant_context import TenantContextManager

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
PAYSTACK_SECRET_KEY = "sk_test_paystack"


def use_sqlalchemy_transactions(async_engine: AsyncEngine, begin_statement: str = "BEGIN") -> AsyncEngine:
    """
    SQLite driver transactions start lazily, so a leading SAVEPOINT would open
    (and its RELEASE commit) the whole transaction. Emit BEGIN on every
    SQLAlchemy begin instead so rollbacks cover savepointed work.
    """
    @event.listens_for(async_engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql(begin_statement)

    return async_engine


@pytest.fixture
async def engine():
    """Fresh in-memory database per test. StaticPool keeps one connection so data survives across sessions."""
    test_engine = use_sqlalchemy_transactions(create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    ))
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def file_session_maker(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """
    File-backed database with a connection per session, for tests that need
    concurrent transactions. Writers take the lock at BEGIN, as a unique index
    makes a second Postgres writer wait for the first to commit.
    """
    file_engine = use_sqlalchemy_transactions(
        create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sitewise.db'}"),
        begin_statement="BEGIN IMMEDIATE",
    )
    async with file_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)
    await file_engine.dispose()


@pytest.fixture
def context_manager(session_maker) -> TenantContextManager:
    return TenantContextManager(session_maker)


class Seeder:
    """Writes fixture rows the way production code does: directory rows plainly, tenant rows through a scope."""

    def __init__(self, session_maker: async_sessionmaker, context_manager: TenantContextManager):
        self.session_maker = session_maker
        self.context_manager = context_manager

    async def org(self, name: str = "Org") -> Org:
        org = Org(name=name, slug=f"{name.lower().replace(' ', '-')}-{uuid4().hex[:8]}")
        async with self.session_maker() as session:
            async with session.begin():
                session.add(org)
        return org

    async def tenant(self, org: Org, name: str = "Site") -> Tenant:
        tenant = Tenant(org_id=org.id, name=name, slug=f"{name.lower().replace(' ', '-')}-{uuid4().hex[:8]}")
        async with self.session_maker() as session:
            async with session.begin():
                session.add(tenant)
        return tenant

    async def role(self, tenant: Tenant, user_id: UUID, role: TenantRole = TenantRole.TEACHER) -> None:
        async with self.context_manager.scoped(tenant.id) as scope:
            await scope.add(UserTenantRole(user_id=user_id, role=role.value))

    async def activity(
        self,
        tenant: Tenant,
        user_id: UUID,
        occurred_at: datetime,
        activity_type: str = "ATTENDANCE_RECORDED",
    ) -> None:
        async with self.context_manager.scoped(tenant.id) as scope:
            await scope.add(
                StaffActivity(staff_user_id=user_id, activity_type=activity_type, occurred_at=occurred_at)
            )


@pytest.fixture
def seed(session_maker, context_manager) -> Seeder:
    return Seeder(session_maker, context_manager)


@pytest.fixture
def billing_config() -> BillingProviderConfig:
    return BillingProviderConfig(
        active_provider=BillingProvider.STRIPE,
        stripe=StripeConfig(secret_key="sk_test_stripe", webhook_secret=STRIPE_WEBHOOK_SECRET),
        paystack=PaystackConfig(secret_key=PAYSTACK_SECRET_KEY),
        webhook_tolerance_seconds=300,
    )


@pytest.fixture
def reconciler(session_maker, billing_config) -> BillingReconciler:
    return BillingReconciler(session_maker, build_webhook_providers(billing_config))


class WebhookFactory:
    """Signed provider deliveries, built the way each provider signs them."""

    def stripe(self, event_id: str, event_type: str, obj: dict, timestamp: int | None = None,
               secret: str = STRIPE_WEBHOOK_SECRET) -> tuple[bytes, str]:
        body = json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()
        return body, self.stripe_signature(body, secret=secret, timestamp=timestamp)

    def paystack(self, event_type: str, data: dict, secret: str = PAYSTACK_SECRET_KEY) -> tuple[bytes, str]:
        body = json.dumps({"event": event_type, "data": data}).encode()
        return body, self.paystack_signature(body, secret=secret)

    @staticmethod
    def stripe_signature(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        timestamp = timestamp if timestamp is not None else int(time.time())
        signed_payload = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
        signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    @staticmethod
    def paystack_signature(payload: bytes, secret: str = PAYSTACK_SECRET_KEY) -> str:
        return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()


@pytest.fixture
def webhooks() -> WebhookFactory:
    return WebhookFactory()


@pytest.fixture
async def ac(reconciler, session_maker) -> AsyncGenerator[AsyncClient, None]:
    """Async client against the app, wired to the per-test database."""
    from sitewise.main import app
    from sitewise.modules.billing.api.v1.webhooks import get_billing_reconciler
    from sitewise.shared.db.session import get_db

    async def _test_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_billing_reconciler] = lambda: reconciler
    app.dependency_overrides[get_db] = _test_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
