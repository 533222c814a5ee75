"""
Pytest configuration and fixtures.
"""
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from order_reconciliation.config import Settings
from order_reconciliation.core.notifications import NotificationDispatcher
from order_reconciliation.core.reconciler import OrderReconciler
from order_reconciliation.core.retry import RetryExecutor, RetryPolicy
from order_reconciliation.database.models import Base
from order_reconciliation.database.store import OrderStore
from order_reconciliation.integrations.mail import MailDeliveryError

from fakes import FakeMailTransport, FakeStripeClient, RecordingSleep


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        paypal_client_id="paypal-client",
        paypal_secret="paypal-secret",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        business_email="orders@vortexpcs.com",
        app_name="order-reconciliation-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> OrderStore:
    return OrderStore(session_factory)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def executor(recording_sleep: RecordingSleep) -> RetryExecutor:
    """Default policy with sleeps recorded instead of awaited."""
    return RetryExecutor(RetryPolicy(), sleep=recording_sleep)


@pytest.fixture
def mail_transport() -> FakeMailTransport:
    return FakeMailTransport()


@pytest.fixture
def stripe_client() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def reconciler(store: OrderStore, test_settings: Settings) -> OrderReconciler:
    return OrderReconciler(store, test_settings)


@pytest.fixture
def dispatcher(
    mail_transport: FakeMailTransport, executor: RetryExecutor, store: OrderStore
) -> NotificationDispatcher:
    return NotificationDispatcher(
        transport=mail_transport,
        executor=executor,
        business_email="orders@vortexpcs.com",
        store=store,
    )


@pytest.fixture
def transient_mail_error() -> MailDeliveryError:
    return MailDeliveryError("421 try again later", retryable=True, smtp_code=421)
