"""
Pytest configuration and fixtures.

Every test gets its own SQLite file database; Stripe, the blob store, the
mailer and the account service are replaced by in-memory fakes.
"""
import os
from datetime import timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")

from entitlements.api.main import create_app  # noqa: E402
from entitlements.config import Settings  # noqa: E402
from entitlements.container import ServiceContainer  # noqa: E402
from entitlements.core.events import PaymentCompleted, PurchasedLineItem  # noqa: E402
from entitlements.database.connection import Database  # noqa: E402
from entitlements.database.models import Product  # noqa: E402

from fakes import (  # noqa: E402
    ADMIN_KEY,
    PURCHASE_TIME,
    WEBHOOK_SECRET,
    FakeBlobStore,
    FakePaymentProvider,
    FakeProvisioner,
    FrozenClock,
    RecordingNotifier,
)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'entitlements.db'}",
        app_name="download-entitlements-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        admin_api_key=ADMIN_KEY,
        site_url="https://shop.test",
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, Any]:
    """Fresh SQLite database with all tables."""
    db = Database.from_settings(test_settings)
    await db.create_all()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def test_db(database: Database) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with database.session() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(PURCHASE_TIME + timedelta(seconds=10))


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest_asyncio.fixture
async def catalog(database: Database, blob_store: FakeBlobStore) -> List[Product]:
    """Three products, two of them with files in the blob store."""
    products = [
        Product(
            id="p1",
            name="R.D.B \u2013 No More Trouble",
            catalog_number="RDB001",
            master_file_path="downloads/RDB001",
        ),
        Product(id="p2", name="Deep Cuts Vol. 2", catalog_number="DC002", master_file_path="DC002"),
        Product(id="p3", name="Deep Cuts", catalog_number="DC001", master_file_path=None),
    ]
    async with database.session() as session:
        session.add_all(products)
        await session.commit()

    blob_store.put("RDB001/01 No More Trouble.wav", b"RIFF" + b"\x00" * 2048)
    blob_store.put("RDB001/artwork.jpg", b"\xff\xd8")
    blob_store.put("RDB001/bonus/demo.wav", b"RIFF")
    blob_store.put("DC002/Deep Cuts Vol. 2.zip", b"PK" + b"\x00" * 100)
    return products


@pytest.fixture
def payment_event() -> Callable[..., PaymentCompleted]:
    """Factory for PaymentCompleted events."""

    def _make(
        payment_reference: str = "cs_abc",
        lines: Optional[List[PurchasedLineItem]] = None,
        total: str = "15.98",
        email: Optional[str] = "buyer@example.com",
        user_ref: Optional[str] = None,
    ) -> PaymentCompleted:
        if lines is None:
            lines = [
                PurchasedLineItem(name="No More Trouble", unit_amount=Decimal("7.99"), product_id="p1"),
                PurchasedLineItem(name="Mystery Bootleg", unit_amount=Decimal("7.99")),
            ]
        return PaymentCompleted(
            event_id="evt_test",
            payment_reference=payment_reference,
            payment_intent_reference=f"pi_{payment_reference}",
            customer_email=email,
            customer_name="Test Buyer",
            user_ref=user_ref,
            subtotal=Decimal(total),
            total=Decimal(total),
            created_at=PURCHASE_TIME,
            paid_at=PURCHASE_TIME,
            line_items=lines,
        )

    return _make


@pytest.fixture
def container(
    test_settings: Settings,
    database: Database,
    provider: FakePaymentProvider,
    blob_store: FakeBlobStore,
    notifier: RecordingNotifier,
    clock: FrozenClock,
) -> ServiceContainer:
    return ServiceContainer(
        settings=test_settings,
        database=database,
        provider=provider,
        blob_store=blob_store,
        notifier=notifier,
        provisioner=None,
        clock=clock,
    )


@pytest_asyncio.fixture
async def client(container: ServiceContainer) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(container=container)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
