"""
Test Configuration — Fixtures for async DB, test client, and mock data.

Uses per-test transactions with SAVEPOINT/rollback so each test gets a
clean database state while sharing the same session-level schema.
"""

import uuid
from datetime import date, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from api.deps import get_current_user, get_db, get_tenant_db
from api.main import app
from db.session import Base

# Use in-memory SQLite for tests (no RLS or set_config).
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ORG_ID = "00000000-0000-0000-0000-000000000001"


@pytest.fixture(scope="session")
async def test_engine():
    """Create a test database engine and build all tables once."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Create a test session wrapped in a transaction that rolls back after each test."""
    async with test_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(bind=conn, expire_on_commit=False)

        # Use SAVEPOINT so nested commits inside app code don't end our transaction
        @event.listens_for(session.sync_session, "after_transaction_end")
        def restart_savepoint(db_session, transaction):
            if transaction.nested and not transaction._parent.nested:
                session.sync_session.begin_nested()

        await conn.begin_nested()  # SAVEPOINT

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture
def mock_user():
    """Mock authenticated network administrator."""
    return {
        "sub": "user-test-admin",
        "email": "admin@myinventory.test",
        "org_id": ORG_ID,
        "role": "admin_rede",
    }


@pytest.fixture
async def client(test_db, mock_user):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    async def override_get_tenant_db():
        """Skip set_config (SQLite doesn't support it), return session directly."""
        return test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_tenant_db] = override_get_tenant_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def org(test_db):
    """Organization on the professional plan (all features unlocked)."""
    from db.models import Organization

    organization = Organization(
        org_id=uuid.UUID(ORG_ID),
        name="Rede Teste",
        email="contato@redeteste.com.br",
        plan="professional",
        status="active",
    )
    test_db.add(organization)
    await test_db.commit()
    return organization


@pytest.fixture
async def seeded_db(test_db, org):
    """Seed two stores, a product, loss history and open expiry reports."""
    from db.models import ExpiryReport, LossRecord, Product, Store

    org_id = org.org_id
    today = date.today()

    centro = Store(org_id=org_id, code="L001", name="Loja Centro", city="Curitiba", state="PR")
    bairro = Store(org_id=org_id, code="L002", name="Loja Bairro", city="Curitiba", state="PR")
    test_db.add_all([centro, bairro])
    await test_db.flush()

    product = Product(
        org_id=org_id,
        sku="SKU-0001",
        ean="7891000100103",
        name="Iogurte Natural 170g",
        category="Laticinios",
        brand="Fazenda",
        supplier="Laticinios Sul",
        unit_cost=2.50,
        unit_price=4.99,
    )
    test_db.add(product)
    await test_db.flush()

    losses = []
    for offset in range(10):
        losses.append(
            LossRecord(
                org_id=org_id,
                store_id=centro.store_id,
                product_id=product.product_id,
                ean=product.ean,
                product_name=product.name,
                category=product.category,
                supplier=product.supplier,
                loss_type="expiry" if offset % 2 == 0 else "damage",
                quantity=4,
                unit_cost=2.50,
                total_cost=10.0,
                sale_value=19.96,
                occurred_on=today - timedelta(days=offset + 1),
            )
        )
    losses.append(
        LossRecord(
            org_id=org_id,
            store_id=bairro.store_id,
            product_name="Pao de Forma",
            category="Padaria",
            supplier="Panificadora Norte",
            loss_type="theft",
            quantity=2,
            unit_cost=5.0,
            total_cost=10.0,
            sale_value=15.0,
            occurred_on=today - timedelta(days=3),
        )
    )
    test_db.add_all(losses)

    overdue = ExpiryReport(
        org_id=org_id,
        store_id=centro.store_id,
        product_id=product.product_id,
        barcode=product.ean,
        product_name=product.name,
        category=product.category,
        unit_price=4.99,
        quantity=6,
        expiry_date=today - timedelta(days=1),
        created_by="user-test-admin",
        created_at=datetime.utcnow() - timedelta(days=3),
    )
    due_today = ExpiryReport(
        org_id=org_id,
        store_id=centro.store_id,
        product_id=product.product_id,
        barcode=product.ean,
        product_name=product.name,
        category=product.category,
        unit_price=4.99,
        quantity=3,
        expiry_date=today,
        photo_url="https://cdn.example.com/p/1.jpg",
        created_by="user-test-admin",
        created_at=datetime.utcnow() - timedelta(days=1),
    )
    next_week = ExpiryReport(
        org_id=org_id,
        store_id=bairro.store_id,
        barcode="7891000200200",
        product_name="Pao de Forma",
        category="Padaria",
        unit_price=7.50,
        quantity=2,
        expiry_date=today + timedelta(days=5),
        created_by="user-test-admin",
    )
    test_db.add_all([overdue, due_today, next_week])
    await test_db.commit()

    return {
        "org_id": org_id,
        "store": centro,
        "other_store": bairro,
        "product": product,
        "reports": [overdue, due_today, next_week],
    }
