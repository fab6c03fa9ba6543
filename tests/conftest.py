import pytest
from unittest.mock import MagicMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from app.database import get_db
from app.models import Base
from app.auth.dependencies import get_storefront_shop
from app.models.customer import CustomerConsentRecord
from app.models.checkout_session import CheckoutSession, PresentationMode
from app.services import consent_policy


SHOP = "test-shop.myshopify.com"

# In-memory database for tests that depend on real query semantics
sqlite_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
SqliteSession = sessionmaker(autocommit=False, autoflush=False, bind=sqlite_engine)


@event.listens_for(sqlite_engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    # pysqlite must not manage transactions itself or SAVEPOINT breaks
    dbapi_connection.isolation_level = None


@event.listens_for(sqlite_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


@pytest.fixture
def mock_db():
    """Mock database session"""
    db = MagicMock()
    db.query.return_value = db
    db.filter.return_value = db
    db.order_by.return_value = db
    db.limit.return_value = db
    db.first.return_value = None
    db.all.return_value = []
    db.count.return_value = 0
    return db


@pytest.fixture
def sqlite_db():
    """Fresh in-memory database session per test"""
    Base.metadata.create_all(bind=sqlite_engine)
    db = SqliteSession()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=sqlite_engine)


@pytest.fixture
def unauthenticated_client(mock_db):
    """TestClient with mocked DB but no auth"""
    app.dependency_overrides[get_db] = lambda: mock_db
    client = TestClient(app)
    yield client, mock_db
    app.dependency_overrides.clear()


@pytest.fixture
def storefront_client(mock_db):
    """TestClient with a verified checkout session token for SHOP"""
    app.dependency_overrides[get_db] = lambda: mock_db
    app.dependency_overrides[get_storefront_shop] = lambda: SHOP
    client = TestClient(app)
    yield client, mock_db
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def default_policy_table():
    """Every test starts from the bundled policy table"""
    consent_policy.reset_policy_table()
    yield
    consent_policy.reset_policy_table()


def _make_customer(**kwargs) -> CustomerConsentRecord:
    """Transient customer row; nothing touches a database."""
    customer = CustomerConsentRecord(
        shop=kwargs.pop("shop", SHOP),
        platform_customer_id=kwargs.pop("platform_customer_id", "1001"),
        email=kwargs.pop("email", "buyer@example.com"),
        **kwargs,
    )
    if customer.id is None:
        customer.id = 1
    return customer


def _make_session(mode=PresentationMode.OPT_OUT, **kwargs) -> CheckoutSession:
    return CheckoutSession(
        id=kwargs.pop("id", "8a3f5c1e-0000-4000-8000-000000000001"),
        shop=kwargs.pop("shop", SHOP),
        mode=mode,
        **kwargs,
    )


@pytest.fixture
def make_customer():
    return _make_customer


@pytest.fixture
def make_session():
    return _make_session
