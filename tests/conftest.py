import os
import sys
import tempfile

import pytest

# Settings are read once, so the environment must be set before any project import
ROOT = os.path.dirname(__file__)
PARENT = os.path.abspath(os.path.join(ROOT, ".."))
if PARENT not in sys.path:  # pragma: no cover - environment dependent
    sys.path.insert(0, PARENT)

TEST_WEEK = "2024-03-04"

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["ENV_MODE"] = "development"
os.environ["MOCK_FAILURE_RATE"] = "0"
os.environ["WEEK_KEY_OVERRIDE"] = TEST_WEEK
os.environ["SUMMARY_RECIPIENTS"] = "cocina@example.com,admin@example.com"
os.environ["EMPLOYEES"] = "user1,user2,user3"
os.environ["DATA_DIRECTORY"] = tempfile.mkdtemp(prefix="weekly_orders_test_")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from weekly_orders.core.weeks import WeekKeyResolver  # noqa: E402
from weekly_orders.database import Base  # noqa: E402
from weekly_orders import models  # noqa: E402,F401
from weekly_orders.services.cache import MemorySnapshotCache  # noqa: E402
from weekly_orders.services.feed import InMemoryChangeFeed  # noqa: E402
from weekly_orders.services.menu_service import MenuService  # noqa: E402
from weekly_orders.services.orders import OrderService  # noqa: E402
from weekly_orders.services.reconciler import ReconcilerRegistry  # noqa: E402


MENU = {
    "LUNES": ["Milanesa", "Ensalada"],
    "MARTES": ["Pastas"],
    "MIERCOLES": ["Pollo", "Tarta"],
    "JUEVES": ["Guiso"],
    "VIERNES": ["Pizza", "Empanadas"],
}


# -------------------------------
# Service-level fixtures
# -------------------------------
# Every test gets its own in-memory database, cache and feed, wired the
# same way weekly_orders.dependencies wires the process-wide instances.

@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest.fixture
async def broken_session_factory():
    """Sessions on a database without tables: every query fails."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def cache():
    return MemorySnapshotCache()


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def resolver():
    return WeekKeyResolver(override=TEST_WEEK)


@pytest.fixture
def menu_service(session_factory, cache, feed, resolver):
    return MenuService(session_factory=session_factory, cache=cache, feed=feed, resolver=resolver)


@pytest.fixture
def order_service(session_factory, feed, menu_service, resolver):
    return OrderService(session_factory=session_factory, feed=feed, menu_service=menu_service, resolver=resolver)


@pytest.fixture
def registry(session_factory, cache, feed, menu_service):
    reg = ReconcilerRegistry(
        session_factory=session_factory,
        cache=cache,
        feed=feed,
        menu_provider=menu_service.current_menu,
    )
    reg.attach()
    yield reg
    reg.detach()


# -------------------------------
# API fixtures
# -------------------------------

@pytest.fixture
def client(monkeypatch):
    from fastapi.testclient import TestClient

    from weekly_orders.database import drop_db, init_db
    from weekly_orders.dependencies import reset_services
    from weekly_orders.main import app
    from weekly_orders.services.notifications import mock

    # No simulated network delay in tests
    monkeypatch.setattr(mock.MockNotificationService, "_simulate_latency", _no_latency)

    reset_services()
    with TestClient(app) as test_client:
        test_client.portal.call(drop_db)
        test_client.portal.call(init_db)
        yield test_client
    reset_services()


async def _no_latency(self):
    return None


@pytest.fixture
def menu_payload():
    return {"menu": {day: list(options) for day, options in MENU.items()}}
