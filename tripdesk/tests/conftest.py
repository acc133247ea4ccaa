"""
Centralized Test Configuration.
"""

from types import SimpleNamespace

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import Pool, StaticPool

from tripdesk.app.main import app
from tripdesk.app.db.session import get_db, get_session_factory, Base
from tripdesk.app.models.enums import UserRole
from tripdesk.app.models.fleet_vehicle import FleetVehicle
from tripdesk.app.models.trip_enums import TripRequestStatus
from tripdesk.app.models.trip_purpose import TripPurpose
from tripdesk.app.models.trip_request import TripRequest
from tripdesk.app.models.user import User
from tripdesk.app.services.notification_service import get_notifier
from tripdesk.app.domain.scheduling.booking_lock import BookingLock, get_booking_lock
from tripdesk.app.domain.scheduling.lifecycle import ScheduleLifecycleManager
from tripdesk.tests.helpers import FakeNotifier

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)).lower():
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def booking_lock():
    return BookingLock(timeout=2.0)


@pytest.fixture
async def manager(notifier, booking_lock):
    """Lifecycle manager on its own session, like a request handler would have."""
    async with TestingSessionLocal() as session:
        yield ScheduleLifecycleManager(session, notifier=notifier, booking_lock=booking_lock)


@pytest.fixture
async def client(notifier, booking_lock):
    """Async client for testing, wired to the in-memory database and fake notifier."""
    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_booking_lock] = lambda: booking_lock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}


@pytest.fixture
async def seed(db_session):
    """
    Users, vehicles, purposes and trip requests shared by most tests.

    Every user has one device token so notification tests can count deliveries.
    """
    def user(name, role, active=True):
        slug = name.lower().replace(" ", ".")
        return User(
            name=name, email=f"{slug}@example.com", phone="+100000000",
            role=role, is_active=active, fcm_tokens=[f"token-{slug}"],
        )

    scheduler = user("Sam Scheduler", UserRole.SCHEDULER)
    admin = user("Ada Admin", UserRole.ADMIN)
    super_admin = user("Sue Super", UserRole.SUPER_ADMIN)
    driver = user("Dan Driver", UserRole.DRIVER)
    other_driver = user("Olga Driver", UserRole.DRIVER)
    retired_driver = user("Rita Retired", UserRole.DRIVER, active=False)
    requestor = user("Rob Requestor", UserRole.REQUESTOR)
    other_requestor = user("Rachel Requestor", UserRole.REQUESTOR)
    db_session.add_all([
        scheduler, admin, super_admin, driver, other_driver,
        retired_driver, requestor, other_requestor,
    ])

    van = FleetVehicle(name="Transit Van", plate_number="KA-01-1234", vehicle_type="Van")
    car = FleetVehicle(name="Sedan", plate_number="KA-02-5678", vehicle_type="Car")
    scrapped = FleetVehicle(name="Old Truck", plate_number="KA-03-0000", vehicle_type="Truck", is_active=False)
    db_session.add_all([van, car, scrapped])

    visit = TripPurpose(name="Client visit")
    delivery = TripPurpose(name="Delivery", job_card_needed=True)
    db_session.add_all([visit, delivery])
    await db_session.flush()

    def request(destination, purpose, owner, status=TripRequestStatus.PENDING):
        return TripRequest(
            destination=destination, purpose_id=purpose.id, no_of_people=2,
            created_by=owner.id, status=status,
        )

    airport = request("Airport", visit, requestor)
    warehouse = request("Warehouse", delivery, other_requestor)
    harbour = request("Harbour", visit, requestor)
    withdrawn = request("Stadium", visit, requestor, status=TripRequestStatus.CANCELLED)
    db_session.add_all([airport, warehouse, harbour, withdrawn])
    await db_session.commit()

    return SimpleNamespace(
        scheduler=scheduler, admin=admin, super_admin=super_admin,
        driver=driver, other_driver=other_driver, retired_driver=retired_driver,
        requestor=requestor, other_requestor=other_requestor,
        van=van, car=car, scrapped=scrapped,
        visit=visit, delivery=delivery,
        airport=airport, warehouse=warehouse, harbour=harbour, withdrawn=withdrawn,
    )

