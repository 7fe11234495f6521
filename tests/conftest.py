import pytest
import uuid
from datetime import datetime, timedelta
from jose import jwt
from sqlalchemy.ext.asyncio import create_async_engine
from courier_dispatch.config.settings import Config
from courier_dispatch.core.db_config import create_session_factory
from courier_dispatch.models.base_model import Base
from courier_dispatch.services.assignment_engine import AssignmentEngine
from courier_dispatch.services.courier_service import CourierService
from courier_dispatch.services.geo_index import KM_PER_DEGREE
from courier_dispatch.services.notification_service import NotificationService
from courier_dispatch.services.order_service import OrderService

# Connaught Place, New Delhi
PICKUP = (28.6315, 77.2167)


def north_of_pickup(km: float) -> tuple:
    return PICKUP[0] + km / KM_PER_DEGREE, PICKUP[1]


class FakeClock:
    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class TestConfig(Config):
    def __init__(self):
        self.APP_ENV = "testing"
        self.DEBUG = False
        self.PORT = 5000
        self.HOST = "127.0.0.1"
        self.SECRET_KEY = "test-secret-key"
        self.JWT_ALGORITHM = "HS256"
        self.DATABASE_URL = "sqlite+aiosqlite:///:memory:"
        self.DB_HOST = None
        self.DB_PORT = None
        self.DB_NAME = None
        self.DB_USER = None
        self.DB_PASSWORD = None
        self.SEARCH_RADII_KM = [5.0, 10.0, 15.0]
        self.MAX_OFFERS = 3
        self.OFFER_TTL_SECONDS = 120
        self.MAX_ESCALATIONS = 1
        self.LOCATION_FRESHNESS_SECONDS = 300
        self.DEFAULT_COURIER_RATING = 4.5
        self.STORE_RETRY_ATTEMPTS = 3
        self.STORE_RETRY_BACKOFF_SECONDS = 0
        self.EXPIRY_SWEEP_INTERVAL_SECONDS = 15
        self.LOG_LEVEL = "DEBUG"
        self.LOG_FILE = None
        self.ALLOWED_ORIGINS = "*"


@pytest.fixture
def config():
    return TestConfig()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def session_factory(tmp_path):
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}", echo=False)
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(db_engine)
    await db_engine.dispose()


@pytest.fixture
def notifications():
    service = NotificationService()
    service.received = []

    @service.subscribe
    async def record(notification_type, payload):
        service.received.append((notification_type, payload))

    return service


@pytest.fixture
def engine(config, session_factory, notifications, clock):
    return AssignmentEngine.from_config(config, session_factory, notifications=notifications, clock=clock)


@pytest.fixture
def order_service(session_factory):
    return OrderService(session_factory)


@pytest.fixture
def courier_service(session_factory, clock):
    return CourierService(session_factory, clock=clock)


@pytest.fixture
def make_courier(courier_service):
    async def _make(km_north: float = 1.0, rating: float = None, name: str = None, online: bool = True):
        created = await courier_service.create_courier(
            name=name or f"Courier {uuid.uuid4().hex[:6]}", phone="+91-98100-00000", rating=rating
        )
        courier_id = uuid.UUID(created["id"])
        latitude, longitude = north_of_pickup(km_north)
        await courier_service.update_location(courier_id, latitude, longitude)
        if not online:
            await courier_service.go_offline(courier_id)
        return courier_id
    return _make


@pytest.fixture
def make_ready_order(order_service):
    async def _make(location: tuple = PICKUP):
        created = await order_service.create_order(
            customer_name="Ananya Iyer",
            address="14 Barakhamba Road, New Delhi",
            pickup_latitude=location[0],
            pickup_longitude=location[1],
        )
        order_id = uuid.UUID(created["id"])
        await order_service.mark_ready(order_id)
        return order_id
    return _make


@pytest.fixture
def token_for(config):
    def _token(subject) -> str:
        return jwt.encode({"sub": str(subject)}, config.SECRET_KEY, algorithm=config.JWT_ALGORITHM)
    return _token
