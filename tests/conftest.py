import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from workflow_builder.api.dependencies import get_activity_log, get_current_user_id, get_database, get_rule_cache
from workflow_builder.core.cache import TTLCache
from workflow_builder.main import app
from workflow_builder.models import Base
from workflow_builder.repositories.node_definition_repository import NodeDefinitionRepository
from workflow_builder.schemas.node_definition import NodeDefinitionCreate
from workflow_builder.services.node_registry import NodeRegistryService
from workflow_builder.services.validation_service import ValidationService
from workflow_builder.services.versioning_service import NodeDefinitionService
from workflow_builder.services.workflow_service import WorkflowService

# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingActivityLog:
    """Stands in for the activity-log publisher and keeps every event"""

    def __init__(self):
        self.events = []

    def publish(self, user_id, entity_type, action_name, entity_id):
        self.events.append((user_id, entity_type, action_name, str(entity_id)))


@pytest.fixture
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def test_session(test_engine):
    """Create test database session"""
    async_session_maker = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )

    async with async_session_maker() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rule_cache(clock):
    return TTLCache(ttl_seconds=300, clock=clock)


@pytest.fixture
def activity_log():
    return RecordingActivityLog()


@pytest.fixture
def registry(test_session):
    return NodeRegistryService(NodeDefinitionRepository(test_session))


@pytest.fixture
def validation_service(registry, rule_cache):
    return ValidationService(registry, rule_cache)


@pytest.fixture
def workflow_service(test_session, validation_service, registry, activity_log):
    return WorkflowService(test_session, validation_service, registry, activity_log)


@pytest.fixture
def definition_service(test_session, registry, validation_service, activity_log):
    return NodeDefinitionService(test_session, registry, validation_service, activity_log)


@pytest.fixture
async def file_engine(tmp_path):
    """File-backed database: each session gets its own connection"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'builder.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(file_engine):
    return async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
def make_services(rule_cache, activity_log):
    """Workflow and definition services bound to one session, as a request would see them"""
    def _make(session):
        registry = NodeRegistryService(NodeDefinitionRepository(session))
        validation = ValidationService(registry, rule_cache)
        return (
            WorkflowService(session, validation, registry, activity_log),
            NodeDefinitionService(session, registry, validation, activity_log),
        )

    return _make


@pytest.fixture
async def socket_types(test_session):
    """Text, image and video socket types"""
    repository = NodeDefinitionRepository(test_session)
    created = {}
    for name, color in (("Text", "#3B82F6"), ("Image", "#10B981"), ("Video", "#F59E0B")):
        created[name.lower()] = await repository.create_socket_type(name=name, slug=name.lower(), color_hex=color)
    await test_session.commit()
    return created


@pytest.fixture
def mock_user():
    """Mock user data"""
    return {
        "id": str(uuid.uuid4()),
        "email": "test@example.com",
        "name": "Test User"
    }


@pytest.fixture
async def test_client(test_session, rule_cache, activity_log, mock_user):
    """Create test client with database and auth overrides"""

    async def override_get_database():
        yield test_session

    app.dependency_overrides[get_database] = override_get_database
    app.dependency_overrides[get_current_user_id] = lambda: mock_user["id"]
    app.dependency_overrides[get_rule_cache] = lambda: rule_cache
    app.dependency_overrides[get_activity_log] = lambda: activity_log

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def make_definition(definition_service, socket_types):
    """Create a node definition; sockets are given as {"name", "socket", ...} dicts"""
    async def _make(
        slug="flux-pro",
        status="active",
        inputs=(),
        outputs=(),
        pricing=None,
        config_schema=None,
        version="1.0.0",
        kind="AI_MODEL",
    ):
        io_definitions = []
        for direction, sockets in (("INPUT", inputs), ("OUTPUT", outputs)):
            for order, socket in enumerate(sockets):
                spec = dict(socket)
                socket_name = spec.pop("socket", "text")
                io_definitions.append({
                    "direction": direction,
                    "socket_type_id": socket_types[socket_name].id,
                    "sort_order": order,
                    **spec,
                })
        request = NodeDefinitionCreate(
            kind=kind,
            slug=slug,
            name=slug.replace("-", " ").title(),
            version=version,
            status=status,
            config_schema=config_schema or {},
            pricing_config=pricing,
            io_definitions=io_definitions,
        )
        return await definition_service.create_definition(request)

    return _make
