# tests/conftest.py — Shared test fixtures
import os
import uuid

import fakeredis
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("RESEND_API_KEY", None)

from models import Base, User, UserRole
from auth import AuthService
from database import get_db_session
from jobs.dispatcher import init_job_dispatcher, get_job_dispatcher
from routers.chat_gateway import gateway, ChatSessionRegistry
from main import app


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis_client():
    """In-memory Redis standing in for the queue store"""
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def dispatcher(redis_client):
    dispatcher = init_job_dispatcher(redis_client)
    gateway.dispatcher = dispatcher
    yield dispatcher
    gateway.dispatcher = None


@pytest.fixture
def chat_gateway(session_factory, dispatcher):
    """The app's gateway with a fresh registry bound to the test database"""
    gateway.registry = ChatSessionRegistry()
    gateway.session_factory = session_factory
    yield gateway
    gateway.registry = ChatSessionRegistry()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, dispatcher, chat_gateway):
    """HTTP test client with overridden DB and dispatcher dependencies"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_job_dispatcher] = lambda: dispatcher
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _make_user(db_session, email, display_name, password, role=UserRole.USER, **extra):
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=display_name,
        password_hash=AuthService.hash_password(password),
        role=role,
        is_active=True,
        **extra,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    """Create a test user"""
    return await _make_user(db_session, "testuser@collabute.dev", "Test User", "TestPassword123!")


@pytest_asyncio.fixture
async def other_user(db_session):
    """A second regular user"""
    return await _make_user(db_session, "other@collabute.dev", "Other User", "OtherPassword123!")


@pytest_asyncio.fixture
async def third_user(db_session):
    return await _make_user(db_session, "third@collabute.dev", "Third User", "ThirdPassword123!")


@pytest_asyncio.fixture
async def admin_user(db_session):
    """Create a platform admin"""
    return await _make_user(
        db_session, "admin@collabute.dev", "Admin User", "AdminPassword123!", role=UserRole.ADMIN,
    )


@pytest_asyncio.fixture
async def github_user(db_session):
    """A user who has linked a GitHub access token"""
    return await _make_user(
        db_session, "octo@collabute.dev", "Octo User", "OctoPassword123!",
        github_username="octocat", github_access_token="gho_test_token",
    )


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    return {"Authorization": f"Bearer {get_token(user)}"}


def get_token(user: User) -> str:
    return AuthService.create_access_token({
        "sub": user.id,
        "email": user.email,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
    })


class FakeWebSocket:
    """Records frames sent by the chat gateway"""

    def __init__(self, token=None, headers=None, fail_sends=False):
        self.query_params = {"token": token} if token else {}
        self.headers = headers or {}
        self.sent = []
        self.accepted = False
        self.close_code = None
        self.fail_sends = fail_sends

    async def accept(self):
        self.accepted = True

    async def close(self, code=1000, reason=None):
        self.close_code = code

    async def send_json(self, data):
        if self.fail_sends:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def events(self, event_type):
        return [frame for frame in self.sent if frame["type"] == event_type]
