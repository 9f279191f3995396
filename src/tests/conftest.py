import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool
from townbook.db import Base
from townbook import models
from townbook.actions import register_user

class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.broadcasts = []

    async def notify(self, user_id, title, message, type=models.NotificationType.RESERVATION, related_id=None):
        self.sent.append({"user_id": user_id, "title": title, "message": message, "related_id": related_id})

    async def notify_role(self, role, title, message, type=models.NotificationType.RESERVATION, related_id=None):
        self.broadcasts.append({"role": role, "title": title, "message": message, "type": type, "related_id": related_id})

@pytest_asyncio.fixture
async def async_engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False, future=True, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()

@pytest_asyncio.fixture
async def session_factory(async_engine):
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)

@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        try:
            yield s
        finally:
            await s.rollback()

@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    # one connection per session, for tests that run transitions side by side
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'townbook.db'}", echo=False, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        await engine.dispose()

@pytest_asyncio.fixture
async def notifier():
    return RecordingNotifier()

@pytest_asyncio.fixture
async def member(session):
    r = await register_user(session, name="Alice Reader", email="alice@example.com")
    return r["data"]

@pytest_asyncio.fixture
async def librarian(session):
    r = await register_user(session, name="Bob Librarian", email="bob@example.com", role=models.Role.LIBRARIAN)
    return r["data"]
