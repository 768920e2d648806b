"""Shared fixtures: a throwaway SQLite database and an app client with a fake caller."""

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ouroboros.auth import get_current_identity
from ouroboros.database import Base, get_db
from ouroboros.main import app
from ouroboros.models import DepartmentMember, User
from ouroboros.store import identity_from_user


class Caller:
    """Whoever the overridden auth dependency reports as logged in."""

    identity = None


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'portal.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(db):
    """Insert a user and return its Identity.

    memberships is a list of (department_id, rank_id) pairs.
    """
    async def _make(username, clearance_level, memberships=(), primary_department_id=None):
        user = User(
            id=uuid4(),
            subject=f"sub-{username}",
            username=username,
            clearance_level=clearance_level,
            primary_department_id=primary_department_id,
        )
        user.memberships = [
            DepartmentMember(id=uuid4(), department_id=dept_id, rank_id=rank_id)
            for dept_id, rank_id in memberships
        ]
        db.add(user)
        await db.commit()
        return identity_from_user(user)

    return _make


@pytest.fixture
def caller():
    return Caller()


@pytest.fixture
async def client(session_factory, caller):
    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_current_identity] = lambda: caller.identity
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
