import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pfs_automation import crud
from pfs_automation.db import build_engine, build_session_factory, create_schema, get_db
from pfs_automation.main import app
from pfs_automation.models import SetupStatus
from pfs_automation.schemas import ProjectCreate, StageCreate, TaskCreate

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine():
    engine = build_engine(TEST_DATABASE_URL)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def raw_client(session_factory):
    """API client on a fresh database where setup has not run yet"""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(raw_client, session_factory):
    """API client with setup already completed"""
    async with session_factory() as session:
        session.add(SetupStatus(is_setup_complete=True))
        await session.commit()
    return raw_client


@pytest_asyncio.fixture
async def project(db):
    return await crud.create_project(db, ProjectCreate(project_name="Website relaunch"))


@pytest_asyncio.fixture
async def stage(db, project):
    return await crud.create_stage(db, project.id, StageCreate(stage_name="Design"))


@pytest.fixture
def make_task(db, project):
    async def _make(name, sold_days=0, status="todo", parent=None, stage=None, project_id=None):
        return await crud.create_task(
            db,
            project_id or project.id,
            TaskCreate(
                task_name=name,
                sold_days=sold_days,
                status=status,
                parent_task_id=parent.id if parent is not None else None,
                stage_id=stage.id if stage is not None else None,
            ),
        )
    return _make
