import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from reconciler.models import Base


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so concurrent sessions get separate connections
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
def count_rows(session_factory):
    async def count(model, *criteria):
        query = select(func.count()).select_from(model)
        if criteria:
            query = query.where(*criteria)
        async with session_factory() as session:
            return await session.scalar(query)
    return count


@pytest.fixture
def fetch_one(session_factory):
    async def fetch(model, *criteria):
        query = select(model)
        if criteria:
            query = query.where(*criteria)
        async with session_factory() as session:
            return await session.scalar(query)
    return fetch
