import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool, NullPool

from infrastructure.database import Base


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def db_session():
    from infrastructure import models

    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def session_factory(tmp_path):
    """Independent sessions over a file database, one connection each."""
    from infrastructure import models

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'paygate.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


async def create_account(session, account_id: str, balance: str):
    from infrastructure.repositories import AccountRepository

    account = await AccountRepository(session).credit(account_id, Decimal(balance))
    await session.commit()
    return account


async def create_service(
    session,
    owner: str = "0xseller",
    price: str = "0.1",
    endpoint_url: str = "https://seller.example/api",
    keywords=None,
    is_active: bool = True,
    name: str = "img-gen"
):
    from infrastructure.repositories import ServiceRepository
    from domain.entities import Service

    service = await ServiceRepository(session).create(
        Service(
            id=None,
            owner_account_id=owner,
            name=name,
            endpoint_url=endpoint_url,
            price_per_query=Decimal(price),
            keywords=list(keywords or []),
            is_active=is_active
        )
    )
    await session.commit()
    return service


async def create_session_token(
    session,
    account_id: str,
    token: str = "token-abc",
    ttl: timedelta = timedelta(hours=1)
) -> str:
    from infrastructure.repositories import SessionRepository
    from domain.entities import Session

    await SessionRepository(session).create(
        Session(
            token=token,
            account_id=account_id,
            expires_at=datetime.now(timezone.utc) + ttl
        )
    )
    await session.commit()
    return token


@pytest.fixture
async def buyer(db_session):
    return await create_account(db_session, "0xbuyer", "5.0")


@pytest.fixture
async def buyer_token(db_session, buyer):
    return await create_session_token(db_session, buyer.id)


@pytest.fixture
async def sample_service(db_session):
    return await create_service(
        db_session,
        keywords=["image", "draw"]
    )
