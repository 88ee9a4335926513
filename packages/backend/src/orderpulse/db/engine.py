"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode. create_async_engine pools connections,
and async_sessionmaker hands out one AsyncSession per unit of work. The
engine connects lazily, so importing this module never touches Postgres.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from orderpulse.config import settings

# Connection pool: min 5, max 20 connections.
# echo=True in dev to see SQL queries.
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=15,
)

# Session factory: the record store opens one per operation.
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
