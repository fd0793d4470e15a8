"""Async database connection and session management utilities."""

import os
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker
)
from sqlalchemy.pool import NullPool
from sqlalchemy import text
import logging

from .models import Base
from .validators import validate_database_compatibility_async

logger = logging.getLogger(__name__)

# Audit rows are immutable once written.
AUDIT_IMMUTABILITY_DDL = [
    """
    CREATE OR REPLACE FUNCTION insurance_audit_log_immutable()
    RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION 'insurance_audit_log is append-only (% rejected)', TG_OP;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS insurance_audit_log_no_update ON insurance_audit_log",
    """
    CREATE TRIGGER insurance_audit_log_no_update
    BEFORE UPDATE ON insurance_audit_log
    FOR EACH ROW EXECUTE FUNCTION insurance_audit_log_immutable()
    """,
    "DROP TRIGGER IF EXISTS insurance_audit_log_no_delete ON insurance_audit_log",
    """
    CREATE TRIGGER insurance_audit_log_no_delete
    BEFORE DELETE ON insurance_audit_log
    FOR EACH ROW EXECUTE FUNCTION insurance_audit_log_immutable()
    """,
]


class DatabaseManager:
    """Manages async database connections with connection pooling."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database manager.

        Args:
            database_url: PostgreSQL connection string. If not provided,
                         will use DATABASE_URL environment variable.
        """
        self.database_url = database_url or os.getenv("DATABASE_URL")
        if not self.database_url:
            raise ValueError("DATABASE_URL not provided or set in environment")

        # Convert to async URL if needed
        if self.database_url.startswith("postgresql://"):
            self.database_url = self.database_url.replace(
                "postgresql://", "postgresql+asyncpg://"
            )
        elif not self.database_url.startswith("postgresql+asyncpg://"):
            raise ValueError("Database URL must be PostgreSQL")

        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine

    async def initialize(self, validate: bool = True, **engine_kwargs):
        """Initialize the database engine and session factory.

        Args:
            validate: Check PostgreSQL version and extensions on connect
            **engine_kwargs: Additional arguments for create_async_engine
        """
        if self._engine is not None:
            return

        default_config = {
            "echo": os.getenv("SQL_ECHO", "false").lower() == "true",
            "pool_size": int(os.getenv("DB_POOL_SIZE", "5")),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
            "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "3600")),
            "pool_pre_ping": True,
        }

        # Use NullPool for serverless environments
        if os.getenv("SERVERLESS", "false").lower() == "true":
            default_config["poolclass"] = NullPool
            default_config.pop("pool_size", None)
            default_config.pop("max_overflow", None)

        config = {**default_config, **engine_kwargs}
        if config.get("poolclass") is NullPool:
            config.pop("pool_size", None)
            config.pop("max_overflow", None)

        self._engine = create_async_engine(self.database_url, **config)
        self._sessionmaker = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
                logger.info("Database connection established")

                if validate:
                    raw_conn = await conn.get_raw_connection()
                    asyncpg_conn = raw_conn.driver_connection
                    await validate_database_compatibility_async(asyncpg_conn)

        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            await self.close()
            raise

    async def create_schema(self):
        """Create broker tables and install the audit immutability triggers."""
        if self._engine is None:
            await self.initialize()

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            for statement in AUDIT_IMMUTABILITY_DDL:
                await conn.execute(text(statement))
        logger.info("Broker schema created")

    async def drop_schema(self):
        """Drop broker tables. Intended for test databases only."""
        if self._engine is None:
            await self.initialize()

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.execute(text("DROP FUNCTION IF EXISTS insurance_audit_log_immutable() CASCADE"))

    async def close(self):
        """Close the database engine."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an async database session.

        Yields:
            AsyncSession: Database session for executing queries

        Example:
            async with db_manager.get_session() as session:
                result = await session.execute(select(PayerIntegration))
                payers = result.scalars().all()
        """
        if self._sessionmaker is None:
            await self.initialize()

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> bool:
        """Check if database is accessible.

        Returns:
            bool: True if database is healthy
        """
        try:
            async with self.get_session() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False
