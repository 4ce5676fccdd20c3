"""
Database setup and connection management for the ABAC subsystem.

This module handles:
- SQLAlchemy engine creation
- Session management
- Connection pooling configuration
- Table creation
"""

from contextlib import contextmanager
from typing import Generator, Optional
import logging

from sqlalchemy import create_engine, inspect, pool, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import SQLAlchemyError

from abac.config import ABACConfig
from abac.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Owns one engine and its session factory.

    Usage:
        db = Database(config)
        db.create_tables()
        with db.session_scope() as session:
            # Do database operations
            pass
    """

    def __init__(self, config: Optional[ABACConfig] = None):
        self.config = config or ABACConfig()
        self.engine = self._create_engine(self.config)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            expire_on_commit=False
        )
        logger.info(f"ABAC database initialized ({self.engine.dialect.name})")

    @staticmethod
    def _create_engine(config: ABACConfig):
        """Create SQLAlchemy engine with pooling"""
        url = config.database_url
        if config.is_sqlite:
            kwargs = {
                "echo": config.echo,
                "connect_args": {"check_same_thread": False},
            }
            # An in-memory database lives inside a single connection
            if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
                kwargs["poolclass"] = pool.StaticPool
            return create_engine(url, **kwargs)

        return create_engine(
            url,
            poolclass=pool.QueuePool,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,
            echo=config.echo,
            pool_timeout=30
        )

    def create_tables(self) -> None:
        """Create all ABAC tables that don't exist yet (idempotent)."""
        try:
            existing_tables = set(inspect(self.engine).get_table_names())
            Base.metadata.create_all(bind=self.engine, checkfirst=True)
            for table_name in Base.metadata.tables:
                if table_name not in existing_tables:
                    logger.info(f"Created table: {table_name}")
        except SQLAlchemyError as e:
            logger.error(f"Error creating tables: {e}")
            raise

    def drop_tables(self) -> None:
        """
        Drop all tables. USE WITH CAUTION (for testing only).
        """
        logger.warning("DROPPING ALL ABAC TABLES - THIS IS DESTRUCTIVE")
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Transactional scope: commit on success, rollback on error.

        Yields:
            SQLAlchemy Session
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception as e:
            try:
                session.rollback()
            except SQLAlchemyError as rollback_error:
                logger.error(f"Rollback failed: {rollback_error}")
            logger.error(f"Session error: {e}")
            raise
        finally:
            session.close()

    def get_session(self) -> Generator[Session, None, None]:
        """
        FastAPI dependency for getting a database session.

        Usage in FastAPI:

        @router.get("/rows")
        def rows(db: Session = Depends(database.get_session)):
            ...
        """
        with self.session_scope() as session:
            yield session

    def health_check(self) -> bool:
        """Check if database is healthy"""
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def dispose(self) -> None:
        self.engine.dispose()
