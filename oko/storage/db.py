"""
Database engine and session management.

PostgreSQL in production. SQLite (including in-memory) is accepted for local
dry runs and tests.
"""
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from oko.monitoring.logger import get_logger

logger = get_logger(__name__)

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: postgresql:// or sqlite:// connection string
        """
        self.database_url = database_url

        if database_url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
                # One shared connection so every session sees the same in-memory database
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, echo=False, **kwargs)
        elif database_url.startswith("postgresql"):
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=5,
                max_overflow=10,
                pool_recycle=3600,  # Recycle connections after 1 hour
                pool_timeout=30,
            )
        else:
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Use a postgresql:// or sqlite:// connection string."
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        """Create all tables."""
        # Registers the ORM models on Base.metadata
        import oko.storage.repository  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("DATABASE_READY", dialect=self.engine.dialect.name)

    def drop_all(self) -> None:
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Commits on success, rolls back and re-raises on any error.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
