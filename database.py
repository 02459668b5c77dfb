"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the escrow settlement service.
"""

import logging
from contextlib import contextmanager
from typing import Optional
from sqlalchemy import create_engine, event, text, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def _build_engine(database_url: str) -> Engine:
    """Create an engine; SQLite gets foreign keys and cross-thread access enabled"""
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("sqlite"):
        sqlite_engine = create_engine(
            database_url,
            echo=Config.SQL_ECHO,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(sqlite_engine, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return sqlite_engine

    return create_engine(
        database_url,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=Config.SQL_ECHO,
    )


engine = _build_engine(Config.DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine,
)


def configure_database(database_url: str) -> Engine:
    """Rebind the session factory to another database (tests, CLI overrides)"""
    global engine
    old_engine = engine
    engine = _build_engine(database_url)
    SessionLocal.configure(bind=engine)
    old_engine.dispose()
    logger.info(f"🔧 DATABASE: Session factory bound to {engine.url.render_as_string(hide_password=True)}")
    return engine


def create_tables(bind: Optional[Engine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    Base.metadata.create_all(bind=target, checkfirst=True)
    existing_tables = inspect(target).get_table_names()
    logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
    return True


def drop_tables(bind: Optional[Engine] = None) -> None:
    Base.metadata.drop_all(bind=bind or engine)


@contextmanager
def managed_session():
    """Sync context manager for database sessions"""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def check_connection() -> bool:
    """Run SELECT 1 against the current engine"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection check successful")
            return True
    except OperationalError as e:
        logger.error(f"❌ Database connection check failed: {e}")
        return False
