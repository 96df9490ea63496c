"""
Database Configuration and Session Management
============================================

Main database engine, session factory and table creation for the
marketplace order and dispute engine.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def enable_sqlite_savepoints(target_engine: Engine) -> None:
    """
    Let pysqlite honour SAVEPOINT.

    The driver's implicit BEGIN handling breaks nested transactions, so the
    engine emits BEGIN itself. Audit and notification writes rely on savepoints.
    """

    @event.listens_for(target_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with pool settings suited to the backend"""
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("sqlite"):
        sqlite_engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
        enable_sqlite_savepoints(sqlite_engine)
        return sqlite_engine

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=echo,
    )


engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

SessionLocal = sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)


def create_tables(target_engine: Engine = None):
    """Create all tables defined on the declarative base"""
    target_engine = target_engine or engine
    try:
        Base.metadata.create_all(bind=target_engine)
        logger.info("✅ Database tables created successfully")
    except OperationalError as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        raise


def test_connection() -> bool:
    """Check that the database answers a trivial query"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


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
