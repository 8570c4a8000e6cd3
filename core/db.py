# core/db.py
"""
Database management for the commission engine.
Single database, shared engine and session factory.
"""
import logging
from contextlib import contextmanager
from typing import List

from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, Session

from config import Config
from models.base import Base

logger = logging.getLogger(__name__)

# Database engines
_engine = None
_SessionFactory = None


def get_engine():
    """Get or create database engine."""
    global _engine
    if _engine is None:
        database_url = Config.get(Config.DATABASE_URL, "sqlite:///commissions.db")
        _engine = create_engine(
            database_url,
            echo=False,
            pool_pre_ping=True
        )
        logger.info(f"Database engine created: {database_url}")
    return _engine


def get_session_factory():
    """Get or create session factory."""
    global _SessionFactory
    if _SessionFactory is None:
        engine = get_engine()
        _SessionFactory = sessionmaker(bind=engine)
        logger.info("Session factory created")
    return _SessionFactory


def get_session() -> Session:
    """
    Get a new database session.

    Returns:
        Session instance
    """
    factory = get_session_factory()
    return factory()


@contextmanager
def get_db_session_ctx(session_factory=None):
    """
    Context manager for database sessions.

    Usage:
        with get_db_session_ctx() as session:
            item = session.query(CommissionLineItem).first()
    """
    session = session_factory() if session_factory else get_session()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database error: {e}")
        raise
    finally:
        session.close()


def setup_database(engine=None) -> List[str]:
    """
    Create the engine tables and register the ledger protection listeners.
    Existing tables are left untouched.

    Returns:
        Names of the tables known to the database after setup
    """
    import models  # noqa: F401  registers all tables on Base.metadata
    from models.listeners import register_all_listeners

    engine = engine or get_engine()
    logger.info("Setting up commission database...")
    Base.metadata.create_all(engine)
    register_all_listeners()

    tables = sorted(inspect(engine).get_table_names())
    logger.info(f"Commission database ready: {', '.join(tables)}")
    return tables
