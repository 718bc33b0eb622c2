"""
Database connection and session management with centralized configuration.

Builds SQLAlchemy engines and session factories from ``DatabaseConfig`` and
creates the schema for fresh databases.
"""

from __future__ import annotations

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import DatabaseConfig, get_settings
from .logging import get_logger
from .models import Base

logger = get_logger(__name__)


def create_database_engine(config: DatabaseConfig | None = None) -> Engine:
    """
    Create SQLAlchemy engine with proper configuration.

    Example:
        >>> engine = create_database_engine(DatabaseConfig(sqlite_path="./marking.db"))
    """
    if config is None:
        config = get_settings().database

    connection_url = config.get_connection_url()
    engine_options = config.get_engine_options()

    logger.info(f"Creating database engine for {config.backend} backend")
    logger.debug(f"Connection URL: {connection_url.split('@')[0]}@***")

    try:
        engine = create_engine(connection_url, **engine_options)
        logger.info("Database engine created successfully")
        return engine
    except Exception as e:
        logger.error(f"Failed to create database engine: {str(e)}")
        raise


def create_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """
    Create SQLAlchemy session factory.

    Example:
        >>> SessionLocal = create_session_factory()
        >>> with SessionLocal() as session:
        ...     pass
    """
    if engine is None:
        engine = create_database_engine()

    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True
    )


def make_engine_and_session(connection_url: str | None = None) -> tuple[Engine, sessionmaker]:
    """
    Create engine and session factory, from an explicit URL or from configuration.

    Example:
        >>> engine, SessionLocal = make_engine_and_session("sqlite:///./marking.db")
    """
    if connection_url:
        engine = create_engine(connection_url, echo=False, future=True, pool_pre_ping=True)
        SessionLocal = create_session_factory(engine)
    else:
        engine = create_database_engine()
        SessionLocal = create_session_factory(engine)

    return engine, SessionLocal


def initialise_database(engine: Engine) -> bool:
    """
    Ensure all ORM tables exist.

    Returns:
        True if every table already existed before this call, False if at least one table
        needed to be created.
    """
    existing_tables = set(inspect(engine).get_table_names())
    expected_tables = [table.name for table in Base.metadata.sorted_tables]
    already_exists = all(table in existing_tables for table in expected_tables)
    Base.metadata.create_all(engine)
    if not already_exists:
        logger.info("Created missing marking tables")
    return already_exists


def is_database_configured() -> bool:
    try:
        get_settings().database.get_connection_url()
        return True
    except Exception as e:
        logger.warning(f"Database configuration invalid: {str(e)}")
        return False
