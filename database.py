"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the BMS workflow service.
"""

import logging
from typing import Generator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import ProgrammingError

from config import Config
from models import Base

logger = logging.getLogger(__name__)

# Register write-once field guards immediately after importing models
from utils.immutable_fields import register_immutable_field_guards  # noqa: E402

register_immutable_field_guards()

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def build_engine(database_url: str, **overrides):
    """
    Create an engine with pool settings suited to the backend.

    SQLite (development/tests) gets a thread-tolerant connection and no
    pool sizing; PostgreSQL gets the pre-ping pool used in production.
    """
    if database_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}, "echo": False}
    else:
        options = {
            "pool_size": Config.DATABASE_POOL_SIZE,
            "max_overflow": Config.DATABASE_MAX_OVERFLOW,
            "pool_pre_ping": True,    # Validate connections before use
            "pool_recycle": 3600,     # Recycle connections every hour
            "pool_timeout": 30,
            "echo": False,
            "connect_args": {
                "connect_timeout": 10,
                "application_name": "bms_workflow_core",  # For monitoring in pg_stat_activity
            },
        }
    options.update(overrides)
    return create_engine(database_url, **options)


engine = build_engine(Config.DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def create_tables(bind=None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind if bind is not None else engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        try:
            Base.metadata.create_all(bind=target, checkfirst=True)
        except ProgrammingError as e:
            # Indexes that already exist are expected on a warm database
            if "already exists" in str(e):
                logger.info(f"⚠️ Some database objects already exist (this is normal): {e}")
            else:
                raise

        existing_tables = inspect(target).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped session"""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def test_connection() -> bool:
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
