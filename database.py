"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the payment verification service.
"""

import logging
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.exc import OperationalError
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def build_engine(database_url: str, echo: bool = False):
    """Create an engine tuned for the target backend"""
    if database_url.startswith("sqlite"):
        # In-memory databases must share one connection across sessions
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
    )


engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def create_tables(bind=None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info("✅ Database schema verified")
        return True
    except OperationalError as e:
        logger.error(f"❌ Failed to create database tables: {e}")
        return False


def handle_database_error(error: Exception) -> bool:
    """Return True when a failed transaction is worth retrying on a fresh connection"""
    message = str(error).lower()
    transient_markers = (
        "server closed the connection",
        "connection reset",
        "could not connect",
        "ssl connection has been closed",
        "database is locked",
        "deadlock detected",
        "could not serialize access",
    )
    retryable = any(marker in message for marker in transient_markers)
    if retryable:
        logger.warning(f"⚠️ Transient database error detected: {error}")
    return retryable


def check_connection(bind=None) -> bool:
    """Test database connection"""
    try:
        with (bind or engine).connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.debug("✅ Database connection test successful")
            return True
    except OperationalError as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
