"""
Metadata store engine and sessions.

PostgreSQL in production with a connection pool; SQLite (tests, local runs)
through a single shared connection.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Any, Dict, Generator
import logging

from stashbox.core.config import settings

logger = logging.getLogger(__name__)


def engine_options(database_url: str) -> Dict[str, Any]:
    """
    Engine keyword arguments for a database URL.

    SQLite (tests, local runs) shares one connection across threads;
    PostgreSQL gets a connection pool.
    """
    if make_url(database_url).get_backend_name() == "sqlite":
        return {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    return {
        "pool_pre_ping": True,  # Verify connections before using them
        "pool_size": 10,
        "max_overflow": 20,
        "pool_recycle": 3600,
    }


# Create database engine
engine = create_engine(settings.DATABASE_URL, echo=False, **engine_options(settings.DATABASE_URL))

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency function for FastAPI endpoints.
    Provides a database session and ensures cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def seed_plans(db: Session) -> int:
    """
    Insert catalog plans that do not exist yet.

    Returns:
        int: Number of plans inserted
    """
    from stashbox.models import Plan
    from stashbox.storage.plans import SEED_PLANS

    inserted = 0
    for plan_data in SEED_PLANS:
        if db.get(Plan, plan_data["id"]) is None:
            db.add(Plan(**plan_data))
            inserted += 1
    db.commit()
    return inserted


def init_db(bind=None) -> None:
    """
    Create tables and seed the plan catalog.

    NOTE: In production, use migrations instead.
    This function is for development/testing only.
    """
    from stashbox.models import Base

    bind = bind or engine
    logger.info("Initializing database tables...")
    Base.metadata.create_all(bind=bind)

    db = Session(bind=bind)
    try:
        inserted = seed_plans(db)
    finally:
        db.close()
    logger.info(f"Database tables initialized successfully ({inserted} plans seeded)")


def check_db_connection() -> bool:
    """True if the metadata store answers a trivial query."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Metadata store check failed: {e}")
        return False
