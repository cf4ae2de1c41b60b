"""
Settlement Engine Database Layer
================================

Engine, session factory and schema bootstrap. Services receive a session
factory and open short unit-of-work sessions through managed_session().
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, text, inspect
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import ProgrammingError
from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _engine_kwargs(url: str) -> dict:
    """Pool settings per backend; SQLite has no server-side pool or connect timeout"""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "poolclass": QueuePool,
        "pool_size": 7,
        "max_overflow": 15,
        "pool_pre_ping": True,     # Validate connections before use
        "pool_recycle": 3600,      # Recycle connections every hour
        "pool_timeout": 30,
        "connect_args": {
            "connect_timeout": 10,
            "application_name": "settlement_reconciliation_engine",
        },
    }


engine = create_engine(
    Config.DATABASE_URL,
    echo=Config.DATABASE_ECHO,
    **_engine_kwargs(Config.DATABASE_URL),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(bind=None) -> bool:
    """Create missing tables for the settlement models; False when the schema could not be verified"""
    target = bind or engine
    try:
        logger.info(f"🏗️ SCHEMA_BOOTSTRAP: ensuring {len(Base.metadata.tables)} settlement tables")
        try:
            Base.metadata.create_all(bind=target, checkfirst=True)
        except ProgrammingError as e:
            # Indexes surviving from an earlier deploy are expected
            if "already exists" not in str(e):
                raise
            logger.info(f"⚠️ SCHEMA_OBJECTS_EXIST: {e}")

        tables = sorted(inspect(target).get_table_names())
        logger.info(f"✅ SCHEMA_READY: {len(tables)} tables ({', '.join(tables)})")
        return True
    except Exception as e:
        logger.error(f"❌ SCHEMA_BOOTSTRAP_FAILED: {e}")
        return False


@contextmanager
def managed_session(session_factory=None):
    """One unit of work: commit on success, roll back and re-raise on error"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def test_connection(bind=None) -> bool:
    """Readiness check used by /health"""
    try:
        with (bind or engine).connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False


def get_pool_stats():
    """Connection pool counters for the health endpoint"""
    pool = engine.pool
    if not isinstance(pool, QueuePool):
        return {"pool_class": type(pool).__name__}
    try:
        return {
            "pool_size": pool.size(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
        }
    except Exception as e:
        logger.error(f"❌ Error getting pool stats: {e}")
        return {"error": str(e)}
