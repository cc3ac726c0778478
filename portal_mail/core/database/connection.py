"""
Database connection and session management.

The engines run on a synchronous SQLAlchemy session; background jobs and
API requests each open their own session from the shared factory.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import OperationalError, DBAPIError
from typing import Generator, Optional, Callable
import logging
import time

from portal_mail.core.config import get_settings

logger = logging.getLogger(__name__)

engine = None
SessionLocal = None


def _normalize_url(url: str) -> str:
    # Some hosting providers still hand out postgres:// URLs
    if url.startswith('postgres://'):
        return url.replace('postgres://', 'postgresql://', 1)
    return url


def init_db(database_url: Optional[str] = None, max_retries: int = 3, retry_delay: float = 1.0):
    """
    Initialize the database engine and session factory with retry logic.
    Call this once at application startup.

    Args:
        database_url: Override for DATABASE_URL (tests, CLI)
        max_retries: Number of connection attempts
        retry_delay: Seconds to wait between retries

    Raises:
        RuntimeError: If connection fails after all retries
    """
    global engine, SessionLocal

    settings = get_settings()
    url = _normalize_url(database_url or settings.database_url)
    if not url:
        logger.warning("DATABASE_URL not set - database features disabled")
        return

    kwargs = {'pool_pre_ping': True, 'echo': False}
    if url.startswith('postgresql'):
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_recycle=3600,
            connect_args={'connect_timeout': 10},
        )

    for attempt in range(max_retries):
        try:
            engine = create_engine(url, **kwargs)

            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

            logger.info(f"Database initialized: {url.split('@')[1] if '@' in url else 'local'}")
            return

        except (OperationalError, DBAPIError) as e:
            logger.warning(f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}")
            if attempt < max_retries - 1:
                time.sleep(retry_delay * (attempt + 1))
            else:
                logger.error(f"Database initialization failed after {max_retries} attempts")
                raise RuntimeError(f"Failed to connect to database: {e}") from e


def get_session_factory() -> Callable[[], Session]:
    """Return the session factory for code that manages its own sessions (jobs, CLI)."""
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Get a database session (FastAPI dependency).

    Usage:
        @router.get("/threads")
        async def list_threads(db: Session = Depends(get_db)):
            ...
    """
    if not SessionLocal:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    db = SessionLocal()
    try:
        yield db
    except (OperationalError, DBAPIError) as e:
        logger.error(f"Database session error: {e}")
        db.rollback()
        raise
    finally:
        db.close()


def create_tables():
    """
    Create all tables in the database.
    Only use for initial setup - prefer Alembic migrations for production.
    """
    if not engine:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    from .models import Base
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")
