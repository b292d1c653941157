"""
Database connection and session handling.
PostgreSQL in production, SQLite accepted for local runs and tests.
"""
import os
from contextlib import contextmanager

from sqlalchemy import create_engine, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from dotenv import load_dotenv

from core.config import logger
from core.errors import MarketplaceError, PersistenceError

# Load environment variables from project root
env_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env')
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "")

if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required for database connection")


def build_engine(url: str):
    """Create an engine with pool settings suited to the backend."""
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)
    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        echo=False,  # Set to True for SQL query logging in development
    )


engine = build_engine(DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """
    Dependency for FastAPI routes to get database session
    Usage:
        @router.get("/items")
        def list_items(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session, scope: str):
    """
    Run a block as one transaction: commit on success, roll back on any error.

    Domain errors propagate unchanged. Storage errors are logged and surfaced
    as a retryable PersistenceError; the caller never sees a partial write.
    """
    try:
        yield db
        db.commit()
    except MarketplaceError:
        db.rollback()
        raise
    except SQLAlchemyError as ex:
        db.rollback()
        logger.exception(f"[{scope}] transaction rolled back: {ex}")
        raise PersistenceError(f"{scope} failed, nothing was saved; please retry") from ex
    except Exception:
        db.rollback()
        logger.exception(f"[{scope}] unexpected error, transaction rolled back")
        raise


def compare_and_set(db: Session, model, criteria: list, values: dict) -> bool:
    """
    Conditional UPDATE: apply `values` only where every criterion still holds.
    Returns False when no row matched, i.e. another writer got there first.
    """
    stmt = update(model).where(*criteria).values(values).execution_options(synchronize_session=False)
    result = db.execute(stmt)
    return result.rowcount == 1


def init_db():
    """
    Initialize database tables
    Call this on application startup
    """
    import_models()
    Base.metadata.create_all(bind=engine)


def import_models():
    """Import every model module so its tables are registered on Base.metadata."""
    from models import cart, catalog, coupons, customers, orders, partners, wallets  # noqa: F401
