from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .settings import config_settings

DATABASE_URL = config_settings.DATABASE_URL

# 1. SQLAlchemy Engine
# Manages the connection pool and dialect.
engine = create_engine(
    DATABASE_URL,
    # Only needed for SQLite to handle concurrent requests
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {},
)

# 2. SessionLocal
# Each request gets its own session (a unit of work).
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=engine):
    """Creates the document table if it does not exist yet."""
    from storefront_experiments.models.orm.base import Base
    from storefront_experiments.models.orm import document  # noqa: F401

    Base.metadata.create_all(bind=bind)


def get_db():
    """
    Dependency that yields a database session for a single request,
    and ensures the session is closed afterward.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """
    Dependency returning the session factory itself.

    Background tasks outlive the request-scoped session from ``get_db`` and
    open their own session through this factory.
    """
    return SessionLocal
