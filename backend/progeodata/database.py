"""Database connection and session management."""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from progeodata.config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Worker threads share the engine
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": 20, "max_overflow": 10}


def build_engine(url: str):
    """Create an engine for the given URL."""
    return create_engine(
        url,
        echo=settings.DB_ECHO or settings.LOG_LEVEL == "DEBUG",
        **_engine_kwargs(url)
    )


# Create engine
engine = build_engine(settings.DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False
)

# Base class for models
Base = declarative_base()


def get_db():
    """Dependency to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Create all pipeline tables."""
    # Register models with the metadata
    from progeodata import models  # noqa: F401
    
    Base.metadata.create_all(bind=bind or engine)
