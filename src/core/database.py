from sqlalchemy import event
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, Session, create_engine

from src.core.config import settings

# Import ALL models to ensure they're registered with SQLModel.metadata
from src.modules.wardrobe.models import ImageRecord  # noqa: F401


def build_engine(url: str, **kwargs):
    """Create a sync engine; pipeline workers and API threads share it."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(url, echo=False, **kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


engine = build_engine(settings.DATABASE_URL)

# Session factory used by the tracker and request handlers
session_maker = sessionmaker(engine, class_=Session, expire_on_commit=False)


def create_db_and_tables(bind=None):
    """Create all tables if they don't exist."""
    SQLModel.metadata.create_all(bind or engine, checkfirst=True)
