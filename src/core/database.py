
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel

from src.core.config import settings

# Import ALL models to ensure they're registered with SQLModel.metadata
from src.modules.aggregation.models import AggregationJob  # noqa: F401


def build_engine(database_url: str = settings.DATABASE_URL) -> Engine:
    """Create a sync engine. API handlers and Celery workers share the same access path."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Runs may be appended from several threads of the same process
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, echo=False, connect_args=connect_args)


engine = build_engine()


def create_db_and_tables(bind: Engine = engine):
    """Create all tables if they don't exist."""
    SQLModel.metadata.create_all(bind, checkfirst=True)
