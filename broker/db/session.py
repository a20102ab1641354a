# broker/db/session.py
"""Database engine factory and initialization."""

from pathlib import Path

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine
from sqlmodel.pool import StaticPool


def make_engine(database_url: str) -> Engine:
    """
    Create an engine for database_url (EngineSettings.database_url) and make
    sure the tables exist. In-memory SQLite shares one connection so every
    session sees the same data.
    """
    if database_url.startswith("sqlite:///") and ":memory:" not in database_url:
        db_path = database_url.replace("sqlite:///", "")
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    kwargs = {}
    if "sqlite" in database_url:
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, echo=False, **kwargs)
    init_db(engine)
    return engine


def init_db(engine: Engine) -> None:
    """Create all tables if they don't exist."""
    # Register table metadata
    import broker.db.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
