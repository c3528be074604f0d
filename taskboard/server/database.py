"""Database engine and session dependency for the reference backend."""

import logging

from sqlmodel import Session, SQLModel, create_engine

from taskboard.config import load_settings

logger = logging.getLogger(__name__)

DATABASE_URL = load_settings().database_url

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, echo=False, connect_args=_connect_args)


def create_db_and_tables() -> None:
    """Create every table declared on SQLModel metadata."""
    SQLModel.metadata.create_all(engine)
    logger.info("Database ready at %s", engine.url.render_as_string(hide_password=True))


def get_session():
    """Yield a database session for FastAPI dependency injection."""
    with Session(engine) as session:
        yield session
