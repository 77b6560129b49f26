import logging

from sqlmodel import Session, SQLModel, create_engine

from workshop import models  # noqa: F401  registers the tables on SQLModel.metadata
from workshop.config import DATABASE_URL, SQL_ECHO

logger = logging.getLogger(__name__)


def build_engine(url: str = DATABASE_URL, echo: bool = SQL_ECHO):
    """
    Creates the SQLAlchemy engine.
    SQLite needs check_same_thread disabled because requests are served from a
    thread pool.
    """
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, connect_args=connect_args)


engine = build_engine()


def create_db_and_tables(bind=None):
    """
    Creates every table defined in the models.
    Called once at application startup.
    """
    SQLModel.metadata.create_all(bind or engine)
    logger.info("Database tables ready")


def get_session():
    """
    Dependency that yields a database session.
    The session is closed automatically at the end of the request.
    """
    with Session(engine) as session:
        yield session
