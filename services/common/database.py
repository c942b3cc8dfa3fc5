"""
Engine and session helpers shared by the services.

Each service keeps its own database; this module only builds the engine,
the session factory and the FastAPI session dependency for a given URL.
"""
from typing import Callable, Iterator, Tuple
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


def create_session_factory(database_url: str, **connect_args) -> Tuple[Engine, sessionmaker]:
    """
    Create an engine and a session factory for a database URL.

    SQLite connections are shared between the HTTP worker threads and the
    consumer threads, so thread checking is disabled for them.

    Args:
        database_url: SQLAlchemy database URL
        **connect_args: Extra DBAPI connect arguments

    Returns:
        Tuple of (engine, session factory)
    """
    if database_url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
    return engine, sessionmaker(autocommit=False, autoflush=False, bind=engine)


def session_dependency(session_factory: Callable[[], Session]) -> Callable[[], Iterator[Session]]:
    """Build a FastAPI dependency that yields one session per request."""

    def get_db() -> Iterator[Session]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return get_db
