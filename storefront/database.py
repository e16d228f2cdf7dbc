"""
Database configuration and session management for the storefront service.

The Database object owns the SQLAlchemy engine and the session factory. It is
built once by the application factory and stored on ``app.state``; nothing
else in the package creates engines.
"""
from typing import Iterator
from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

# Base class for declarative models
Base = declarative_base()


class Database:
    """
    Storage component wrapping an engine and its session factory.

    Args:
        url: SQLAlchemy database URL
        **engine_kwargs: Extra arguments for ``create_engine`` (pool settings,
            connect args)
    """

    def __init__(self, url: str, **engine_kwargs):
        self.url = url
        self.engine = create_engine(url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()


def get_db(request: Request) -> Iterator[Session]:
    """
    Dependency function that provides a database session.

    Yields:
        Session: SQLAlchemy database session bound to the app's Database

    Usage:
        Use as a FastAPI dependency to inject database sessions into route handlers.
    """
    db = request.app.state.db.session()
    try:
        yield db
    finally:
        db.close()
