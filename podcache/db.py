"""
Database connection and setup
SQLite database with SQLAlchemy
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from podcache.models import Base


def create_db_engine(database_url: str) -> Engine:
    """
    Create an engine for `database_url`
    SQLite connections are shared across refresh worker threads
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # Needed for SQLite
    return create_engine(
        database_url,
        connect_args=connect_args,
        echo=False  # Set to True to see SQL queries
    )


def init_db(engine: Engine):
    """
    Initialize database - create all tables
    Safe to call multiple times (won't recreate existing tables)
    """
    Base.metadata.create_all(bind=engine)


def create_session_factory(engine: Engine) -> sessionmaker:
    """
    Session factory bound to `engine`
    Callers close sessions when done (use as a context manager)
    """
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
