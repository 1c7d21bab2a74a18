"""SQLAlchemy helpers for the SQL-backed session store."""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

# ``Base`` is the parent class for every SQLAlchemy model defined in models/.
Base = declarative_base()


def connect_args_for(db_url: str) -> dict:
    # SQLite connections may be used from a thread other than the creator.
    return {"check_same_thread": False} if db_url.startswith("sqlite") else {}


def create_session_factory(db_url: str) -> sessionmaker:
    """Build an engine for ``db_url``, create the tables and return a session factory."""

    # Importing the model registers it with the metadata.
    from ..models import session_entry as _session_entry  # noqa: F401

    engine = create_engine(db_url, connect_args=connect_args_for(db_url))
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
