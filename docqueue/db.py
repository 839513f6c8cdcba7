"""
Database configuration and session management
"""
from contextlib import contextmanager
import logging

from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger("docqueue.db")

# Create base class for models
Base = declarative_base()

# Columns added after the first schema version: (name, DDL type)
_LATE_COLUMNS = [
    ("params", "TEXT"),
    ("output_file", "TEXT"),
    ("output_files", "TEXT"),
]

def make_engine(database_url: str):
    """Create an engine; SQLite needs special connect args, in-memory SQLite a shared pool"""
    kwargs = {"future": True}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)

def make_session_factory(engine):
    # Records leave the session detached; keep their loaded attributes usable
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

def init_db(engine):
    """Create tables and upgrade a legacy tasks table in place"""
    # Make sure all models are imported so Base.metadata is populated
    from .models import job  # noqa: F401

    Base.metadata.create_all(bind=engine)

    existing = {col["name"] for col in inspect(engine).get_columns("tasks")}
    with engine.begin() as conn:
        for col_name, col_type in _LATE_COLUMNS:
            if col_name not in existing:
                conn.exec_driver_sql(f"ALTER TABLE tasks ADD COLUMN {col_name} {col_type}")
                logger.info("Added missing column", extra={"component": "db", "column": col_name})

@contextmanager
def session_scope(session_factory):
    s = session_factory()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
