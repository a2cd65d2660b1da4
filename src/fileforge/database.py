"""
Database configuration and session management.

This module is intentionally small and test-friendly:
- Defaults to SQLite for local dev
- Supports Postgres via DATABASE_URL
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from fileforge.config import get_settings
from fileforge.models.base import Base


def get_database_url() -> str:
    settings = get_settings()
    return settings.DATABASE_URL


def create_db_engine(database_url: Optional[str] = None, *, echo: bool = False):
    url = database_url or get_database_url()

    connect_args: dict = {}
    if "sqlite" in url:
        # Worker slots share the database from several threads.
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30

    if url.startswith("sqlite:///:memory:"):
        from sqlalchemy.pool import StaticPool

        engine = create_engine(
            url,
            echo=echo,
            connect_args=connect_args,
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(
            url,
            echo=echo,
            pool_pre_ping=True,
            pool_recycle=3600,
            connect_args=connect_args,
        )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, _connection_record):  # pragma: no cover
        if "sqlite" in url:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    return engine


def create_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False, autoflush=False, expire_on_commit=False, bind=bind
    )


if os.getenv("ALEMBIC_RUNNING") != "true":
    engine = create_db_engine()
    SessionLocal = create_session_factory(engine)
else:  # pragma: no cover
    engine = None
    SessionLocal = None


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    with session_scope(SessionLocal) as session:
        yield session


def init_db(*, create_tables: bool = False, bind_engine: Optional[Engine] = None) -> None:
    """
    Initialize database schema.

    When SCHEMA_MODE=migrations, this will NOT auto-create tables.
    Use `fileforge db upgrade` for production deployments.
    """
    settings = get_settings()
    target_engine = bind_engine or engine
    if not target_engine:
        raise RuntimeError("Database engine is not initialized")

    if create_tables:
        if settings.SCHEMA_MODE == "migrations" and bind_engine is None:
            from sqlalchemy import inspect

            inspector = inspect(target_engine)
            existing_tables = inspector.get_table_names()
            if not existing_tables:
                raise RuntimeError(
                    "SCHEMA_MODE=migrations: Database is empty. "
                    "Run `fileforge db upgrade` first to create tables via Alembic."
                )
            return

        # Ensure all conversion engine models are registered before create_all().
        from fileforge.conversion_engine.bootstrap import import_all_models

        import_all_models()
        Base.metadata.create_all(bind=target_engine, checkfirst=True)
