from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from flask import current_app
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker


class Base(DeclarativeBase):
    pass


def init_db(app) -> None:
    database_url = app.config["DATABASE_URL"]

    engine_kwargs = {"future": True, "pool_pre_ping": True}
    if database_url.startswith("mysql"):
        engine_kwargs["pool_recycle"] = 3600

    engine = create_engine(database_url, **engine_kwargs)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    app.extensions["db_engine"] = engine
    app.extensions["db_sessionmaker"] = SessionLocal

    if app.config.get("AUTO_CREATE_DB", False):
        create_tables(engine)


def create_tables(engine) -> None:
    from .models import Base as ModelsBase

    ModelsBase.metadata.create_all(engine)


def close_db(app) -> None:
    engine = app.extensions.pop("db_engine", None)
    app.extensions.pop("db_sessionmaker", None)
    if engine is not None:
        engine.dispose()


def get_session():
    sessionmaker_factory = current_app.extensions["db_sessionmaker"]
    return sessionmaker_factory()


@contextmanager
def session_scope(factory=None) -> Iterator:
    session = factory() if factory is not None else get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every stored datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
