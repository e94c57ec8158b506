from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from funnel_engine.config import settings


class Base(DeclarativeBase):
    pass


def _engine_connect_args(db_url: str) -> dict:
    if db_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def build_engine(db_url: str) -> Engine:
    return create_engine(db_url, future=True, connect_args=_engine_connect_args(db_url))


engine: Engine = build_engine(settings.ENGINE_DB_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db(bind: Engine | None = None) -> None:
    # Models must be imported so their tables are registered on Base.metadata.
    from funnel_engine.db import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)

