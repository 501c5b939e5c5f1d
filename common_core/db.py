from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from common_core.config import settings


class Base(DeclarativeBase):
    pass


def make_engine(db_url: str):
    if db_url.startswith("sqlite"):
        # worker threads share the file; give writers time to wait out each other
        return create_engine(
            db_url, future=True, connect_args={"check_same_thread": False, "timeout": 30}
        )
    return create_engine(db_url, pool_pre_ping=True, future=True)


def make_session(engine):
    return sessionmaker(
        bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True
    )


engine = make_engine(settings.db_url)

SessionLocal = make_session(engine)
