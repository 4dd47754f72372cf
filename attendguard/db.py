"""Database engine, session factory and declarative base."""
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from attendguard.settings import settings


class Base(DeclarativeBase):
    pass


def make_engine(url: str) -> Engine:
    """Create an engine; SQLite needs cross-thread access for the worker pool."""
    kwargs = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, **kwargs)


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(bind: Engine = None) -> None:
    """Create every table known to the models."""
    # models register themselves on Base.metadata when imported
    from attendguard.audit import models as _audit  # noqa: F401
    from attendguard.checkins import models as _checkins  # noqa: F401
    from attendguard.devices import models as _devices  # noqa: F401
    from attendguard.sessions import models as _sessions  # noqa: F401
    from attendguard.tokens import models as _tokens  # noqa: F401
    from attendguard import ratelimit as _ratelimit  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
