from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase

from .settings import settings

class Base(DeclarativeBase):
    pass

_engine = None
_SessionLocal = None

def init_db(db_url: str | None = None) -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        return
    url = db_url or settings.KTRA_DB_URL
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        database = make_url(url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
    _engine = create_engine(url, future=True, echo=False, connect_args=connect_args)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, future=True)
    from . import models  # noqa
    Base.metadata.create_all(bind=_engine)

def dispose_db() -> None:
    """Drop the engine so the next init_db() can point somewhere else."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None

def new_session() -> Session:
    if _SessionLocal is None:
        init_db()
    return _SessionLocal()

def get_session() -> Session:
    db = new_session()
    try:
        yield db
    finally:
        db.close()
