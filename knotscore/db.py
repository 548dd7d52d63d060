import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase

from .settings import settings

logger = logging.getLogger(__name__)

class Base(DeclarativeBase):
    pass

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None

def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

def make_engine(url: str, **kwargs) -> Engine:
    """SQLite connections are shared across threads and enforce foreign keys."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(url, future=True, echo=False, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _sqlite_pragmas)
    return engine

def init_db(url: Optional[str] = None) -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        return
    _engine = make_engine(url or settings.KNOT_DB_URL)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, future=True)
    from . import models  # noqa
    Base.metadata.create_all(bind=_engine)
    logger.info("database ready: %s", _engine.url.render_as_string(hide_password=True))

@contextmanager
def session_scope() -> Iterator[Session]:
    if _SessionLocal is None:
        init_db()
    db = _SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_session() -> Iterator[Session]:
    with session_scope() as db:
        yield db
