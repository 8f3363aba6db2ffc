import logging
from enum import Enum

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings


logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class ConnectionState(int, Enum):
    disconnected = 0
    connected = 1
    connecting = 2
    disconnecting = 3


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url)


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _enable_sqlite_wal(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.close()


def _create_engine(database_url: str) -> Engine:
    kwargs: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_memory_sqlite(database_url):
            # one shared connection, otherwise every checkout sees an empty db
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True

    eng = create_engine(database_url, **kwargs)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
        if not _is_memory_sqlite(database_url):
            event.listen(eng, "connect", _enable_sqlite_wal)
    return eng


class Store:
    """Handle on the backing database.

    Constructed explicitly and passed to the application instead of living in
    module globals. ``init`` connects (and optionally creates the schema),
    ``ping``/``health`` report liveness, ``dispose`` releases the pool.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self.state = ConnectionState.disconnected
        self.engine = _create_engine(database_url)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    @classmethod
    def from_settings(cls) -> "Store":
        return cls(get_settings().database_url)

    @property
    def display_url(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)

    def init(self, *, create_schema: bool = False) -> None:
        self.state = ConnectionState.connecting
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            if create_schema:
                import models  # noqa: F401

                Base.metadata.create_all(self.engine)
        except SQLAlchemyError:
            self.state = ConnectionState.disconnected
            logger.exception(f"store_connect_failed: url={self.display_url}")
            raise
        self.state = ConnectionState.connected
        logger.info(f"store_connected: url={self.display_url}")

    def ping(self) -> bool:
        if self.state is not ConnectionState.connected:
            return False
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning(f"store_ping_failed: error={exc.__class__.__name__}")
            return False
        return True

    def health(self) -> dict[str, object]:
        ping_ok = self.ping()
        return {
            "state": self.state.name,
            "stateCode": self.state.value,
            "pingTest": "successful" if ping_ok else "failed",
            "healthy": ping_ok,
        }

    def dispose(self) -> None:
        if self.state is ConnectionState.disconnected:
            return
        self.state = ConnectionState.disconnecting
        self.engine.dispose()
        self.state = ConnectionState.disconnected
        logger.info(f"store_disposed: url={self.display_url}")

    def session(self) -> Session:
        return self.SessionLocal()

