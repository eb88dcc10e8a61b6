import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import Settings
from app.exceptions import ConflictError, DeadlineExceeded, StorageError
from app.models.db_models import Base

logger = logging.getLogger(__name__)

# SQLite calls the progress handler every N virtual machine instructions
SQLITE_PROGRESS_STEPS = 1000


class Deadline:
    """Wall-clock budget for one store call. ``None`` seconds means no limit."""

    def __init__(self, seconds: Optional[float] = None):
        self.seconds = seconds
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return self._expires_at - time.monotonic()

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self):
        if self.expired:
            raise DeadlineExceeded(f"deadline of {self.seconds}s exceeded")


def check_deadline(session: Session):
    deadline = session.info.get("deadline")
    if deadline is not None:
        deadline.check()


def _unicode_lower(value):
    return value.lower() if isinstance(value, str) else value


def _enable_sqlite_savepoints(engine: Engine):
    # pysqlite opens transactions on its own and breaks SAVEPOINT; take over
    # BEGIN ourselves and turn on FK enforcement for ON DELETE CASCADE.
    # SQLite's built-in lower() folds ASCII only; product names are often Cyrillic.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.create_function("lower", 1, _unicode_lower, deterministic=True)
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(database_url: str, echo: bool = False, pool_size: int = 10,
                     max_overflow: int = 90, pool_recycle: int = 3600) -> Engine:
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
        _enable_sqlite_savepoints(engine)
        return engine
    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=pool_recycle,
    )


class _DeadlineGuard:
    def __init__(self, dbapi_connection=None):
        self._dbapi_connection = dbapi_connection

    def disarm(self):
        if self._dbapi_connection is not None:
            self._dbapi_connection.set_progress_handler(None, 0)
            self._dbapi_connection = None


def _arm_deadline(session: Session, deadline: Deadline, read_only: bool) -> _DeadlineGuard:
    """Bind the deadline to the backend so in-flight statements get aborted."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        options = {"isolation_level": "REPEATABLE READ"} if read_only else {}
        conn = session.connection(execution_options=options)
        remaining = deadline.remaining()
        if remaining is not None:
            # SET does not take bind parameters; 0 would disable the timeout
            conn.exec_driver_sql(f"SET LOCAL statement_timeout = {max(1, int(remaining * 1000))}")
        return _DeadlineGuard()
    if dialect == "sqlite" and deadline.seconds is not None:
        raw = session.connection().connection.dbapi_connection
        raw.set_progress_handler(lambda: 1 if deadline.expired else 0, SQLITE_PROGRESS_STEPS)
        return _DeadlineGuard(raw)
    return _DeadlineGuard()


@dataclass
class StoreContext:
    """Explicit handle on the store, passed to every core operation."""

    engine: Engine
    session_factory: sessionmaker = field(init=False)
    default_timeout: Optional[float] = None

    def __post_init__(self):
        self.session_factory = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    @classmethod
    def from_url(cls, database_url: str, default_timeout: Optional[float] = None,
                 echo: bool = False) -> "StoreContext":
        return cls(create_db_engine(database_url, echo=echo), default_timeout=default_timeout)

    @classmethod
    def from_settings(cls, cfg: Settings) -> "StoreContext":
        engine = create_db_engine(
            cfg.DATABASE_URL,
            echo=cfg.DB_ECHO,
            pool_size=cfg.DB_POOL_SIZE,
            max_overflow=cfg.DB_MAX_OVERFLOW,
            pool_recycle=cfg.DB_POOL_RECYCLE_SECS,
        )
        return cls(engine, default_timeout=cfg.REQUEST_TIMEOUT_SECS)

    def init_schema(self):
        Base.metadata.create_all(bind=self.engine)

    def dispose(self):
        self.engine.dispose()

    @contextmanager
    def session_scope(self, timeout: Optional[float] = None,
                      read_only: bool = False) -> Iterator[Session]:
        """One transaction: commit on success, roll back on any exception.

        Driver errors come out as ``ConflictError`` (uniqueness) or
        ``StorageError``; everything else propagates unchanged.
        """
        deadline = Deadline(timeout if timeout is not None else self.default_timeout)
        deadline.check()
        session = self.session_factory()
        session.info["deadline"] = deadline
        guard = _DeadlineGuard()
        try:
            guard = _arm_deadline(session, deadline, read_only)
            yield session
            deadline.check()
            session.commit()
        except IntegrityError as e:
            self._abort(session, guard)
            raise ConflictError(str(e.orig)) from e
        except SQLAlchemyError as e:
            self._abort(session, guard)
            if deadline.expired:
                raise DeadlineExceeded(f"deadline of {deadline.seconds}s exceeded") from e
            raise StorageError(str(e)) from e
        except BaseException:
            self._abort(session, guard)
            raise
        finally:
            guard.disarm()
            session.close()

    @staticmethod
    def _abort(session: Session, guard: _DeadlineGuard):
        guard.disarm()
        try:
            session.rollback()
        except SQLAlchemyError:
            logger.exception("rollback failed")

    def ping(self, timeout: Optional[float] = None):
        with self.session_scope(timeout, read_only=True) as s:
            s.execute(text("SELECT 1"))
