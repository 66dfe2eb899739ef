from __future__ import annotations

import contextlib
import logging
import time

import sqlalchemy as sa
from sqlalchemy import exc as sa_exc
from sqlalchemy.pool import QueuePool
from sqlalchemy.engine import Connection, Engine

from .scenario import DatabaseSettings

LOGGER = logging.getLogger("loadshaper.pool")


class PoolUnavailableError(RuntimeError):
    """Raised when the pool cannot provision a single connection."""


class ConnectionPool:
    """Bounded set of database connections shared by every SQL attempt of a run.

    Allocation is serialised by SQLAlchemy's queue pool: ``acquire`` blocks while
    all ``capacity`` connections are checked out and raises
    ``sqlalchemy.exc.TimeoutError`` once ``pool_timeout`` elapses.
    """

    def __init__(self, engine: Engine, capacity: int) -> None:
        self._engine = engine
        self._capacity = capacity

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "ConnectionPool":
        url = sa.make_url(settings.url)
        if settings.username is not None:
            url = url.set(username=settings.username)
        if settings.password is not None:
            url = url.set(password=settings.password)

        connect_args = {}
        if url.get_backend_name() == "sqlite":
            connect_args["check_same_thread"] = False

        engine = sa.create_engine(
            url,
            connect_args=connect_args,
            poolclass=QueuePool,
            pool_size=settings.pool_size,
            max_overflow=settings.max_overflow,
            pool_timeout=settings.pool_timeout_seconds,
            pool_pre_ping=True,
        )
        LOGGER.info(
            "Created connection pool for %s (capacity=%d)",
            url.render_as_string(hide_password=True),
            settings.capacity,
        )
        return cls(engine, settings.capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def engine(self) -> Engine:
        return self._engine

    def acquire(self) -> Connection:
        return self._engine.connect()

    def release(self, connection: Connection) -> None:
        connection.close()

    def connection(self) -> contextlib.AbstractContextManager[Connection]:
        return _BorrowedConnection(self)

    def verify(self, timeout_s: float = 30.0) -> None:
        """Check out one connection, retrying with backoff until ``timeout_s`` elapses."""
        backoff = 0.5
        max_backoff = 5.0
        deadline = time.time() + timeout_s

        while True:
            try:
                with self.connection() as connection:
                    connection.execute(sa.text("SELECT 1"))
                return
            except sa_exc.SQLAlchemyError as exc:
                if time.time() >= deadline:
                    raise PoolUnavailableError(
                        f"failed to obtain a database connection within {timeout_s:g} seconds: {exc}"
                    ) from exc
                LOGGER.warning("Database not reachable yet (%s); retrying in %.1fs", exc, backoff)
                time.sleep(backoff)
                backoff = min(backoff * 1.5, max_backoff)

    def dispose(self) -> None:
        self._engine.dispose()


class _BorrowedConnection(contextlib.AbstractContextManager[Connection]):
    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool
        self._connection: Connection | None = None

    def __enter__(self) -> Connection:
        self._connection = self._pool.acquire()
        return self._connection

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._connection is not None:
            self._pool.release(self._connection)
            self._connection = None


__all__ = ["ConnectionPool", "PoolUnavailableError"]
