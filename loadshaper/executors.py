"""Protocol executors: one request attempt in, one :class:`Sample` out."""

from __future__ import annotations

import contextlib
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping

import httpx
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection

from .binding import TypeBindingError, prepare_statement, substitute
from .pool import ConnectionPool
from .scenario import Protocol, ScenarioSpec, WorkloadConfigError

LOGGER = logging.getLogger("loadshaper.executors")

DEFAULT_HTTP_TIMEOUT_S = 30.0


class FailureKind(str, enum.Enum):
    CONNECTION_ERROR = "connection_error"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol_error"
    TYPE_BINDING_ERROR = "type_binding_error"
    # Only produced when a scenario caps its arrival queue.
    DROPPED = "dropped"


@dataclass(frozen=True)
class Sample:
    scenario: str
    scheduled_offset: float
    latency_s: float
    failure: FailureKind | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


@dataclass(frozen=True)
class AttemptContext:
    scenario: ScenarioSpec
    scheduled_offset: float
    variables: Mapping[str, Any] = field(default_factory=dict)


class AttemptExecutor:
    """Performs one attempt for a scenario. ``execute`` never raises."""

    protocol: Protocol

    def execute(self, context: AttemptContext) -> Sample:
        raise NotImplementedError

    def close(self) -> None:
        return None

    @staticmethod
    def _success(context: AttemptContext, latency_s: float) -> Sample:
        return Sample(context.scenario.name, context.scheduled_offset, latency_s)

    @staticmethod
    def _failure(
        context: AttemptContext,
        latency_s: float,
        kind: FailureKind,
        detail: str,
    ) -> Sample:
        LOGGER.debug("%s attempt failed (%s): %s", context.scenario.name, kind.value, detail)
        return Sample(context.scenario.name, context.scheduled_offset, latency_s, kind, detail)


class SqlExecutor(AttemptExecutor):
    protocol = Protocol.SQL

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def execute(self, context: AttemptContext) -> Sample:
        scenario = context.scenario
        variables = context.variables
        timeout = scenario.timeout_seconds
        try:
            sql = substitute(scenario.target, variables)
            parameters = [
                (substitute(p.value, variables) if isinstance(p.value, str) else p.value, p.sql_type)
                for p in scenario.parameters
            ]
            statement, values = prepare_statement(sql, parameters)
        except TypeBindingError as exc:
            return self._failure(context, 0.0, FailureKind.TYPE_BINDING_ERROR, str(exc))

        requested = time.perf_counter()
        started: float | None = None
        try:
            with self._pool.connection() as connection:
                started = time.perf_counter()
                with statement_timeout(connection, timeout):
                    result = connection.execute(statement, values)
                    if result.returns_rows:
                        result.fetchall()
                connection.commit()
                latency = time.perf_counter() - started
        except sa_exc.TimeoutError as exc:
            return self._failure(
                context, time.perf_counter() - requested, FailureKind.TIMEOUT, f"pool timeout: {exc}"
            )
        except sa_exc.DBAPIError as exc:
            elapsed = time.perf_counter() - (started if started is not None else requested)
            if started is None or exc.connection_invalidated:
                return self._failure(context, elapsed, FailureKind.CONNECTION_ERROR, str(exc.orig))
            if timeout is not None and elapsed >= timeout:
                return self._failure(
                    context, elapsed, FailureKind.TIMEOUT, f"statement cancelled: {exc.orig}"
                )
            return self._failure(context, elapsed, FailureKind.PROTOCOL_ERROR, str(exc.orig))
        except sa_exc.StatementError as exc:
            # Raised by SQLAlchemy's bind processors before reaching the driver.
            elapsed = time.perf_counter() - (started if started is not None else requested)
            return self._failure(context, elapsed, FailureKind.TYPE_BINDING_ERROR, str(exc.orig or exc))
        except sa_exc.SQLAlchemyError as exc:
            elapsed = time.perf_counter() - (started if started is not None else requested)
            return self._failure(context, elapsed, FailureKind.PROTOCOL_ERROR, str(exc))
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("unexpected error executing SQL for %s", scenario.name)
            return self._failure(
                context, time.perf_counter() - requested, FailureKind.PROTOCOL_ERROR, repr(exc)
            )
        if timeout is not None and latency > timeout:
            # Dialects without a cancellation hook still report late statements as timeouts.
            return self._failure(
                context, latency, FailureKind.TIMEOUT, f"statement exceeded {timeout:g}s"
            )
        return self._success(context, latency)


@contextlib.contextmanager
def statement_timeout(connection: Connection, timeout_s: float | None) -> Iterator[None]:
    """Bound the statements run inside the block to ``timeout_s`` seconds.

    SQLite is interrupted through a progress handler and PostgreSQL through a
    transaction-local ``statement_timeout``. Other dialects run unbounded and
    rely on the caller comparing the elapsed time afterwards.
    """
    if timeout_s is None:
        yield
        return

    dialect = connection.dialect.name
    if dialect == "sqlite":
        raw = connection.connection.driver_connection
        deadline = time.perf_counter() + timeout_s
        raw.set_progress_handler(lambda: int(time.perf_counter() > deadline), 1000)
        try:
            yield
        finally:
            raw.set_progress_handler(None, 0)
    elif dialect == "postgresql":
        connection.exec_driver_sql(f"SET LOCAL statement_timeout = {max(int(timeout_s * 1000), 1)}")
        yield
    else:
        yield


class HttpExecutor(AttemptExecutor):
    protocol = Protocol.HTTP

    def __init__(self, client: httpx.Client) -> None:
        self._client = client

    @classmethod
    def for_scenario(cls, scenario: ScenarioSpec) -> "HttpExecutor":
        timeout = scenario.timeout_seconds or DEFAULT_HTTP_TIMEOUT_S
        client = httpx.Client(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(
                max_connections=scenario.max_concurrency,
                max_keepalive_connections=scenario.max_concurrency,
            ),
        )
        return cls(client)

    def execute(self, context: AttemptContext) -> Sample:
        scenario = context.scenario
        variables = context.variables
        url = substitute(scenario.target, variables)
        body = substitute(scenario.body, variables)
        headers = {name: substitute(value, variables) for name, value in scenario.headers}
        if body is not None and not any(name.lower() == "content-type" for name in headers):
            headers["Content-Type"] = scenario.content_type

        started = time.perf_counter()
        try:
            response = self._client.request(
                scenario.method.upper(),
                url,
                content=body.encode("utf-8") if body is not None else None,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            return self._failure(context, time.perf_counter() - started, FailureKind.TIMEOUT, repr(exc))
        except (httpx.ProtocolError, httpx.UnsupportedProtocol, httpx.InvalidURL) as exc:
            return self._failure(
                context, time.perf_counter() - started, FailureKind.PROTOCOL_ERROR, repr(exc)
            )
        except httpx.TransportError as exc:
            return self._failure(
                context, time.perf_counter() - started, FailureKind.CONNECTION_ERROR, repr(exc)
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("unexpected error requesting %s for %s", url, scenario.name)
            return self._failure(
                context, time.perf_counter() - started, FailureKind.PROTOCOL_ERROR, repr(exc)
            )
        latency = time.perf_counter() - started

        if not 200 <= response.status_code < 400:
            return self._failure(
                context, latency, FailureKind.PROTOCOL_ERROR, f"HTTP {response.status_code}"
            )
        return self._success(context, latency)

    def close(self) -> None:
        self._client.close()


def _build_sql_executor(scenario: ScenarioSpec, pool: ConnectionPool | None) -> AttemptExecutor:
    if pool is None:
        raise WorkloadConfigError(
            f"scenario {scenario.name!r} uses SQL but no connection pool is available"
        )
    return SqlExecutor(pool)


def _build_http_executor(scenario: ScenarioSpec, pool: ConnectionPool | None) -> AttemptExecutor:
    return HttpExecutor.for_scenario(scenario)


EXECUTOR_FACTORIES: dict[Protocol, Callable[[ScenarioSpec, ConnectionPool | None], AttemptExecutor]] = {
    Protocol.SQL: _build_sql_executor,
    Protocol.HTTP: _build_http_executor,
}


def create_executor(scenario: ScenarioSpec, pool: ConnectionPool | None = None) -> AttemptExecutor:
    try:
        factory = EXECUTOR_FACTORIES[scenario.protocol]
    except KeyError:
        raise WorkloadConfigError(f"no executor for protocol {scenario.protocol!r}") from None
    return factory(scenario, pool)


__all__ = [
    "AttemptContext",
    "AttemptExecutor",
    "EXECUTOR_FACTORIES",
    "FailureKind",
    "HttpExecutor",
    "Sample",
    "SqlExecutor",
    "create_executor",
]
