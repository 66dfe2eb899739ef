from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence, Union

from .binding import count_placeholders

DEFAULT_MAX_CONCURRENCY = 50
DEFAULT_RAMP_UP_SECONDS = 5.0
DEFAULT_STEP_DURATION_SECONDS = 10.0
DEFAULT_CONTENT_TYPE = "application/json"

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")


class WorkloadConfigError(ValueError):
    """Raised when a workload or scenario description is invalid."""


class Protocol(str, enum.Enum):
    SQL = "sql"
    HTTP = "http"

    @classmethod
    def parse(cls, value: str) -> "Protocol":
        key = str(value).strip().upper()
        if key == "JDBC":
            return cls.SQL
        try:
            return cls[key]
        except KeyError:
            raise WorkloadConfigError(f"unknown protocol {value!r}") from None


class SqlType(str, enum.Enum):
    INTEGER = "INTEGER"
    BIGINT = "BIGINT"
    DOUBLE = "DOUBLE"
    DECIMAL = "DECIMAL"
    NUMERIC = "NUMERIC"
    BOOLEAN = "BOOLEAN"
    DATE = "DATE"
    TIMESTAMP = "TIMESTAMP"
    VARCHAR = "VARCHAR"

    @classmethod
    def parse(cls, value: str | None) -> "SqlType":
        # Unknown or missing declarations bind as text.
        if not value:
            return cls.VARCHAR
        return cls.__members__.get(str(value).strip().upper(), cls.VARCHAR)


@dataclass(frozen=True)
class BindParameter:
    value: Any
    sql_type: SqlType = SqlType.VARCHAR


@dataclass(frozen=True)
class StepSchedule:
    """Ramp-then-hold towards each entry of ``rps_steps`` in turn."""

    rps_steps: tuple[float, ...]
    ramp_up_seconds: float = DEFAULT_RAMP_UP_SECONDS
    step_duration_seconds: float = DEFAULT_STEP_DURATION_SECONDS

    def validate(self, scenario: str) -> None:
        if not self.rps_steps:
            raise WorkloadConfigError(f"scenario {scenario!r}: rpsSteps must not be empty")
        for rate in self.rps_steps:
            if not _is_finite_number(rate) or rate < 0:
                raise WorkloadConfigError(
                    f"scenario {scenario!r}: rpsSteps entries must be >= 0, got {rate!r}"
                )
        _check_duration(scenario, "rampUpSeconds", self.ramp_up_seconds)
        _check_duration(scenario, "stepDurationSeconds", self.step_duration_seconds)


@dataclass(frozen=True)
class FixedRampSchedule:
    """Deprecated fixed-thread model: one ramp to ``threads`` rps, then one hold."""

    threads: int
    ramp_up_seconds: float = DEFAULT_RAMP_UP_SECONDS
    duration_seconds: float = DEFAULT_STEP_DURATION_SECONDS

    def validate(self, scenario: str) -> None:
        if not isinstance(self.threads, int) or self.threads < 1:
            raise WorkloadConfigError(
                f"scenario {scenario!r}: threads must be a positive integer, got {self.threads!r}"
            )
        _check_duration(scenario, "rampUpSeconds", self.ramp_up_seconds)
        _check_duration(scenario, "durationSeconds", self.duration_seconds)


Schedule = Union[StepSchedule, FixedRampSchedule]


@dataclass(frozen=True)
class ScenarioSpec:
    """Immutable description of one load scenario."""

    name: str
    protocol: Protocol
    target: str
    schedule: Schedule
    parameters: tuple[BindParameter, ...] = ()
    method: str = "GET"
    body: str | None = None
    content_type: str = DEFAULT_CONTENT_TYPE
    headers: tuple[tuple[str, str], ...] = ()
    csv_file: Path | None = None
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    timeout_seconds: float | None = None
    max_queue_depth: int | None = None

    def validate(self) -> None:
        if not self.name or not str(self.name).strip():
            raise WorkloadConfigError("scenario name must not be empty")
        if not isinstance(self.protocol, Protocol):
            raise WorkloadConfigError(f"scenario {self.name!r}: unknown protocol {self.protocol!r}")
        if not self.target or not str(self.target).strip():
            raise WorkloadConfigError(f"scenario {self.name!r}: target must not be empty")
        if not isinstance(self.max_concurrency, int) or self.max_concurrency < 1:
            raise WorkloadConfigError(
                f"scenario {self.name!r}: maxConcurrency must be >= 1, got {self.max_concurrency!r}"
            )
        if self.max_queue_depth is not None and (
            not isinstance(self.max_queue_depth, int) or self.max_queue_depth < 1
        ):
            raise WorkloadConfigError(
                f"scenario {self.name!r}: maxQueueDepth must be >= 1 when set"
            )
        if self.timeout_seconds is not None and (
            not _is_finite_number(self.timeout_seconds) or self.timeout_seconds <= 0
        ):
            raise WorkloadConfigError(f"scenario {self.name!r}: timeoutSeconds must be > 0")
        if not isinstance(self.schedule, (StepSchedule, FixedRampSchedule)):
            raise WorkloadConfigError(f"scenario {self.name!r}: missing rate schedule")
        self.schedule.validate(self.name)

        if self.protocol is Protocol.SQL:
            placeholders = count_placeholders(self.target)
            if placeholders != len(self.parameters):
                raise WorkloadConfigError(
                    f"scenario {self.name!r}: query has {placeholders} placeholder(s) "
                    f"but {len(self.parameters)} parameter(s) were declared"
                )
        elif self.protocol is Protocol.HTTP:
            if self.method.upper() not in HTTP_METHODS:
                raise WorkloadConfigError(
                    f"scenario {self.name!r}: unsupported HTTP method {self.method!r}"
                )

    @property
    def rps_steps(self) -> tuple[float, ...]:
        if isinstance(self.schedule, StepSchedule):
            return self.schedule.rps_steps
        return (float(self.schedule.threads),)


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    username: str | None = None
    password: str | None = None
    pool_size: int = 10
    max_overflow: int = 0
    pool_timeout_seconds: float = 30.0

    @property
    def capacity(self) -> int:
        return self.pool_size + self.max_overflow


@dataclass(frozen=True)
class WorkloadSpec:
    """Database settings plus the ordered scenarios of one run."""

    scenarios: Sequence[ScenarioSpec] = field(default_factory=tuple)
    database: DatabaseSettings | None = None

    def validate(self) -> None:
        if not self.scenarios:
            raise WorkloadConfigError("workload must declare at least one scenario")
        seen: set[str] = set()
        for scenario in self.scenarios:
            if scenario.name in seen:
                raise WorkloadConfigError(f"duplicate scenario name {scenario.name!r}")
            seen.add(scenario.name)
            scenario.validate()
            if scenario.protocol is Protocol.SQL and self.database is None:
                raise WorkloadConfigError(
                    f"scenario {scenario.name!r} uses SQL but no database is configured"
                )

    def has_sql(self) -> bool:
        return any(s.protocol is Protocol.SQL for s in self.scenarios)


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _check_duration(scenario: str, label: str, value: Any) -> None:
    if not _is_finite_number(value) or value < 0:
        raise WorkloadConfigError(f"scenario {scenario!r}: {label} must be >= 0, got {value!r}")


__all__ = [
    "BindParameter",
    "DatabaseSettings",
    "FixedRampSchedule",
    "Protocol",
    "ScenarioSpec",
    "Schedule",
    "SqlType",
    "StepSchedule",
    "WorkloadConfigError",
    "WorkloadSpec",
]
