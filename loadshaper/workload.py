from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

import yaml

from .scenario import (
    DEFAULT_CONTENT_TYPE,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_RAMP_UP_SECONDS,
    DEFAULT_STEP_DURATION_SECONDS,
    BindParameter,
    DatabaseSettings,
    FixedRampSchedule,
    Protocol,
    ScenarioSpec,
    SqlType,
    StepSchedule,
    WorkloadConfigError,
    WorkloadSpec,
)

LOGGER = logging.getLogger("loadshaper.workload")


def load_workload(path: str | Path) -> WorkloadSpec:
    """Read and validate a YAML workload file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise WorkloadConfigError(f"workload file {path} does not exist") from exc
    except yaml.YAMLError as exc:
        raise WorkloadConfigError(f"workload file {path} is not valid YAML: {exc}") from exc
    return parse_workload(document, base_dir=path.parent)


def parse_workload(document: Any, base_dir: Path | None = None) -> WorkloadSpec:
    if not isinstance(document, Mapping):
        raise WorkloadConfigError("workload document must be a mapping")
    raw_scenarios = document.get("scenarios") or []
    if not isinstance(raw_scenarios, list):
        raise WorkloadConfigError("'scenarios' must be a list")

    database = _parse_database(document.get("database"))
    scenarios = tuple(
        _parse_scenario(raw, index, base_dir) for index, raw in enumerate(raw_scenarios)
    )
    workload = WorkloadSpec(scenarios=scenarios, database=database)
    workload.validate()
    LOGGER.info("Loaded workload with %d scenario(s)", len(scenarios))
    return workload


def _parse_database(raw: Any) -> DatabaseSettings | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping) or not raw.get("url"):
        raise WorkloadConfigError("'database' must be a mapping with a 'url'")
    return DatabaseSettings(
        url=str(raw["url"]),
        username=_optional_str(raw.get("username")),
        password=_optional_str(raw.get("password")),
        pool_size=_as_int(raw.get("poolSize", 10), "database.poolSize"),
        max_overflow=_as_int(raw.get("maxOverflow", 0), "database.maxOverflow"),
        pool_timeout_seconds=_as_float(
            raw.get("poolTimeoutSeconds", 30.0), "database.poolTimeoutSeconds"
        ),
    )


def _parse_scenario(raw: Any, index: int, base_dir: Path | None) -> ScenarioSpec:
    if not isinstance(raw, Mapping):
        raise WorkloadConfigError(f"scenario #{index} must be a mapping")
    name = str(raw.get("name") or "").strip()
    label = name or f"#{index}"
    if "type" not in raw and "protocol" not in raw:
        raise WorkloadConfigError(f"scenario {label!r}: missing 'type'")
    protocol = Protocol.parse(raw.get("type", raw.get("protocol")))
    target = raw.get("target", raw.get("query", raw.get("url")))

    schedule, legacy_threads = _parse_schedule(raw, label)
    default_concurrency = legacy_threads or DEFAULT_MAX_CONCURRENCY
    max_concurrency = raw.get("maxConcurrency", raw.get("maxThreads", default_concurrency))

    csv_file = raw.get("csvFile")
    csv_path = None
    if csv_file:
        csv_path = Path(csv_file)
        if not csv_path.is_absolute() and base_dir is not None:
            csv_path = base_dir / csv_path

    headers = raw.get("headers") or {}
    if not isinstance(headers, Mapping):
        raise WorkloadConfigError(f"scenario {label!r}: 'headers' must be a mapping")

    timeout = raw.get("timeoutSeconds")
    max_queue = raw.get("maxQueueDepth")
    body = raw.get("body")

    return ScenarioSpec(
        name=name,
        protocol=protocol,
        target="" if target is None else str(target),
        schedule=schedule,
        parameters=_parse_parameters(raw.get("parameters"), label),
        method=str(raw.get("method") or "GET").upper(),
        body=_parse_body(body),
        content_type=str(raw.get("contentType") or DEFAULT_CONTENT_TYPE),
        headers=tuple((str(k), str(v)) for k, v in headers.items()),
        csv_file=csv_path,
        max_concurrency=_as_int(max_concurrency, f"{label}.maxConcurrency"),
        timeout_seconds=None if timeout is None else _as_float(timeout, f"{label}.timeoutSeconds"),
        max_queue_depth=None if max_queue is None else _as_int(max_queue, f"{label}.maxQueueDepth"),
    )


def _parse_schedule(raw: Mapping[str, Any], label: str) -> tuple[StepSchedule | FixedRampSchedule, int | None]:
    ramp = _as_float(raw.get("rampUpSeconds", DEFAULT_RAMP_UP_SECONDS), f"{label}.rampUpSeconds")
    steps = raw.get("rpsSteps")
    threads = raw.get("threads")

    if steps is not None:
        if threads is not None:
            LOGGER.warning(
                "Scenario %s declares both rpsSteps and deprecated threads; using rpsSteps", label
            )
        if not isinstance(steps, (list, tuple)):
            steps = [steps]
        hold = _as_float(
            raw.get("stepDurationSeconds", DEFAULT_STEP_DURATION_SECONDS),
            f"{label}.stepDurationSeconds",
        )
        rates = tuple(_as_float(step, f"{label}.rpsSteps") for step in steps)
        return StepSchedule(rates, ramp, hold), None

    if threads is not None:
        LOGGER.warning("Scenario %s uses deprecated 'threads'; prefer rpsSteps", label)
        count = _as_int(threads, f"{label}.threads")
        duration = _as_float(
            raw.get("durationSeconds", raw.get("stepDurationSeconds", DEFAULT_STEP_DURATION_SECONDS)),
            f"{label}.durationSeconds",
        )
        return FixedRampSchedule(count, ramp, duration), count

    raise WorkloadConfigError(f"scenario {label!r}: rpsSteps must not be empty")


def _parse_parameters(raw: Any, label: str) -> tuple[BindParameter, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise WorkloadConfigError(f"scenario {label!r}: 'parameters' must be a list")
    parameters = []
    for item in raw:
        if isinstance(item, Mapping):
            parameters.append(BindParameter(item.get("value"), SqlType.parse(item.get("type"))))
        else:
            parameters.append(BindParameter(item, SqlType.VARCHAR))
    return tuple(parameters)


def _parse_body(raw: Any) -> str | None:
    if raw is None:
        return None
    # Structured YAML bodies are sent as JSON text.
    if isinstance(raw, (Mapping, list)):
        return json.dumps(raw, default=str)
    return str(raw)


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _as_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise WorkloadConfigError(f"{label} must be an integer, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise WorkloadConfigError(f"{label} must be an integer, got {value!r}") from None
    if not number.is_integer():
        raise WorkloadConfigError(f"{label} must be an integer, got {value!r}")
    return int(number)


def _as_float(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise WorkloadConfigError(f"{label} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise WorkloadConfigError(f"{label} must be a number, got {value!r}") from None


__all__ = ["load_workload", "parse_workload"]
