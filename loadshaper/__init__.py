"""
Rate-shaped load generation for SQL and HTTP targets.

A workload's scenarios are compiled into ramp-then-hold rate curves, realised
as attempt arrivals under a per-scenario concurrency ceiling, and summarised
into nearest-rank latency percentiles, all under one global run deadline.
"""

from .orchestrator import LoadOrchestrator, RunResult, RunStatus, ScenarioStatus, run
from .scenario import Protocol, ScenarioSpec, WorkloadConfigError, WorkloadSpec
from .workload import load_workload

__all__ = [
    "LoadOrchestrator",
    "Protocol",
    "RunResult",
    "RunStatus",
    "ScenarioSpec",
    "ScenarioStatus",
    "WorkloadConfigError",
    "WorkloadSpec",
    "load_workload",
    "run",
]
