from __future__ import annotations

import bisect
import enum
import math
from dataclasses import dataclass
from typing import Iterator, Sequence

from .scenario import FixedRampSchedule, ScenarioSpec, StepSchedule

# Tolerance for float drift when a segment's area is an exact arrival count.
_AREA_EPSILON = 1e-9


class Phase(str, enum.Enum):
    RAMP = "ramp"
    HOLD = "hold"


@dataclass(frozen=True)
class LoadSegment:
    phase: Phase
    start_rate: float
    end_rate: float
    duration: float

    @property
    def slope(self) -> float:
        if self.duration <= 0:
            return 0.0
        return (self.end_rate - self.start_rate) / self.duration

    def rate_at(self, offset: float) -> float:
        if self.duration <= 0:
            return self.end_rate
        offset = min(max(offset, 0.0), self.duration)
        return self.start_rate + self.slope * offset

    def area(self, offset: float | None = None) -> float:
        """Expected arrivals between the segment start and ``offset``."""
        if self.duration <= 0:
            return 0.0
        if offset is None:
            offset = self.duration
        offset = min(max(offset, 0.0), self.duration)
        return self.start_rate * offset + 0.5 * self.slope * offset * offset

    def offset_for_area(self, area: float) -> float:
        """Invert :meth:`area`: the offset at which ``area`` arrivals are due."""
        if area <= 0 or self.duration <= 0:
            return 0.0
        slope = self.slope
        if slope == 0.0:
            return min(area / self.start_rate, self.duration)
        # Root of start*t + slope*t^2/2 = area, in the form that stays stable as slope -> 0.
        discriminant = max(self.start_rate * self.start_rate + 2.0 * slope * area, 0.0)
        offset = 2.0 * area / (self.start_rate + math.sqrt(discriminant))
        return min(offset, self.duration)


@dataclass(frozen=True)
class ScheduleCurve:
    """Ordered load segments describing target rate over elapsed time."""

    segments: tuple[LoadSegment, ...]

    @classmethod
    def from_steps(
        cls,
        rps_steps: Sequence[float],
        ramp_up_seconds: float,
        step_duration_seconds: float,
    ) -> "ScheduleCurve":
        segments: list[LoadSegment] = []
        previous = 0.0
        for rate in rps_steps:
            rate = float(rate)
            segments.append(LoadSegment(Phase.RAMP, previous, rate, float(ramp_up_seconds)))
            segments.append(LoadSegment(Phase.HOLD, rate, rate, float(step_duration_seconds)))
            previous = rate
        return cls(tuple(segments))

    @classmethod
    def fixed_ramp(cls, rate: float, ramp_up_seconds: float, hold_seconds: float) -> "ScheduleCurve":
        return cls.from_steps([rate], ramp_up_seconds, hold_seconds)

    @property
    def total_duration(self) -> float:
        return sum(segment.duration for segment in self.segments)

    @property
    def expected_total(self) -> float:
        return sum(segment.area() for segment in self.segments)

    def _boundaries(self) -> list[float]:
        starts = []
        elapsed = 0.0
        for segment in self.segments:
            starts.append(elapsed)
            elapsed += segment.duration
        return starts

    def segment_at(self, elapsed: float) -> tuple[LoadSegment, float]:
        """Return the segment active at ``elapsed`` and that segment's start time.

        Zero-length segments take effect at their start instant, so at a shared
        boundary the last segment starting there wins.
        """
        if not self.segments:
            raise ValueError("empty schedule curve")
        starts = self._boundaries()
        index = bisect.bisect_right(starts, elapsed) - 1
        index = min(max(index, 0), len(self.segments) - 1)
        return self.segments[index], starts[index]

    def rate_at(self, elapsed: float) -> float:
        if elapsed >= self.total_duration:
            return self.segments[-1].end_rate if self.segments else 0.0
        segment, start = self.segment_at(elapsed)
        return segment.rate_at(elapsed - start)

    def cumulative_at(self, elapsed: float) -> float:
        """Integral of the target rate from 0 to ``elapsed``."""
        total = 0.0
        start = 0.0
        for segment in self.segments:
            if elapsed <= start:
                break
            total += segment.area(elapsed - start)
            start += segment.duration
        return total

    def arrival_offsets(self) -> Iterator[float]:
        """Yield the elapsed time of each arrival, the n-th where the integral reaches n."""
        arrival = 1
        cumulative = 0.0
        start = 0.0
        for segment in self.segments:
            area = segment.area()
            while arrival <= cumulative + area + _AREA_EPSILON:
                needed = min(arrival - cumulative, area)
                yield start + segment.offset_for_area(needed)
                arrival += 1
            cumulative += area
            start += segment.duration

    def describe(self) -> str:
        parts = [
            f"{segment.phase.value} {segment.start_rate:g}->{segment.end_rate:g} rps "
            f"for {segment.duration:g}s"
            for segment in self.segments
        ]
        return "; ".join(parts)


def compile_schedule(scenario: ScenarioSpec) -> ScheduleCurve:
    schedule = scenario.schedule
    if isinstance(schedule, StepSchedule):
        return ScheduleCurve.from_steps(
            schedule.rps_steps,
            schedule.ramp_up_seconds,
            schedule.step_duration_seconds,
        )
    if isinstance(schedule, FixedRampSchedule):
        return ScheduleCurve.fixed_ramp(
            float(schedule.threads),
            schedule.ramp_up_seconds,
            schedule.duration_seconds,
        )
    raise TypeError(f"unsupported schedule type {type(schedule).__name__}")


__all__ = ["LoadSegment", "Phase", "ScheduleCurve", "compile_schedule"]
