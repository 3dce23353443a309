# run_stats.py

import logging
import math
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from workflow_executor import Result

logger = logging.getLogger("LoadRunner.stats")

PERCENTILES = (50, 75, 90, 95, 99)


class RunStats(BaseModel):
    """Final figures of one run. Durations are in seconds."""
    total_requests: int = 0
    success_requests: int = 0
    failed_requests: int = 0
    total_duration: float = Field(0.0, description="Sum of successful request durations")
    min_duration: float = 0.0
    max_duration: float = 0.0
    avg_duration: float = 0.0
    percentiles: Dict[int, float] = Field(default_factory=dict, description="Percentile mark -> successful request duration")
    status_codes: Dict[int, int] = Field(default_factory=dict)
    error_types: Dict[str, int] = Field(default_factory=dict)
    requests_per_sec: float = 0.0
    run_duration: float = Field(0.0, description="Wall-clock length of the run, the throughput denominator")

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.success_requests / self.total_requests * 100.0


def percentile_index(length: int, p: float) -> int:
    """Nearest-rank index floor(length * p / 100), clamped into the list."""
    return min(max(int(math.floor(length * p / 100.0)), 0), length - 1)


class StatsAggregator:
    """
    Reduces the per-step result stream into RunStats. Driven only by the runner's
    collection loop, so it keeps no lock.
    """

    def __init__(self):
        self.total_requests = 0
        self.success_requests = 0
        self.failed_requests = 0
        self.total_duration = 0.0
        self.min_duration: Optional[float] = None
        self.max_duration = 0.0
        self.status_codes: Dict[int, int] = {}
        self.error_types: Dict[str, int] = {}
        self.durations: List[float] = []
        self._final: Optional[RunStats] = None

    def record(self, result: Result):
        self.total_requests += 1
        if not result.success:
            self.failed_requests += 1
            error_type = result.error_kind.value if result.error_kind else "unknown"
            self.error_types[error_type] = self.error_types.get(error_type, 0) + 1
            return

        self.success_requests += 1
        self.total_duration += result.duration
        self.status_codes[result.status_code] = self.status_codes.get(result.status_code, 0) + 1
        self.durations.append(result.duration)
        if self.min_duration is None or result.duration < self.min_duration:
            self.min_duration = result.duration
        if result.duration > self.max_duration:
            self.max_duration = result.duration

    def finalize(self, run_duration: float) -> RunStats:
        """Computes averages, throughput and percentiles. May only be called once."""
        if self._final is not None:
            raise RuntimeError("StatsAggregator.finalize() has already been called for this run")

        avg_duration = self.total_duration / self.success_requests if self.success_requests else 0.0
        requests_per_sec = self.total_requests / run_duration if run_duration > 0 else 0.0

        percentiles: Dict[int, float] = {}
        ordered = sorted(self.durations)
        if ordered:
            for p in PERCENTILES:
                percentiles[p] = ordered[percentile_index(len(ordered), p)]

        self._final = RunStats(
            total_requests=self.total_requests,
            success_requests=self.success_requests,
            failed_requests=self.failed_requests,
            total_duration=self.total_duration,
            min_duration=self.min_duration or 0.0,
            max_duration=self.max_duration,
            avg_duration=avg_duration,
            percentiles=percentiles,
            status_codes=dict(sorted(self.status_codes.items())),
            error_types=dict(self.error_types),
            requests_per_sec=requests_per_sec,
            run_duration=run_duration,
        )
        logger.debug(f"Stats finalized: total={self.total_requests} success={self.success_requests} failed={self.failed_requests} rps={requests_per_sec:.2f}")
        return self._final


def _ms(seconds: float) -> str:
    return f"{seconds * 1000:.2f}ms"


def render_report(stats: RunStats) -> str:
    """Human-readable summary of a finished run."""
    lines = [
        "Load test complete:",
        f"Total requests: {stats.total_requests}",
        f"Successful requests: {stats.success_requests}",
        f"Failed requests: {stats.failed_requests}",
        f"Success rate: {stats.success_rate:.2f}%",
        f"Total duration (successful requests): {stats.total_duration:.3f}s",
        f"Requests per second: {stats.requests_per_sec:.2f}",
        f"Min response time: {_ms(stats.min_duration)}",
        f"Max response time: {_ms(stats.max_duration)}",
        f"Avg response time: {_ms(stats.avg_duration)}",
        "",
        "Response time percentiles:",
    ]
    for p, value in sorted(stats.percentiles.items()):
        lines.append(f"  p{p}: {_ms(value)}")

    lines.append("")
    lines.append("Status codes:")
    for code, count in sorted(stats.status_codes.items()):
        lines.append(f"  {code}: {count}")

    lines.append("")
    lines.append("Error types:")
    for error_type, count in sorted(stats.error_types.items()):
        lines.append(f"  {error_type}: {count}")
    return "\n".join(lines)
