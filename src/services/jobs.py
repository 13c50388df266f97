from __future__ import annotations

import asyncio
import itertools
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from .clock import isoformat, utc_now

JobStatus = Literal[
    "running",
    "succeeded",
    "failed",
    "skipped",
]


def _now_iso() -> str:
    return isoformat(utc_now())


@dataclass(slots=True)
class JobRun:
    run_id: str
    job: str
    status: JobStatus
    trigger: str = "schedule"
    message: str | None = None
    error: str | None = None
    started_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_payload(self) -> dict[str, Any]:
        data = asdict(self)
        data["runId"] = data.pop("run_id")
        data["startedAt"] = data.pop("started_at")
        data["updatedAt"] = data.pop("updated_at")
        return data


class JobRegistry:
    """In-memory record of recent scheduled job runs, served by ``/jobs``."""

    def __init__(self, *, max_runs: int = 200) -> None:
        self._lock = asyncio.Lock()
        self._runs: dict[str, JobRun] = {}
        self._max_runs = max(1, max_runs)
        self._ids = itertools.count(1)

    async def start(self, job: str, *, trigger: str = "schedule") -> JobRun:
        run = JobRun(run_id=f"{job}-{next(self._ids)}", job=job, status="running", trigger=trigger)
        await self.publish(run)
        return run

    async def finish(
        self,
        run: JobRun,
        status: JobStatus,
        *,
        message: str | None = None,
        error: str | None = None,
    ) -> JobRun:
        run.status = status
        run.message = message
        run.error = error
        run.updated_at = _now_iso()
        await self.publish(run)
        return run

    async def publish(self, run: JobRun) -> None:
        async with self._lock:
            self._runs[run.run_id] = run
            if len(self._runs) > self._max_runs:
                self._trim_locked()

    async def list(self, job: str | None = None) -> list[dict[str, Any]]:
        async with self._lock:
            ordered = sorted(self._runs.values(), key=lambda item: item.updated_at)
            return [entry.to_payload() for entry in ordered if job is None or entry.job == job]

    async def last(self, job: str) -> JobRun | None:
        async with self._lock:
            runs = [run for run in self._runs.values() if run.job == job]
        return max(runs, key=lambda run: run.updated_at) if runs else None

    async def clear(self) -> None:
        async with self._lock:
            self._runs.clear()

    def _trim_locked(self) -> None:
        if len(self._runs) <= self._max_runs:
            return
        ordered_ids = sorted(
            self._runs.items(),
            key=lambda item: item[1].updated_at,
        )
        surplus = len(self._runs) - self._max_runs
        for run_id, _ in ordered_ids[:surplus]:
            self._runs.pop(run_id, None)


job_registry = JobRegistry()

__all__ = ["JobRegistry", "JobRun", "JobStatus", "job_registry"]
