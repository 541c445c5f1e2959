"""Views over raw Buildkite job payloads.

The REST API returns snake_case jobs (``exit_status``, ``finished_at``) while
GraphQL exports use camelCase; helpers here accept either.
"""

from __future__ import annotations

from dataclasses import dataclass

TERMINAL_JOB_STATES = frozenset({"passed", "failed", "canceled", "timed_out", "skipped", "broken"})
FAILED_JOB_STATES = frozenset({"failed", "timed_out"})


def _field(job: dict, snake: str, camel: str):
    value = job.get(snake)
    if value is None:
        value = job.get(camel)
    return value


def exit_status_of(job: dict) -> int | None:
    raw = _field(job, "exit_status", "exitStatus")
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def job_label(job: dict) -> str:
    return job.get("name") or job.get("label") or "step"


@dataclass(frozen=True)
class JobSnapshot:
    """A point-in-time view of one job. Built fresh from every poll."""

    id: str
    label: str
    state: str
    exit_status: int | None
    started_at: str | None
    finished_at: str | None

    @classmethod
    def from_api(cls, job: dict) -> "JobSnapshot":
        return cls(
            id=job.get("id", ""),
            label=job_label(job),
            state=(job.get("state") or "unknown").lower(),
            exit_status=exit_status_of(job),
            started_at=_field(job, "started_at", "startedAt"),
            finished_at=_field(job, "finished_at", "finishedAt"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES or self.finished_at is not None


def is_command_job(job: dict) -> bool:
    """True for jobs that run a script (and therefore have a log)."""
    typename = job.get("__typename")
    if typename is not None:
        return typename == "JobTypeCommand"
    job_type = job.get("type")
    return job_type is None or job_type == "script"


def is_failed_job(job: dict) -> bool:
    """Failed state, non-zero exit status (soft failures included), or ``passed`` false."""
    state = (job.get("state") or "").lower()
    if state in FAILED_JOB_STATES:
        return True

    exit_status = exit_status_of(job)
    if exit_status is not None:
        return exit_status != 0

    return job.get("passed") is False


def find_job(jobs: list[dict], job_id: str) -> dict | None:
    for job in jobs:
        if job.get("id") == job_id:
            return job
    return None


def find_job_by_step(jobs: list[dict], step_id: str) -> dict | None:
    """Match a ``?sid=`` step id, falling back to the job id itself."""
    for job in jobs:
        step = job.get("step") or {}
        if step.get("id") == step_id:
            return job
    return find_job(jobs, step_id)
