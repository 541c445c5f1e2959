"""Follow a running job's log until the job finishes.

The follower polls the build (for the job's state) and the job log, and
writes only the bytes appended since the previous poll. Failed polls are
classified; retryable ones back off exponentially, anything else ends the
follow. Cancellation is cooperative: a ``threading.Event`` checked once per
poll cycle.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
import random
import signal
import sys
import threading

import click

from .client import REMOTE_ERRORS
from .errors import ErrorCategory, classify
from .jobs import JobSnapshot, find_job
from .refs import BuildReference

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MS = 3000
DEFAULT_TAIL_LINES = 50
MAX_CONSECUTIVE_ERRORS = 3
MAX_INTERVAL_MS = 30_000
JITTER_RATIO = 0.1


@dataclass
class PollState:
    previous_byte_size: int
    current_interval_ms: int
    consecutive_error_count: int = 0
    interrupted: bool = False


@dataclass(frozen=True)
class FollowOutcome:
    """How a follow ended. ``reason`` is terminal, interrupted, error or job_missing."""

    exit_code: int
    reason: str
    job: JobSnapshot | None = None
    error: ErrorCategory | None = None


def jittered_interval_ms(interval_ms: float, rand=random.random) -> float:
    """Spread ``interval_ms`` uniformly over +/- 10%."""
    return interval_ms * (1 + JITTER_RATIO * (2 * rand() - 1))


def tail_lines(content: str, count: int | None) -> str:
    if count is None:
        return content
    lines = content.split("\n")
    return "\n".join(lines[max(0, len(lines) - count):])


def _log_bytes(log: dict) -> tuple[bytes, int]:
    data = (log.get("content") or "").encode("utf-8")
    size = log.get("size")
    if not isinstance(size, int):
        size = len(data)
    return data, size


@contextmanager
def interrupt_handler(cancel: threading.Event):
    """Route SIGINT to ``cancel`` for the duration of the block."""

    def _handle(signum, frame):
        if not cancel.is_set():
            click.echo("\nInterrupted. Showing final state...", err=True)
        cancel.set()

    previous = signal.signal(signal.SIGINT, _handle)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


class LogFollower:
    def __init__(
        self,
        client,
        ref: BuildReference,
        job_id: str,
        *,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        tail: int | None = DEFAULT_TAIL_LINES,
        out=None,
        cancel: threading.Event | None = None,
        sleep=None,
        rand=random.random,
    ):
        self.client = client
        self.ref = ref
        self.job_id = job_id
        self.interval_ms = interval_ms
        self.tail = tail
        self.out = out if out is not None else sys.stdout
        self.cancel = cancel if cancel is not None else threading.Event()
        # Waiting on the token lets an interrupt cut the current sleep short.
        self._sleep = sleep if sleep is not None else self.cancel.wait
        self._rand = rand

    def _write(self, text: str) -> None:
        self.out.write(text)
        self.out.flush()

    def _fetch(self) -> tuple[JobSnapshot | None, dict]:
        ref = self.ref
        build = self.client.get_build(ref.org, ref.pipeline, ref.number)
        job = find_job(build.get("jobs") or [], self.job_id)
        if job is None:
            return None, {}
        log = self.client.get_job_log(ref.org, ref.pipeline, ref.number, self.job_id)
        return JobSnapshot.from_api(job), log

    def _finish(self, job: JobSnapshot) -> FollowOutcome:
        exit_label = job.exit_status if job.exit_status is not None else "unknown"
        click.echo(f"\n\nJob {job.state}: exit code {exit_label}", err=True)
        return FollowOutcome(0 if job.exit_status == 0 else 1, "terminal", job=job)

    def _job_missing(self) -> FollowOutcome:
        click.echo(f"Error: Job {self.job_id} no longer exists in build {self.ref.slug}", err=True)
        return FollowOutcome(1, "job_missing")

    def run(self) -> FollowOutcome:
        """Follow until terminal, error or cancellation.

        The first fetch cycle is on the critical path and its errors
        propagate to the caller.
        """
        job, log = self._fetch()
        if job is None:
            return self._job_missing()

        click.echo(f"Following logs for: {job.label}", err=True)
        data, size = _log_bytes(log)
        initial = tail_lines(data.decode("utf-8", errors="replace"), self.tail)
        if initial:
            self._write(initial)
        state = PollState(previous_byte_size=size, current_interval_ms=self.interval_ms)

        if job.is_terminal:
            return self._finish(job)

        click.echo("Press Ctrl+C to stop", err=True)
        while True:
            if self.cancel.is_set():
                state.interrupted = True
                break

            self._sleep(jittered_interval_ms(state.current_interval_ms, self._rand) / 1000.0)

            try:
                job, log = self._fetch()
            except REMOTE_ERRORS as exc:
                error = classify(exc)
                state.consecutive_error_count += 1
                logger.debug(
                    "Poll failed (%s, attempt %d): %s",
                    error.category,
                    state.consecutive_error_count,
                    error.message,
                )
                if not error.retryable or state.consecutive_error_count >= MAX_CONSECUTIVE_ERRORS:
                    click.echo(f"Error: Failed to fetch logs: {error.message}", err=True)
                    return FollowOutcome(1, "error", error=error)
                state.current_interval_ms = min(state.current_interval_ms * 2, MAX_INTERVAL_MS)
                click.echo(f"Retrying in {state.current_interval_ms / 1000:g}s...", err=True)
                continue

            if job is None:
                return self._job_missing()

            state.consecutive_error_count = 0
            state.current_interval_ms = self.interval_ms

            data, size = _log_bytes(log)
            if size > state.previous_byte_size:
                delta = data[state.previous_byte_size:].decode("utf-8", errors="replace")
                self._write(delta)
                state.previous_byte_size = size

            if job.is_terminal:
                return self._finish(job)

        logger.debug("Follow interrupted after %d bytes", state.previous_byte_size)
        return FollowOutcome(0, "interrupted")
