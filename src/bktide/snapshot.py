"""Capture a build's metadata, annotations and step logs to disk.

Layout under the snapshot root::

    <org>/<pipeline>/<number>/
      build.json
      annotations.json
      manifest.json
      steps/01-<label>/step.json
      steps/01-<label>/log.txt

Only the initial build fetch is fatal. Annotation and per-step log failures
are classified and recorded in ``manifest.json``, which is written once, last.
Local write errors propagate.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import re

from .client import REMOTE_ERRORS
from .errors import classify
from .jobs import JobSnapshot, exit_status_of, is_command_job, is_failed_job, job_label
from .refs import BuildReference

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 2
DEFAULT_SNAPSHOT_ROOT = Path.home() / ".bktide" / "snapshots"

_EMOJI_SHORTCODE = re.compile(r":[^:]+:")
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9-]")
_DASH_RUNS = re.compile(r"-+")
_MAX_LABEL_LENGTH = 50


def step_dir_name(index: int, label: str) -> str:
    """Directory name for the step at 0-based ``index``: ``01-build``, ``02-run-tests``.

    The numeric prefix is what keeps names unique; two steps with the same
    label still sanitize to the same suffix.
    """
    sanitized = _EMOJI_SHORTCODE.sub("", label)
    sanitized = _UNSAFE_CHARS.sub("-", sanitized)
    sanitized = _DASH_RUNS.sub("-", sanitized).strip("-")
    sanitized = sanitized.lower()[:_MAX_LABEL_LENGTH]
    return f"{index + 1:02d}-{sanitized or 'step'}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _write_json(path: Path, payload) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


@dataclass(frozen=True)
class StepCaptureResult:
    id: str
    job_id: str
    status: str
    job: dict
    error: str | None = None
    message: str | None = None
    retryable: bool | None = None

    @property
    def snapshot(self) -> JobSnapshot:
        return JobSnapshot.from_api(self.job)


@dataclass(frozen=True)
class AnnotationResult:
    fetch_status: str
    count: int
    error: str | None = None
    message: str | None = None


@dataclass
class SnapshotResult:
    manifest: dict
    build: dict
    output_dir: Path
    annotations: AnnotationResult
    script_jobs: list = field(default_factory=list)
    selected_jobs: list = field(default_factory=list)

    @property
    def fetch_complete(self) -> bool:
        return bool(self.manifest["fetchComplete"])

    @property
    def exit_code(self) -> int:
        return 0 if self.fetch_complete else 1


def _first_line(text: str | None) -> str:
    if not text:
        return ""
    return text.split("\n")[0]


def build_manifest(
    ref: BuildReference,
    build: dict,
    steps: list[StepCaptureResult],
    annotations: AnnotationResult,
    fetched_at: str,
) -> dict:
    failed = [s for s in steps if s.status == "failed"]
    manifest = {
        "version": MANIFEST_VERSION,
        "buildRef": ref.slug,
        "url": ref.url,
        "fetchedAt": fetched_at,
        "fetchComplete": not failed and annotations.fetch_status != "failed",
        "build": {
            "state": build.get("state") or "unknown",
            "number": build.get("number", ref.number),
            "message": _first_line(build.get("message")),
            "branch": build.get("branch") or "unknown",
            "commit": (build.get("commit") or "unknown")[:7],
        },
        "annotations": {
            "fetchStatus": annotations.fetch_status,
            "count": annotations.count,
        },
        "steps": [
            {
                "id": s.id,
                "fetchStatus": s.status,
                "jobId": s.job_id,
                "type": s.job.get("type") or "script",
                "name": s.job.get("name") or "",
                "label": s.job.get("label") or "",
                "state": s.job.get("state") or "unknown",
                "exit_status": exit_status_of(s.job),
                "started_at": s.job.get("started_at") or s.job.get("startedAt"),
                "finished_at": s.job.get("finished_at") or s.job.get("finishedAt"),
            }
            for s in steps
        ],
    }
    if failed:
        manifest["fetchErrors"] = [
            {
                "id": s.id,
                "jobId": s.job_id,
                "fetchStatus": "failed",
                "error": s.error,
                "message": s.message,
                "retryable": s.retryable,
            }
            for s in failed
        ]
    return manifest


def _ordered_map(values: list, fn, max_concurrency: int) -> list:
    if len(values) <= 1 or max_concurrency <= 1:
        return [fn(v) for v in values]

    max_workers = min(len(values), max_concurrency)
    results = [None] * len(values)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_index = {executor.submit(fn, value): idx for idx, value in enumerate(values)}
        for future in as_completed(future_to_index):
            results[future_to_index[future]] = future.result()
    return results


class SnapshotOrchestrator:
    def __init__(
        self,
        client,
        root: Path | str = DEFAULT_SNAPSHOT_ROOT,
        *,
        max_concurrency: int = 1,
        clock=_now_iso,
    ):
        self.client = client
        self.root = Path(root)
        self.max_concurrency = max_concurrency
        self.clock = clock

    def output_dir(self, ref: BuildReference) -> Path:
        return self.root / ref.org / ref.pipeline / str(ref.number)

    def _capture_annotations(self, ref: BuildReference, output_dir: Path) -> AnnotationResult:
        try:
            annotations = self.client.get_build_annotations(ref.org, ref.pipeline, ref.number)
        except REMOTE_ERRORS as exc:
            error = classify(exc)
            logger.info("Failed to fetch annotations for %s: %s", ref.slug, error.message)
            (output_dir / "annotations.json").unlink(missing_ok=True)
            return AnnotationResult("failed", 0, error=error.category, message=error.message)

        _write_json(
            output_dir / "annotations.json",
            {"fetchedAt": self.clock(), "count": len(annotations), "annotations": annotations},
        )
        logger.debug("Fetched %d annotation(s)", len(annotations))
        if not annotations:
            return AnnotationResult("none", 0)
        return AnnotationResult("success", len(annotations))

    def _capture_step(self, ref: BuildReference, output_dir: Path, index: int, job: dict) -> StepCaptureResult:
        name = step_dir_name(index, job_label(job))
        step_dir = output_dir / "steps" / name
        step_dir.mkdir(parents=True, exist_ok=True)
        # Metadata first, so a step whose log fails still has something on disk.
        _write_json(step_dir / "step.json", job)
        log_path = step_dir / "log.txt"
        # A stale log from an earlier run must not outlive a failed fetch.
        log_path.unlink(missing_ok=True)

        job_id = job.get("id", "")
        try:
            log = self.client.get_job_log(ref.org, ref.pipeline, ref.number, job.get("uuid") or job_id)
        except REMOTE_ERRORS as exc:
            error = classify(exc)
            logger.info("Failed to fetch log for job %s: %s", job_id, error.message)
            return StepCaptureResult(
                id=name,
                job_id=job_id,
                status="failed",
                job=job,
                error=error.category,
                message=error.message,
                retryable=error.retryable,
            )

        log_path.write_text(log.get("content") or "", encoding="utf-8")
        return StepCaptureResult(id=name, job_id=job_id, status="success", job=job)

    def run(self, ref: BuildReference, capture_all: bool = False) -> SnapshotResult:
        """Snapshot ``ref``. Raises only for the build fetch and local I/O."""
        build = self.client.get_build(ref.org, ref.pipeline, ref.number)

        output_dir = self.output_dir(ref)
        (output_dir / "steps").mkdir(parents=True, exist_ok=True)
        logger.debug("Snapshot directory: %s", output_dir)

        _write_json(output_dir / "build.json", build)
        annotations = self._capture_annotations(ref, output_dir)

        script_jobs = [job for job in build.get("jobs") or [] if is_command_job(job)]
        if capture_all:
            selected = script_jobs
        else:
            selected = [job for job in script_jobs if is_failed_job(job)]
        logger.debug("Capturing %d of %d script step(s)", len(selected), len(script_jobs))

        # Index is fixed by position before any fan-out, keeping directory names unique.
        steps = _ordered_map(
            list(enumerate(selected)),
            lambda item: self._capture_step(ref, output_dir, item[0], item[1]),
            self.max_concurrency,
        )

        manifest = build_manifest(ref, build, steps, annotations, self.clock())
        _write_json(output_dir / "manifest.json", manifest)
        return SnapshotResult(
            manifest=manifest,
            build=build,
            output_dir=output_dir,
            annotations=annotations,
            script_jobs=script_jobs,
            selected_jobs=selected,
        )
