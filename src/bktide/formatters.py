"""Compact output formatters for CLI.

Plain text only: no colours, no spinners. JSON output is a passthrough.
"""

from __future__ import annotations

from datetime import datetime
import json
import os
from pathlib import Path

from .jobs import exit_status_of, is_failed_job
from .snapshot import SnapshotResult


def format_json(data) -> str:
    """Full JSON passthrough."""
    return json.dumps(data, indent=2)


def format_size(num_bytes: int) -> str:
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_duration(started_at: str | None, finished_at: str | None) -> str:
    start = _parse_time(started_at)
    end = _parse_time(finished_at)
    if start is None or end is None:
        return ""
    seconds = int((end - start).total_seconds())
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


# ---------------------------------------------------------------------------
# Build summary
# ---------------------------------------------------------------------------

def _job_counts(jobs: list[dict]) -> dict:
    counts = {"passed": 0, "failed": 0, "soft failed": 0, "running": 0, "other": 0}
    for job in jobs:
        state = (job.get("state") or "").lower()
        exit_status = exit_status_of(job)
        if exit_status == 0 or (exit_status is None and (state == "passed" or job.get("passed") is True)):
            counts["passed"] += 1
        elif is_failed_job(job):
            key = "soft failed" if job.get("soft_failed") or job.get("softFailed") else "failed"
            counts[key] += 1
        elif state == "running":
            counts["running"] += 1
        else:
            counts["other"] += 1
    return counts


def format_build_summary(build: dict, script_jobs: list[dict]) -> str:
    state = (build.get("state") or "unknown").upper()
    message = ((build.get("message") or "").split("\n")[0]) or "No message"
    duration = format_duration(build.get("started_at"), build.get("finished_at"))
    header = f"{state} {message} #{build.get('number', '?')}"
    if duration:
        header += f"  {duration}"

    creator = build.get("creator") or {}
    author = creator.get("name") or creator.get("email") or "Unknown"
    branch = build.get("branch") or "unknown"
    commit = (build.get("commit") or "unknown")[:7]

    counts = _job_counts(script_jobs)
    parts = [f"{n} {label}" for label, n in counts.items() if n]
    lines = [header, f"  {author}  {branch}  {commit}", "", f"{len(script_jobs)} steps: {', '.join(parts)}"]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Step logs
# ---------------------------------------------------------------------------

def format_step_log(job: dict, log: dict, *, lines: int | None) -> str:
    """Log tail with a one-line header. ``lines=None`` shows everything."""
    content = log.get("content") or ""
    all_lines = content.split("\n")
    total = len(all_lines)
    start = 0 if lines is None else max(0, total - lines)
    shown = all_lines[start:]

    exit_status = exit_status_of(job)
    header = f"{job.get('name') or job.get('label') or job.get('id', '?')}  [{job.get('state', 'unknown')}]"
    if exit_status is not None:
        header += f"  exit {exit_status}"
    size = log.get("size")
    if isinstance(size, int):
        header += f"  {format_size(size)}"

    out = [header]
    if start > 0:
        out.append(f"... showing last {len(shown)} of {total} lines (use --full for all)")
    out.append("")
    out.append("\n".join(shown))
    return "\n".join(out)


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

def _relative(path: Path) -> str:
    try:
        return os.path.relpath(path)
    except ValueError:
        return str(path)


def format_navigation_tips(result: SnapshotResult) -> str:
    manifest = result.manifest
    base = Path(_relative(result.output_dir))
    manifest_path = base / "manifest.json"
    steps_path = base / "steps"
    captured = len(manifest["steps"])
    build_state = (manifest["build"]["state"] or "").lower()

    tips = []
    if build_state in {"failed", "failing"}:
        tips.append(
            f"List failures:    jq -r '.steps[] | select(.state == \"failed\") | \"\\(.id): \\(.label)\"' {manifest_path}"
        )
        if result.annotations.count > 0:
            tips.append(f"View annotations: jq -r '.annotations[] | {{context, style}}' {base / 'annotations.json'}")
        tips.append(f"Get exit codes:   jq -r '.steps[] | \"\\(.id): exit \\(.exit_status)\"' {manifest_path}")
        # Steps and selected jobs share one order; only point at logs that were written.
        for step, job in zip(manifest["steps"], result.selected_jobs):
            if step["fetchStatus"] == "success" and is_failed_job(job):
                tips.append(f"View a log:       cat {steps_path / step['id'] / 'log.txt'}")
                break
        tips.append(f'Search errors:    grep -r "Error\\|Failed\\|Exception" {steps_path}/')
    else:
        tips.append(f"List all steps:   jq -r '.steps[] | \"\\(.id): \\(.label) (\\(.state))\"' {manifest_path}")
        tips.append(f"Browse logs:      ls {steps_path}/")
        if captured > 0:
            tips.append(f"View a log:       cat {steps_path}/01-*/log.txt")

    return "Next steps:\n" + "\n".join(f"  {t}" for t in tips)


def format_snapshot_summary(result: SnapshotResult, *, capture_all: bool, tips: bool = True) -> str:
    manifest = result.manifest
    captured = len(manifest["steps"])
    fetch_errors = manifest.get("fetchErrors", [])

    lines = [f"Snapshot saved to {result.output_dir}"]
    if captured:
        lines.append(f"  {captured} step(s) captured")
    elif capture_all:
        lines.append("  No steps to capture (build metadata saved)")
    else:
        lines.append("  No failed steps to capture (build metadata saved)")

    if result.annotations.count > 0:
        lines.append(f"  {result.annotations.count} annotation(s) captured")
    elif result.annotations.fetch_status == "failed":
        lines.append("  Warning: Failed to fetch annotations")

    if fetch_errors:
        lines.append(f"  Warning: {len(fetch_errors)} step(s) had errors fetching logs")
        for err in fetch_errors:
            retry = "retryable" if err["retryable"] else "not retryable"
            lines.append(f"    {err['id']}: {err['error']} ({retry})")

    skipped = len(result.script_jobs) - len(result.selected_jobs)
    if not capture_all and skipped > 0:
        lines.append(f"  Tip: {skipped} passing step(s) skipped. Use --all to capture all logs.")

    if tips:
        lines.append("")
        lines.append("  manifest.json has full build metadata and step index")
        lines.append("")
        lines.append(format_navigation_tips(result))
    return "\n".join(lines)
