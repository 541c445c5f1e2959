"""bktide CLI: follow Buildkite job logs and snapshot builds from the terminal."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import sys
import threading

import click

from .client import DEFAULT_BASE_URL, BuildkiteClient, BuildkiteError
from .errors import classify
from .follow import DEFAULT_TAIL_LINES, LogFollower, interrupt_handler
from .formatters import format_build_summary, format_json, format_size, format_snapshot_summary, format_step_log
from .jobs import JobSnapshot, find_job_by_step
from .refs import parse_build_ref
from .snapshot import DEFAULT_SNAPSHOT_ROOT, SnapshotOrchestrator

logger = logging.getLogger(__name__)

_SERVICE_NAME = "bktide"
_PROTOCOL_VERSION = "1"
_OUTPUT_MODES = ("human", "json")


def _get_client(ctx: click.Context) -> BuildkiteClient:
    return ctx.obj["client"]


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


def _candidate_config_paths() -> list[Path]:
    override = os.environ.get("BKTIDE_CONFIG")
    if override:
        return [Path(override).expanduser()]

    xdg_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_home:
        xdg_path = Path(xdg_home).expanduser() / "bktide" / "config.json"
    else:
        xdg_path = Path.home() / ".config" / "bktide" / "config.json"

    legacy_path = Path.home() / ".bktide" / "config.json"
    return [xdg_path, legacy_path]


def _preferred_config_path() -> Path:
    return _candidate_config_paths()[0]


def _check_config_permissions(path: Path, payload: dict) -> None:
    if os.name == "nt":
        return
    if "token" not in payload:
        return
    mode = path.stat().st_mode & 0o777
    if mode & 0o077:
        raise BuildkiteError("CONFIG", f"Insecure config permissions on {path} (expected 600)", 0)


def _read_cli_config() -> tuple[dict, str | None]:
    for path in _candidate_config_paths():
        if path.exists():
            try:
                parsed = json.loads(path.read_text(encoding="utf-8"))
            except OSError as exc:
                raise BuildkiteError("CONFIG", f"Unable to read config file: {path}", 0) from exc
            except json.JSONDecodeError as exc:
                raise BuildkiteError("CONFIG", f"Invalid JSON in config file: {path}", 0) from exc

            if not isinstance(parsed, dict):
                raise BuildkiteError("CONFIG", f"Config file must contain a JSON object: {path}", 0)

            _check_config_permissions(path, parsed)
            return parsed, str(path)

    return {}, None


def _write_config_file(path: Path, payload: dict, *, force: bool = False) -> bool:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not force and path.exists():
        return False
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    if os.name != "nt":
        path.chmod(0o600)
    return True


def _resolve_setting(flag_value, env_name: str, config_value, default_value):
    if flag_value is not None:
        return flag_value
    env_value = os.environ.get(env_name)
    if env_value not in (None, ""):
        return env_value
    if config_value is not None:
        return config_value
    return default_value


def _resolve_output_mode(ctx: click.Context) -> str:
    return ctx.obj.get("output", "human")


def _success_envelope(command_name: str, data, meta: dict | None = None) -> dict:
    payload = {
        "ok": True,
        "service": _SERVICE_NAME,
        "protocolVersion": _PROTOCOL_VERSION,
        "command": command_name,
        "data": data,
    }
    if meta:
        payload["meta"] = meta
    return payload


def _emit_data(
    ctx: click.Context,
    data,
    *,
    command_name: str,
    human_text: str | None = None,
    meta: dict | None = None,
) -> None:
    """Emit command output in requested format."""
    if _resolve_output_mode(ctx) == "human":
        click.echo(human_text if human_text is not None else format_json(data))
        return
    click.echo(format_json(_success_envelope(command_name, data, meta=meta)))


def _exit_code_for_error(err: BuildkiteError) -> int:
    if err.code in {"VALIDATION", "CONFIG"}:
        return 2
    return 1


def _error_payload(command_name: str, err: BuildkiteError, exit_code: int) -> dict:
    category = classify(err)
    return {
        "ok": False,
        "service": _SERVICE_NAME,
        "protocolVersion": _PROTOCOL_VERSION,
        "command": command_name,
        "error": {
            "code": err.code,
            "category": category.category,
            "message": err.message,
            "status": err.status_code,
            "retryable": category.retryable and exit_code != 2,
            "exitCode": exit_code,
        },
    }


def _exit_with_error(ctx: click.Context, err: BuildkiteError) -> None:
    exit_code = _exit_code_for_error(err)
    if _resolve_output_mode(ctx) == "human":
        click.echo(f"Error: {err.code}: {err.message}", err=True)
    else:
        payload = _error_payload(ctx.info_name or "main", err, exit_code)
        click.echo(format_json(payload), err=True)
    sys.exit(exit_code)


def _exit_with_config_error(ctx: click.Context, err: BuildkiteError) -> None:
    # The config file may be what failed, so only the flag and env can pick the mode.
    mode = ctx.params.get("output") or os.environ.get("BKTIDE_OUTPUT")
    if mode == "human":
        click.echo(f"Error: {err.code}: {err.message}", err=True)
    else:
        payload = _error_payload(ctx.invoked_subcommand or "main", err, 2)
        click.echo(json.dumps(payload, sort_keys=True, separators=(",", ":")), err=True)
    sys.exit(2)


@click.group()
@click.option("--token", default=None, help="Buildkite API token (or set BK_TOKEN)")
@click.option("--base-url", default=None, help="API base URL")
@click.option(
    "--output",
    default=None,
    type=click.Choice(list(_OUTPUT_MODES)),
    help="Output format (human for readable text, json for scripts).",
)
@click.option("--timeout", default=None, type=float, help="HTTP request timeout in seconds.")
@click.option("--retries", default=None, type=int, help="Retries for transient HTTP/network failures.")
@click.option("--retry-backoff-ms", default=None, type=int, help="Base retry backoff in milliseconds.")
@click.option("--max-concurrency", default=None, type=int, help="Max parallel log fetches for snapshot.")
@click.option("--debug", is_flag=True, default=False, help="Log requests and retry decisions to stderr.")
@click.pass_context
def main(
    ctx,
    token: str | None,
    base_url: str | None,
    output: str | None,
    timeout: float | None,
    retries: int | None,
    retry_backoff_ms: int | None,
    max_concurrency: int | None,
    debug: bool,
):
    """Follow Buildkite job logs and snapshot builds to disk."""
    ctx.ensure_object(dict)
    _configure_logging(debug)
    try:
        file_config, config_path = _read_cli_config()

        resolved_token = _resolve_setting(token, "BK_TOKEN", file_config.get("token"), None)
        resolved_base_url = _resolve_setting(base_url, "BKTIDE_BASE_URL", file_config.get("base_url"), DEFAULT_BASE_URL)
        resolved_output = _resolve_setting(output, "BKTIDE_OUTPUT", file_config.get("output"), "human")
        resolved_timeout = float(_resolve_setting(timeout, "BKTIDE_TIMEOUT", file_config.get("timeout"), 30.0))
        resolved_retries = int(_resolve_setting(retries, "BKTIDE_RETRIES", file_config.get("retries"), 0))
        resolved_retry_backoff_ms = int(
            _resolve_setting(retry_backoff_ms, "BKTIDE_RETRY_BACKOFF_MS", file_config.get("retry_backoff_ms"), 250)
        )
        resolved_max_concurrency = int(
            _resolve_setting(max_concurrency, "BKTIDE_MAX_CONCURRENCY", file_config.get("max_concurrency"), 1)
        )
        if resolved_output not in _OUTPUT_MODES:
            raise BuildkiteError("CONFIG", f"Invalid output in config/env: {resolved_output}", 0)
        if resolved_timeout <= 0 or resolved_timeout > 300:
            raise BuildkiteError("CONFIG", "timeout must be > 0 and <= 300 seconds", 0)
        if resolved_retries < 0 or resolved_retries > 10:
            raise BuildkiteError("CONFIG", "retries must be between 0 and 10", 0)
        if resolved_retry_backoff_ms < 0 or resolved_retry_backoff_ms > 60000:
            raise BuildkiteError("CONFIG", "retry_backoff_ms must be between 0 and 60000", 0)
        if resolved_max_concurrency < 1 or resolved_max_concurrency > 16:
            raise BuildkiteError("CONFIG", "max_concurrency must be between 1 and 16", 0)
    except ValueError as exc:
        _exit_with_config_error(ctx, BuildkiteError("CONFIG", f"Invalid numeric setting: {exc}", 0))
    except BuildkiteError as e:
        _exit_with_config_error(ctx, e)

    ctx.obj["output"] = resolved_output
    ctx.obj["timeout"] = resolved_timeout
    ctx.obj["base_url"] = resolved_base_url
    ctx.obj["max_concurrency"] = resolved_max_concurrency
    ctx.obj["config"] = file_config
    ctx.obj["config_path"] = config_path
    logger.debug("Config loaded from %s", config_path or "defaults")

    if ctx.invoked_subcommand in {"config", "doctor"}:
        return

    if not resolved_token:
        _exit_with_error(ctx, BuildkiteError("CONFIG", "No API token. Set BK_TOKEN or pass --token.", 0))
    ctx.obj["client"] = BuildkiteClient(
        resolved_token,
        resolved_base_url,
        timeout=resolved_timeout,
        retries=resolved_retries,
        retry_backoff_ms=resolved_retry_backoff_ms,
    )


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@main.group()
def config():
    """Manage local CLI configuration."""


@config.command(name="path")
@click.pass_context
def config_path(ctx):
    """Show effective config path."""
    cfg_path = ctx.obj.get("config_path") or str(_preferred_config_path())
    payload = {"path": cfg_path, "exists": Path(cfg_path).exists()}
    _emit_data(ctx, payload, command_name="config.path", human_text=cfg_path)


@config.command(name="init")
@click.option("--force", is_flag=True, help="Overwrite existing config file")
@click.pass_context
def config_init(ctx, force):
    """Create a local config template."""
    target = _preferred_config_path()
    template = {
        "token": "",
        "base_url": DEFAULT_BASE_URL,
        "output": "human",
        "timeout": 30.0,
        "retries": 0,
        "retry_backoff_ms": 250,
        "max_concurrency": 1,
        "snapshot_dir": str(DEFAULT_SNAPSHOT_ROOT),
        "poll_interval": 3,
    }
    try:
        created = _write_config_file(target, template, force=force)
        payload = {"path": str(target), "created": created}
        human = f"{'created' if created else 'exists'}: {target}"
        _emit_data(ctx, payload, command_name="config.init", human_text=human)
    except OSError:
        _exit_with_error(ctx, BuildkiteError("CONFIG", f"Failed to write config: {target}", 0))


# ---------------------------------------------------------------------------
# logs
# ---------------------------------------------------------------------------


@main.command()
@click.argument("build_ref")
@click.argument("step_id", required=False)
@click.option("--lines", "-n", default=DEFAULT_TAIL_LINES, show_default=True, help="Number of trailing lines to show")
@click.option("--full", is_flag=True, help="Show the complete log")
@click.option("--save", "save_path", default=None, type=click.Path(dir_okay=False), help="Write the full log to a file")
@click.option("--follow", "-f", is_flag=True, help="Keep polling until the job finishes (always plain text)")
@click.option("--poll-interval", default=None, type=float, help="Seconds between polls when following")
@click.pass_context
def logs(ctx, build_ref, step_id, lines, full, save_path, follow, poll_interval):
    """Show (or follow) the log of one step.

    The step id comes from the argument or from the ?sid= parameter of a
    pasted build URL.

    With --follow the log is streamed to stdout as plain text even under
    --output json, and the exit code mirrors the job's exit status.
    """
    client = _get_client(ctx)
    try:
        ref = parse_build_ref(build_ref)
        step_id = step_id or ref.step_id
        if not step_id:
            raise BuildkiteError("VALIDATION", "Step ID is required. Pass it as an argument or include ?sid= in the URL", 0)

        interval = float(
            _resolve_setting(poll_interval, "BKTIDE_POLL_INTERVAL", ctx.obj["config"].get("poll_interval"), 3)
        )
        if interval <= 0:
            raise BuildkiteError("VALIDATION", "poll interval must be > 0", 0)

        build = client.get_build(ref.org, ref.pipeline, ref.number)
        job = find_job_by_step(build.get("jobs") or [], step_id)
        if job is None:
            raise BuildkiteError("NOT_FOUND", f"Step not found in build #{ref.number}: {step_id}", 404)

        if follow and not JobSnapshot.from_api(job).is_terminal:
            cancel = threading.Event()
            follower = LogFollower(
                client,
                ref,
                job["id"],
                interval_ms=int(interval * 1000),
                tail=None if full else lines,
                cancel=cancel,
            )
            with interrupt_handler(cancel):
                outcome = follower.run()
            sys.exit(outcome.exit_code)

        log = client.get_job_log(ref.org, ref.pipeline, ref.number, job["id"])
        content = log.get("content") or ""
        if save_path:
            Path(save_path).write_text(content, encoding="utf-8")
            size = log.get("size") if isinstance(log.get("size"), int) else len(content.encode("utf-8"))
            click.echo(f"Log saved to {save_path} ({format_size(size)}, {len(content.splitlines())} lines)", err=True)

        data = {
            "build": {
                "org": ref.org,
                "pipeline": ref.pipeline,
                "number": ref.number,
                "state": build.get("state") or "unknown",
                "url": build.get("web_url") or ref.url,
            },
            "step": {
                "id": job.get("id"),
                "label": job.get("name") or job.get("label"),
                "state": job.get("state"),
                "exitStatus": job.get("exit_status"),
                "startedAt": job.get("started_at"),
                "finishedAt": job.get("finished_at"),
            },
            "logs": {"content": content, "size": log.get("size")},
        }
        human = format_step_log(job, log, lines=None if full else lines)
        _emit_data(ctx, data, command_name="logs", human_text=human)
    except OSError as exc:
        _exit_with_error(ctx, BuildkiteError("IO", str(exc), 0))
    except BuildkiteError as e:
        _exit_with_error(ctx, e)


# ---------------------------------------------------------------------------
# snapshot
# ---------------------------------------------------------------------------


@main.command()
@click.argument("build_ref")
@click.option("--output-dir", default=None, type=click.Path(file_okay=False), help="Snapshot root directory")
@click.option("--all/--failed", "capture_all", default=False, help="Capture every step, or only failed ones (default)")
@click.option("--json", "as_json", is_flag=True, help="Print the manifest as JSON")
@click.option("--no-tips", is_flag=True, help="Hide navigation tips")
@click.pass_context
def snapshot(ctx, build_ref, output_dir, capture_all, as_json, no_tips):
    """Save build metadata, annotations and step logs to disk.

    Exits 1 when any part of the build could not be fetched; manifest.json
    records which parts and why.
    """
    client = _get_client(ctx)
    try:
        ref = parse_build_ref(build_ref)
        root = _resolve_setting(output_dir, "BKTIDE_SNAPSHOT_DIR", ctx.obj["config"].get("snapshot_dir"), DEFAULT_SNAPSHOT_ROOT)
        orchestrator = SnapshotOrchestrator(
            client,
            Path(root).expanduser(),
            max_concurrency=ctx.obj.get("max_concurrency", 1),
        )
        result = orchestrator.run(ref, capture_all=capture_all)
    except OSError as exc:
        _exit_with_error(ctx, BuildkiteError("IO", f"Failed to write snapshot: {exc}", 0))
    except BuildkiteError as e:
        _exit_with_error(ctx, e)

    if as_json:
        click.echo(format_json(result.manifest))
    else:
        human = "\n\n".join(
            [
                format_build_summary(result.build, result.script_jobs),
                format_snapshot_summary(result, capture_all=capture_all, tips=not no_tips),
            ]
        )
        _emit_data(
            ctx,
            result.manifest,
            command_name="snapshot",
            human_text=human,
            meta={"outputDir": str(result.output_dir)},
        )
    sys.exit(result.exit_code)


# ---------------------------------------------------------------------------
# doctor
# ---------------------------------------------------------------------------


def _doctor_check_config() -> dict:
    """Check config file existence, validity, and permissions."""
    check = {"name": "config", "status": "pass"}
    found_path = next((p for p in _candidate_config_paths() if p.exists()), None)

    if found_path is None:
        check["status"] = "warn"
        check["message"] = "No config file found (optional)"
        check["hint"] = "Run: bktide config init"
        return check

    check["path"] = str(found_path)
    try:
        parsed = json.loads(found_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        check["status"] = "fail"
        check["message"] = f"Cannot read config: {exc}"
        return check

    if not isinstance(parsed, dict):
        check["status"] = "fail"
        check["message"] = "Config must be a JSON object"
        return check

    if os.name != "nt" and "token" in parsed:
        mode = found_path.stat().st_mode & 0o777
        if mode & 0o077:
            check["status"] = "fail"
            check["message"] = f"Insecure permissions: {oct(mode)} (expected 0o600)"
            check["hint"] = f"Run: chmod 600 {found_path}"
            return check

    check["message"] = "Config loaded OK"
    return check


def _resolve_doctor_token(ctx: click.Context) -> tuple[str | None, str | None]:
    parent_params = ctx.parent.params if ctx.parent is not None else {}
    if parent_params.get("token"):
        return parent_params["token"], "flag"
    if os.environ.get("BK_TOKEN"):
        return os.environ["BK_TOKEN"], "env"
    config_token = ctx.obj.get("config", {}).get("token")
    if config_token:
        return config_token, "config"
    return None, None


def _doctor_check_token(ctx: click.Context) -> dict:
    check = {"name": "token", "status": "pass"}
    token, source = _resolve_doctor_token(ctx)
    if not token:
        check["status"] = "fail"
        check["message"] = "No API token found"
        check["hint"] = "Set BK_TOKEN or add token to config"
        return check
    check["source"] = source
    check["message"] = f"API token found (source: {source})"
    return check


def _doctor_check_connectivity(ctx: click.Context) -> dict:
    """Probe the API with the resolved token."""
    check = {"name": "connectivity", "status": "pass"}
    token, _ = _resolve_doctor_token(ctx)
    if not token:
        check["status"] = "skip"
        check["message"] = "Skipped (no API token)"
        return check

    client = BuildkiteClient(token, ctx.obj["base_url"], timeout=ctx.obj["timeout"], retries=0, retry_backoff_ms=0)
    try:
        scopes = client.get_access_token().get("scopes") or []
        check["message"] = "API reachable, token valid"
        if scopes and "read_build_logs" not in scopes:
            check["status"] = "warn"
            check["message"] = "Token lacks read_build_logs scope; logs and snapshots will fail"
    except BuildkiteError as e:
        category = classify(e)
        if category.category == "rate_limited":
            check["status"] = "warn"
            check["message"] = "Rate limited (API is reachable but throttled)"
        else:
            check["status"] = "fail"
            check["message"] = f"{category.category}: {e.message}"
    finally:
        client.close()

    return check


@main.command()
@click.pass_context
def doctor(ctx):
    """Run diagnostics on config, token, and API connectivity."""
    checks = [
        _doctor_check_config(),
        _doctor_check_token(ctx),
        _doctor_check_connectivity(ctx),
    ]

    all_pass = all(c["status"] == "pass" for c in checks)
    any_fail = any(c["status"] == "fail" for c in checks)
    overall = "pass" if all_pass else ("fail" if any_fail else "warn")
    payload = {"status": overall, "checks": checks}

    lines = []
    icons = {"pass": "+", "warn": "!", "fail": "x", "skip": "-"}
    for c in checks:
        line = f"[{icons.get(c['status'], '?')}] {c['name']}: {c.get('message', c['status'])}"
        hint = c.get("hint")
        if hint:
            line += f"\n    hint: {hint}"
        lines.append(line)
    lines.append(f"\nOverall: {overall}")

    _emit_data(ctx, payload, command_name="doctor", human_text="\n".join(lines))


if __name__ == "__main__":
    main()
