import json
from pathlib import Path
import tempfile
import unittest

from bktide.client import BuildkiteError
from bktide.formatters import format_navigation_tips
from bktide.refs import BuildReference
from bktide.snapshot import SnapshotOrchestrator, step_dir_name

REF = BuildReference("acme", "web", 42)
FIXED_TIME = "2024-05-01T12:00:00.000Z"


def _job(job_id, name, state="passed", exit_status=0, **extra):
    job = {
        "id": job_id,
        "type": "script",
        "name": name,
        "label": name,
        "state": state,
        "exit_status": exit_status,
        "started_at": "2024-05-01T11:00:00Z",
        "finished_at": "2024-05-01T11:05:00Z",
    }
    job.update(extra)
    return job


def _build(jobs, **extra):
    build = {
        "number": 42,
        "state": "failed",
        "message": "Fix flaky test\n\nLonger body",
        "branch": "main",
        "commit": "abcdef1234567890",
        "jobs": jobs,
    }
    build.update(extra)
    return build


class FakeClient:
    def __init__(self, build, annotations=None, log_errors=None, annotation_error=None, build_error=None):
        self.build = build
        self.annotations = annotations if annotations is not None else []
        self.log_errors = log_errors or {}
        self.annotation_error = annotation_error
        self.build_error = build_error
        self.log_requests = []

    def get_build(self, org, pipeline, number):
        if self.build_error:
            raise self.build_error
        return self.build

    def get_build_annotations(self, org, pipeline, number):
        if self.annotation_error:
            raise self.annotation_error
        return self.annotations

    def get_job_log(self, org, pipeline, number, job_id):
        self.log_requests.append(job_id)
        if job_id in self.log_errors:
            raise self.log_errors[job_id]
        return {"content": f"log for {job_id}\n", "size": 12}


class StepDirNameTests(unittest.TestCase):
    def test_index_prefix(self):
        self.assertEqual(step_dir_name(0, "Build"), "01-build")
        self.assertEqual(step_dir_name(8, "step"), "09-step")
        self.assertEqual(step_dir_name(99, "step"), "100-step")

    def test_sanitizing(self):
        self.assertEqual(step_dir_name(0, ":hammer: Build"), "01-build")
        self.assertEqual(step_dir_name(0, "Run Tests (unit)"), "01-run-tests-unit")
        self.assertEqual(step_dir_name(0, "Build --- Deploy"), "01-build-deploy")

    def test_empty_labels_fall_back_to_step(self):
        for label in ["", "   ", ":emoji:"]:
            self.assertEqual(step_dir_name(0, label), "01-step", label)

    def test_truncates_to_fifty_characters(self):
        name = step_dir_name(0, "a" * 100)
        self.assertEqual(len(name), 53)
        self.assertTrue(name.startswith("01-"))


class SnapshotOrchestratorTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self):
        self._tmp.cleanup()

    def _run(self, client, capture_all=False, **kwargs):
        orchestrator = SnapshotOrchestrator(client, self.root, clock=lambda: FIXED_TIME, **kwargs)
        return orchestrator.run(REF, capture_all=capture_all)

    def _read(self, *parts):
        return json.loads(self.root.joinpath("acme", "web", "42", *parts).read_text(encoding="utf-8"))

    def test_all_steps_captured(self):
        client = FakeClient(_build([_job("j1", "Build"), _job("j2", "Test")], state="passed"))

        result = self._run(client, capture_all=True)

        manifest = self._read("manifest.json")
        self.assertEqual(result.exit_code, 0)
        self.assertEqual(manifest, result.manifest)
        self.assertEqual(manifest["version"], 2)
        self.assertEqual(manifest["buildRef"], "acme/web/42")
        self.assertEqual(manifest["url"], "https://buildkite.com/acme/web/builds/42")
        self.assertEqual(manifest["fetchedAt"], FIXED_TIME)
        self.assertTrue(manifest["fetchComplete"])
        self.assertEqual(len(manifest["steps"]), 2)
        self.assertEqual(manifest["annotations"], {"fetchStatus": "none", "count": 0})
        self.assertNotIn("fetchErrors", manifest)
        self.assertEqual(
            manifest["build"],
            {"state": "passed", "number": 42, "message": "Fix flaky test", "branch": "main", "commit": "abcdef1"},
        )

        step = manifest["steps"][0]
        self.assertEqual(step["id"], "01-build")
        self.assertEqual(step["jobId"], "j1")
        self.assertEqual(step["fetchStatus"], "success")
        self.assertEqual(step["exit_status"], 0)
        step_dir = self.root / "acme" / "web" / "42" / "steps" / step["id"]
        self.assertEqual((step_dir / "log.txt").read_text(encoding="utf-8"), "log for j1\n")
        self.assertEqual(json.loads((step_dir / "step.json").read_text(encoding="utf-8"))["id"], "j1")
        self.assertEqual(self._read("build.json")["number"], 42)
        self.assertEqual(self._read("annotations.json"), {"fetchedAt": FIXED_TIME, "count": 0, "annotations": []})

    def test_one_failed_log_does_not_block_others(self):
        jobs = [_job("j1", "Build"), _job("j2", "Test"), _job("j3", "Deploy")]
        client = FakeClient(
            _build(jobs),
            log_errors={"j2": BuildkiteError("NOT_FOUND", "API request failed with status 404: Not Found", 404)},
        )

        result = self._run(client, capture_all=True)

        manifest = result.manifest
        self.assertEqual(result.exit_code, 1)
        self.assertFalse(manifest["fetchComplete"])
        self.assertEqual([s["fetchStatus"] for s in manifest["steps"]], ["success", "failed", "success"])
        self.assertEqual(len(manifest["fetchErrors"]), 1)
        error = manifest["fetchErrors"][0]
        self.assertEqual(error["id"], "02-test")
        self.assertEqual(error["jobId"], "j2")
        self.assertEqual(error["error"], "not_found")
        self.assertFalse(error["retryable"])
        self.assertEqual(client.log_requests, ["j1", "j2", "j3"])

        failed_dir = self.root / "acme" / "web" / "42" / "steps" / "02-test"
        self.assertTrue((failed_dir / "step.json").exists())
        self.assertFalse((failed_dir / "log.txt").exists())

    def test_annotation_failure_marks_incomplete_but_steps_continue(self):
        client = FakeClient(
            _build([_job("j1", "Build", state="failed", exit_status=1)]),
            annotation_error=BuildkiteError("PERMISSION_DENIED", "API request failed with status 403: Forbidden", 403),
        )

        result = self._run(client)

        self.assertEqual(result.manifest["annotations"], {"fetchStatus": "failed", "count": 0})
        self.assertEqual(result.manifest["steps"][0]["fetchStatus"], "success")
        self.assertFalse(result.manifest["fetchComplete"])
        self.assertNotIn("fetchErrors", result.manifest)
        self.assertEqual(result.exit_code, 1)

    def test_annotations_are_saved(self):
        notes = [{"context": "junit", "style": "error", "body_html": "<p>1 failure</p>"}]
        client = FakeClient(_build([]), annotations=notes)

        result = self._run(client)

        self.assertEqual(result.manifest["annotations"], {"fetchStatus": "success", "count": 1})
        self.assertEqual(self._read("annotations.json")["annotations"], notes)

    def test_default_policy_captures_failed_steps_only(self):
        jobs = [
            _job("ok", "Lint"),
            _job("bad", "Unit", state="failed", exit_status=1),
            _job("soft", "Flaky", state="passed", exit_status=3),
            _job("slow", "E2E", state="timed_out", exit_status=None),
            _job("nostatus", "Docs", state="finished", exit_status=None, passed=False),
            {"id": "wait", "type": "waiter", "state": "failed"},
            _job("manual", "Gate", type="manual", state="failed"),
        ]
        client = FakeClient(_build(jobs))

        result = self._run(client)

        self.assertEqual([s["jobId"] for s in result.manifest["steps"]], ["bad", "soft", "slow", "nostatus"])
        self.assertEqual([s["id"] for s in result.manifest["steps"]], ["01-unit", "02-flaky", "03-e2e", "04-docs"])
        self.assertEqual(len(result.script_jobs), 5)

    def test_build_fetch_failure_creates_nothing(self):
        client = FakeClient(_build([]), build_error=BuildkiteError("NOT_FOUND", "status 404", 404))

        with self.assertRaises(BuildkiteError):
            self._run(client)

        self.assertFalse((self.root / "acme").exists())

    def test_rerun_overwrites_previous_snapshot(self):
        client = FakeClient(_build([_job("j1", "Build")]))
        self._run(client, capture_all=True)
        client.build = _build([_job("j1", "Build")], state="passed")

        result = self._run(client, capture_all=True)

        self.assertEqual(self._read("manifest.json")["build"]["state"], "passed")
        self.assertEqual(result.exit_code, 0)

    def test_rerun_removes_files_whose_fetch_failed(self):
        client = FakeClient(_build([_job("j1", "Build")]), annotations=[{"context": "old"}])
        self._run(client, capture_all=True)
        log_path = self.root / "acme" / "web" / "42" / "steps" / "01-build" / "log.txt"
        self.assertTrue(log_path.exists())

        client.log_errors = {"j1": BuildkiteError("NOT_FOUND", "API request failed with status 404: Not Found", 404)}
        client.annotation_error = BuildkiteError("PERMISSION_DENIED", "API request failed with status 403: Forbidden", 403)
        result = self._run(client, capture_all=True)

        self.assertEqual(result.manifest["steps"][0]["fetchStatus"], "failed")
        self.assertEqual(result.manifest["annotations"]["fetchStatus"], "failed")
        self.assertFalse(log_path.exists())
        self.assertFalse((self.root / "acme" / "web" / "42" / "annotations.json").exists())
        self.assertTrue(log_path.with_name("step.json").exists())

    def test_write_failure_is_fatal(self):
        blocker = self.root / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        client = FakeClient(_build([_job("j1", "Build")]))
        orchestrator = SnapshotOrchestrator(client, blocker, clock=lambda: FIXED_TIME)

        with self.assertRaises(OSError):
            orchestrator.run(REF, capture_all=True)

        self.assertTrue(blocker.is_file())
        self.assertEqual(client.log_requests, [])

    def test_log_tip_points_at_a_captured_log(self):
        jobs = [
            _job("j1", "Unit", state="failed", exit_status=1),
            _job("j2", "Lint", state="failed", exit_status=2),
        ]
        client = FakeClient(_build(jobs), log_errors={"j1": BuildkiteError("NETWORK", "connection refused")})

        tips = format_navigation_tips(self._run(client))

        self.assertIn("02-lint", tips)
        self.assertNotIn("01-unit", tips)

    def test_concurrent_capture_keeps_position_order(self):
        jobs = [_job(f"j{i}", f"Step {i}") for i in range(6)]
        client = FakeClient(_build(jobs), log_errors={"j3": BuildkiteError("NETWORK", "connection refused")})

        result = self._run(client, capture_all=True, max_concurrency=4)

        self.assertEqual([s["id"] for s in result.manifest["steps"]], [f"0{i + 1}-step-{i}" for i in range(6)])
        self.assertEqual(result.manifest["fetchErrors"][0]["error"], "network_error")
        self.assertTrue(result.manifest["fetchErrors"][0]["retryable"])
        self.assertEqual(sorted(client.log_requests), [f"j{i}" for i in range(6)])


if __name__ == "__main__":
    unittest.main()
