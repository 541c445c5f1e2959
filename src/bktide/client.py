"""Buildkite REST API client."""

import logging
import time

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.buildkite.com/v2"


class BuildkiteError(Exception):
    """API error with code and message."""

    def __init__(self, code: str, message: str, status_code: int = 0):
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(f"{code}: {message}")


# Failures of a single remote call that callers may classify and survive.
REMOTE_ERRORS = (BuildkiteError, httpx.HTTPError)


def _code_for_status(status_code: int) -> str:
    if status_code == 429:
        return "RATE_LIMITED"
    if status_code == 404:
        return "NOT_FOUND"
    if status_code in {401, 403}:
        return "PERMISSION_DENIED"
    if status_code >= 500:
        return "SERVER_ERROR"
    return "HTTP_ERROR"


class BuildkiteClient:
    """Thin wrapper around the Buildkite REST API.

    Only the read endpoints needed to follow a job and snapshot a build are
    exposed. Retries here cover transient transport hiccups; polling and
    partial-failure policy live with the callers.
    """

    _RETRY_STATUS_CODES = {429, 502, 503, 504}

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        retries: int = 0,
        retry_backoff_ms: int = 250,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.retries = retries
        self.retry_backoff_ms = retry_backoff_ms
        self._client = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            timeout=timeout,
            follow_redirects=True,
        )

    def _sleep_backoff(self, attempt: int, retry_after_header: str | None = None) -> None:
        if retry_after_header:
            try:
                retry_after_seconds = float(retry_after_header)
                if retry_after_seconds > 0:
                    time.sleep(retry_after_seconds)
                    return
            except ValueError:
                pass

        backoff_seconds = (self.retry_backoff_ms / 1000.0) * (2**attempt)
        time.sleep(backoff_seconds)

    def _get(self, path: str, **params):
        """Make a GET request, return parsed JSON."""
        params = {k: v for k, v in params.items() if v is not None}
        logger.debug("GET %s params=%s", path, params)

        started = time.monotonic()
        for attempt in range(self.retries + 1):
            try:
                resp = self._client.get(path, params=params)
            except httpx.TimeoutException as exc:
                if attempt < self.retries:
                    self._sleep_backoff(attempt)
                    continue
                # Timeouts are reported as network failures so callers retry them.
                raise BuildkiteError("NETWORK", "Network request timed out", 0) from exc
            except httpx.RequestError as exc:
                if attempt < self.retries:
                    self._sleep_backoff(attempt)
                    continue
                raise BuildkiteError("NETWORK", str(exc) or type(exc).__name__, 0) from exc

            if resp.status_code in self._RETRY_STATUS_CODES and attempt < self.retries:
                logger.debug("GET %s returned %s, retrying (attempt %d)", path, resp.status_code, attempt + 1)
                self._sleep_backoff(attempt, resp.headers.get("retry-after"))
                continue
            break

        if resp.status_code >= 400:
            message = f"API request failed with status {resp.status_code}: {resp.text[:200]}"
            try:
                data = resp.json()
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("message"):
                message = f"API request failed with status {resp.status_code}: {data['message']}"
            raise BuildkiteError(_code_for_status(resp.status_code), message, resp.status_code)

        if not resp.content:
            raise BuildkiteError("EMPTY_RESPONSE", f"Empty response (HTTP {resp.status_code})", resp.status_code)
        try:
            data = resp.json()
        except ValueError:
            raise BuildkiteError("INVALID_RESPONSE", resp.text[:200], resp.status_code)

        logger.debug("GET %s completed in %.0fms", path, (time.monotonic() - started) * 1000)
        return data

    def get_access_token(self) -> dict:
        """Describe the current token (uuid, scopes). Used by ``doctor``."""
        return self._get("/access-token")

    def _build_path(self, org: str, pipeline: str, number: int) -> str:
        return f"/organizations/{org}/pipelines/{pipeline}/builds/{number}"

    def get_build(self, org: str, pipeline: str, number: int) -> dict:
        return self._get(self._build_path(org, pipeline, number))

    def get_job_log(self, org: str, pipeline: str, number: int, job_id: str) -> dict:
        """Fetch a job log. The response carries ``content`` and ``size`` (bytes)."""
        return self._get(f"{self._build_path(org, pipeline, number)}/jobs/{job_id}/log")

    def get_build_annotations(self, org: str, pipeline: str, number: int) -> list:
        data = self._get(f"{self._build_path(org, pipeline, number)}/annotations")
        if not isinstance(data, list):
            raise BuildkiteError("INVALID_RESPONSE", "Annotations response is not a list", 0)
        return data

    def close(self):
        self._client.close()
