"""Parse build references typed or pasted by the user."""

from __future__ import annotations

from dataclasses import dataclass
import re
from urllib.parse import parse_qs, urlparse

from .client import BuildkiteError

_WEB_HOST = "buildkite.com"
_URL_PATH = re.compile(r"^/([^/]+)/([^/]+)/builds/(\d+)(?:/.*)?$")
_SLUG = re.compile(r"^([^/#\s]+)/([^/#\s]+)/(\d+)$")
_HASH = re.compile(r"^([^/#\s]+)/([^/#\s]+)#(\d+)$")


@dataclass(frozen=True)
class BuildReference:
    org: str
    pipeline: str
    number: int
    step_id: str | None = None

    @property
    def slug(self) -> str:
        return f"{self.org}/{self.pipeline}/{self.number}"

    @property
    def url(self) -> str:
        return f"https://{_WEB_HOST}/{self.org}/{self.pipeline}/builds/{self.number}"


def _parse_url(raw: str) -> BuildReference:
    parsed = urlparse(raw)
    if parsed.hostname != _WEB_HOST:
        raise BuildkiteError("VALIDATION", f"Invalid Buildkite URL: expected {_WEB_HOST}, got {parsed.hostname}", 0)
    match = _URL_PATH.match(parsed.path)
    if not match:
        raise BuildkiteError("VALIDATION", f"Invalid Buildkite URL path: {parsed.path}", 0)
    step_ids = parse_qs(parsed.query).get("sid")
    org, pipeline, number = match.groups()
    return BuildReference(org, pipeline, int(number), step_ids[0] if step_ids else None)


def parse_build_ref(raw: str) -> BuildReference:
    """Parse ``org/pipeline/123``, ``org/pipeline#123`` or a build URL.

    A leading ``@`` is ignored. URLs may carry trailing path segments and a
    ``?sid=`` step id, as copied from the browser.
    """
    if not raw or not raw.strip():
        raise BuildkiteError("VALIDATION", "Build reference is required", 0)

    cleaned = raw.strip()
    if cleaned.startswith("@"):
        cleaned = cleaned[1:]

    if cleaned.startswith(("http://", "https://")):
        return _parse_url(cleaned)

    for pattern in (_SLUG, _HASH):
        match = pattern.match(cleaned)
        if match:
            org, pipeline, number = match.groups()
            return BuildReference(org, pipeline, int(number))

    raise BuildkiteError(
        "VALIDATION",
        f"Invalid build reference format: {raw}. Expected org/pipeline/number, "
        "org/pipeline#number or https://buildkite.com/org/pipeline/builds/number",
        0,
    )
