"""Tracker gateway — shared HTTP dispatch and the tracker capability interface.

Architecture:
  Each tracker family (Azure DevOps, Jira) is a TrackerClient subclass that
  owns its wire format. The Sync/Apply Engine and Run Coordinator only talk
  to the capability methods declared here, so neither knows which tracker
  it is writing to.

  All outbound HTTP goes through HttpGateway._call, which enforces:
  auth injection → retry (idempotent methods only) → structured logging.

Constants:
  timeout    = none unless TRACKER_TIMEOUT_SECONDS is configured
  retry_max  = 2     (max retry attempts after initial failure)
  backoff    = [1, 4] seconds
"""

from __future__ import annotations

import base64
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import requests

from storyforge.core.content import EnhancedContent, TestCase, WorkItemSnapshot
from storyforge.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]
_RETRIABLE_STATUSES = {429, 500, 502, 503, 504}


# ── Value objects ─────────────────────────────────────────────────────────────


class TrackerResult:
    """Typed result returned by every tracker HTTP call.

    Always check .ok before accessing .data.
    Never raises — all errors are captured in .error.
    """

    __slots__ = ("ok", "status_code", "data", "error", "duration_ms")

    def __init__(
        self,
        *,
        ok: bool,
        status_code: int | None,
        data: Any = None,
        error: str | None = None,
        duration_ms: int = 0,
    ) -> None:
        self.ok = ok
        self.status_code = status_code
        self.data = data
        self.error = error
        self.duration_ms = duration_ms

    def __repr__(self):
        return f"<TrackerResult ok={self.ok} status={self.status_code}>"


@dataclass
class TrackerCredentials:
    """Decrypted secrets for one integration. Never logged."""

    token: str
    auth_type: str = "basic"  # basic | bearer
    email: str | None = None
    test_management_token: str | None = None


@dataclass
class TrackerItem:
    """Parsed tracker item shared by both backends."""

    id: str
    title: str = ""
    description_markup: str = ""
    acceptance_criteria_markup: str = ""
    tags: list[str] = field(default_factory=list)
    assignee: str | None = None
    item_type: str = ""
    state: str = ""
    child_refs: list[str] = field(default_factory=list)
    raw: dict = field(default_factory=dict, repr=False)

    def to_snapshot(self) -> WorkItemSnapshot:
        return WorkItemSnapshot(
            title=self.title,
            description_markup=self.description_markup,
            acceptance_criteria_markup=self.acceptance_criteria_markup,
        )

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.item_type,
            "state": self.state,
            "tags": self.tags,
            "assignee": self.assignee,
        }


@dataclass
class FieldUpdate:
    """Parent-field changes for one item, produced by the Sync/Apply Engine.

    ``*_override`` values are written verbatim; otherwise the description and
    acceptance fields are rendered from ``enhanced``.
    """

    enhanced: EnhancedContent
    title: str | None = None
    include_description: bool = False
    description_override: str | None = None
    include_acceptance: bool = False
    acceptance_override: str | None = None
    story_points: float | None = None
    fallback_description: str = ""


@dataclass
class ArtifactCounts:
    created: int = 0
    updated: int = 0
    warnings: list[str] = field(default_factory=list)


class TrackerError(Exception):
    """A tracker call failed. Carries the raw upstream error body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


def normalize_name(name: str | None) -> str:
    return (name or "").strip().lower()


# ── Shared HTTP dispatch ──────────────────────────────────────────────────────


class HttpGateway(ABC):
    """Authenticated JSON-over-HTTP with bounded retry for idempotent calls."""

    label = "tracker"

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        timeout: float | None = None,
        max_retries: int = _RETRY_MAX,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_retries = max_retries
        self._sleep = time.sleep

    @abstractmethod
    def build_auth_headers(self) -> dict[str, str]:
        """Return HTTP headers required for authenticated requests."""

    def _call(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json_body: Any = None,
        content_type: str = "application/json",
        retry: bool | None = None,
    ) -> TrackerResult:
        """Execute an authenticated request.

        GET/PUT/PATCH retry on 429, 5xx and network errors unless ``retry``
        is False; POST never retries so creations are not duplicated.

        Returns:
            TrackerResult — always returns, never raises.
        """
        if retry is None:
            retry = method.upper() in ("GET", "PUT", "PATCH")
        attempts = (self.max_retries + 1) if retry else 1
        last_error = "Unknown error"
        last_status: int | None = None

        for attempt in range(attempts):
            try:
                headers = {"Accept": "application/json", **self.build_auth_headers()}
                kwargs: dict[str, Any] = {"headers": headers, "timeout": self.timeout}
                if json_body is not None:
                    headers["Content-Type"] = content_type
                    kwargs["json"] = json_body
                if params:
                    kwargs["params"] = params

                t0 = time.perf_counter()
                resp = self.session.request(method, url, **kwargs)
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code

                if resp.ok:
                    try:
                        data = resp.json() if resp.content else {}
                    except ValueError:
                        data = {}
                    return TrackerResult(
                        ok=True, status_code=resp.status_code, data=data, duration_ms=duration_ms,
                    )

                last_error = f"HTTP {resp.status_code}: {(resp.text or '')[:500]}"
                logger.warning(
                    "%s request failed attempt=%d/%d status=%d method=%s url=%s",
                    self.label, attempt + 1, attempts, resp.status_code, method, url,
                    extra={"tracker": self.label, "attempt": attempt + 1},
                )
                if resp.status_code not in _RETRIABLE_STATUSES:
                    break

            except requests.Timeout:
                last_error = f"Request timed out after {self.timeout}s"
                logger.warning(
                    "%s request timed out attempt=%d/%d url=%s",
                    self.label, attempt + 1, attempts, url,
                    extra={"tracker": self.label, "attempt": attempt + 1},
                )

            except ConfigurationError:
                raise  # Configuration errors should not be retried

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                logger.warning(
                    "%s network error attempt=%d/%d url=%s error=%s",
                    self.label, attempt + 1, attempts, url, last_error,
                    extra={"tracker": self.label, "attempt": attempt + 1},
                )

            if attempt < attempts - 1:
                sleep_s = _RETRY_BACKOFF_SECONDS[min(attempt, len(_RETRY_BACKOFF_SECONDS) - 1)]
                logger.info("Retrying %s request in %ss (attempt %d)", self.label, sleep_s, attempt + 2)
                self._sleep(sleep_s)

        return TrackerResult(ok=False, status_code=last_status, error=last_error)


def basic_auth_header(user: str, secret: str) -> str:
    raw = f"{user}:{secret}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


# ── Capability interface ──────────────────────────────────────────────────────


class TrackerClient(HttpGateway):
    """Operations every tracker backend implements.

    Never instantiate directly outside this package. Use build_tracker_client().
    """

    kind = "abstract"

    def __init__(self, settings: dict, credentials: TrackerCredentials, **kwargs) -> None:
        super().__init__(**kwargs)
        self.settings = settings or {}
        self.credentials = credentials

    def _setting(self, key: str, default: str | None = None) -> str:
        value = self.settings.get(key) or default
        if not value:
            raise ConfigurationError(f"{self.label} integration is missing '{key}'")
        return str(value)

    @abstractmethod
    def fetch_item(self, item_id: str) -> TrackerItem:
        """Fetch one item. Raises TrackerError on failure."""

    @abstractmethod
    def list_items(self, *, item_type: str | None = None, state: str | None = None,
                   limit: int = 50) -> list[TrackerItem]:
        """Query the tracker's items. Raises TrackerError on failure."""

    @abstractmethod
    def existing_child_names(self, item: TrackerItem) -> set[str]:
        """Normalized names of children already linked to ``item``.

        Raises TrackerError when the children cannot be read.
        """

    @abstractmethod
    def build_field_patch(self, item: TrackerItem, update: FieldUpdate) -> Any:
        """Backend-specific patch body for ``update`` merged with ``item``."""

    @abstractmethod
    def patch_fields(self, item_id: str, patch: Any) -> TrackerResult:
        """Write a patch produced by build_field_patch."""

    @abstractmethod
    def create_child(self, parent: TrackerItem, kind: str, fields: dict) -> TrackerResult:
        """Create a child (``task`` or ``test_case``) under ``parent``.

        On success ``data["id"]`` holds the new id.
        """

    @abstractmethod
    def search_artifact_by_name(self, name: str) -> str | None:
        """Id of the first artifact whose name matches exactly, else None."""

    @abstractmethod
    def link_artifact_to_parent(self, artifact_id: str, parent_id: str) -> TrackerResult:
        """Link an existing artifact to a parent item."""

    @abstractmethod
    def sync_test_cases(self, parent: TrackerItem, cases: list[TestCase],
                        existing_names: set[str]) -> ArtifactCounts:
        """Create or update test artifacts per the integration's mapping."""

    @abstractmethod
    def test_connection(self) -> TrackerResult:
        """Verify credentials against a lightweight endpoint."""

    def create_subtasks(self, parent: TrackerItem, tasks: list[str],
                        existing_names: set[str]) -> ArtifactCounts:
        """Create one child task per name not already linked. Failures become warnings."""
        counts = ArtifactCounts()
        for name in tasks:
            key = normalize_name(name)
            if not key or key in existing_names:
                continue
            fields = {"title": name}
            if parent.assignee:
                fields["assignee"] = parent.assignee
            try:
                result = self.create_child(parent, "task", fields)
            except Exception as exc:  # one failed child must not stop its siblings
                logger.warning("Sub-task creation raised parent=%s task=%r: %s", parent.id, name, exc)
                counts.warnings.append(f"Sub-task '{name}' failed: {exc}")
                continue
            if result.ok:
                existing_names.add(key)
                counts.created += 1
            else:
                counts.warnings.append(f"Sub-task '{name}' failed: {result.error}")
        return counts


# ── Factory function ──────────────────────────────────────────────────────────


def credentials_for(integration) -> TrackerCredentials:
    """Decrypt the integration's stored secrets."""
    from storyforge.utils.crypto import decrypt_secret

    if not integration.credentials_encrypted:
        raise ConfigurationError(f"{integration.type} integration has no credentials")
    settings = integration.settings or {}
    tm_token = None
    if integration.test_management_token_encrypted:
        tm_token = decrypt_secret(integration.test_management_token_encrypted)
    return TrackerCredentials(
        token=decrypt_secret(integration.credentials_encrypted),
        auth_type=integration.auth_type or "basic",
        email=settings.get("email"),
        test_management_token=tm_token,
    )


def build_tracker_client(
    integration,
    *,
    session: requests.Session | None = None,
    timeout: float | None = None,
    max_retries: int = _RETRY_MAX,
) -> TrackerClient:
    """Construct the TrackerClient for an integration record.

    In tests, inject a fake session:
        client = build_tracker_client(integration, session=FakeSession(...))
    """
    if integration is None or not integration.is_active:
        raise ConfigurationError("No active tracker integration is configured for this project")

    from storyforge.integrations.ado_client import AzureDevOpsClient
    from storyforge.integrations.jira_client import JiraClient

    credentials = credentials_for(integration)
    kwargs = {"session": session, "timeout": timeout, "max_retries": max_retries}
    match integration.type:
        case "azure_devops":
            return AzureDevOpsClient(integration.settings or {}, credentials, **kwargs)
        case "jira":
            return JiraClient(integration.settings or {}, credentials, **kwargs)
        case _:
            raise ConfigurationError(
                f"Unknown tracker type: '{integration.type}'. Must be one of: azure_devops, jira."
            )
