"""Jira issue tracker client, with the optional Zephyr Scale test-management API.

Jira stores rich text as block documents, so descriptions are rendered with
the block helpers of the format adapter. Snapshots keep HTML markup: the
issue description is converted on fetch.

Test artifacts follow the integration's ``test_cases_mapping`` setting:
    description        test cases live in the parent description; linked
                       "Test" issues are created on request
    custom_field       test cases are written to ``test_cases_field_id``
    zephyr_equivalent  Zephyr test cases, updated in place when one with the
                       same name already exists
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from urllib.parse import quote

from storyforge.core.content import PROVENANCE_TAG, TestCase
from storyforge.integrations.tracker_gateway import (
    ArtifactCounts,
    FieldUpdate,
    HttpGateway,
    TrackerClient,
    TrackerError,
    TrackerItem,
    TrackerResult,
    basic_auth_header,
    normalize_name,
)
from storyforge.services.format_adapter import (
    blocks_to_html,
    bullets_to_html,
    case_script,
    case_title,
    case_to_html,
    cases_to_html,
    extract_list_items,
    html_to_blocks,
    render_description_blocks,
    render_test_case_blocks,
    render_test_case_list_blocks,
    sanitize_label,
    strip_markup,
)

logger = logging.getLogger(__name__)

ZEPHYR_DEFAULT_BASE_URL = "https://api.zephyrscale.smartbear.com/v2"

MAPPING_DESCRIPTION = "description"
MAPPING_CUSTOM_FIELD = "custom_field"
MAPPING_ZEPHYR = "zephyr_equivalent"
TEST_CASE_MAPPINGS = (MAPPING_DESCRIPTION, MAPPING_CUSTOM_FIELD, MAPPING_ZEPHYR)

_ISSUE_FIELDS = "summary,description,labels,assignee,issuetype,status,subtasks,issuelinks"
_SEARCH_PAGE_SIZE = 50
_ZEPHYR_PAGE_SIZE = 100
_ZEPHYR_MAX_PAGES = 20


def _jql_literal(value: str) -> str:
    return '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'


def _summary_of(ref) -> str:
    if isinstance(ref, str):
        return ref
    if not isinstance(ref, dict):
        return ""
    return str((ref.get("fields") or {}).get("summary") or ref.get("summary") or "")


@dataclass
class JiraIssue(TrackerItem):
    """Issue as returned by the Jira Cloud REST API v3."""

    issue_id: str = ""
    child_names: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict) -> "JiraIssue":
        fields = payload.get("fields") or {}
        subtasks = fields.get("subtasks") or []
        linked = []
        for link in fields.get("issuelinks") or []:
            if not isinstance(link, dict):
                continue
            linked.append(link.get("inwardIssue") or link.get("outwardIssue"))
        names = [s for s in (_summary_of(ref).strip() for ref in list(subtasks) + linked) if s]
        description = fields.get("description")
        if isinstance(description, dict):
            description = blocks_to_html(description)
        return cls(
            id=str(payload.get("key") or payload.get("id") or ""),
            title=str(fields.get("summary") or ""),
            description_markup=str(description or ""),
            tags=[str(label) for label in fields.get("labels") or [] if label],
            assignee=(fields.get("assignee") or {}).get("accountId"),
            item_type=str((fields.get("issuetype") or {}).get("name") or ""),
            state=str((fields.get("status") or {}).get("name") or ""),
            child_refs=[s.get("key") for s in subtasks if isinstance(s, dict) and s.get("key")],
            raw=payload,
            issue_id=str(payload.get("id") or ""),
            child_names=names,
        )


@dataclass
class ZephyrTestCase:
    """Test case record from the Zephyr Scale API."""

    key: str
    id: int | None = None
    name: str = ""
    objective: str = ""
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: dict) -> "ZephyrTestCase":
        return cls(
            key=str(payload.get("key") or ""),
            id=payload.get("id"),
            name=str(payload.get("name") or ""),
            objective=str(payload.get("objective") or ""),
            raw=payload,
        )


class ZephyrClient(HttpGateway):
    """Zephyr Scale Cloud API. Bearer token distinct from the Jira credentials."""

    label = "Zephyr"

    def __init__(self, token: str, project_key: str, *, base_url: str | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.token = token
        self.project_key = project_key
        self.base_url = (base_url or ZEPHYR_DEFAULT_BASE_URL).rstrip("/")

    def build_auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def find_by_name(self, name: str) -> ZephyrTestCase | None:
        """First test case in the project whose name matches exactly."""
        start_at = 0
        for _ in range(_ZEPHYR_MAX_PAGES):
            result = self._call(
                "GET", self._url("/testcases"),
                params={"projectKey": self.project_key, "maxResults": _ZEPHYR_PAGE_SIZE, "startAt": start_at},
            )
            if not result.ok:
                raise TrackerError(f"Zephyr search failed: {result.error}", result.status_code)
            data = result.data or {}
            values = data.get("values") or []
            for value in values:
                if isinstance(value, dict) and value.get("name") == name:
                    return ZephyrTestCase.from_payload(value)
            if data.get("isLast", True) or not values:
                return None
            start_at += len(values)
        return None

    def create(self, name: str, objective: str) -> TrackerResult:
        return self._call(
            "POST", self._url("/testcases"),
            json_body={"projectKey": self.project_key, "name": name, "objective": objective},
        )

    def update(self, key: str, name: str, objective: str) -> TrackerResult:
        """Fetch the full record, overlay name and objective, PUT it back."""
        current = self._call("GET", self._url(f"/testcases/{quote(key, safe='')}"))
        if not current.ok:
            return current
        body = dict(current.data or {})
        body["name"] = name
        body["objective"] = objective
        return self._call("PUT", self._url(f"/testcases/{quote(key, safe='')}"), json_body=body)

    def set_script(self, key: str, script: str) -> TrackerResult:
        return self._call(
            "POST", self._url(f"/testcases/{quote(key, safe='')}/testscript"),
            json_body={"type": "bdd", "text": script},
        )

    def link_issue(self, key: str, issue_id: int) -> TrackerResult:
        return self._call(
            "POST", self._url(f"/testcases/{quote(key, safe='')}/links/issues"),
            json_body={"issueId": issue_id},
        )


class JiraClient(TrackerClient):
    """Backend B: block-document descriptions, labels and linked issues."""

    kind = "jira"
    label = "Jira"

    def __init__(self, settings: dict, credentials, **kwargs) -> None:
        super().__init__(settings, credentials, **kwargs)
        self._http_kwargs = kwargs
        self._zephyr: ZephyrClient | None = None

    # ── Settings ──────────────────────────────────────────────────────────

    def base_url(self) -> str:
        return self._setting("base_url").rstrip("/")

    def project_key(self) -> str:
        return self._setting("project_key")

    @property
    def test_cases_mapping(self) -> str:
        mapping = self.settings.get("test_cases_mapping") or MAPPING_DESCRIPTION
        return mapping if mapping in TEST_CASE_MAPPINGS else MAPPING_DESCRIPTION

    def issue_url(self, key: str) -> str:
        return f"{self.base_url()}/rest/api/3/issue/{quote(str(key), safe='')}"

    def build_auth_headers(self) -> dict[str, str]:
        token = self.credentials.token
        if self.credentials.auth_type == "basic" and self.credentials.email:
            return {"Authorization": basic_auth_header(self.credentials.email, token)}
        return {"Authorization": f"Bearer {token}"}

    def zephyr(self) -> ZephyrClient | None:
        """Test-management client, or None when no token is configured."""
        if self._zephyr is None and self.credentials.test_management_token:
            self._zephyr = ZephyrClient(
                self.credentials.test_management_token,
                self.project_key(),
                base_url=self.settings.get("test_management_base_url"),
                **self._http_kwargs,
            )
        return self._zephyr

    # ── Reads ─────────────────────────────────────────────────────────────

    def fetch_item(self, item_id: str) -> JiraIssue:
        result = self._call("GET", self.issue_url(item_id))
        if not result.ok:
            raise TrackerError(f"Jira error: {result.error}", result.status_code)
        return JiraIssue.from_payload(result.data or {})

    def _search(self, jql: str, limit: int, fields: str = _ISSUE_FIELDS) -> list[dict]:
        issues = []
        token = None
        while len(issues) < limit:
            params = {"jql": jql, "fields": fields, "maxResults": min(_SEARCH_PAGE_SIZE, limit - len(issues))}
            if token:
                params["nextPageToken"] = token
            result = self._call("GET", f"{self.base_url()}/rest/api/3/search/jql", params=params)
            if not result.ok:
                raise TrackerError(f"Jira search error: {result.error}", result.status_code)
            data = result.data or {}
            page = data.get("issues") or []
            issues.extend(page)
            token = data.get("nextPageToken")
            if data.get("isLast", True) or not token or not page:
                break
        return issues[:limit]

    def list_items(self, *, item_type=None, state=None, limit=50) -> list[JiraIssue]:
        clauses = [f"project = {_jql_literal(self.project_key())}"]
        if item_type:
            clauses.append(f"issuetype = {_jql_literal(item_type)}")
        if state:
            clauses.append(f"status = {_jql_literal(state)}")
        jql = " AND ".join(clauses) + " ORDER BY updated DESC"
        return [JiraIssue.from_payload(p) for p in self._search(jql, limit)]

    def existing_child_names(self, item: TrackerItem) -> set[str]:
        """Sub-task and linked-issue summaries, read from the fetched issue."""
        names = getattr(item, "child_names", None) or []
        return {normalize_name(n) for n in names if normalize_name(n)}

    def search_artifact_by_name(self, name: str) -> str | None:
        jql = (
            f"project = {_jql_literal(self.project_key())} "
            f"AND summary ~ {_jql_literal(_jql_literal(name))}"
        )
        try:
            issues = self._search(jql, _SEARCH_PAGE_SIZE, fields="summary")
        except TrackerError as exc:
            logger.warning("Issue search failed name=%r: %s", name, exc)
            return None
        for issue in issues:
            if (issue.get("fields") or {}).get("summary") == name:
                return issue.get("key")
        return None

    # ── Writes ────────────────────────────────────────────────────────────

    def _description_doc(self, update: FieldUpdate) -> dict:
        enhanced = update.enhanced
        with_cases = self.test_cases_mapping == MAPPING_DESCRIPTION
        acceptance_items = None
        if update.acceptance_override is not None:
            acceptance_items = extract_list_items(update.acceptance_override)
        if update.description_override is None:
            return render_description_blocks(
                enhanced,
                acceptance_items=acceptance_items,
                include_test_cases=with_cases,
                fallback_text=strip_markup(update.fallback_description),
            )
        criteria = acceptance_items if acceptance_items else enhanced.acceptance_criteria
        parts = [update.description_override]
        if criteria:
            parts.append("<p><strong>Acceptance Criteria</strong></p>" + bullets_to_html(criteria))
        if with_cases and enhanced.test_cases:
            parts.append("<p><strong>Test Cases</strong></p>" + cases_to_html(enhanced.test_cases))
        return html_to_blocks("\n".join(p for p in parts if p))

    def build_field_patch(self, item: TrackerItem, update: FieldUpdate) -> dict:
        """``{"fields": ...}`` body: summary, description document, story points, labels."""
        fields = {}
        if update.title:
            fields["summary"] = update.title
        # Acceptance criteria live inside the description document
        if update.include_description or update.include_acceptance:
            fields["description"] = self._description_doc(update)
        if update.story_points is not None:
            points_field = self.settings.get("story_points_field_id")
            if points_field:
                fields[points_field] = update.story_points
            else:
                logger.info("Story points skipped for %s: no story_points_field_id", item.id)
        labels = list(item.tags)
        for tag in update.enhanced.tags or [PROVENANCE_TAG]:
            label = sanitize_label(tag)
            if label and label not in labels:
                labels.append(label)
        fields["labels"] = labels
        return {"fields": fields}

    def patch_fields(self, item_id: str, patch: dict) -> TrackerResult:
        return self._call("PUT", self.issue_url(item_id), json_body=patch)

    def create_child(self, parent: TrackerItem, kind: str, fields: dict) -> TrackerResult:
        body = {
            "project": {"key": self.project_key()},
            "summary": fields["title"],
        }
        if kind == "task":
            body["parent"] = {"key": parent.id}
            body["issuetype"] = {"name": self.settings.get("subtask_issue_type") or "Sub-task"}
            if fields.get("assignee"):
                body["assignee"] = {"accountId": fields["assignee"]}
        elif kind == "test_case":
            body["issuetype"] = {"name": self.settings.get("test_case_issue_type") or "Test"}
            if fields.get("description"):
                body["description"] = fields["description"]
        else:
            return TrackerResult(ok=False, status_code=None, error=f"Unsupported child kind '{kind}'")

        result = self._call("POST", f"{self.base_url()}/rest/api/3/issue", json_body={"fields": body})
        if result.ok:
            data = result.data or {}
            result.data = {"id": str(data.get("key") or data.get("id") or ""), "issue_id": data.get("id")}
            logger.info("Created %s %s for %s", kind, result.data["id"], parent.id)
        return result

    def link_artifact_to_parent(self, artifact_id: str, parent_id: str) -> TrackerResult:
        return self._call(
            "POST", f"{self.base_url()}/rest/api/3/issueLink",
            json_body={
                "type": {"name": "Relates"},
                "inwardIssue": {"key": artifact_id},
                "outwardIssue": {"key": parent_id},
            },
        )

    def sync_test_cases(self, parent: TrackerItem, cases: list[TestCase],
                        existing_names: set[str]) -> ArtifactCounts:
        match self.test_cases_mapping:
            case "custom_field":
                return self._write_test_case_field(parent, cases)
            case "zephyr_equivalent":
                return self._sync_zephyr(parent, cases)
            case _:
                return self._create_linked_tests(parent, cases, existing_names)

    def _create_linked_tests(self, parent: TrackerItem, cases: list[TestCase],
                             existing_names: set[str]) -> ArtifactCounts:
        counts = ArtifactCounts()
        for tc in cases:
            title = case_title(tc)
            key = normalize_name(title)
            if not key or key in existing_names:
                continue
            try:
                result = self.create_child(
                    parent, "test_case", {"title": title, "description": render_test_case_blocks(tc)},
                )
                if not result.ok:
                    counts.warnings.append(f"Test case '{title}' failed: {result.error}")
                    continue
                existing_names.add(key)
                counts.created += 1
                link = self.link_artifact_to_parent(result.data["id"], parent.id)
                if not link.ok:
                    counts.warnings.append(f"Test case '{title}' was not linked: {link.error}")
            except Exception as exc:
                logger.warning("Test case creation raised parent=%s title=%r: %s", parent.id, title, exc)
                counts.warnings.append(f"Test case '{title}' failed: {exc}")
        return counts

    def _write_test_case_field(self, parent: TrackerItem, cases: list[TestCase]) -> ArtifactCounts:
        counts = ArtifactCounts()
        field_id = self.settings.get("test_cases_field_id")
        if not field_id:
            counts.warnings.append("Test cases skipped: test_cases_field_id is not configured")
            return counts
        if not cases:
            return counts
        result = self.patch_fields(parent.id, {"fields": {field_id: render_test_case_list_blocks(cases)}})
        if result.ok:
            counts.updated += len(cases)
        else:
            counts.warnings.append(f"Test case field update failed: {result.error}")
        return counts

    def _sync_zephyr(self, parent: TrackerItem, cases: list[TestCase]) -> ArtifactCounts:
        counts = ArtifactCounts()
        zephyr = self.zephyr()
        if zephyr is None:
            counts.warnings.append("Zephyr test cases skipped: no test-management token is configured")
            return counts
        for tc in cases:
            name = case_title(tc)
            try:
                self._sync_one_zephyr(zephyr, parent, tc, name, counts)
            except Exception as exc:
                logger.warning("Zephyr sync raised parent=%s name=%r: %s", parent.id, name, exc)
                counts.warnings.append(f"Zephyr test case '{name}' failed: {exc}")
        return counts

    def _sync_one_zephyr(self, zephyr: ZephyrClient, parent: TrackerItem, tc: TestCase,
                         name: str, counts: ArtifactCounts) -> None:
        objective = case_to_html(tc)
        existing = zephyr.find_by_name(name)
        if existing is not None:
            result = zephyr.update(existing.key, name, objective)
            if not result.ok:
                counts.warnings.append(f"Zephyr test case '{name}' update failed: {result.error}")
                return
            key = existing.key
            counts.updated += 1
        else:
            result = zephyr.create(name, objective)
            if not result.ok:
                counts.warnings.append(f"Zephyr test case '{name}' failed: {result.error}")
                return
            key = str((result.data or {}).get("key") or "")
            counts.created += 1

        script = case_script(tc)
        if script:
            scripted = zephyr.set_script(key, script)
            if not scripted.ok:
                counts.warnings.append(f"Zephyr test script for '{name}' failed: {scripted.error}")

        issue_id = getattr(parent, "issue_id", "")
        if not str(issue_id).isdigit():
            counts.warnings.append(f"Zephyr test case '{name}' was not linked: parent has no numeric id")
            return
        linked = zephyr.link_issue(key, int(issue_id))
        if not linked.ok:
            counts.warnings.append(f"Zephyr test case '{name}' was not linked: {linked.error}")

    def test_connection(self) -> TrackerResult:
        return self._call("GET", f"{self.base_url()}/rest/api/3/myself")
