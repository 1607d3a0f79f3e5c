"""Azure DevOps work-item tracker client.

Fields are HTML strings; updates are JSON-patch operation lists against
field paths; tags are one semicolon-joined string. Children hang off the
parent through hierarchy relations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import quote

from storyforge.core.content import PROVENANCE_TAG, TestCase
from storyforge.integrations.tracker_gateway import (
    ArtifactCounts,
    FieldUpdate,
    TrackerClient,
    TrackerError,
    TrackerItem,
    TrackerResult,
    basic_auth_header,
    normalize_name,
)
from storyforge.services.format_adapter import (
    case_title,
    case_to_html,
    render_acceptance_html,
    render_description_html,
)

logger = logging.getLogger(__name__)

API_VERSION = "7.1"

F_TITLE = "System.Title"
F_DESCRIPTION = "System.Description"
F_ACCEPTANCE = "Microsoft.VSTS.Common.AcceptanceCriteria"
F_STORY_POINTS = "Microsoft.VSTS.Scheduling.StoryPoints"
F_TAGS = "System.Tags"
F_ASSIGNED_TO = "System.AssignedTo"
F_TYPE = "System.WorkItemType"
F_STATE = "System.State"

REL_CHILD = "System.LinkTypes.Hierarchy-Forward"
REL_PARENT = "System.LinkTypes.Hierarchy-Reverse"

_CHILD_TYPES = {"task": "Task", "test_case": "Test Case"}
_BATCH_SIZE = 200


def split_tags(raw: str | None) -> list[str]:
    return [t.strip() for t in (raw or "").split(";") if t.strip()]


def merge_tags(current: list[str], additions: list[str]) -> list[str]:
    """Set union preserving first-seen order, case-insensitive."""
    merged = []
    seen = set()
    for tag in list(current) + list(additions):
        key = tag.strip().lower()
        if key and key not in seen:
            seen.add(key)
            merged.append(tag.strip())
    return merged


def _wiql_literal(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


@dataclass
class AdoWorkItem(TrackerItem):
    """Work item as returned by the work-item REST API."""

    url: str = ""

    @classmethod
    def from_payload(cls, payload: dict) -> "AdoWorkItem":
        fields = payload.get("fields") or {}
        assigned = fields.get(F_ASSIGNED_TO)
        if isinstance(assigned, dict):
            assigned = assigned.get("uniqueName") or assigned.get("displayName")
        children = [
            rel.get("url") for rel in payload.get("relations") or []
            if isinstance(rel, dict) and rel.get("rel") == REL_CHILD and rel.get("url")
        ]
        return cls(
            id=str(payload.get("id", "")),
            title=str(fields.get(F_TITLE) or ""),
            description_markup=str(fields.get(F_DESCRIPTION) or ""),
            acceptance_criteria_markup=str(fields.get(F_ACCEPTANCE) or ""),
            tags=split_tags(fields.get(F_TAGS)),
            assignee=assigned or None,
            item_type=str(fields.get(F_TYPE) or ""),
            state=str(fields.get(F_STATE) or ""),
            child_refs=children,
            raw=payload,
            url=payload.get("url") or "",
        )


class AzureDevOpsClient(TrackerClient):
    """Backend A: structured fields with HTML values."""

    kind = "azure_devops"
    label = "Azure DevOps"

    # ── URLs ──────────────────────────────────────────────────────────────

    def base_url(self) -> str:
        return (self.settings.get("base_url") or "https://dev.azure.com").rstrip("/")

    def org_url(self) -> str:
        return f"{self.base_url()}/{quote(self._setting('organization'), safe='')}"

    def project_url(self) -> str:
        return f"{self.org_url()}/{quote(self._setting('project'), safe='')}"

    def item_url(self, item_id: str) -> str:
        return f"{self.org_url()}/_apis/wit/workitems/{quote(str(item_id), safe='')}"

    def build_auth_headers(self) -> dict[str, str]:
        token = self.credentials.token
        if self.credentials.auth_type == "bearer":
            auth = f"Bearer {token}"
        else:
            auth = basic_auth_header("", token)
        return {"Authorization": auth, "X-TFS-FedAuthRedirect": "Suppress"}

    # ── Reads ─────────────────────────────────────────────────────────────

    def fetch_item(self, item_id: str) -> AdoWorkItem:
        result = self._call(
            "GET", self.item_url(item_id), params={"$expand": "relations", "api-version": API_VERSION},
        )
        if not result.ok:
            raise TrackerError(f"Azure DevOps error: {result.error}", result.status_code)
        return AdoWorkItem.from_payload(result.data or {})

    def _fetch_batch(self, ids: list[str], fields: list[str] | None = None) -> list[dict]:
        items = []
        for start in range(0, len(ids), _BATCH_SIZE):
            params = {"ids": ",".join(ids[start:start + _BATCH_SIZE]), "api-version": API_VERSION}
            if fields:
                params["fields"] = ",".join(fields)
            result = self._call("GET", f"{self.org_url()}/_apis/wit/workitems", params=params)
            if not result.ok:
                raise TrackerError(f"Azure DevOps error: {result.error}", result.status_code)
            items.extend((result.data or {}).get("value") or [])
        return items

    def _wiql_ids(self, query: str, limit: int | None = None) -> list[str]:
        params = {"api-version": API_VERSION}
        if limit:
            params["$top"] = limit
        result = self._call(
            "POST", f"{self.project_url()}/_apis/wit/wiql", params=params,
            json_body={"query": query}, retry=True,
        )
        if not result.ok:
            raise TrackerError(f"Azure DevOps WIQL error: {result.error}", result.status_code)
        refs = (result.data or {}).get("workItems") or []
        return [str(ref["id"]) for ref in refs if isinstance(ref, dict) and "id" in ref]

    def list_items(self, *, item_type=None, state=None, limit=50) -> list[AdoWorkItem]:
        clauses = ["[System.TeamProject] = @project"]
        if item_type:
            clauses.append(f"[{F_TYPE}] = {_wiql_literal(item_type)}")
        if state:
            clauses.append(f"[{F_STATE}] = {_wiql_literal(state)}")
        query = (
            "SELECT [System.Id] FROM WorkItems WHERE "
            + " AND ".join(clauses)
            + " ORDER BY [System.ChangedDate] DESC"
        )
        ids = self._wiql_ids(query, limit)[:limit]
        if not ids:
            return []
        return [AdoWorkItem.from_payload(p) for p in self._fetch_batch(ids)]

    def existing_child_names(self, item: TrackerItem) -> set[str]:
        """Titles of forward-hierarchy children. Raises TrackerError when unreadable."""
        ids = [ref.rstrip("/").rsplit("/", 1)[-1] for ref in item.child_refs]
        ids = [i for i in ids if i]
        if not ids:
            return set()
        children = self._fetch_batch(ids, fields=[F_TITLE])
        return {
            normalize_name((c.get("fields") or {}).get(F_TITLE))
            for c in children
            if normalize_name((c.get("fields") or {}).get(F_TITLE))
        }

    def search_artifact_by_name(self, name: str) -> str | None:
        query = (
            "SELECT [System.Id] FROM WorkItems WHERE [System.TeamProject] = @project "
            f"AND [{F_TYPE}] = 'Test Case' AND [{F_TITLE}] = {_wiql_literal(name)} "
            "ORDER BY [System.Id]"
        )
        try:
            ids = self._wiql_ids(query, 1)
        except TrackerError as exc:
            logger.warning("Test case search failed name=%r: %s", name, exc)
            return None
        return ids[0] if ids else None

    # ── Writes ────────────────────────────────────────────────────────────

    def build_field_patch(self, item: TrackerItem, update: FieldUpdate) -> list[dict]:
        """JSON-patch ops: title, description, acceptance, story points, tags."""
        enhanced = update.enhanced
        ops = []
        if update.title:
            ops.append({"op": "add", "path": f"/fields/{F_TITLE}", "value": update.title})
        if update.include_description:
            if update.description_override is not None:
                description = update.description_override
            else:
                description = render_description_html(enhanced) or update.fallback_description
            ops.append({"op": "add", "path": f"/fields/{F_DESCRIPTION}", "value": description})
        if update.include_acceptance:
            if update.acceptance_override is not None:
                acceptance = update.acceptance_override
            else:
                acceptance = render_acceptance_html(enhanced.acceptance_criteria, enhanced.test_cases)
            ops.append({"op": "add", "path": f"/fields/{F_ACCEPTANCE}", "value": acceptance})
        if update.story_points is not None:
            ops.append({"op": "add", "path": f"/fields/{F_STORY_POINTS}", "value": update.story_points})
        tags = merge_tags(item.tags, enhanced.tags or [PROVENANCE_TAG])
        ops.append({"op": "add", "path": f"/fields/{F_TAGS}", "value": "; ".join(tags)})
        return ops

    def patch_fields(self, item_id: str, patch: list[dict]) -> TrackerResult:
        return self._call(
            "PATCH", self.item_url(item_id), params={"api-version": API_VERSION},
            json_body=patch, content_type="application/json-patch+json",
        )

    def _parent_relation(self, parent_id: str, parent_url: str | None = None) -> dict:
        return {
            "op": "add",
            "path": "/relations/-",
            "value": {"rel": REL_PARENT, "url": parent_url or self.item_url(parent_id)},
        }

    def create_child(self, parent: TrackerItem, kind: str, fields: dict) -> TrackerResult:
        work_item_type = _CHILD_TYPES.get(kind)
        if not work_item_type:
            return TrackerResult(ok=False, status_code=None, error=f"Unsupported child kind '{kind}'")
        ops = [{"op": "add", "path": f"/fields/{F_TITLE}", "value": fields["title"]}]
        if fields.get("description"):
            ops.append({"op": "add", "path": f"/fields/{F_DESCRIPTION}", "value": fields["description"]})
        if fields.get("assignee"):
            ops.append({"op": "add", "path": f"/fields/{F_ASSIGNED_TO}", "value": fields["assignee"]})
        ops.append(self._parent_relation(parent.id, getattr(parent, "url", None)))

        url = f"{self.project_url()}/_apis/wit/workitems/${quote(work_item_type)}"
        result = self._call(
            "POST", url, params={"api-version": API_VERSION},
            json_body=ops, content_type="application/json-patch+json",
        )
        if result.ok:
            result.data = {"id": str((result.data or {}).get("id", ""))}
            logger.info("Created %s %s under %s", work_item_type, result.data["id"], parent.id)
        return result

    def link_artifact_to_parent(self, artifact_id: str, parent_id: str) -> TrackerResult:
        return self._call(
            "PATCH", self.item_url(artifact_id), params={"api-version": API_VERSION},
            json_body=[self._parent_relation(parent_id)],
            content_type="application/json-patch+json", retry=False,
        )

    def sync_test_cases(self, parent: TrackerItem, cases: list[TestCase],
                        existing_names: set[str]) -> ArtifactCounts:
        """Create one Test Case child per case whose title is not already a child."""
        counts = ArtifactCounts()
        for tc in cases:
            title = case_title(tc)
            key = normalize_name(title)
            if not key or key in existing_names:
                continue
            try:
                result = self.create_child(
                    parent, "test_case", {"title": title, "description": case_to_html(tc)},
                )
            except Exception as exc:
                logger.warning("Test case creation raised parent=%s title=%r: %s", parent.id, title, exc)
                counts.warnings.append(f"Test case '{title}' failed: {exc}")
                continue
            if result.ok:
                existing_names.add(key)
                counts.created += 1
            else:
                counts.warnings.append(f"Test case '{title}' failed: {result.error}")
        return counts

    def test_connection(self) -> TrackerResult:
        return self._call(
            "GET", f"{self.project_url()}/_apis/wit/workitemtypes", params={"api-version": API_VERSION},
        )
