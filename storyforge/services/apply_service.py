"""
Sync/Apply Engine — writes reviewed after-snapshots back to the tracker.

Per item, fully isolated from its siblings:
    merge override → fetch remote → build patch → write patch
    → (applied) sub-tasks → test artifacts

A failed patch rejects the item and skips its children. Child failures are
collected as warnings on the item's result and never reject the item.
Overrides are merged in memory only; the stored after-snapshot stays as
generated.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from storyforge.core.content import Override, WorkItemSnapshot
from storyforge.core.exceptions import ConflictError, ValidationError
from storyforge.integrations.tracker_gateway import FieldUpdate, TrackerClient, TrackerError
from storyforge.models import db
from storyforge.models.run import RunItem
from storyforge.services import run_service

logger = logging.getLogger(__name__)

APPLY_FIELDS = ("title", "description", "acceptance")
ERROR_TEXT_LIMIT = 2000


@dataclass
class ApplyRequest:
    item_ids: list[str] = field(default_factory=list)
    fields: tuple[str, ...] = APPLY_FIELDS
    create_subtasks: bool = False
    create_test_cases: bool = False
    set_story_points: bool = False
    overrides: dict[str, Override] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ApplyRequest":
        item_ids = data.get("selectedItemIds") or []
        if not isinstance(item_ids, list):
            raise ValidationError("selectedItemIds must be a list")

        fields = data.get("selectedFields")
        if fields is None:
            fields = list(APPLY_FIELDS)
        if not isinstance(fields, list):
            raise ValidationError("selectedFields must be a list")
        unknown = [f for f in fields if f not in APPLY_FIELDS]
        if unknown:
            raise ValidationError(
                f"Unknown fields: {', '.join(map(str, unknown))}",
                details={"selectedFields": f"allowed: {', '.join(APPLY_FIELDS)}"},
            )

        overrides = data.get("overrides") or {}
        if not isinstance(overrides, dict):
            raise ValidationError("overrides must be an object keyed by run item id")

        return cls(
            item_ids=[str(i) for i in item_ids],
            fields=tuple(fields),
            create_subtasks=bool(data.get("createTasks", data.get("createSubtasks"))),
            create_test_cases=bool(data.get("createTestCases")),
            set_story_points=bool(data.get("setStoryPoints")),
            overrides={str(k): Override.from_dict(v) for k, v in overrides.items()},
        )

    def selects(self, item: RunItem) -> bool:
        return not self.item_ids or item.id in self.item_ids or item.source_item_id in self.item_ids

    def override_for(self, item: RunItem) -> Override:
        return self.overrides.get(item.id) or self.overrides.get(item.source_item_id) or Override()


@dataclass
class ApplyResult:
    item_id: str
    source_item_id: str
    success: bool = False
    error: str | None = None
    subtasks_created: int = 0
    test_cases_created: int = 0
    test_cases_updated: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {
            "itemId": self.item_id,
            "sourceItemId": self.source_item_id,
            "success": self.success,
            "subtasksCreated": self.subtasks_created,
            "testCasesCreated": self.test_cases_created,
            "testCasesUpdated": self.test_cases_updated,
            "warnings": self.warnings,
        }
        if self.error:
            data["error"] = self.error
        return data


def merge_override(after: WorkItemSnapshot, override: Override) -> WorkItemSnapshot:
    """Overlay user edits on the after-snapshot. Fields left as None are kept."""
    merged = copy.deepcopy(after)
    enhanced = merged.enhanced
    if override.title is not None:
        merged.title = override.title
    if override.description_markup is not None:
        merged.description_markup = override.description_markup
    if override.acceptance_criteria_markup is not None:
        merged.acceptance_criteria_markup = override.acceptance_criteria_markup
    if override.story_points is not None:
        enhanced.story_points = override.story_points
    if override.tasks is not None:
        enhanced.tasks = [t.strip() for t in override.tasks if t.strip()]
    if override.test_cases is not None:
        enhanced.test_cases = list(override.test_cases)
    return merged


def build_update(after: WorkItemSnapshot, override: Override, request: ApplyRequest,
                 fallback_description: str = "") -> FieldUpdate:
    return FieldUpdate(
        enhanced=after.enhanced,
        title=after.title if "title" in request.fields and after.title else None,
        include_description="description" in request.fields,
        description_override=override.description_markup,
        include_acceptance="acceptance" in request.fields,
        acceptance_override=override.acceptance_criteria_markup,
        story_points=after.enhanced.story_points if request.set_story_points else None,
        fallback_description=fallback_description,
    )


def _reject(item: RunItem, result: ApplyResult, error: str) -> ApplyResult:
    result.error = (error or "Unknown error")[:ERROR_TEXT_LIMIT]
    item.status = "rejected"
    item.error_message = result.error
    db.session.commit()
    logger.warning("Apply rejected item=%s source=%s: %s", item.id, item.source_item_id, result.error,
                   extra={"run_item_id": item.id})
    return result


def apply_item(client: TrackerClient, item: RunItem, request: ApplyRequest) -> ApplyResult:
    """Write one run item to the tracker. Never raises for tracker failures."""
    result = ApplyResult(item_id=item.id, source_item_id=item.source_item_id)
    after = WorkItemSnapshot.from_dict(item.after_json)
    if after.enhanced is None:
        result.error = "item has no generated content"
        return result

    override = request.override_for(item)
    after = merge_override(after, override)
    before = WorkItemSnapshot.from_dict(item.before_json)

    try:
        remote = client.fetch_item(item.source_item_id)
        update = build_update(after, override, request, fallback_description=before.description_markup)
        outcome = client.patch_fields(remote.id, client.build_field_patch(remote, update))
    except Exception as exc:
        return _reject(item, result, str(exc))
    if not outcome.ok:
        return _reject(item, result, outcome.error)

    item.status = "applied"
    item.applied_at = datetime.now(timezone.utc)
    item.error_message = None
    db.session.commit()
    result.success = True

    enhanced = after.enhanced
    if not (request.create_subtasks and enhanced.tasks) and not (request.create_test_cases and enhanced.test_cases):
        return result

    try:
        existing = client.existing_child_names(remote)
    except TrackerError as exc:
        logger.warning("Child read failed item=%s: %s", item.id, exc, extra={"run_item_id": item.id})
        result.warnings.append(f"Existing children could not be read, duplicate check skipped: {exc}")
        existing = set()
    if request.create_subtasks and enhanced.tasks:
        try:
            counts = client.create_subtasks(remote, enhanced.tasks, existing)
            result.subtasks_created = counts.created
            result.warnings.extend(counts.warnings)
        except Exception as exc:
            logger.warning("Sub-task creation failed item=%s: %s", item.id, exc, extra={"run_item_id": item.id})
            result.warnings.append(f"Sub-task creation failed: {exc}")
    if request.create_test_cases and enhanced.test_cases:
        try:
            counts = client.sync_test_cases(remote, enhanced.test_cases, existing)
            result.test_cases_created = counts.created
            result.test_cases_updated = counts.updated
            result.warnings.extend(counts.warnings)
        except Exception as exc:
            logger.warning("Test case sync failed item=%s: %s", item.id, exc, extra={"run_item_id": item.id})
            result.warnings.append(f"Test case sync failed: {exc}")
    return result


def summarize(results: list[ApplyResult]) -> dict:
    return {
        "total": len(results),
        "succeeded": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
        "subtasksCreated": sum(r.subtasks_created for r in results),
        "testCasesCreated": sum(r.test_cases_created for r in results),
        "testCasesUpdated": sum(r.test_cases_updated for r in results),
    }


def apply_run(run_id: str, data: dict) -> dict:
    """
    Apply the selected items of a run.

    Raises:
        NotFoundError: unknown run.
        ConflictError: the run is still generating.
        ValidationError: malformed request.
        ConfigurationError: the project has no usable tracker integration.
    """
    run = run_service.get_run(run_id)
    if run.status in ("pending", "running"):
        raise ConflictError(resource="Run", field="status", value=run.status)
    request = ApplyRequest.from_dict(data or {})
    client = run_service.build_client_for_project(run_service.get_project(run.project_id))

    results = []
    for item in run.items:
        if not request.selects(item):
            continue
        results.append(apply_item(client, item, request))

    summary = summarize(results)
    logger.info(
        "Apply finished run=%s succeeded=%d failed=%d subtasks=%d tests=%d/%d",
        run_id, summary["succeeded"], summary["failed"], summary["subtasksCreated"],
        summary["testCasesCreated"], summary["testCasesUpdated"],
        extra={"run_id": run_id},
    )
    return {"results": [r.to_dict() for r in results], "summary": summary}
