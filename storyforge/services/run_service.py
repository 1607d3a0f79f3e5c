"""
Run Coordinator — Service Layer.

Business logic for:
    - Run creation:      validate the request, capture before-snapshots
    - Run execution:     per-item generation, rejected items never stop the batch
    - Dispatch:          small batches run in the request, large ones in a worker
    - Tracker browsing:  list / fetch items through the project's tracker client

A run reaches ``failed`` only when something outside the per-item loop
breaks; otherwise it always ends ``completed``.
"""

import logging
from datetime import datetime, timezone

from flask import current_app, g, has_request_context

from storyforge.ai.enhancer import ContextSnippet, GenerationFailed, GenerationInputs, WorkItemEnhancer
from storyforge.ai.gateway import LLMGateway
from storyforge.ai.task_runner import task_runner
from storyforge.core.content import WorkItemSnapshot
from storyforge.core.exceptions import NotFoundError, UpstreamError, ValidationError
from storyforge.integrations.tracker_gateway import TrackerClient, TrackerError, build_tracker_client
from storyforge.models import db
from storyforge.models.project import Project
from storyforge.models.run import Run, RunItem

logger = logging.getLogger(__name__)

ERROR_TEXT_LIMIT = 2000


def _utcnow():
    return datetime.now(timezone.utc)


# ── Collaborators (patched in tests) ─────────────────────────────────────────


def get_gateway() -> LLMGateway:
    return LLMGateway.from_config(current_app.config)


def build_client_for_project(project: Project) -> TrackerClient:
    """Tracker client for the project's active integration. Raises ConfigurationError."""
    cfg = current_app.config
    return build_tracker_client(
        project.integration,
        timeout=cfg.get("TRACKER_TIMEOUT_SECONDS"),
        max_retries=cfg.get("TRACKER_MAX_RETRIES", 2),
    )


def _request_id() -> str | None:
    return g.get("request_id") if has_request_context() else None


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if not project:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


# ── Request parsing ──────────────────────────────────────────────────────────


def parse_item_ids(data: dict) -> list[str]:
    """Requested tracker ids in request order, duplicates dropped."""
    raw = data.get("itemIds")
    if not isinstance(raw, list) or not raw:
        raise ValidationError("itemIds must be a non-empty list", details={"itemIds": "required"})
    ids = []
    for value in raw:
        if isinstance(value, bool) or not isinstance(value, (str, int)) or not str(value).strip():
            raise ValidationError("itemIds must contain tracker ids", details={"itemIds": repr(value)})
        item_id = str(value).strip()
        if item_id not in ids:
            ids.append(item_id)
    return ids


def parse_template(data: dict) -> dict | None:
    template = data.get("template")
    if template is None:
        return None
    if not isinstance(template, dict):
        raise ValidationError("template must be an object", details={"template": "expected {name, body}"})
    name = template.get("name") or ""
    body = template.get("body") or ""
    if not isinstance(name, str) or not isinstance(body, str):
        raise ValidationError("template name and body must be strings")
    return {"name": name, "body": body} if (name or body) else None


def parse_context(data: dict) -> list[ContextSnippet]:
    raw = data.get("context") or []
    if not isinstance(raw, list):
        raise ValidationError("context must be a list", details={"context": "expected [{name, text}]"})
    snippets = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError("context entries must be objects", details={"context": repr(entry)})
        name = str(entry.get("name") or "").strip()
        text = str(entry.get("text") or "")
        if name or text.strip():
            snippets.append(ContextSnippet(name=name, text=text))
    return snippets


# ── Run lifecycle ────────────────────────────────────────────────────────────


def create_run(project_id: int, data: dict, *, created_by: str | None = None) -> tuple[Run, GenerationInputs]:
    """
    Persist a pending run with one RunItem per requested id.

    Each item's before-snapshot is fetched now; an item whose fetch fails is
    created already ``rejected``. Configuration problems raise before any
    row is written.
    """
    project = get_project(project_id)
    item_ids = parse_item_ids(data)
    template = parse_template(data)
    context = parse_context(data)
    template_ref = data.get("templateRef")
    if template_ref is not None and not isinstance(template_ref, str):
        raise ValidationError("templateRef must be a string")

    client = build_client_for_project(project)
    gateway = get_gateway()
    _, provider_name = gateway.get_provider(gateway.generation_model)

    run = Run(
        project_id=project.id,
        template_ref=template_ref or (template or {}).get("name") or None,
        status="pending",
        provider=provider_name,
        model=gateway.generation_model,
        context_refs=[{"name": s.name} for s in context if s.name],
        created_by=created_by,
    )
    db.session.add(run)
    db.session.flush()

    for position, source_id in enumerate(item_ids):
        item = RunItem(run_id=run.id, position=position, source_item_id=source_id, status="pending")
        try:
            tracker_item = client.fetch_item(source_id)
            item.before_json = tracker_item.to_snapshot().to_dict()
        except TrackerError as exc:
            logger.warning(
                "Before-snapshot fetch failed run=%s item=%s status=%s: %s",
                run.id, source_id, exc.status_code, exc,
                extra={"run_id": run.id},
            )
            item.status = "rejected"
            item.after_json = {
                "error": str(exc)[:ERROR_TEXT_LIMIT],
                "request_id": _request_id(),
                "status": exc.status_code,
                "phase": "fetch",
            }
        db.session.add(item)

    db.session.commit()
    logger.info(
        "Run created id=%s project=%s items=%d provider=%s",
        run.id, project.id, len(item_ids), provider_name,
        extra={"run_id": run.id, "project_id": project.id},
    )

    inputs = GenerationInputs(
        project_id=project.id,
        project_name=project.name,
        template=template,
        context=context,
        guardrails=project.guardrails or "",
        knowledge_base_id=project.knowledge_base_id or None,
    )
    return run, inputs


def execute_run(run_id: str, inputs: GenerationInputs, *, correlation_id: str | None = None,
                gateway: LLMGateway | None = None) -> Run:
    """Generate every pending item of a run, one at a time."""
    run = db.session.get(Run, run_id)
    if not run:
        raise NotFoundError(resource="Run", resource_id=run_id)

    try:
        run.status = "running"
        run.started_at = _utcnow()
        db.session.commit()

        enhancer = WorkItemEnhancer(gateway or get_gateway())
        generated = rejected = 0
        for item in run.items:
            if item.status != "pending":
                continue
            before = WorkItemSnapshot.from_dict(item.before_json)
            try:
                after = enhancer.enhance(before, inputs, item_id=item.source_item_id)
            except GenerationFailed as exc:
                payload = exc.payload
                payload["error"] = payload["error"][:ERROR_TEXT_LIMIT]
                payload["request_id"] = payload["request_id"] or correlation_id
                item.after_json = payload
                item.status = "rejected"
                rejected += 1
            else:
                item.after_json = after.to_dict()
                item.status = "generated"
                generated += 1
            db.session.commit()

        run.status = "completed"
        run.completed_at = _utcnow()
        db.session.commit()
        logger.info(
            "Run completed id=%s generated=%d rejected=%d",
            run.id, generated, rejected, extra={"run_id": run.id},
        )
    except Exception as exc:
        logger.exception("Run %s failed: %s", run_id, exc, extra={"run_id": run_id})
        db.session.rollback()
        run = db.session.get(Run, run_id)
        run.status = "failed"
        run.error_message = str(exc)[:ERROR_TEXT_LIMIT]
        run.completed_at = _utcnow()
        db.session.commit()
    return run


def start_run(project_id: int, data: dict, *, created_by: str | None = None) -> tuple[Run, bool]:
    """
    Create a run and execute it.

    Returns:
        (run, is_async) — runs with at most SYNC_BATCH_THRESHOLD items are
        finished before returning; larger runs are handed to the task runner.
    """
    run, inputs = create_run(project_id, data, created_by=created_by)
    correlation_id = _request_id()
    threshold = current_app.config.get("SYNC_BATCH_THRESHOLD", 5)

    if len(run.items) <= threshold:
        return execute_run(run.id, inputs, correlation_id=correlation_id), False

    run_id = run.id
    task_runner.submit(
        run_id, lambda rid: execute_run(rid, inputs, correlation_id=correlation_id),
    )
    return run, True


def get_run(run_id: str) -> Run:
    run = db.session.get(Run, run_id)
    if not run:
        raise NotFoundError(resource="Run", resource_id=run_id)
    return run


def list_run_items(run_id: str) -> list[RunItem]:
    return list(get_run(run_id).items)


# ── Tracker browsing ─────────────────────────────────────────────────────────


def _upstream(exc: TrackerError) -> UpstreamError:
    return UpstreamError(str(exc), status_code=exc.status_code)


def list_work_items(project_id: int, *, item_type: str | None = None, state: str | None = None,
                    limit: int = 50) -> list[dict]:
    client = build_client_for_project(get_project(project_id))
    try:
        items = client.list_items(item_type=item_type, state=state, limit=limit)
    except TrackerError as exc:
        raise _upstream(exc) from exc
    return [item.to_summary() for item in items]


def get_work_item(project_id: int, item_id: str) -> dict:
    client = build_client_for_project(get_project(project_id))
    try:
        item = client.fetch_item(item_id)
    except TrackerError as exc:
        if exc.status_code == 404:
            raise NotFoundError(resource="Work item", resource_id=item_id) from exc
        raise _upstream(exc) from exc
    return {**item.to_summary(), "snapshot": item.to_snapshot().to_dict()}
