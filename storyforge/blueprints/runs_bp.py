"""
Runs Blueprint — generation runs, review and apply.

Endpoints:
  GET    /api/v1/projects/:pid/work-items            — List tracker items (type, status, limit)
  GET    /api/v1/projects/:pid/work-items/:item_id   — One tracker item with its snapshot
  POST   /api/v1/projects/:pid/work-items/generate   — Start a run (201 finished, 202 running)
  GET    /api/v1/runs/:run_id                        — Run record
  GET    /api/v1/runs/:run_id/items                  — Run items in request order
  POST   /api/v1/runs/:run_id/apply                  — Write reviewed items to the tracker
"""

import logging

from flask import Blueprint, jsonify, request

from storyforge.core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from storyforge.services import apply_service, run_service
from storyforge.utils.errors import E, api_error

logger = logging.getLogger(__name__)

runs_bp = Blueprint("runs", __name__, url_prefix="/api/v1")

MAX_LIST_LIMIT = 200


# ═══════════════════════════════════════════════════════════════
# Error Handlers
# ═══════════════════════════════════════════════════════════════

@runs_bp.errorhandler(NotFoundError)
def handle_not_found(e):
    return api_error(E.NOT_FOUND, f"{e.resource} not found")


@runs_bp.errorhandler(ValidationError)
def handle_validation(e):
    return api_error(E.VALIDATION_INVALID, str(e), status=400, details=e.details or None)


@runs_bp.errorhandler(ConflictError)
def handle_conflict(e):
    return api_error(E.CONFLICT_STATE, str(e))


@runs_bp.errorhandler(ConfigurationError)
def handle_not_configured(e):
    return api_error(E.NOT_CONFIGURED, str(e))


@runs_bp.errorhandler(UpstreamError)
def handle_upstream(e):
    logger.warning("Upstream failure status=%s: %s", e.status_code, e)
    details = {"upstream_status": e.status_code} if e.status_code else None
    return api_error(E.UPSTREAM, str(e), details=details)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ═══════════════════════════════════════════════════════════════
# Work items
# ═══════════════════════════════════════════════════════════════

@runs_bp.route("/projects/<int:project_id>/work-items", methods=["GET"])
def list_work_items(project_id):
    """List tracker items for the project's active integration."""
    limit = request.args.get("limit", 50, type=int)
    if limit < 1 or limit > MAX_LIST_LIMIT:
        return api_error(E.VALIDATION_INVALID, f"limit must be between 1 and {MAX_LIST_LIMIT}")
    items = run_service.list_work_items(
        project_id,
        item_type=request.args.get("type") or None,
        state=request.args.get("status") or None,
        limit=limit,
    )
    return jsonify({"items": items, "total": len(items)}), 200


@runs_bp.route("/projects/<int:project_id>/work-items/<item_id>", methods=["GET"])
def get_work_item(project_id, item_id):
    return jsonify(run_service.get_work_item(project_id, item_id)), 200


@runs_bp.route("/projects/<int:project_id>/work-items/generate", methods=["POST"])
def generate(project_id):
    """
    Start a generation run.

    Body: {itemIds, templateRef?, template?: {name, body}, context?: [{name, text}]}
    """
    run, is_async = run_service.start_run(
        project_id, _json_body(), created_by=request.headers.get("X-User"),
    )
    return jsonify({"runId": run.id, "status": run.status}), 202 if is_async else 201


# ═══════════════════════════════════════════════════════════════
# Runs
# ═══════════════════════════════════════════════════════════════

@runs_bp.route("/runs/<run_id>", methods=["GET"])
def get_run(run_id):
    return jsonify(run_service.get_run(run_id).to_dict()), 200


@runs_bp.route("/runs/<run_id>/items", methods=["GET"])
def list_run_items(run_id):
    items = run_service.list_run_items(run_id)
    return jsonify({"items": [i.to_dict() for i in items], "total": len(items)}), 200


@runs_bp.route("/runs/<run_id>/apply", methods=["POST"])
def apply_run(run_id):
    """
    Apply reviewed items.

    Body: {selectedItemIds?, selectedFields?, createTasks?, createTestCases?,
           setStoryPoints?, overrides?: {runItemId: {...}}}
    409 while the run is still pending or running.
    """
    return jsonify(apply_service.apply_run(run_id, _json_body())), 200
