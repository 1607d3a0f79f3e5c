"""Generation runs and their per-item before/after snapshots."""

import uuid
from datetime import datetime, timezone

from storyforge.models import db

RUN_STATUSES = ("pending", "running", "completed", "failed")
ITEM_STATUSES = ("pending", "generated", "rejected", "applied")


def _uuid():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class Run(db.Model):
    """One generation request covering a batch of tracker items."""

    __tablename__ = "runs"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    template_ref = db.Column(db.String(200), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    provider = db.Column(db.String(30), nullable=True)
    model = db.Column(db.String(100), nullable=True)
    # [{"name": ...}] of the context snippets supplied with the request
    context_refs = db.Column(db.JSON, default=list)
    error_message = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(100), nullable=True)

    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    started_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    items = db.relationship(
        "RunItem",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RunItem.position",
    )

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','running','completed','failed')",
            name="ck_run_status",
        ),
    )

    def to_dict(self, include_items=False):
        data = {
            "id": self.id,
            "project_id": self.project_id,
            "template_ref": self.template_ref,
            "status": self.status,
            "provider": self.provider,
            "model": self.model,
            "context_refs": self.context_refs or [],
            "error": self.error_message,
            "created_by": self.created_by,
            "item_count": len(self.items),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }
        if include_items:
            data["items"] = [i.to_dict() for i in self.items]
        return data

    def __repr__(self):
        return f"<Run id={self.id} status={self.status}>"


class RunItem(db.Model):
    """A single tracker item inside a run."""

    __tablename__ = "run_items"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    run_id = db.Column(
        db.String(36), db.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    source_item_id = db.Column(db.String(100), nullable=False)
    before_json = db.Column(db.JSON, nullable=True)
    # Rendered after-snapshot, or {"error", "request_id", "status"} when rejected
    after_json = db.Column(db.JSON, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    applied_at = db.Column(db.DateTime, nullable=True)
    # Last apply failure, raw upstream text
    error_message = db.Column(db.Text, nullable=True)

    run = db.relationship("Run", back_populates="items")

    __table_args__ = (
        db.CheckConstraint(
            "status IN ('pending','generated','rejected','applied')",
            name="ck_run_item_status",
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "run_id": self.run_id,
            "source_item_id": self.source_item_id,
            "status": self.status,
            "before": self.before_json,
            "after": self.after_json,
            "created_at": _iso(self.created_at),
            "applied_at": _iso(self.applied_at),
            "error": self.error_message,
        }

    def __repr__(self):
        return f"<RunItem id={self.id} source={self.source_item_id} status={self.status}>"
