"""Projects and their tracker connections."""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    JSON,
)
from sqlalchemy.orm import relationship

from storyforge.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class Project(db.Model):
    """A workspace that owns guardrails, a knowledge base and one tracker."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    # Free text with ### Principles / ### Forbidden Technologies / ### Allowed Platforms
    guardrails = Column(Text, default="")
    # Vector store id used for retrieval; empty disables retrieval
    knowledge_base_id = Column(String(200), default="")
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    integration = relationship(
        "TrackerIntegration",
        back_populates="project",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "guardrails": self.guardrails or "",
            "knowledge_base_id": self.knowledge_base_id or None,
            "tracker": self.integration.type if self.integration else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class TrackerIntegration(db.Model):
    """Connection settings for the project's tracker (Azure DevOps or Jira)."""

    __tablename__ = "tracker_integrations"

    id = Column(Integer, primary_key=True)
    project_id = Column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    type = Column(String(20), nullable=False)  # azure_devops | jira
    is_active = Column(Boolean, default=True)
    auth_type = Column(String(20), default="basic")  # basic | bearer
    # organization, project, base_url, project_key, email,
    # story_points_field_id, test_case_issue_type, test_cases_mapping,
    # test_cases_field_id, test_management_base_url
    settings = Column(JSON, default=dict)
    credentials_encrypted = Column(Text, default="")
    test_management_token_encrypted = Column(Text, default="")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    project = relationship("Project", back_populates="integration")

    __table_args__ = (
        db.CheckConstraint(
            "type IN ('azure_devops','jira')",
            name="ck_tracker_integration_type",
        ),
    )

    def to_dict(self):
        # Secrets never leave the service
        return {
            "id": self.id,
            "project_id": self.project_id,
            "type": self.type,
            "is_active": self.is_active,
            "auth_type": self.auth_type,
            "settings": self.settings or {},
            "has_credentials": bool(self.credentials_encrypted),
            "has_test_management_token": bool(self.test_management_token_encrypted),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
