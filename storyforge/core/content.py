"""
Work-item content types shared by generation, rendering and sync.

EnhancedContent is the normalized, tracker-agnostic result of one
generation. WorkItemSnapshot is the before/after view of a tracker item
stored on each RunItem. Override carries user edits that take precedence
over generated content at apply time.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Union

PROVENANCE_TAG = "AIEnhanced"
STANDARD_TASKS = ("PR Review", "Dev Testing", "QA Handoff")


@dataclass(frozen=True)
class GivenWhenThen:
    given: str = ""
    when: str = ""
    then: str = ""

    def to_dict(self) -> dict:
        return {"given": self.given, "when": self.when, "then": self.then}


@dataclass(frozen=True)
class NameAndScript:
    name: str = ""
    bdd_script: str = ""

    def to_dict(self) -> dict:
        return {"name": self.name, "bdd_script": self.bdd_script}


TestCase = Union[GivenWhenThen, NameAndScript]


def _str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]


def _str(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _number(value) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    return None


@dataclass
class EnhancedContent:
    """Structured enhancement of one work item."""

    title: str = ""
    type: str = ""
    role_goal_reason: str = ""
    description_text: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    test_cases: list[TestCase] = field(default_factory=list)
    implementation_notes: list[str] = field(default_factory=list)
    tasks: list[str] = field(default_factory=list)
    gaps: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    story_points: float | None = None
    estimate_rationale: str = ""
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict | None) -> "EnhancedContent":
        """Coerce a loosely-shaped dict (model output or stored JSON).

        Accepts both snake_case and the camelCase keys used by the
        structured-output schema.
        """
        from storyforge.services.format_adapter import normalize_test_cases

        raw = raw if isinstance(raw, dict) else {}

        def pick(*keys):
            for k in keys:
                if k in raw:
                    return raw[k]
            return None

        return cls(
            title=_str(pick("title")),
            type=_str(pick("type")),
            role_goal_reason=_str(pick("role_goal_reason", "roleGoalReason")),
            description_text=_str(pick("description_text", "descriptionText", "description")),
            acceptance_criteria=_str_list(pick("acceptance_criteria", "acceptanceCriteria")),
            test_cases=normalize_test_cases(pick("test_cases", "testCases")),
            implementation_notes=_str_list(pick("implementation_notes", "implementationNotes")),
            tasks=_str_list(pick("tasks")),
            gaps=_str_list(pick("gaps")),
            dependencies=_str_list(pick("dependencies")),
            story_points=_number(pick("story_points", "storyPoints")),
            estimate_rationale=_str(pick("estimate_rationale", "estimateRationale")),
            tags=_str_list(pick("tags")),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["test_cases"] = [tc.to_dict() for tc in self.test_cases]
        return data


@dataclass
class WorkItemSnapshot:
    """Title/description/acceptance view of a tracker item.

    ``enhanced`` is only set on after-snapshots.
    """

    title: str = ""
    description_markup: str = ""
    acceptance_criteria_markup: str = ""
    enhanced: EnhancedContent | None = None

    @classmethod
    def from_dict(cls, raw: dict | None) -> "WorkItemSnapshot":
        raw = raw if isinstance(raw, dict) else {}
        enhanced = raw.get("enhanced")
        return cls(
            title=_str(raw.get("title")),
            description_markup=raw.get("description_markup") or "",
            acceptance_criteria_markup=raw.get("acceptance_criteria_markup") or "",
            enhanced=EnhancedContent.from_dict(enhanced) if isinstance(enhanced, dict) else None,
        )

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description_markup": self.description_markup,
            "acceptance_criteria_markup": self.acceptance_criteria_markup,
            "enhanced": self.enhanced.to_dict() if self.enhanced else None,
        }


@dataclass
class Override:
    """User edits applied instead of generated content. None means not supplied."""

    title: str | None = None
    description_markup: str | None = None
    acceptance_criteria_markup: str | None = None
    story_points: float | None = None
    tasks: list[str] | None = None
    test_cases: list[TestCase] | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> "Override":
        from storyforge.services.format_adapter import normalize_test_cases

        if not isinstance(raw, dict):
            return cls()

        def text(*keys):
            for k in keys:
                if isinstance(raw.get(k), str):
                    return raw[k]
            return None

        tasks = raw.get("tasks")
        test_cases = raw.get("testCases", raw.get("test_cases"))
        return cls(
            title=text("title"),
            description_markup=text("descriptionHtml", "description_markup", "description"),
            acceptance_criteria_markup=text(
                "acceptanceCriteriaHtml", "acceptance_criteria_markup", "acceptanceCriteria"
            ),
            story_points=_number(raw.get("storyPoints", raw.get("story_points"))),
            tasks=_str_list(tasks) if isinstance(tasks, list) else None,
            test_cases=normalize_test_cases(test_cases) if isinstance(test_cases, list) else None,
        )


# ── Structured-output schema sent to the model ───────────────────────────

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

ENHANCEMENT_SCHEMA_NAME = "WorkItemEnhancement"

ENHANCEMENT_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "title": {"type": "string"},
        "type": {"type": "string", "enum": ["User Story", "SPIKE", "Bug", "Task", "Test Case"]},
        "roleGoalReason": {"type": ["string", "null"]},
        "descriptionText": {"type": "string"},
        "acceptanceCriteria": _STRING_LIST,
        "testCases": {
            "type": "array",
            "items": {
                "anyOf": [
                    {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            "given": {"type": "string"},
                            "when": {"type": "string"},
                            "then": {"type": "string"},
                        },
                        "required": ["given", "when", "then"],
                    },
                    {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            "name": {"type": "string"},
                            "bddScript": {"type": "string"},
                        },
                        "required": ["name", "bddScript"],
                    },
                ]
            },
        },
        "implementationNotes": _STRING_LIST,
        "tasks": _STRING_LIST,
        "gaps": _STRING_LIST,
        "dependencies": _STRING_LIST,
        "storyPoints": {"type": ["number", "null"]},
        "estimateRationale": {"type": ["string", "null"]},
        "tags": _STRING_LIST,
    },
    "required": [
        "title",
        "type",
        "roleGoalReason",
        "descriptionText",
        "acceptanceCriteria",
        "testCases",
        "implementationNotes",
        "tasks",
        "gaps",
        "dependencies",
        "storyPoints",
        "estimateRationale",
        "tags",
    ],
}
