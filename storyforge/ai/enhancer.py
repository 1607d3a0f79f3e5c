"""
StoryForge
Generation Orchestrator.

Turns one tracker item's before-snapshot into an after-snapshot carrying
normalized EnhancedContent:

    NOT_STARTED → RETRIEVING (only with a knowledge base) → GENERATING → NORMALIZED | FAILED

Retrieval failures are logged and treated as "no supporting context".
Generation failures fail the item with a diagnosable payload. Nothing
here writes to a tracker.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from storyforge.ai.gateway import LLMGateway, error_request_id, error_status
from storyforge.ai.guardrails import (
    GuardrailProfile,
    apply_guardrail_findings,
    build_forbidden_matcher,
    guardrail_prompt,
    parse_sections,
    synthesize_implementation_notes,
)
from storyforge.core.content import (
    ENHANCEMENT_SCHEMA,
    ENHANCEMENT_SCHEMA_NAME,
    PROVENANCE_TAG,
    STANDARD_TASKS,
    EnhancedContent,
    WorkItemSnapshot,
)
from storyforge.core.exceptions import MalformedOutputError
from storyforge.services.format_adapter import (
    clip,
    render_acceptance_html,
    render_description_html,
    strip_markup,
)

logger = logging.getLogger(__name__)

# Prompt budget (characters)
TITLE_LIMIT = 200
DESCRIPTION_LIMIT = 4000
ACCEPTANCE_LIMIT = 2000
TEMPLATE_NAME_LIMIT = 120
TEMPLATE_BODY_LIMIT = 3500
CONTEXT_NAME_LIMIT = 200
CONTEXT_TEXT_LIMIT = 1500
MAX_CONTEXT_SNIPPETS = 10
RETRIEVAL_QUERY_HINT_LIMIT = 300
RETRIEVAL_MAX_RESULTS = 8
RETRIEVAL_SNIPPET_LIMIT = 1200
RETRIEVAL_SUMMARY_LIMIT = 2000

_ROLE_LINE_RE = re.compile(r"^As a ", re.I)

SYSTEM_PROMPT = """Principal-level Agile coach and analyst who produces tracker-ready user stories or discovery SPIKEs.

For every work item produce:
- Title and Type (User Story / SPIKE / Bug / Task / Test Case)
- Role-Goal-Reason: As a <role>, I want <capability> so that <outcome>.
- Description text
- Acceptance Criteria
- Test Cases as Given <context>, When <action>, Then <result>
- Implementation Notes (tech stack, security controls, NFRs)
- Tasks, Gaps / Ambiguities, Dependencies
- Story Point Estimate with rationale

Rules
- Acceptance criteria must not include NFRs or technical implementation details.
- Output plain text in every field (no Markdown).
- Story-point estimates follow Fibonacci (1,2,3,5,8,13) with rationale. SPIKEs are timeboxed.
- Keep explanations precise, concise, and professional.
- Always include the Role-Goal-Reason as the first line of the description.
- Never leave placeholders in the output; derive concrete details from the work item, template and context.
- Respect the project guardrails: only propose allowed platforms, never forbidden technologies.
- Always include the standard engineering tasks PR Review, Dev Testing, and QA Handoff in addition to any context-specific tasks."""


class GenerationPhase(str, Enum):
    NOT_STARTED = "not_started"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    NORMALIZED = "normalized"
    FAILED = "failed"


@dataclass
class ContextSnippet:
    name: str
    text: str = ""


@dataclass
class GenerationInputs:
    """Read-only inputs shared by every item of a run."""

    project_id: int
    project_name: str = ""
    template: dict | None = None
    context: list[ContextSnippet] = field(default_factory=list)
    guardrails: str = ""
    knowledge_base_id: str | None = None


class GenerationFailed(Exception):
    """An item could not be enhanced. ``payload`` is stored as the after-snapshot."""

    def __init__(self, cause: Exception, phase: GenerationPhase):
        self.cause = cause
        self.phase = phase
        super().__init__(str(cause) or type(cause).__name__)

    @property
    def payload(self) -> dict:
        return {
            "error": str(self),
            "request_id": error_request_id(self.cause),
            "status": error_status(self.cause),
            "phase": self.phase.value,
        }


# ── Pure helpers ─────────────────────────────────────────────────────────────


def extract_structured(result: dict) -> dict:
    """Prefer the provider's parsed payload, else parse the raw text as JSON."""
    parsed = result.get("parsed")
    if isinstance(parsed, dict):
        return parsed
    if parsed is not None and hasattr(parsed, "model_dump"):
        return parsed.model_dump()
    text = (result.get("text") or "").strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*|\s*```$", "", text)
    try:
        data = json.loads(text)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise MalformedOutputError("Model returned no structured output.")
    return data


def merge_tasks(tasks: list[str], standard=STANDARD_TASKS) -> list[str]:
    """Append standard tasks missing by case-insensitive name."""
    merged = []
    seen = set()
    for task in list(tasks) + list(standard):
        key = task.strip().lower()
        if key and key not in seen:
            seen.add(key)
            merged.append(task.strip())
    return merged


def post_process(raw: dict, profile: GuardrailProfile) -> EnhancedContent:
    """Normalize model output into EnhancedContent. Deterministic."""
    content = EnhancedContent.from_dict(raw)

    lines = [line for line in re.split(r"\n+", content.description_text) if line.strip()]
    first = lines[0].strip() if lines else ""
    if not content.role_goal_reason and _ROLE_LINE_RE.match(first):
        content.role_goal_reason = first
    if content.role_goal_reason and first and content.role_goal_reason.lower() in first.lower():
        content.description_text = "\n".join(lines[1:]).strip()

    apply_guardrail_findings(content, build_forbidden_matcher(profile.forbidden))

    if not content.implementation_notes:
        content.implementation_notes = synthesize_implementation_notes(profile)

    content.tasks = merge_tasks(content.tasks)

    if not any(t.lower() == PROVENANCE_TAG.lower() for t in content.tags):
        content.tags.append(PROVENANCE_TAG)
    return content


def render_after(before: WorkItemSnapshot, content: EnhancedContent) -> WorkItemSnapshot:
    return WorkItemSnapshot(
        title=content.title or before.title,
        description_markup=render_description_html(content) or before.description_markup,
        acceptance_criteria_markup=render_acceptance_html(content.acceptance_criteria, content.test_cases),
        enhanced=content,
    )


# ── Orchestrator ─────────────────────────────────────────────────────────────


class WorkItemEnhancer:
    """Runs retrieval and generation for one item at a time."""

    def __init__(self, gateway: LLMGateway):
        self.gateway = gateway

    def enhance(self, before: WorkItemSnapshot, inputs: GenerationInputs,
                *, item_id: str | None = None) -> WorkItemSnapshot:
        """Return the after-snapshot, or raise GenerationFailed."""
        profile = parse_sections(inputs.guardrails)
        plain = {
            "title": clip(before.title, TITLE_LIMIT),
            "descriptionText": clip(strip_markup(before.description_markup), DESCRIPTION_LIMIT),
            "acceptanceCriteriaText": clip(strip_markup(before.acceptance_criteria_markup), ACCEPTANCE_LIMIT),
        }

        retrieved = []
        if inputs.knowledge_base_id:
            self._transition(item_id, GenerationPhase.RETRIEVING)
            retrieved = self._retrieve(plain, inputs.knowledge_base_id, item_id)

        self._transition(item_id, GenerationPhase.GENERATING)
        user_prompt = self._build_user_prompt(plain, inputs, profile, retrieved)
        try:
            result = self.gateway.generate(
                system=SYSTEM_PROMPT,
                user=user_prompt,
                schema=ENHANCEMENT_SCHEMA,
                schema_name=ENHANCEMENT_SCHEMA_NAME,
                temperature=0.3,
            )
            content = post_process(extract_structured(result), profile)
        except Exception as exc:
            self._transition(item_id, GenerationPhase.FAILED)
            logger.warning(
                "Generation failed item=%s status=%s request_id=%s: %s",
                item_id, error_status(exc), error_request_id(exc), exc,
            )
            raise GenerationFailed(exc, GenerationPhase.GENERATING) from exc

        self._transition(item_id, GenerationPhase.NORMALIZED)
        return render_after(before, content)

    # ── Internal ──────────────────────────────────────────────────────────

    @staticmethod
    def _transition(item_id, phase: GenerationPhase):
        logger.debug("item=%s phase=%s", item_id, phase.value)

    def _retrieve(self, plain: dict, knowledge_base_id: str, item_id) -> list[str]:
        """One bounded knowledge-base search. Never raises."""
        query = (
            "Search the project knowledge base for material that helps generate a high-quality user story.\n"
            f"Query: {plain['title']}\n"
            f"Context hint: {clip(plain['descriptionText'], RETRIEVAL_QUERY_HINT_LIMIT)}\n"
            "Return control without generating text."
        )
        try:
            result = self.gateway.retrieve(
                query=query,
                knowledge_base_id=knowledge_base_id,
                max_results=RETRIEVAL_MAX_RESULTS,
            )
        except Exception as exc:
            logger.warning(
                "Retrieval failed item=%s status=%s request_id=%s; continuing without snippets: %s",
                item_id, error_status(exc), error_request_id(exc), exc,
            )
            return []

        snippets = [clip(s, RETRIEVAL_SNIPPET_LIMIT) for s in result.get("snippets", [])[:RETRIEVAL_MAX_RESULTS]]
        summary = clip(result.get("summary") or "", RETRIEVAL_SUMMARY_LIMIT).strip()
        if summary:
            snippets.insert(0, f"[RETRIEVAL SUMMARY]\n{summary}")
        logger.info("Retrieval item=%s hits=%d summary=%s", item_id, len(snippets), bool(summary))
        return snippets

    @staticmethod
    def _build_user_prompt(plain: dict, inputs: GenerationInputs, profile: GuardrailProfile,
                           retrieved: list[str]) -> str:
        template = None
        if inputs.template:
            template = {
                "name": clip(inputs.template.get("name"), TEMPLATE_NAME_LIMIT),
                "body": clip(inputs.template.get("body"), TEMPLATE_BODY_LIMIT),
            }
        snippets = inputs.context[:MAX_CONTEXT_SNIPPETS]
        # With a knowledge base the model gets names only and searches for the rest
        fallback_context = [] if inputs.knowledge_base_id else [
            clip(s.text, CONTEXT_TEXT_LIMIT) for s in snippets if s.text
        ]
        summary = ""
        if retrieved and retrieved[0].startswith("[RETRIEVAL SUMMARY]"):
            summary = retrieved[0][len("[RETRIEVAL SUMMARY]") + 1:]

        payload = {
            "project": {"id": inputs.project_id, "name": inputs.project_name},
            "workItemPlain": plain,
            "template": template,
            "selectedContextFiles": [clip(s.name, CONTEXT_NAME_LIMIT) for s in snippets if s.name],
            "fallbackContext": fallback_context,
            "guardrails": guardrail_prompt(profile),
            "retrievedSummary": summary,
            "retrievedContext": retrieved,
            "instructions": (
                "Use retrievedSummary first (if present) and retrievedContext as supporting evidence. "
                "If retrieval returns nothing, rely on inputs; do not invent facts."
            ),
        }
        return (
            "You are enhancing a tracker work item into a complete, tracker-ready user story.\n\n"
            + json.dumps(payload)
        )
