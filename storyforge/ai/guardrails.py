"""
Guardrail Engine — project technology rules applied to generated content.

Project guardrail text is free-form; we only rely on section headers and
bullet lines:

    ### Allowed Platforms
    - Azure App Service
    ### Principles
    - Prefer managed services
    ### Forbidden Technologies
    - Legacy databases (on-prem): SQL Server, Oracle
    ### Conformance Rules
    - All services expose health probes

The profile is derived per generation call and never cached.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from storyforge.core.content import EnhancedContent

logger = logging.getLogger(__name__)

# Section header patterns, anchored at the start of the header text and
# checked in order; negated forms must resolve to forbidden before allowed
_SECTION_HEADERS = (
    ("forbidden", re.compile(r"^(forbidden|disallowed|not\s+allowed)\b", re.I)),
    ("allowed", re.compile(r"^(allowed|primary)\b", re.I)),
    ("principles", re.compile(r"^principles?\b", re.I)),
    ("conformance", re.compile(r"^(conformance|rules)\b", re.I)),
)
_BULLET_RE = re.compile(r"^\s*[-•*]\s+")
_PAREN_RE = re.compile(r"\([^)]*\)")
_LABEL_PREFIX_RE = re.compile(r"^[^:]{1,60}:\s*")
_MENTIONS_GUARDRAIL_RE = re.compile(r"guardrail|approval", re.I)

GUARDRAIL_GAP = (
    "Guardrail conflict: the proposed solution references a forbidden technology; "
    "justify the choice or replace it with an approved platform."
)
GUARDRAIL_TASK = "Obtain architectural approval for the use of a forbidden technology (guardrail exception)"

MAX_PRINCIPLE_NOTES = 3
MAX_PLATFORM_NOTES = 5


@dataclass
class GuardrailProfile:
    allowed: list[str] = field(default_factory=list)
    principles: list[str] = field(default_factory=list)
    forbidden: list[str] = field(default_factory=list)
    conformance: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.allowed or self.principles or self.forbidden or self.conformance)


def _header_section(line: str) -> str | None:
    # Bullets are content, never headers
    if _BULLET_RE.match(line):
        return None
    stripped = line.strip().lstrip("#").strip().rstrip(":")
    if not stripped:
        return None
    for name, pattern in _SECTION_HEADERS:
        if pattern.match(stripped):
            return name
    return None


def parse_sections(text: str | None) -> GuardrailProfile:
    """Split guardrail text into its four sections.

    A header is a non-bullet line whose text (after any leading ``#``) starts
    with a section keyword. Lines before the first header and other
    non-bullet lines are ignored.
    """
    profile = GuardrailProfile()
    current = None
    for line in (text or "").splitlines():
        section = _header_section(line)
        if section:
            current = section
            continue
        if current and _BULLET_RE.match(line):
            entry = _BULLET_RE.sub("", line).strip()
            if entry:
                getattr(profile, current).append(entry)
    return profile


def _forbidden_terms(entry: str) -> list[str]:
    entry = _PAREN_RE.sub("", entry)
    entry = _LABEL_PREFIX_RE.sub("", entry.strip())
    return [t.strip() for t in re.split(r"[,|/]", entry) if t.strip()]


def build_forbidden_matcher(forbidden: list[str]) -> re.Pattern | None:
    """Compile forbidden entries into one case-insensitive whole-word pattern.

    Returns None when there is nothing to match or the pattern fails to
    compile.
    """
    terms = []
    for entry in forbidden or []:
        for term in _forbidden_terms(entry):
            if term.lower() not in {t.lower() for t in terms}:
                terms.append(term)
    if not terms:
        return None
    # Longest first so "SQL Server Express" wins over "SQL Server"
    terms.sort(key=len, reverse=True)
    # Lookarounds instead of \b so terms ending in symbols (C#, C++) still match
    alternation = "|".join(re.escape(t) for t in terms)
    try:
        return re.compile(rf"(?<!\w)(?:{alternation})(?!\w)", re.IGNORECASE)
    except re.error:
        logger.warning("Guardrail matcher failed to compile for %d terms", len(terms))
        return None


def _scan_text(content: EnhancedContent) -> str:
    return "\n".join(
        [content.title, content.description_text]
        + list(content.implementation_notes)
        + list(content.tasks)
    )


def scan(content: EnhancedContent, matcher: re.Pattern | None) -> bool:
    """True when the generated content mentions a forbidden term."""
    if matcher is None:
        return False
    return matcher.search(_scan_text(content)) is not None


def apply_guardrail_findings(content: EnhancedContent, matcher: re.Pattern | None) -> bool:
    """Append the justification gap and approval task when ``scan`` matches.

    Each entry is skipped if one already mentions guardrails or approval,
    so running twice adds nothing new. Returns whether the scan matched.
    """
    if not scan(content, matcher):
        return False
    if not any(_MENTIONS_GUARDRAIL_RE.search(g) for g in content.gaps):
        content.gaps.append(GUARDRAIL_GAP)
    if not any(_MENTIONS_GUARDRAIL_RE.search(t) for t in content.tasks):
        content.tasks.append(GUARDRAIL_TASK)
    logger.info("Guardrail match in generated content for %r", content.title[:80])
    return True


def synthesize_implementation_notes(profile: GuardrailProfile) -> list[str]:
    notes = [f"Principle: {p}" for p in profile.principles[:MAX_PRINCIPLE_NOTES]]
    notes += [f"Approved platform: {a}" for a in profile.allowed[:MAX_PLATFORM_NOTES]]
    return notes


def guardrail_prompt(profile: GuardrailProfile) -> dict | None:
    """Compact form of the profile embedded in the generation prompt."""
    if profile.is_empty:
        return None
    return {
        "allowedPlatforms": profile.allowed,
        "principles": profile.principles,
        "forbidden": profile.forbidden,
        "conformance": profile.conformance,
    }
