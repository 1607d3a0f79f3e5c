"""
Format Adapter — conversions between the three content representations.

    rich markup (HTML)  ──html_to_markup──▶  flat markup  ──markup_to_blocks──▶  block document
                                             ◀──blocks_to_markup──

Flat markup is the intermediate text form:
    - paragraphs separated by blank lines
    - ``### `` starts a level-3 heading paragraph
    - a paragraph whose every line starts with ``- `` or ``* `` is a bullet list
    - ``**bold**`` and ``_italic_`` inline markers

Block documents are the structured rich-text trees Jira accepts
({"version": 1, "type": "doc", "content": [...]}).

Every function here is total: unexpected input degrades to empty or
plain text, never an exception.
"""

from __future__ import annotations

import html
import re

from storyforge.core.content import (
    EnhancedContent,
    GivenWhenThen,
    NameAndScript,
    TestCase,
)

_TAG_RE = re.compile(r"<[^>]+>")
_PREFIX_RE = re.compile(r"^\s*(given|when|then)\b[\s:,\-]*", re.IGNORECASE)
_GWT_TEXT_RE = re.compile(
    r"^\s*given\s+(?P<given>.*?)\s*,?\s+when\s+(?P<when>.*?)\s*,?\s+then\s+(?P<then>.*?)\s*$",
    re.IGNORECASE | re.DOTALL,
)
_BULLET_RE = re.compile(r"^(-|\*)\s+")
_LIST_LINE_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+")
_LABEL_INVALID_RE = re.compile(r"[^A-Za-z0-9_-]")
_LIST_ITEM_RE = re.compile(r"<li[^>]*>.*?</li>", re.I | re.S)
_PARAGRAPH_TAG_RE = re.compile(r"</?p(?:\s[^>]*)?>", re.I)

# (pattern, replacement) applied in order by html_to_markup
_HTML_TO_MARKUP = [
    (re.compile(r"\r"), ""),
    (re.compile(r"&nbsp;", re.I), " "),
    (re.compile(r"<br\s*/?>(?=.)", re.I), "\n"),
    (re.compile(r"</p>", re.I), "\n\n"),
    (re.compile(r"<p[^>]*>", re.I), ""),
    (re.compile(r"<h[1-6][^>]*>", re.I), "\n### "),
    (re.compile(r"</h[1-6]>", re.I), "\n\n"),
    (re.compile(r"</?[uo]l[^>]*>", re.I), "\n\n"),
    (re.compile(r"<li[^>]*>", re.I), "\n- "),
    (re.compile(r"</li>", re.I), ""),
    (re.compile(r"</?(strong|b)>", re.I), "**"),
    (re.compile(r"</?(em|i)>", re.I), "_"),
]


# ═════════════════════════════════════════════════════════════════════════════
# Plain text helpers
# ═════════════════════════════════════════════════════════════════════════════


def strip_markup(text: str | None) -> str:
    """Remove tags, decode entities and trim."""
    if not text or not isinstance(text, str):
        return ""
    plain = _TAG_RE.sub("", text)
    plain = html.unescape(plain).replace("\u00a0", " ")
    return plain.strip()


def clip(text: str | None, limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit]


def extract_list_items(markup: str | None) -> list[str]:
    """Split HTML or flat markup into list items.

    ``<li>`` / ``<br>`` boundaries and leading bullets mark items; any
    other content falls back to one item per non-empty line.
    """
    if not markup or not isinstance(markup, str):
        return []
    normalized = re.sub(r"<li[^>]*>", "\n", markup, flags=re.I)
    normalized = re.sub(r"</li>", "\n", normalized, flags=re.I)
    normalized = re.sub(r"<br\s*/?>", "\n", normalized, flags=re.I)
    normalized = re.sub(r"</(p|h[1-6]|ul|ol)>", "\n", normalized, flags=re.I)
    items = []
    for line in normalized.split("\n"):
        line = strip_markup(line)
        line = _LIST_LINE_RE.sub("", line).strip()
        if line:
            items.append(line)
    return items


def sanitize_label(label: str | None) -> str | None:
    """Make a tag usable as a Jira label (no spaces, restricted charset)."""
    if not label or not isinstance(label, str):
        return None
    normalized = _LABEL_INVALID_RE.sub("-", label.strip())
    normalized = re.sub(r"-+", "-", normalized).strip("-")
    return normalized or None


# ═════════════════════════════════════════════════════════════════════════════
# Test cases
# ═════════════════════════════════════════════════════════════════════════════


def _strip_prefix(value) -> str:
    if not isinstance(value, str):
        return ""
    return _PREFIX_RE.sub("", value, count=1).strip()


def parse_gwt_text(text: str | None) -> GivenWhenThen | None:
    """Parse ``Given x, When y, Then z`` text into a structured case."""
    if not text or not isinstance(text, str):
        return None
    match = _GWT_TEXT_RE.match(strip_markup(text).replace("**", ""))
    if not match:
        return None
    return GivenWhenThen(
        given=match.group("given").strip(),
        when=match.group("when").strip(),
        then=match.group("then").strip(),
    )


def _normalize_one(entry) -> TestCase | None:
    if isinstance(entry, (GivenWhenThen, NameAndScript)):
        entry = entry.to_dict()
    if isinstance(entry, str):
        parsed = parse_gwt_text(entry)
        if parsed:
            return parsed
        name = entry.strip()
        return NameAndScript(name=name) if name else None
    if not isinstance(entry, dict):
        return None

    if any(k in entry for k in ("given", "when", "then")):
        case = GivenWhenThen(
            given=_strip_prefix(entry.get("given")),
            when=_strip_prefix(entry.get("when")),
            then=_strip_prefix(entry.get("then")),
        )
        return case if (case.given or case.when or case.then) else None

    name = entry.get("name") if isinstance(entry.get("name"), str) else ""
    script = entry.get("bdd_script", entry.get("bddScript"))
    script = script if isinstance(script, str) else ""
    if not name.strip() and not script.strip():
        return None
    return NameAndScript(name=name.strip(), bdd_script=script.strip())


def normalize_test_cases(raw) -> list[TestCase]:
    """Coerce model or user supplied test cases into typed records.

    Entries with every field blank are dropped; a leading
    Given/When/Then keyword is stripped once from each structured field.
    """
    if not isinstance(raw, list):
        return []
    cases = []
    for entry in raw:
        case = _normalize_one(entry)
        if case is not None:
            cases.append(case)
    return cases


def format_test_case(tc: TestCase) -> str:
    """One-line plain form: ``Given x, When y, Then z`` or the case name."""
    if isinstance(tc, GivenWhenThen):
        text = f"Given {tc.given}, When {tc.when}, Then {tc.then}"
        return re.sub(r"\s+,", ",", text).strip()
    if tc.name:
        return tc.name
    lines = [line.strip() for line in tc.bdd_script.splitlines() if line.strip()]
    return lines[0] if lines else ""


def case_title(tc: TestCase) -> str:
    """Title used when the case becomes its own tracker artifact."""
    if isinstance(tc, NameAndScript):
        return tc.name or format_test_case(tc)
    summary = tc.then or tc.when or tc.given
    return clip(f"Test: {summary}", 255)


def case_script(tc: TestCase) -> str:
    """Multi-line BDD script for the case."""
    if isinstance(tc, NameAndScript):
        return tc.bdd_script or tc.name
    return "\n".join(
        line for line in (
            f"Given {tc.given}" if tc.given else "",
            f"When {tc.when}" if tc.when else "",
            f"Then {tc.then}" if tc.then else "",
        ) if line
    )


# ═════════════════════════════════════════════════════════════════════════════
# HTML rendering
# ═════════════════════════════════════════════════════════════════════════════


def _esc(text) -> str:
    return html.escape(str(text), quote=False)


def bullets_to_html(items: list[str]) -> str:
    if not items:
        return ""
    return "<ul>\n" + "\n".join(f"<li>{_esc(i)}</li>" for i in items) + "\n</ul>"


def paragraphs_to_html(text: str) -> str:
    lines = [line.strip() for line in re.split(r"\n+", text or "") if line.strip()]
    return "".join(f"<p>{_esc(line)}</p>" for line in lines)


def case_to_html(tc: TestCase) -> str:
    if isinstance(tc, GivenWhenThen):
        return (
            f"<strong>Given</strong> {_esc(tc.given)}, "
            f"<strong>When</strong> {_esc(tc.when)}, "
            f"<strong>Then</strong> {_esc(tc.then)}"
        )
    script = "<br/>".join(_esc(line) for line in tc.bdd_script.splitlines() if line.strip())
    name = f"<strong>{_esc(tc.name)}</strong>" if tc.name else ""
    return f"{name}<br/>{script}" if name and script else name or script


def cases_to_html(cases: list[TestCase]) -> str:
    if not cases:
        return ""
    return "<ul>\n" + "\n".join(f"<li>{case_to_html(tc)}</li>" for tc in cases) + "\n</ul>"


def render_description_html(enhanced: EnhancedContent) -> str:
    """Description body for trackers that store HTML. Empty when nothing to render."""
    parts = []
    if enhanced.role_goal_reason:
        parts.append(f"<p><strong>Role-Goal-Reason:</strong> {_esc(enhanced.role_goal_reason)}</p>")
    parts.append(paragraphs_to_html(enhanced.description_text))
    if enhanced.implementation_notes:
        parts.append("<h3>Implementation Notes</h3>" + bullets_to_html(enhanced.implementation_notes))
    if enhanced.story_points is not None or enhanced.estimate_rationale:
        parts.append("<h3>Estimate</h3>")
        if enhanced.story_points is not None:
            parts.append(f"<p><strong>Story Points:</strong> {_format_points(enhanced.story_points)}</p>")
        if enhanced.estimate_rationale:
            parts.append(f"<p>{_esc(enhanced.estimate_rationale)}</p>")
    if enhanced.gaps:
        parts.append("<h3>Gaps / Ambiguities</h3>" + bullets_to_html(enhanced.gaps))
    if enhanced.dependencies:
        parts.append("<h3>Dependencies</h3>" + bullets_to_html(enhanced.dependencies))
    return "".join(parts)


def render_acceptance_html(criteria: list[str], cases: list[TestCase]) -> str:
    return bullets_to_html(criteria) + cases_to_html(cases)


def _format_points(points) -> str:
    if isinstance(points, float) and points.is_integer():
        return str(int(points))
    return str(points)


# ═════════════════════════════════════════════════════════════════════════════
# Flat markup ⇄ block documents
# ═════════════════════════════════════════════════════════════════════════════


def html_to_markup(source: str | None) -> str:
    """Flatten HTML into flat markup (see module docstring)."""
    text = source if isinstance(source, str) else ""
    # Paragraphs inside list items would otherwise break the list apart
    text = _LIST_ITEM_RE.sub(lambda m: _PARAGRAPH_TAG_RE.sub(" ", m.group(0)), text)
    for pattern, replacement in _HTML_TO_MARKUP:
        text = pattern.sub(replacement, text)
    text = _TAG_RE.sub("", text)
    return html.unescape(text).replace("\u00a0", " ")


def _text_node(text: str, *marks: str) -> dict:
    node = {"type": "text", "text": text}
    if marks:
        node["marks"] = [{"type": mark} for mark in marks]
    return node


def inline_nodes(text: str, _marks: tuple = ()) -> list[dict]:
    """Split a line into text nodes, honouring ``**bold**`` and ``_italic_``.

    Scans left to right; whichever complete marker pair starts first wins.
    Marker pairs nest, so ``**_both_**`` yields one run carrying strong and
    em. Unpaired markers stay literal.
    """
    nodes = []
    remaining = text or ""
    while remaining:
        marker = None
        bold_start = remaining.find("**")
        if bold_start != -1:
            bold_end = remaining.find("**", bold_start + 2)
            if bold_end != -1:
                marker = (bold_start, bold_end, "strong", 2)
        italic_start = remaining.find("_")
        if italic_start != -1:
            italic_end = remaining.find("_", italic_start + 1)
            if italic_end != -1 and (marker is None or italic_start < marker[0]):
                marker = (italic_start, italic_end, "em", 1)

        if marker is None:
            nodes.append(_text_node(remaining, *_marks))
            break

        start, end, mark, width = marker
        if start > 0:
            nodes.append(_text_node(remaining[:start], *_marks))
        inner = remaining[start + width:end]
        if inner:
            if mark in _marks:
                nodes.append(_text_node(inner, *_marks))
            else:
                nodes.extend(inline_nodes(inner, _marks + (mark,)))
        remaining = remaining[end + width:]

    if _marks:
        return nodes
    return nodes or [_text_node("")]


def _doc(content: list[dict]) -> dict:
    return {"version": 1, "type": "doc", "content": content}


def _paragraph(text: str) -> dict:
    return {"type": "paragraph", "content": inline_nodes(text)}


def _bullet_list(items: list[str]) -> dict:
    return {
        "type": "bulletList",
        "content": [{"type": "listItem", "content": [_paragraph(item)]} for item in items],
    }


def markup_to_blocks(markup: str | None) -> dict:
    """Parse flat markup into a block document. Never empty."""
    sections = [s.strip() for s in re.split(r"\n{2,}", markup or "") if s.strip()]
    content = []
    for paragraph in sections:
        lines = [line.strip() for line in paragraph.split("\n") if line.strip()]
        if lines and all(_BULLET_RE.match(line) for line in lines):
            content.append(_bullet_list([_BULLET_RE.sub("", line, count=1) for line in lines]))
        elif re.match(r"^###\s+", paragraph):
            heading = re.sub(r"^###\s+", "", paragraph).strip()
            content.append({"type": "heading", "attrs": {"level": 3}, "content": inline_nodes(heading)})
        else:
            content.append(_paragraph(paragraph))
    if not content:
        content.append({"type": "paragraph", "content": [_text_node("")]})
    return _doc(content)


def html_to_blocks(source: str | None) -> dict:
    return markup_to_blocks(html_to_markup(source))


def _inline_to_markup(nodes) -> str:
    out = []
    for node in nodes or []:
        if not isinstance(node, dict):
            continue
        if node.get("type") == "hardBreak":
            out.append("\n")
            continue
        if node.get("type") != "text":
            out.append(_inline_to_markup(node.get("content")))
            continue
        text = node.get("text") or ""
        marks = {m.get("type") for m in node.get("marks") or [] if isinstance(m, dict)}
        if text and "em" in marks:
            text = f"_{text}_"
        if text and "strong" in marks:
            text = f"**{text}**"
        out.append(text)
    return "".join(out)


def _list_item_text(item: dict) -> str:
    return " ".join(
        _inline_to_markup(child.get("content")).strip()
        for child in item.get("content") or []
        if isinstance(child, dict)
    ).strip()


def blocks_to_markup(doc: dict | None) -> str:
    """Serialize a block document back into flat markup.

    Adjacent lists stay separate paragraphs; a run that is both bold and
    italic is written as ``**_text_**``.
    """
    if not isinstance(doc, dict):
        return ""
    paragraphs = []
    for block in doc.get("content") or []:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind in ("bulletList", "orderedList"):
            lines = [
                f"- {_list_item_text(item)}"
                for item in block.get("content") or []
                if isinstance(item, dict) and _list_item_text(item)
            ]
            if lines:
                paragraphs.append("\n".join(lines))
        elif kind == "heading":
            paragraphs.append("### " + _inline_to_markup(block.get("content")).strip())
        else:
            text = _inline_to_markup(block.get("content")).strip()
            if text:
                paragraphs.append(text)
    return "\n\n".join(paragraphs)


def _inline_to_html(nodes) -> str:
    out = []
    for node in nodes or []:
        if not isinstance(node, dict):
            continue
        if node.get("type") == "hardBreak":
            out.append("<br/>")
            continue
        if node.get("type") != "text":
            out.append(_inline_to_html(node.get("content")))
            continue
        text = _esc(node.get("text") or "")
        marks = {m.get("type") for m in node.get("marks") or [] if isinstance(m, dict)}
        if "em" in marks:
            text = f"<em>{text}</em>"
        if "strong" in marks:
            text = f"<strong>{text}</strong>"
        out.append(text)
    return "".join(out)


def blocks_to_html(doc: dict | None) -> str:
    """Render a block document as HTML so snapshots share one markup form."""
    if not isinstance(doc, dict):
        return ""
    parts = []
    for block in doc.get("content") or []:
        if not isinstance(block, dict):
            continue
        kind = block.get("type")
        if kind in ("bulletList", "orderedList"):
            items = [
                "<li>" + " ".join(
                    _inline_to_html(child.get("content"))
                    for child in item.get("content") or [] if isinstance(child, dict)
                ) + "</li>"
                for item in block.get("content") or [] if isinstance(item, dict)
            ]
            parts.append("<ul>" + "".join(items) + "</ul>")
        elif kind == "heading":
            parts.append(f"<h3>{_inline_to_html(block.get('content'))}</h3>")
        else:
            inner = _inline_to_html(block.get("content"))
            if inner:
                parts.append(f"<p>{inner}</p>")
    return "".join(parts)


# ═════════════════════════════════════════════════════════════════════════════
# Block rendering
# ═════════════════════════════════════════════════════════════════════════════


def _plain_paragraph(text: str) -> dict:
    return {"type": "paragraph", "content": [_text_node(text)]}


def _strong_paragraph(text: str) -> dict:
    return {"type": "paragraph", "content": [_text_node(text, "strong")]}


def _plain_bullets(items: list[str]) -> dict:
    return {
        "type": "bulletList",
        "content": [
            {"type": "listItem", "content": [_plain_paragraph(item)]} for item in items
        ],
    }


def render_description_blocks(
    enhanced: EnhancedContent,
    *,
    acceptance_items: list[str] | None = None,
    include_test_cases: bool = True,
    fallback_text: str = "",
) -> dict:
    """Description document for block-document trackers.

    Order: Role-Goal-Reason, Acceptance Criteria, Test Cases, description
    lines, Implementation Notes, Estimate, Gaps / Ambiguities,
    Dependencies. Falls back to "Generated description" when empty.
    """
    content = []

    def section(heading: str, items: list[str]):
        if items:
            content.append(_strong_paragraph(heading))
            content.append(_plain_bullets(items))

    if enhanced.role_goal_reason:
        content.append(_plain_paragraph(f"Role-Goal-Reason: {enhanced.role_goal_reason}"))
    criteria = acceptance_items if acceptance_items else enhanced.acceptance_criteria
    section("Acceptance Criteria", criteria)
    if include_test_cases:
        section("Test Cases", [line for line in map(format_test_case, enhanced.test_cases) if line])
    description = enhanced.description_text or fallback_text
    for line in re.split(r"\n+", description or ""):
        if line.strip():
            content.append(_plain_paragraph(line.strip()))
    section("Implementation Notes", enhanced.implementation_notes)
    if enhanced.story_points is not None or enhanced.estimate_rationale:
        content.append(_strong_paragraph("Estimate"))
        if enhanced.story_points is not None:
            content.append(_plain_paragraph(f"Story Points: {_format_points(enhanced.story_points)}"))
        if enhanced.estimate_rationale:
            content.append(_plain_paragraph(enhanced.estimate_rationale))
    section("Gaps / Ambiguities", enhanced.gaps)
    section("Dependencies", enhanced.dependencies)
    if not content:
        content.append(_plain_paragraph("Generated description"))
    return _doc(content)


def render_test_case_blocks(tc: TestCase) -> dict:
    """Body of a standalone test-case artifact: one paragraph per script line."""
    lines = [line.strip() for line in case_script(tc).splitlines() if line.strip()]
    return _doc([_plain_paragraph(line) for line in lines] or [_plain_paragraph("")])


def render_test_case_list_blocks(cases: list[TestCase]) -> dict:
    items = [line for line in map(format_test_case, cases) if line]
    return _doc([_plain_bullets(items)] if items else [_plain_paragraph("")])
