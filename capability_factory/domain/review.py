"""Heuristic gate review and rendition summaries for stage documents."""

import re

from capability_factory.schemas.factory import DocumentReview, RenditionSummary

MIN_GATE_LENGTH = 240

_ACCEPTANCE = re.compile(r"acceptance|success criteria|definition of done", re.IGNORECASE)
_RISKS = re.compile(r"risk|constraint|dependency", re.IGNORECASE)
_OPERATIONS = re.compile(r"monitor|metric|alert|rollback|slo", re.IGNORECASE)
_HEADING = re.compile(r"^#{1,3}\s+")
_BULLET = re.compile(r"^-\s+")

REVIEW_IMPROVEMENTS = [
    "Add concrete test scenarios tied to acceptance criteria.",
    "Document failure modes and mitigation plans.",
    "Add at least one executable example or sequence diagram.",
]


def review_document(stage_key: str, content: str | None) -> DocumentReview:
    """Challenge a stage document before it goes to a reviewer.

    Rules:
        - under 240 characters is too short for a production gate
        - acceptance criteria and risks must be mentioned
        - architecture and compliance documents must cover operations
    """
    text = (content or "").strip()
    issues: list[str] = []
    if len(text) < MIN_GATE_LENGTH:
        issues.append("Document is too short for a production gate.")
    if not _ACCEPTANCE.search(text):
        issues.append("Missing clear acceptance criteria.")
    if not _RISKS.search(text):
        issues.append("Dependencies and risks are not explicit.")
    if stage_key in ("architecture", "compliance") and not _OPERATIONS.search(text):
        issues.append("Operational considerations are missing (metrics/alerts/rollback).")

    return DocumentReview(
        stage_key=stage_key,
        verdict="needs-work" if issues else "strong",
        challenges=issues or ["No critical issues found."],
        improvements=list(REVIEW_IMPROVEMENTS),
    )


def summarize_rendition(content: str | None) -> RenditionSummary:
    lines = (content or "").split("\n")
    headings = [_HEADING.sub("", line).strip() for line in lines if _HEADING.match(line)]
    bullets = [_BULLET.sub("", line).strip() for line in lines if _BULLET.match(line)][:8]
    first_paragraph = next(
        (
            line
            for line in lines
            if line.strip() and not line.startswith(("#", "-", "```"))
        ),
        "",
    )
    return RenditionSummary(
        headline=headings[0] if headings else "",
        first_paragraph=first_paragraph.strip(),
        sections=headings,
        highlights=bullets,
    )
