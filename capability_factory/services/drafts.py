"""Stage draft producers.

A draft producer turns capability context into markdown for one stage. The
orchestrator treats it as a best-effort collaborator:
- TemplateDraftProducer: deterministic markdown, never fails
- LlmDraftProducer: Claude via anthropic.AsyncAnthropic, bounded by a timeout,
  falls back to the template draft on any failure
"""

import asyncio
import re
from dataclasses import dataclass, field
from typing import Protocol

import anthropic
import structlog
from anthropic._exceptions import APITimeoutError, OverloadedError, RateLimitError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from capability_factory.schemas.factory import Capability, Idea, TriageAnalysis

logger = structlog.get_logger(__name__)

DRAFT_MAX_TOKENS = 4096
_MERMAID_BLOCK = re.compile(r"```mermaid\s*\n(.*?)```", re.DOTALL)


@dataclass
class StageDraftRequest:
    stage_key: str
    capability: Capability | None
    idea: Idea | None
    triage: TriageAnalysis | None
    intent: str = ""
    existing_content: dict[str, str] = field(default_factory=dict)


@dataclass
class StageDraft:
    content: str
    diagram_source: str = ""
    source: str = "template"


class DraftProducer(Protocol):
    async def draft(self, request: StageDraftRequest) -> StageDraft | None: ...


# ---------------------------------------------------------------------------
# Markdown templates
# ---------------------------------------------------------------------------


def _bullets(items: list[str], empty: str) -> list[str]:
    return [f"- {item}" for item in items] if items else [f"- {empty}"]


def idea_to_markdown(idea: Idea) -> str:
    details = idea.details
    return "\n".join(
        [
            "# Idea Submission",
            "",
            "## Title",
            idea.title,
            "",
            "## Description",
            idea.description,
            "",
            "## User Persona",
            details.user_persona,
            "",
            "## Business Goal",
            details.business_goal,
            "",
            "## Problem Statement",
            details.problem_statement,
            "",
            "## Acceptance Criteria",
            *_bullets(details.acceptance_criteria, "none provided"),
            "",
            "## Constraints",
            details.constraints,
            "",
            "## Non-goals",
            details.non_goals,
        ]
    )


def triage_to_markdown(idea: Idea, triage: TriageAnalysis) -> str:
    refined = triage.refined_idea
    ctx = triage.context
    return "\n".join(
        [
            "# Triage Report",
            "",
            "## Scope Context",
            f"- Organization: {ctx.org_name if ctx else idea.org_id}",
            f"- Sandbox: {ctx.sandbox_name if ctx else idea.sandbox_id}",
            f"- Product: {ctx.product_name if ctx else idea.product_id}",
            f"- Active capabilities: {ctx.active_capabilities if ctx else 'n/a'}",
            "",
            "## Refined Idea",
            f"- Problem statement: {refined.problem_statement}",
            f"- User persona: {refined.user_persona}",
            f"- Business goal: {refined.business_goal}",
            f"- Constraints: {refined.constraints}",
            f"- Non-goals: {refined.non_goals}",
            "",
            "## Acceptance Criteria",
            *[f"- {item}" for item in refined.acceptance_criteria],
            "",
            "## AI Triage",
            f"- Readiness score: {triage.readiness_score}",
            f"- Proposed capability title: {triage.proposed_capability_title}",
            "",
            "## Gaps",
            *_bullets(triage.missing_info, "none"),
            "",
            "## Risks",
            *_bullets(triage.risks, "none"),
            "",
            "## Suggestions",
            *[f"- {item}" for item in triage.suggestions],
        ]
    )


def spec_to_markdown(capability: Capability, triage: TriageAnalysis | None) -> str:
    refined = triage.refined_idea if triage else None
    criteria = list(refined.acceptance_criteria) if refined else []
    if not criteria:
        criteria = ["Feature works in stage", "Tests are generated", "PR is produced"]
    return "\n".join(
        [
            "# Spec",
            "",
            "## User",
            refined.user_persona if refined else "Enterprise team member",
            "",
            "## Scope",
            (refined.problem_statement if refined else "") or capability.description or "MVP scope for capability",
            "",
            "## Success Criteria",
            *[f"- {item}" for item in criteria],
            "",
            "## Risks and Constraints",
            f"- {refined.constraints if refined else 'Enterprise governance constraints apply'}",
            *[f"- {risk}" for risk in (triage.risks if triage else [])],
            "",
            "## Out of Scope",
            (refined.non_goals if refined else "") or "CI/CD deployment",
            "",
            "## COGS",
            "Estimated from generated components",
        ]
    )


def _node_id(label: str) -> str:
    return re.sub(r"\s+", "", label)


def architecture_diagram(capability: Capability, triage: TriageAnalysis | None) -> str:
    refined = triage.refined_idea if triage else None
    lower = " ".join(
        [capability.title, refined.problem_statement if refined else "", refined.business_goal if refined else ""]
    ).lower()
    has_employee = re.search(r"employee|hr|workforce|staff", lower) is not None
    has_mobile = re.search(r"mobile|ios|android|app", lower) is not None
    identity = "SSO / Directory" if has_employee else "Identity Provider"
    portal = "Employee App UI" if has_employee else "User Experience UI"
    client = "Mobile Client" if has_mobile else "Web Client"
    org_name = triage.context.org_name if triage and triage.context else "Organization"

    return "\n".join(
        [
            "flowchart LR",
            f"  {_node_id(client)}[{client}] --> {_node_id(portal)}[{portal}]",
            f"  {_node_id(portal)} --> ApiGateway[API Gateway]",
            "  ApiGateway --> CapabilitySvc[Capability Service]",
            "  CapabilitySvc --> PolicySvc[Policy / Rules Service]",
            "  CapabilitySvc --> SearchSvc[Semantic Search Index]",
            "  CapabilitySvc --> Pg[(Postgres)]",
            f"  {_node_id(portal)} --> Identity[{identity}]",
            "  CapabilitySvc --> Obs[Metrics + Audit Logs]",
            f"  Obs --> OrgDash[{org_name} Admin Dashboard]",
        ]
    )


def architecture_to_markdown(capability: Capability, triage: TriageAnalysis | None, spec_content: str = "") -> str:
    refined = triage.refined_idea if triage else None
    ctx = triage.context if triage else None
    criteria = list(refined.acceptance_criteria) if refined else []
    spec_excerpt = "\n".join(spec_content.split("\n")[:14]) if spec_content else ""
    return "\n".join(
        [
            "# Architecture Draft (Auto-generated)",
            "",
            "## Capability",
            f"- ID: {capability.capability_id}",
            f"- Title: {capability.title}",
            f"- Organization: {ctx.org_name if ctx else capability.org_id}",
            f"- Sandbox: {ctx.sandbox_name if ctx else capability.sandbox_id}",
            f"- Product: {ctx.product_name if ctx else capability.product_id}",
            "",
            "## Intent",
            f"- Problem statement: {(refined.problem_statement if refined else '') or capability.description or 'Not specified'}",
            f"- Business goal: {(refined.business_goal if refined else '') or 'Not specified'}",
            "",
            "## Logical Components",
            "- Experience Layer: UI (web/mobile) and role-aware workflows",
            "- Application Layer: capability service, policy/rules service",
            "- Data Layer: transactional store + semantic index for search/augmentation",
            "- Platform Layer: identity, observability, audit pipeline",
            "",
            "## Key Constraints",
            f"- {(refined.constraints if refined else '') or 'Enterprise governance and auditability'}",
            "- Tenant-scoped access controls per organization/sandbox/product",
            "- Traceability from idea -> triage -> spec -> architecture -> PR",
            "",
            "## Non-goals",
            f"- {(refined.non_goals if refined else '') or 'CI/CD automation in this phase'}",
            "",
            "## Acceptance Criteria Mapping",
            *_bullets(criteria, "Acceptance criteria pending"),
            "",
            "## Spec Context Excerpt",
            "```text",
            spec_excerpt or "No spec document available yet.",
            "```",
            "",
            "## Operational Notes",
            "- Emit metrics for stage transitions and PR synchronization outcomes",
            "- Record reviewer actions for factory and GitHub approvals",
            "- Alert on connector failures and branch sync drift",
        ]
    )


def compliance_to_markdown(capability: Capability, triage: TriageAnalysis | None) -> str:
    refined = triage.refined_idea if triage else None
    return "\n".join(
        [
            "# Compliance Draft (Auto-generated)",
            "",
            "## Capability",
            f"- ID: {capability.capability_id}",
            f"- Title: {capability.title}",
            "",
            "## Control Objectives",
            "- Enforce tenant isolation by organization/sandbox/product scope",
            "- Ensure auditable approval and stage transitions",
            "- Protect PII and sensitive business records",
            "",
            "## Risks",
            *_bullets(triage.risks if triage else [], "Risks pending explicit capture"),
            "",
            "## Constraints",
            f"- {(refined.constraints if refined else '') or 'Enterprise governance constraints apply'}",
            "",
            "## Non-goals",
            f"- {(refined.non_goals if refined else '') or 'Automated production deployment in this phase'}",
        ]
    )


def generated_component_paths(capability_id: str) -> list[str]:
    slug = capability_id.lower()
    return [
        f"src/features/{slug}/handler.ts",
        f"src/features/{slug}/schema.ts",
        f"test/features/{slug}.test.ts",
    ]


def build_to_markdown(capability: Capability, triage: TriageAnalysis | None) -> str:
    criteria = list(triage.refined_idea.acceptance_criteria) if triage else []
    return "\n".join(
        [
            "# Build Plan (AI-assisted)",
            "",
            "## Capability",
            f"- ID: {capability.capability_id}",
            f"- Title: {capability.title}",
            "",
            "## Generated Components",
            *[f"- {path}" for path in generated_component_paths(capability.capability_id)],
            "",
            "## Validation",
            *_bullets(criteria, "Validate capability acceptance criteria"),
            "",
            "## Delivery Notes",
            "- Open PR with stage docs attached",
            "- Create ticket in configured area",
            "- Keep traceability from idea to implementation",
        ]
    )


class TemplateDraftProducer:
    """Deterministic markdown for every document stage."""

    async def draft(self, request: StageDraftRequest) -> StageDraft | None:
        return self.render(request)

    def render(self, request: StageDraftRequest) -> StageDraft | None:
        capability, idea, triage = request.capability, request.idea, request.triage
        match request.stage_key:
            case "idea" if idea is not None:
                return StageDraft(content=idea_to_markdown(idea))
            case "triage" if idea is not None and triage is not None:
                return StageDraft(content=triage_to_markdown(idea, triage))
            case "spec" if capability is not None:
                return StageDraft(content=spec_to_markdown(capability, triage))
            case "architecture" if capability is not None:
                return StageDraft(
                    content=architecture_to_markdown(
                        capability, triage, request.existing_content.get("spec", "")
                    ),
                    diagram_source=architecture_diagram(capability, triage),
                )
            case "compliance" if capability is not None:
                return StageDraft(content=compliance_to_markdown(capability, triage))
            case "build" if capability is not None:
                return StageDraft(content=build_to_markdown(capability, triage))
        return None


# ---------------------------------------------------------------------------
# LLM producer
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = (
    "You are a senior product engineer writing gated delivery documents for a "
    "capability factory. Write concise, reviewable markdown with headings and "
    "bullet lists. Always include acceptance criteria, risks and dependencies. "
    "For architecture documents, append one ```mermaid fenced flowchart."
)


class LlmDraftProducer:
    """Claude-backed drafts; any failure yields the template draft instead."""

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: float = 30.0,
        fallback: TemplateDraftProducer | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.fallback = fallback or TemplateDraftProducer()
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)

    async def draft(self, request: StageDraftRequest) -> StageDraft | None:
        try:
            text = await asyncio.wait_for(self._invoke(request), timeout=self.timeout_seconds)
        except Exception as exc:
            logger.warning(
                "draft.llm_failed",
                stage_key=request.stage_key,
                error=str(exc)[:240],
                error_type=type(exc).__name__,
            )
            return await self.fallback.draft(request)

        content, diagram = _split_mermaid(text)
        if not content.strip():
            return await self.fallback.draft(request)
        return StageDraft(content=content, diagram_source=diagram, source=f"llm:{self.model}")

    @retry(
        retry=retry_if_exception_type((OverloadedError, RateLimitError, APITimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _invoke(self, request: StageDraftRequest) -> str:
        response = await self.client.messages.create(
            model=self.model,
            system=_SYSTEM_PROMPT,
            messages=[{"role": "user", "content": self._build_prompt(request)}],
            max_tokens=DRAFT_MAX_TOKENS,
        )
        return response.content[0].text

    def _build_prompt(self, request: StageDraftRequest) -> str:
        lines = [f"Stage: {request.stage_key}"]
        if request.capability is not None:
            lines += [
                f"Capability: {request.capability.capability_id} {request.capability.title}",
                f"Description: {request.capability.description}",
            ]
        if request.idea is not None:
            lines.append(f"Idea details: {request.idea.details.model_dump_json()}")
        if request.triage is not None:
            lines.append(f"Triage risks: {'; '.join(request.triage.risks) or 'none'}")
        if request.intent:
            lines.append(f"Reviewer intent: {request.intent}")
        for stage_key, content in request.existing_content.items():
            lines.append(f"Existing {stage_key} document:\n{content[:4000]}")
        lines.append(f"Write the {request.stage_key} document.")
        return "\n".join(lines)


def _split_mermaid(text: str) -> tuple[str, str]:
    match = _MERMAID_BLOCK.search(text or "")
    if not match:
        return (text or "").strip(), ""
    diagram = match.group(1).strip()
    content = (text[: match.start()] + text[match.end() :]).strip()
    return content, diagram
