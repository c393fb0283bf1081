"""Capability factory Pydantic models: records, stage documents and operation results."""

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from capability_factory.domain.stages import CapabilityStatus, Stage


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_text_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.splitlines()
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        items = [value]
    return [text for text in (_as_text(item) for item in items) if text]


class Scope(BaseModel):
    """Organization / sandbox / product triple that owns ideas and capabilities."""

    org_id: str
    sandbox_id: str
    product_id: str


class IdeaDetails(BaseModel):
    problem_statement: str = ""
    user_persona: str = ""
    business_goal: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    constraints: str = ""
    non_goals: str = ""
    attachments: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: dict[str, Any] | None) -> "IdeaDetails":
        """Normalise a loosely-shaped details bag.

        Accepts snake_case or camelCase keys, coerces scalars to stripped
        strings and list fields to lists of non-blank strings.
        """
        raw = raw if isinstance(raw, dict) else {}

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in raw and raw[key] is not None:
                    return raw[key]
            return None

        metadata = pick("metadata", "provenance")
        return cls(
            problem_statement=_as_text(pick("problem_statement", "problemStatement")),
            user_persona=_as_text(pick("user_persona", "userPersona")),
            business_goal=_as_text(pick("business_goal", "businessGoal")),
            acceptance_criteria=_as_text_list(pick("acceptance_criteria", "acceptanceCriteria")),
            constraints=_as_text(pick("constraints")),
            non_goals=_as_text(pick("non_goals", "nonGoals")),
            attachments=_as_text_list(pick("attachments")),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )


class Idea(BaseModel):
    idea_id: str = Field(default_factory=lambda: new_id("IDEA"))
    org_id: str
    sandbox_id: str
    product_id: str
    title: str
    description: str = ""
    details: IdeaDetails = Field(default_factory=IdeaDetails)
    status: Literal["new", "triaged", "approved"] = "new"
    created_by: str = "unknown"
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def scope(self) -> Scope:
        return Scope(org_id=self.org_id, sandbox_id=self.sandbox_id, product_id=self.product_id)


class HistoryEvent(BaseModel):
    type: str
    actor: str
    at: datetime = Field(default_factory=utc_now)
    detail: dict[str, Any] = Field(default_factory=dict)


class Capability(BaseModel):
    capability_id: str = Field(default_factory=lambda: new_id("CAP"))
    idea_id: str
    org_id: str
    sandbox_id: str
    product_id: str
    title: str
    description: str = ""
    stage: Stage = Stage.TRIAGE
    status: CapabilityStatus = CapabilityStatus.IN_PROGRESS
    history: list[HistoryEvent] = Field(default_factory=list)
    # Bumped by the store on every conditional write
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def scope(self) -> Scope:
        return Scope(org_id=self.org_id, sandbox_id=self.sandbox_id, product_id=self.product_id)


class StageDocument(BaseModel):
    """Immutable snapshot of one version of a stage's content."""

    model_config = ConfigDict(frozen=True)

    doc_id: str = Field(default_factory=lambda: new_id("DOC"))
    capability_id: str
    stage_key: str
    version: int = Field(ge=1)
    content: str
    diagram_source: str = ""
    attachments: tuple[str, ...] = ()
    status: Literal["draft", "approved"] = "draft"
    created_by: str = "unknown"
    created_at: datetime = Field(default_factory=utc_now)


class PullRequestRecord(BaseModel):
    pr_id: str = Field(default_factory=lambda: new_id("PR"))
    capability_id: str
    repo: str
    branch: str
    title: str
    description: str = ""
    files: list[str] = Field(default_factory=list)
    external_url: str | None = None
    pr_number: int | None = None
    status: Literal["draft", "open"] = "draft"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    updated_by: str = "unknown"

    def merge_files(self, paths: list[str]) -> None:
        """Append newly synced paths, keeping order and uniqueness."""
        for path in paths:
            if path not in self.files:
                self.files.append(path)


class Artifact(BaseModel):
    artifact_id: str = Field(default_factory=lambda: new_id("ART"))
    capability_id: str
    artifact_type: str
    version: int = 1
    content: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class Ticket(BaseModel):
    ticket_id: str = Field(default_factory=lambda: new_id("TICKET"))
    capability_id: str
    repo: str
    title: str
    body: str = ""
    labels: list[str] = Field(default_factory=list)
    status: Literal["draft", "open"] = "draft"
    external_url: str | None = None
    issue_number: int | None = None
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Sync / approval
# ---------------------------------------------------------------------------


class SyncFile(BaseModel):
    path: str
    content: str
    message: str | None = None


class SyncResult(BaseModel):
    mode: Literal["draft", "github"]
    repo: str
    branch: str
    url: str | None = None
    pr_number: int | None = None
    files: list[str] = Field(default_factory=list)

    @property
    def is_remote(self) -> bool:
        return bool(self.url) and self.pr_number is not None


class ApprovalRecord(BaseModel):
    mode: Literal["local", "github", "local-self-approval-fallback", "github-error", "draft"]
    state: Literal["APPROVED", "APPROVAL_FAILED"]
    repo: str | None = None
    pr_number: int | None = None
    pr_id: str | None = None
    url: str | None = None
    note: str = ""
    error: str | None = None
    actions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Similarity / triage / review
# ---------------------------------------------------------------------------


class SimilarIdea(BaseModel):
    idea_id: str
    title: str
    status: str
    similarity: float
    score: float


class SimilarIdeasResult(BaseModel):
    query: str
    ideas: list[SimilarIdea] = Field(default_factory=list)
    duplicate_warning: str | None = None


class TriageContext(BaseModel):
    org_name: str
    sandbox_name: str
    product_name: str
    active_capabilities: int = 0


class TriageAnalysis(BaseModel):
    readiness_score: int
    missing_info: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    proposed_capability_title: str
    refined_idea: IdeaDetails
    context: TriageContext | None = None


class DocumentReview(BaseModel):
    stage_key: str
    verdict: Literal["strong", "needs-work"]
    challenges: list[str] = Field(default_factory=list)
    improvements: list[str] = Field(default_factory=list)


class RenditionSummary(BaseModel):
    headline: str = ""
    first_paragraph: str = ""
    sections: list[str] = Field(default_factory=list)
    highlights: list[str] = Field(default_factory=list)


class StageRendition(BaseModel):
    capability_id: str
    stage_key: str
    source: Literal["github", "local"]
    content: str = ""
    diagram_source: str = ""
    rendition: RenditionSummary = Field(default_factory=RenditionSummary)
    correlation_id: str | None = None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class IdeaCreated(BaseModel):
    idea: Idea
    duplicate_warning: str | None = None
    similar_ideas: list[SimilarIdea] = Field(default_factory=list)
    triage_pr: "TriagePrResult | None" = None
    correlation_id: str | None = None


class TriageResult(BaseModel):
    idea: Idea
    capability: Capability
    triage: TriageAnalysis
    correlation_id: str | None = None


class StageSyncResult(BaseModel):
    capability: Capability
    stage_key: str
    doc: StageDocument
    pr: PullRequestRecord
    sync: SyncResult
    correlation_id: str | None = None


class TriagePrResult(BaseModel):
    idea: Idea
    capability: Capability
    triage: TriageAnalysis
    idea_doc: StageDocument
    triage_doc: StageDocument
    pr: PullRequestRecord
    sync: SyncResult
    correlation_id: str | None = None


class StageDocumentResult(BaseModel):
    capability: Capability
    stage_key: str
    doc: StageDocument
    source: str = "template"
    artifact: Artifact | None = None
    correlation_id: str | None = None


class StageDocumentDetail(BaseModel):
    capability_id: str
    stage_key: str
    latest: StageDocument | None = None
    versions: list[StageDocument] = Field(default_factory=list)
    correlation_id: str | None = None


class StageReviewResult(BaseModel):
    doc: StageDocument
    review: DocumentReview
    correlation_id: str | None = None


class StageApprovalResult(BaseModel):
    capability: Capability
    stage_key: str
    approval: ApprovalRecord
    approved_doc: StageDocument
    pr: PullRequestRecord
    sync: SyncResult
    transition_source: str = "pull-request-approval"
    correlation_id: str | None = None


class BuildResult(BaseModel):
    capability: Capability
    doc: StageDocument
    prs: list[PullRequestRecord] = Field(default_factory=list)
    syncs: list[SyncResult] = Field(default_factory=list)
    tickets: list[Ticket] = Field(default_factory=list)
    correlation_id: str | None = None

    @property
    def pr(self) -> PullRequestRecord | None:
        return self.prs[0] if self.prs else None


class PipelineRunResult(BaseModel):
    idea: Idea
    capability: Capability
    prs: list[PullRequestRecord] = Field(default_factory=list)
    pr_url: str | None = None
    tickets: list[Ticket] = Field(default_factory=list)
    artifacts: list[Artifact] = Field(default_factory=list)
    steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    correlation_id: str | None = None


class CapabilityDetail(BaseModel):
    capability: Capability
    artifacts: list[Artifact] = Field(default_factory=list)
    pull_requests: list[PullRequestRecord] = Field(default_factory=list)
    tickets: list[Ticket] = Field(default_factory=list)
    correlation_id: str | None = None


class WebhookResult(BaseModel):
    ignored: bool
    capability_id: str | None = None
    stage: Stage | None = None
    detail: str = ""
    correlation_id: str | None = None


IdeaCreated.model_rebuild()
