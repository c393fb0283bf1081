"""Request bodies for the factory HTTP routes."""

from typing import Any

from pydantic import BaseModel, Field


class CreateIdeaRequest(BaseModel):
    org_id: str
    sandbox_id: str
    product_id: str
    title: str = ""
    description: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    actor: str = "unknown"
    auto_pipeline: bool = False
    require_remote_pr: bool | None = None


class TriageRequest(BaseModel):
    capability_title: str | None = None
    actor: str = "triage-agent"


class RunToPrRequest(BaseModel):
    capability_title: str | None = None
    actor: str = "pipeline-agent"
    require_remote_pr: bool | None = None


class WriteDocumentRequest(BaseModel):
    actor: str = "unknown"
    intent: str = ""


class ReviseDocumentRequest(BaseModel):
    content: str
    diagram_source: str = ""
    attachments: list[str] = Field(default_factory=list)
    actor: str = "unknown"


class SyncStageRequest(BaseModel):
    actor: str = "unknown"


class ApproveStageRequest(BaseModel):
    actor: str = "unknown"
    note: str = ""
    require_remote_pr: bool | None = None


class BuildToPrRequest(BaseModel):
    actor: str = "pipeline-agent"
    require_remote_pr: bool | None = None
