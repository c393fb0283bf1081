"""Capability factory API routes.

Thin adapters over PipelineOrchestrator. FactoryError subclasses raised here
are turned into JSON payloads by the handler registered in main.py.
"""

from fastapi import APIRouter, Depends, Query

from capability_factory.api.deps import get_orchestrator
from capability_factory.middleware.correlation import get_correlation_id
from capability_factory.schemas.factory import (
    BuildResult,
    CapabilityDetail,
    IdeaCreated,
    PipelineRunResult,
    Scope,
    SimilarIdeasResult,
    StageApprovalResult,
    StageDocumentDetail,
    StageDocumentResult,
    StageRendition,
    StageReviewResult,
    StageSyncResult,
    TriageResult,
)
from capability_factory.schemas.requests import (
    ApproveStageRequest,
    BuildToPrRequest,
    CreateIdeaRequest,
    ReviseDocumentRequest,
    RunToPrRequest,
    SyncStageRequest,
    TriageRequest,
    WriteDocumentRequest,
)
from capability_factory.services.pipeline import PipelineOrchestrator

router = APIRouter()


@router.post("/ideas", response_model=IdeaCreated, status_code=201)
async def create_idea(
    request: CreateIdeaRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Submit an idea; the response carries a duplicate warning when a similar idea exists."""
    return await orchestrator.create_idea(
        Scope(org_id=request.org_id, sandbox_id=request.sandbox_id, product_id=request.product_id),
        request.title,
        request.description,
        request.details,
        actor=request.actor,
        auto_pipeline=request.auto_pipeline,
        require_remote_pr=request.require_remote_pr,
        correlation_id=get_correlation_id(),
    )


@router.get("/ideas/similar", response_model=SimilarIdeasResult)
async def find_similar_ideas(
    org_id: str,
    sandbox_id: str,
    product_id: str,
    q: str = "",
    limit: int = Query(5),
    exclude_idea_id: str | None = None,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.find_similar_ideas(
        Scope(org_id=org_id, sandbox_id=sandbox_id, product_id=product_id),
        q,
        limit=limit,
        exclude_idea_id=exclude_idea_id,
        correlation_id=get_correlation_id(),
    )


@router.post("/ideas/{idea_id}/triage", response_model=TriageResult, status_code=201)
async def triage_idea(
    idea_id: str,
    request: TriageRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.triage(
        idea_id,
        capability_title=request.capability_title,
        actor=request.actor,
        correlation_id=get_correlation_id(),
    )


@router.post("/ideas/{idea_id}/run-to-pr", response_model=PipelineRunResult)
async def run_idea_to_pr(
    idea_id: str,
    request: RunToPrRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Drive an idea through every stage to a build pull request.

    Raises:
        PipelineStepError: payload names the failing step
    """
    return await orchestrator.run_idea_to_pr(
        idea_id,
        capability_title=request.capability_title,
        actor=request.actor,
        require_remote_pr=request.require_remote_pr,
        correlation_id=get_correlation_id(),
    )


@router.get("/capabilities/{capability_id}", response_model=CapabilityDetail)
async def get_capability(
    capability_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_capability_detail(capability_id, correlation_id=get_correlation_id())


@router.get("/capabilities/{capability_id}/stages/{stage_key}", response_model=StageDocumentDetail)
async def get_stage_document(
    capability_id: str,
    stage_key: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_stage_document(capability_id, stage_key, correlation_id=get_correlation_id())


@router.post("/capabilities/{capability_id}/stages/{stage_key}/document", response_model=StageDocumentResult)
async def write_stage_document(
    capability_id: str,
    stage_key: str,
    request: WriteDocumentRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.write_stage_document(
        capability_id,
        stage_key,
        actor=request.actor,
        intent=request.intent,
        correlation_id=get_correlation_id(),
    )


@router.put("/capabilities/{capability_id}/stages/{stage_key}/document", response_model=StageDocumentResult)
async def revise_stage_document(
    capability_id: str,
    stage_key: str,
    request: ReviseDocumentRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.revise_stage_document(
        capability_id,
        stage_key,
        request.content,
        actor=request.actor,
        diagram_source=request.diagram_source,
        attachments=request.attachments,
        correlation_id=get_correlation_id(),
    )


@router.post("/capabilities/{capability_id}/stages/{stage_key}/sync", response_model=StageSyncResult)
async def sync_stage(
    capability_id: str,
    stage_key: str,
    request: SyncStageRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.sync_stage_to_pr(
        capability_id, stage_key, actor=request.actor, correlation_id=get_correlation_id()
    )


@router.post("/capabilities/{capability_id}/stages/{stage_key}/approve", response_model=StageApprovalResult)
async def approve_stage(
    capability_id: str,
    stage_key: str,
    request: ApproveStageRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Approve the latest stage document through the pull request review gate.

    Raises:
        StageMismatchError(409): capability is not at the stage's approval point
        ApprovalFailedError(502): remote review failed for a reason other than self-approval
        RemotePullRequestRequiredError(502): remote PR required but sync stayed local
    """
    return await orchestrator.approve_stage(
        capability_id,
        stage_key,
        actor=request.actor,
        note=request.note,
        require_remote_pr=request.require_remote_pr,
        correlation_id=get_correlation_id(),
    )


@router.get("/capabilities/{capability_id}/stages/{stage_key}/review", response_model=StageReviewResult)
async def review_stage_document(
    capability_id: str,
    stage_key: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.review_stage_document(capability_id, stage_key, correlation_id=get_correlation_id())


@router.get("/capabilities/{capability_id}/stages/{stage_key}/rendition", response_model=StageRendition)
async def get_stage_rendition(
    capability_id: str,
    stage_key: str,
    source: str = Query("auto", pattern="^(auto|github|local)$"),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_stage_rendition(
        capability_id, stage_key, source=source, correlation_id=get_correlation_id()
    )


@router.post("/capabilities/{capability_id}/build-to-pr", response_model=BuildResult)
async def build_to_pr(
    capability_id: str,
    request: BuildToPrRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.build_to_pr(
        capability_id,
        actor=request.actor,
        require_remote_pr=request.require_remote_pr,
        correlation_id=get_correlation_id(),
    )
