"""GitHub webhook receiver: pull request reviews approved on GitHub advance the capability."""

from typing import Any

import structlog
from fastapi import APIRouter, Body, Depends, Header

from capability_factory.api.deps import get_orchestrator
from capability_factory.middleware.correlation import get_correlation_id
from capability_factory.schemas.factory import WebhookResult
from capability_factory.services.pipeline import PipelineOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()

REVIEW_EVENT = "pull_request_review"


@router.post("/webhooks", response_model=WebhookResult)
async def github_webhook(
    payload: dict[str, Any] = Body(default_factory=dict),
    x_github_event: str | None = Header(default=None),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    cid = get_correlation_id()
    if x_github_event and x_github_event != REVIEW_EVENT:
        logger.info("webhook.ignored", github_event=x_github_event)
        return WebhookResult(ignored=True, detail=f"event {x_github_event} ignored", correlation_id=cid)
    return await orchestrator.handle_review_webhook(payload, correlation_id=cid)
