"""Composition root: the only place Settings are turned into components.

Routes receive the orchestrator through get_orchestrator. Override it in tests
via app.dependency_overrides.
"""

import httpx
from fastapi import Request

from capability_factory.core.config import Settings
from capability_factory.db import FactoryStore, InMemoryFactoryStore, SqlFactoryStore, get_session_factory
from capability_factory.integrations.github_auth import CredentialResolver
from capability_factory.services.background import BackgroundTaskQueue
from capability_factory.services.drafts import DraftProducer, LlmDraftProducer, TemplateDraftProducer
from capability_factory.services.pipeline import PipelineOrchestrator
from capability_factory.services.source_sync import SourceSyncEngine


def build_store(settings: Settings) -> FactoryStore:
    """SQL store by default; in-memory when USE_MEMORY_STORE is set (local runs)."""
    if settings.use_memory_store:
        return InMemoryFactoryStore()
    return SqlFactoryStore(get_session_factory())


def build_draft_producer(settings: Settings) -> DraftProducer:
    """LLM drafts when ANTHROPIC_API_KEY is set, deterministic templates otherwise."""
    if settings.anthropic_api_key:
        return LlmDraftProducer(
            api_key=settings.anthropic_api_key,
            model=settings.draft_model,
            timeout_seconds=settings.draft_timeout_seconds,
        )
    return TemplateDraftProducer()


def build_orchestrator(
    settings: Settings,
    store: FactoryStore,
    background: BackgroundTaskQueue | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PipelineOrchestrator:
    github = settings.github_config()
    sync_engine = SourceSyncEngine(github, CredentialResolver(github), transport=transport)
    return PipelineOrchestrator(
        store,
        settings.factory_config(),
        sync_engine,
        draft_producer=build_draft_producer(settings),
        background=background,
    )


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    return request.app.state.orchestrator
