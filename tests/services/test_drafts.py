"""Tests for template and LLM draft producers."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from capability_factory.domain.triage import build_triage_analysis
from capability_factory.schemas.factory import Capability, Idea, IdeaDetails
from capability_factory.services.drafts import (
    LlmDraftProducer,
    StageDraftRequest,
    TemplateDraftProducer,
    generated_component_paths,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def idea(idea_details):
    return Idea(
        org_id="acme",
        sandbox_id="sandbox-1",
        product_id="widgets",
        title="Lead scoring",
        description="Rank inbound leads",
        details=IdeaDetails.from_raw(idea_details),
    )


@pytest.fixture
def capability(idea):
    return Capability(
        idea_id=idea.idea_id,
        org_id=idea.org_id,
        sandbox_id=idea.sandbox_id,
        product_id=idea.product_id,
        title="Lead scoring capability",
    )


def _request(stage_key, capability, idea, **kwargs):
    return StageDraftRequest(stage_key, capability, idea, build_triage_analysis(idea), **kwargs)


class TestTemplates:
    async def test_every_document_stage_renders(self, capability, idea):
        producer = TemplateDraftProducer()
        for stage_key in ["idea", "triage", "spec", "architecture", "compliance", "build"]:
            draft = await producer.draft(_request(stage_key, capability, idea))
            assert draft is not None and draft.content.startswith("# ")
            assert draft.source == "template"

    def test_architecture_has_diagram_and_spec_excerpt(self, capability, idea):
        draft = TemplateDraftProducer().render(
            _request("architecture", capability, idea, existing_content={"spec": "# Spec\n\nspec excerpt line"})
        )

        assert draft.diagram_source.startswith("flowchart LR")
        assert "spec excerpt line" in draft.content

    def test_spec_lists_acceptance_criteria(self, capability, idea):
        draft = TemplateDraftProducer().render(_request("spec", capability, idea))
        assert "- Leads carry a score" in draft.content

    def test_build_lists_generated_components(self, capability, idea):
        draft = TemplateDraftProducer().render(_request("build", capability, idea))
        for path in generated_component_paths(capability.capability_id):
            assert path in draft.content

    def test_unknown_stage(self, capability, idea):
        assert TemplateDraftProducer().render(_request("deploy", capability, idea)) is None


def _llm_client(text: str | None = None, side_effect=None) -> MagicMock:
    client = MagicMock()
    if side_effect is not None:
        client.messages.create = AsyncMock(side_effect=side_effect)
    else:
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=[SimpleNamespace(text=text)]))
    return client


class TestLlmDrafts:
    async def test_splits_mermaid_block(self, capability, idea):
        client = _llm_client("# Architecture\n\nBody\n\n```mermaid\nflowchart LR\n  A --> B\n```\n")
        producer = LlmDraftProducer("key", "claude-test", client=client)

        draft = await producer.draft(_request("architecture", capability, idea))

        assert draft.source == "llm:claude-test"
        assert draft.content == "# Architecture\n\nBody"
        assert draft.diagram_source == "flowchart LR\n  A --> B"

    async def test_failure_falls_back_to_template(self, capability, idea):
        client = _llm_client(side_effect=RuntimeError("upstream exploded"))
        producer = LlmDraftProducer("key", "claude-test", client=client)

        draft = await producer.draft(_request("spec", capability, idea))

        assert draft.source == "template"
        assert draft.content.startswith("# Spec")

    async def test_timeout_falls_back_to_template(self, capability, idea):
        async def slow(**kwargs):
            await asyncio.sleep(5)

        producer = LlmDraftProducer("key", "claude-test", timeout_seconds=0.01, client=_llm_client(side_effect=slow))

        draft = await producer.draft(_request("compliance", capability, idea))

        assert draft.source == "template"

    async def test_empty_response_falls_back(self, capability, idea):
        producer = LlmDraftProducer("key", "claude-test", client=_llm_client("   "))

        draft = await producer.draft(_request("spec", capability, idea))

        assert draft.source == "template"
