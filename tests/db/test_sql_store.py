"""SqlFactoryStore against a throwaway SQLite database (aiosqlite).

Covers the conditional-write contract shared with the in-memory store:
- capability saves conditioned on revision
- unique (capability, stage, version) for stage documents
- one pull request record per (capability, repo)
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import capability_factory.db.models  # noqa: F401
from capability_factory.core.exceptions import ConcurrentUpdateError, NotFoundError
from capability_factory.db.base import Base
from capability_factory.db.store_sql import SqlFactoryStore
from capability_factory.domain.stages import CapabilityStatus, Stage
from capability_factory.schemas.factory import (
    Artifact,
    Capability,
    HistoryEvent,
    Idea,
    IdeaDetails,
    PullRequestRecord,
    StageDocument,
    Ticket,
)
from capability_factory.services.pipeline import PipelineOrchestrator

pytestmark = pytest.mark.integration


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'factory.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def sql_store(engine: AsyncEngine) -> SqlFactoryStore:
    return SqlFactoryStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))


def _idea(**overrides) -> Idea:
    fields = {
        "org_id": "acme",
        "sandbox_id": "sandbox-1",
        "product_id": "widgets",
        "title": "Lead scoring",
        "details": IdeaDetails(acceptance_criteria=["Leads carry a score"], metadata={"source": "form"}),
    }
    fields.update(overrides)
    return Idea(**fields)


async def _capability(store: SqlFactoryStore) -> Capability:
    idea = await store.create_idea(_idea())
    return await store.create_capability(
        Capability(
            idea_id=idea.idea_id,
            org_id="acme",
            sandbox_id="sandbox-1",
            product_id="widgets",
            title="Lead scoring capability",
            history=[HistoryEvent(type="triaged", actor="alice", detail={"readiness_score": 88})],
        )
    )


class TestIdeas:
    async def test_details_round_trip(self, sql_store):
        idea = await sql_store.create_idea(_idea())

        loaded = await sql_store.get_idea(idea.idea_id)

        assert loaded.details.acceptance_criteria == ["Leads carry a score"]
        assert loaded.details.metadata == {"source": "form"}
        assert loaded.status == "new"

    async def test_list_is_scoped(self, sql_store):
        await sql_store.create_idea(_idea())
        await sql_store.create_idea(_idea(product_id="gadgets"))

        ideas = await sql_store.list_ideas("acme", "sandbox-1", "widgets")

        assert [i.product_id for i in ideas] == ["widgets"]

    async def test_update_status(self, sql_store):
        idea = await sql_store.create_idea(_idea())

        updated = await sql_store.update_idea_status(idea.idea_id, "triaged")

        assert updated.status == "triaged"
        assert await sql_store.update_idea_status("IDEA-missing", "triaged") is None


class TestCapabilities:
    async def test_history_and_stage_round_trip(self, sql_store):
        capability = await _capability(sql_store)

        loaded = await sql_store.get_capability(capability.capability_id)

        assert loaded.stage == Stage.TRIAGE
        assert loaded.status == CapabilityStatus.IN_PROGRESS
        assert loaded.history[0].detail == {"readiness_score": 88}
        assert (await sql_store.get_capability_by_idea(capability.idea_id)).capability_id == capability.capability_id

    async def test_save_bumps_revision(self, sql_store):
        capability = await _capability(sql_store)
        capability.stage = Stage.SPEC

        saved = await sql_store.save_capability(capability, expected_revision=0)

        assert saved.revision == 1
        loaded = await sql_store.get_capability(capability.capability_id)
        assert loaded.stage == Stage.SPEC
        assert loaded.revision == 1

    async def test_stale_revision_conflicts(self, sql_store):
        capability = await _capability(sql_store)
        await sql_store.save_capability(capability, expected_revision=0)
        capability.stage = Stage.SPEC

        with pytest.raises(ConcurrentUpdateError):
            await sql_store.save_capability(capability, expected_revision=0)

        assert (await sql_store.get_capability(capability.capability_id)).stage == Stage.TRIAGE

    async def test_save_missing_capability(self, sql_store):
        ghost = Capability(idea_id="IDEA-x", org_id="a", sandbox_id="b", product_id="c", title="ghost")
        with pytest.raises(NotFoundError):
            await sql_store.save_capability(ghost, expected_revision=0)


class TestStageDocuments:
    async def test_duplicate_version_conflicts(self, sql_store):
        doc = StageDocument(capability_id="CAP-1", stage_key="spec", version=1, content="v1")
        await sql_store.append_stage_document(doc)

        with pytest.raises(ConcurrentUpdateError):
            await sql_store.append_stage_document(
                StageDocument(capability_id="CAP-1", stage_key="spec", version=1, content="racer")
            )

        assert (await sql_store.latest_stage_document("CAP-1", "spec")).content == "v1"

    async def test_latest_and_listing_order(self, sql_store):
        for version in (1, 2, 3):
            await sql_store.append_stage_document(
                StageDocument(
                    capability_id="CAP-1",
                    stage_key="architecture",
                    version=version,
                    content=f"v{version}",
                    diagram_source="flowchart LR",
                    attachments=("https://example.test/a.png",),
                )
            )

        latest = await sql_store.latest_stage_document("CAP-1", "architecture")
        versions = await sql_store.list_stage_documents("CAP-1", "architecture")

        assert latest.version == 3
        assert latest.attachments == ("https://example.test/a.png",)
        assert [d.version for d in versions] == [3, 2, 1]
        assert await sql_store.latest_stage_document("CAP-1", "spec") is None


class TestPullRequestsAndAudit:
    async def test_pull_request_upsert(self, sql_store):
        pr = PullRequestRecord(capability_id="CAP-1", repo="acme/widgets", branch="capability/w/cap-1", title="t")
        pr.merge_files(["a.md"])
        first = await sql_store.save_pull_request(pr)

        pr.merge_files(["b.md"])
        pr.external_url = "https://github.com/acme/widgets/pull/4"
        pr.pr_number = 4
        pr.status = "open"
        second = await sql_store.save_pull_request(pr)

        assert second.pr_id == first.pr_id
        records = await sql_store.list_pull_requests("CAP-1")
        assert len(records) == 1
        assert records[0].files == ["a.md", "b.md"]
        assert records[0].pr_number == 4
        assert records[0].status == "open"

    async def test_artifacts_and_tickets(self, sql_store):
        await sql_store.add_artifact(Artifact(capability_id="CAP-1", artifact_type="spec", content={"doc_version": 1}))
        await sql_store.add_artifact(Artifact(capability_id="CAP-1", artifact_type="spec-doc"))
        await sql_store.add_ticket(Ticket(capability_id="CAP-1", repo="acme/widgets", title="impl", labels=["area:sales"]))

        specs = await sql_store.list_artifacts("CAP-1", "spec")
        tickets = await sql_store.list_tickets("CAP-1")

        assert [a.content for a in specs] == [{"doc_version": 1}]
        assert len(await sql_store.list_artifacts("CAP-1")) == 2
        assert tickets[0].labels == ["area:sales"]


class TestPipelineOnSql:
    async def test_draft_run_reaches_pr_created(self, sql_store, factory_config, draft_engine, scope, idea_details):
        orchestrator = PipelineOrchestrator(sql_store, factory_config, draft_engine)
        created = await orchestrator.create_idea(scope, "Lead scoring", "Rank inbound leads", idea_details)

        result = await orchestrator.run_idea_to_pr(created.idea.idea_id)

        assert result.capability.stage == Stage.PR_CREATED
        stored = await sql_store.get_capability(result.capability.capability_id)
        assert stored.stage == Stage.PR_CREATED
        assert stored.history[-1].type == "pr-created"
        assert len(await sql_store.list_pull_requests(stored.capability_id)) == 1
