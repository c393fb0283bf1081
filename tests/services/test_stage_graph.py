"""Tests for guarded stage transitions and optimistic revision checks."""

import pytest

from capability_factory.core.exceptions import ConcurrentUpdateError, NotFoundError, StageMismatchError
from capability_factory.domain.stages import CapabilityStatus, Stage
from capability_factory.schemas.factory import Capability
from capability_factory.services.stage_graph import StageGraph

pytestmark = pytest.mark.unit


@pytest.fixture
async def capability(store):
    return await store.create_capability(
        Capability(
            idea_id="IDEA-000000000001",
            org_id="acme",
            sandbox_id="sandbox-1",
            product_id="widgets",
            title="Lead scoring",
        )
    )


async def test_advance_moves_stage_and_records_history(store, capability):
    graph = StageGraph(store)

    moved = await graph.advance(capability.capability_id, Stage.TRIAGE, Stage.SPEC, "spec-written", "alice")

    assert moved.stage == Stage.SPEC
    assert moved.revision == capability.revision + 1
    assert [e.type for e in moved.history] == ["spec-written"]
    assert moved.history[0].actor == "alice"


async def test_mismatch_leaves_capability_untouched(store, capability):
    graph = StageGraph(store)

    with pytest.raises(StageMismatchError):
        await graph.advance(
            capability.capability_id, Stage.SPEC, Stage.SPEC_APPROVED, "spec-approved", "alice"
        )

    stored = await store.get_capability(capability.capability_id)
    assert stored.stage == Stage.TRIAGE
    assert stored.history == []
    assert stored.revision == capability.revision


async def test_event_without_transition(store, capability):
    graph = StageGraph(store)

    saved = await graph.advance(capability.capability_id, Stage.TRIAGE, None, "triage-revised", "bob")

    assert saved.stage == Stage.TRIAGE
    assert saved.history[-1].type == "triage-revised"


async def test_status_update(store, capability):
    graph = StageGraph(store)
    await graph.advance(capability.capability_id, Stage.TRIAGE, Stage.SPEC, "spec-written", "alice")

    saved = await graph.advance(
        capability.capability_id,
        Stage.SPEC,
        None,
        "note",
        "alice",
        status=CapabilityStatus.READY_FOR_REVIEW,
    )

    assert saved.status == CapabilityStatus.READY_FOR_REVIEW


async def test_missing_capability(store):
    with pytest.raises(NotFoundError):
        await StageGraph(store).guard("CAP-000000000000", Stage.TRIAGE)


async def test_concurrent_advance_only_one_wins(store, capability):
    """Two writers read the same revision; the loser re-checks the guard and fails."""
    graph = StageGraph(store)
    stale = await store.get_capability(capability.capability_id)

    await graph.advance(capability.capability_id, Stage.TRIAGE, Stage.SPEC, "spec-written", "alice")

    stale.stage = Stage.SPEC
    with pytest.raises(ConcurrentUpdateError):
        await store.save_capability(stale, stale.revision)

    with pytest.raises(StageMismatchError):
        await graph.advance(capability.capability_id, Stage.TRIAGE, Stage.SPEC, "spec-written", "bob")

    stored = await store.get_capability(capability.capability_id)
    assert [e.actor for e in stored.history] == ["alice"]


async def test_conflict_is_retried(store, capability):
    """A conflicting write between read and save is retried against the fresh revision."""
    graph = StageGraph(store)
    original_save = store.save_capability
    calls = {"n": 0}

    async def flaky_save(cap, expected_revision):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConcurrentUpdateError("lost the race")
        return await original_save(cap, expected_revision)

    store.save_capability = flaky_save

    saved = await graph.advance(capability.capability_id, Stage.TRIAGE, Stage.SPEC, "spec-written", "alice")

    assert calls["n"] == 2
    assert saved.stage == Stage.SPEC
    assert len(saved.history) == 1
