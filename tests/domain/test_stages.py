"""Tests for the stage vocabulary, guard and transition rules."""

import pytest

from capability_factory.core.exceptions import StageMismatchError, UnsupportedStageError
from capability_factory.domain.stages import (
    STAGE_ORDER,
    STAGE_RULES,
    Stage,
    approval_rule_for,
    check_stage,
    next_stage,
    rule_for,
    validate_transition,
)
from capability_factory.schemas.factory import Capability

pytestmark = pytest.mark.unit


def _capability(stage: Stage) -> Capability:
    return Capability(
        idea_id="IDEA-000000000001",
        org_id="acme",
        sandbox_id="sandbox-1",
        product_id="widgets",
        title="Lead scoring",
        stage=stage,
    )


class TestStageOrder:
    def test_order_is_fixed(self):
        assert [s.value for s in STAGE_ORDER] == [
            "idea",
            "triage",
            "spec",
            "spec-approved",
            "architecture",
            "architecture-approved",
            "compliance",
            "compliance-approved",
            "build",
            "pr-created",
        ]

    def test_next_stage(self):
        assert next_stage(Stage.TRIAGE) == Stage.SPEC
        assert next_stage(Stage.COMPLIANCE_APPROVED) == Stage.BUILD
        assert next_stage(Stage.PR_CREATED) is None


class TestGuard:
    def test_matching_stage_passes(self):
        check_stage(_capability(Stage.SPEC), Stage.SPEC)

    def test_mismatch_names_required_and_actual(self):
        capability = _capability(Stage.TRIAGE)

        with pytest.raises(StageMismatchError) as exc_info:
            check_stage(capability, Stage.SPEC)

        err = exc_info.value
        assert err.reason == "stage_mismatch"
        assert err.required == "spec"
        assert err.actual == "triage"
        assert "spec" in err.error and "triage" in err.error

    def test_guard_never_mutates(self):
        capability = _capability(Stage.TRIAGE)
        with pytest.raises(StageMismatchError):
            check_stage(capability, Stage.ARCHITECTURE)
        assert capability.stage == Stage.TRIAGE
        assert capability.history == []


class TestTransitions:
    def test_successor_transition_allowed(self):
        validate_transition(Stage.SPEC, Stage.SPEC_APPROVED)

    def test_skipping_a_stage_rejected(self):
        with pytest.raises(ValueError):
            validate_transition(Stage.SPEC, Stage.ARCHITECTURE)

    def test_backwards_transition_rejected(self):
        with pytest.raises(ValueError):
            validate_transition(Stage.ARCHITECTURE, Stage.SPEC_APPROVED)

    def test_every_rule_moves_forward_by_one(self):
        for rule in STAGE_RULES.values():
            if rule.write_moves_to is not None:
                assert next_stage(rule.write_requires) == rule.write_moves_to
            if rule.approve_moves_to is not None:
                assert next_stage(rule.approve_requires) == rule.approve_moves_to


class TestRules:
    def test_document_rules(self):
        assert rule_for("spec").write_requires == Stage.TRIAGE
        assert rule_for("architecture").write_requires == Stage.SPEC_APPROVED
        assert rule_for("compliance").write_requires == Stage.ARCHITECTURE_APPROVED
        assert rule_for("build").write_requires == Stage.COMPLIANCE_APPROVED

    def test_approval_rules(self):
        assert approval_rule_for("spec").approve_moves_to == Stage.SPEC_APPROVED
        assert approval_rule_for("architecture").approve_requires == Stage.ARCHITECTURE
        assert approval_rule_for("compliance").approve_moves_to == Stage.COMPLIANCE_APPROVED

    @pytest.mark.parametrize("stage_key", ["build", "idea"])
    def test_unapprovable_stages(self, stage_key):
        with pytest.raises(UnsupportedStageError):
            approval_rule_for(stage_key)

    def test_unknown_stage(self):
        with pytest.raises(UnsupportedStageError) as exc_info:
            rule_for("deploy")
        assert exc_info.value.reason == "unsupported_stage"
