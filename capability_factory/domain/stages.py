"""Stage vocabulary, guard predicate and per-stage transition rules.

Pure domain logic with no external dependencies.
"""
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from capability_factory.core.exceptions import StageMismatchError, UnsupportedStageError


class Stage(StrEnum):
    """Fixed, ordered delivery stages a capability moves through."""

    IDEA = "idea"
    TRIAGE = "triage"
    SPEC = "spec"
    SPEC_APPROVED = "spec-approved"
    ARCHITECTURE = "architecture"
    ARCHITECTURE_APPROVED = "architecture-approved"
    COMPLIANCE = "compliance"
    COMPLIANCE_APPROVED = "compliance-approved"
    BUILD = "build"
    PR_CREATED = "pr-created"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)


class CapabilityStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    READY_FOR_REVIEW = "ready_for_review"


class HasStage(Protocol):
    capability_id: str
    stage: Stage


@dataclass(frozen=True)
class StageRule:
    """What a stage document write and its approval require and produce.

    write_moves_to / approve_moves_to are None when the action does not move
    the capability by itself.
    """

    stage_key: str
    write_requires: Stage
    write_moves_to: Stage | None
    approve_requires: Stage | None
    approve_moves_to: Stage | None


STAGE_RULES: dict[str, StageRule] = {
    "idea": StageRule("idea", Stage.TRIAGE, None, None, None),
    # Approving triage continues with the guarded spec write (triage -> spec)
    "triage": StageRule("triage", Stage.TRIAGE, None, Stage.TRIAGE, Stage.SPEC),
    "spec": StageRule("spec", Stage.TRIAGE, Stage.SPEC, Stage.SPEC, Stage.SPEC_APPROVED),
    "architecture": StageRule(
        "architecture",
        Stage.SPEC_APPROVED,
        Stage.ARCHITECTURE,
        Stage.ARCHITECTURE,
        Stage.ARCHITECTURE_APPROVED,
    ),
    "compliance": StageRule(
        "compliance",
        Stage.ARCHITECTURE_APPROVED,
        Stage.COMPLIANCE,
        Stage.COMPLIANCE,
        Stage.COMPLIANCE_APPROVED,
    ),
    # Build is not approved here; its sync moves build -> pr-created
    "build": StageRule("build", Stage.COMPLIANCE_APPROVED, Stage.BUILD, None, None),
}

STAGE_ARTIFACT_TYPES: dict[str, str] = {
    "spec": "spec",
    "architecture": "architecture",
    "compliance": "compliance",
    "build": "build-plan",
}


def next_stage(stage: Stage) -> Stage | None:
    """Return the stage after `stage`, or None at the terminal stage."""
    index = STAGE_ORDER.index(Stage(stage))
    if index + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[index + 1]


def check_stage(capability: HasStage, required: Stage) -> None:
    """Guard: raise StageMismatchError unless the capability is exactly at `required`.

    Pure function -- never mutates the capability.
    """
    if capability.stage != required:
        raise StageMismatchError(
            required=Stage(required),
            actual=capability.stage,
            capability_id=capability.capability_id,
        )


def validate_transition(required: Stage, target: Stage) -> None:
    """Reject transitions that skip a stage.

    Rules:
        - target must be the immediate successor of required
    """
    if next_stage(required) != target:
        raise ValueError(f"Illegal transition {required} -> {target}")


def rule_for(stage_key: str, operation: str = "document") -> StageRule:
    rule = STAGE_RULES.get(stage_key)
    if rule is None:
        raise UnsupportedStageError(stage_key, operation)
    return rule


def approval_rule_for(stage_key: str) -> StageRule:
    rule = rule_for(stage_key, "approval")
    if rule.approve_requires is None:
        raise UnsupportedStageError(stage_key, "approval")
    return rule
