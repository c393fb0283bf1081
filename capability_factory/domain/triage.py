"""Idea triage analysis.

Pure domain functions: readiness scoring, gap and risk detection.
No DB access, fully deterministic.
"""

from capability_factory.schemas.factory import Idea, IdeaDetails, TriageAnalysis, TriageContext

DEFAULT_ACCEPTANCE_CRITERIA = [
    "Stage artifacts are complete and reviewable",
    "PR includes context docs for approvals",
    "Quality gates are explicit and auditable",
]

TRIAGE_SUGGESTIONS = [
    "Clarify measurable outcome and success metric for first release.",
    "Add explicit non-goals to prevent scope drift.",
    "Attach one architecture sketch or reference diagram.",
    "Map the capability to org/sandbox/product dependency constraints.",
]

MISSING_INFO_PENALTY = 12
RISK_PENALTY = 8
HIGH_LOAD_THRESHOLD = 8
MIN_CONSTRAINTS_LENGTH = 20


def refine_idea_details(idea: Idea, context: TriageContext | None = None) -> IdeaDetails:
    """Fill gaps in an idea's details with conservative defaults."""
    details = idea.details
    if details.business_goal:
        goal = details.business_goal
    elif context and context.product_name:
        goal = f"Improve {context.product_name} outcomes with measurable capability delivery."
    else:
        goal = "Improve business outcomes with measurable capability delivery."

    return IdeaDetails(
        problem_statement=details.problem_statement or idea.description or "Problem statement not provided.",
        user_persona=details.user_persona or "Organization admin",
        business_goal=goal,
        acceptance_criteria=list(details.acceptance_criteria) or list(DEFAULT_ACCEPTANCE_CRITERIA),
        constraints=details.constraints
        or "No CI/CD automation in this phase; maintain enterprise auditability.",
        non_goals=details.non_goals or "Production deployment automation in this phase",
        attachments=list(details.attachments),
        metadata=dict(details.metadata),
    )


def build_triage_analysis(idea: Idea, context: TriageContext | None = None) -> TriageAnalysis:
    """Score how ready an idea is to enter the pipeline.

    Rules:
        - each missing core field (problem, persona, goal, acceptance criteria) costs 12 points
        - each detected risk costs 8 points
        - readiness never drops below 0
        - risks are judged on the raw details, so defaults filled in by
          refine_idea_details do not hide a missing non-goals section
    """
    details = idea.details
    refined = refine_idea_details(idea, context)

    missing: list[str] = []
    if not details.problem_statement:
        missing.append("problem_statement")
    if not details.user_persona:
        missing.append("user_persona")
    if not details.business_goal:
        missing.append("business_goal")
    if not details.acceptance_criteria:
        missing.append("acceptance_criteria")

    risks: list[str] = []
    if len(details.constraints) < MIN_CONSTRAINTS_LENGTH:
        risks.append("Constraints are underspecified; implementation risk is high.")
    if not details.non_goals:
        risks.append("Non-goals are not explicit; scope creep likely.")
    if not details.attachments:
        risks.append("No augmentation assets provided (images/diagrams/references).")
    if context and context.active_capabilities > HIGH_LOAD_THRESHOLD:
        risks.append("High active capability load in this product; triage should de-risk dependencies.")

    return TriageAnalysis(
        readiness_score=max(0, 100 - len(missing) * MISSING_INFO_PENALTY - len(risks) * RISK_PENALTY),
        missing_info=missing,
        risks=risks,
        suggestions=list(TRIAGE_SUGGESTIONS),
        proposed_capability_title=f"{idea.title} capability",
        refined_idea=refined,
        context=context,
    )
