"""IdeaService: idea intake, scoped duplicate detection and triage context."""

import structlog

from capability_factory.core.exceptions import NotFoundError
from capability_factory.db.store import FactoryStore
from capability_factory.domain.similarity import (
    SimilarityRanking,
    rank_candidates,
    tokenize,
    tokens_from_parts,
)
from capability_factory.domain.stages import CapabilityStatus, Stage
from capability_factory.schemas.factory import (
    Idea,
    IdeaDetails,
    Scope,
    SimilarIdea,
    SimilarIdeasResult,
    TriageContext,
)

logger = structlog.get_logger(__name__)


def idea_tokens(idea: Idea) -> set[str]:
    """Token set over title, description and every structured detail field."""
    details = idea.details
    return tokens_from_parts(
        [
            idea.title,
            idea.description,
            details.problem_statement,
            details.user_persona,
            details.business_goal,
            " ".join(details.acceptance_criteria),
            details.constraints,
            details.non_goals,
        ]
    )


def _to_result(query: str, ranking: SimilarityRanking) -> SimilarIdeasResult:
    return SimilarIdeasResult(
        query=query,
        ideas=[
            SimilarIdea(
                idea_id=r.idea_id,
                title=r.title,
                status=r.status,
                similarity=r.similarity,
                score=r.score,
            )
            for r in ranking.ideas
        ],
        duplicate_warning=ranking.duplicate_warning,
    )


class IdeaService:
    def __init__(self, store: FactoryStore):
        self.store = store

    async def get(self, idea_id: str) -> Idea:
        idea = await self.store.get_idea(idea_id)
        if idea is None:
            raise NotFoundError(f"Idea not found: {idea_id}")
        return idea

    async def create(
        self,
        scope: Scope,
        title: str,
        description: str = "",
        details: IdeaDetails | dict | None = None,
        actor: str = "unknown",
    ) -> Idea:
        if not isinstance(details, IdeaDetails):
            details = IdeaDetails.from_raw(details)
        title = (title or "").strip() or f"{scope.product_id} capability idea"
        description = (description or "").strip() or f"Capability idea for {scope.product_id}"
        idea = Idea(
            org_id=scope.org_id,
            sandbox_id=scope.sandbox_id,
            product_id=scope.product_id,
            title=title,
            description=description,
            details=details,
            created_by=actor or "unknown",
        )
        created = await self.store.create_idea(idea)
        logger.info("idea.created", idea_id=created.idea_id, product_id=scope.product_id)
        return created

    async def find_similar(
        self,
        scope: Scope,
        query: str,
        limit: int | None = 5,
        exclude_idea_id: str | None = None,
    ) -> SimilarIdeasResult:
        """Rank ideas in the same org/sandbox/product against free text."""
        corpus = await self.store.list_ideas(scope.org_id, scope.sandbox_id, scope.product_id)
        ranking = rank_candidates(
            tokenize(query),
            ((idea.idea_id, idea.title, idea.status, idea_tokens(idea)) for idea in corpus),
            limit=limit,
            exclude_idea_id=exclude_idea_id,
        )
        return _to_result(query, ranking)

    async def find_similar_to(self, idea: Idea, limit: int | None = 5) -> SimilarIdeasResult:
        query = " ".join(
            part for part in [idea.title, idea.description, idea.details.problem_statement] if part
        )
        corpus = await self.store.list_ideas(idea.org_id, idea.sandbox_id, idea.product_id)
        ranking = rank_candidates(
            idea_tokens(idea),
            ((other.idea_id, other.title, other.status, idea_tokens(other)) for other in corpus),
            limit=limit,
            exclude_idea_id=idea.idea_id,
        )
        return _to_result(query, ranking)

    async def triage_context(self, idea: Idea) -> TriageContext:
        """Capability load in the idea's product, used to weigh triage risks."""
        capabilities = await self.store.list_capabilities(idea.org_id, idea.sandbox_id, idea.product_id)
        active = [
            cap
            for cap in capabilities
            if cap.status == CapabilityStatus.IN_PROGRESS and cap.stage != Stage.PR_CREATED
        ]
        return TriageContext(
            org_name=idea.org_id,
            sandbox_name=idea.sandbox_id,
            product_name=idea.product_id,
            active_capabilities=len(active),
        )
