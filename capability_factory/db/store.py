"""FactoryStore protocol: the record store the orchestrator is written against.

Two implementations exist:
- SqlFactoryStore: SQLAlchemy async ORM (production)
- InMemoryFactoryStore: dict-backed double (tests and local runs)

The store does plain CRUD. Version arithmetic for stage documents and stage
transition rules live in the services, never here.
"""

from typing import Protocol, runtime_checkable

from capability_factory.schemas.factory import (
    Artifact,
    Capability,
    Idea,
    PullRequestRecord,
    StageDocument,
    Ticket,
)


@runtime_checkable
class FactoryStore(Protocol):
    # Ideas
    async def create_idea(self, idea: Idea) -> Idea: ...

    async def get_idea(self, idea_id: str) -> Idea | None: ...

    async def update_idea_status(self, idea_id: str, status: str) -> Idea | None: ...

    async def list_ideas(self, org_id: str, sandbox_id: str, product_id: str) -> list[Idea]: ...

    # Capabilities
    async def create_capability(self, capability: Capability) -> Capability: ...

    async def get_capability(self, capability_id: str) -> Capability | None: ...

    async def get_capability_by_idea(self, idea_id: str) -> Capability | None: ...

    async def list_capabilities(self, org_id: str, sandbox_id: str, product_id: str) -> list[Capability]: ...

    async def save_capability(self, capability: Capability, expected_revision: int) -> Capability:
        """Conditional write.

        Raises ConcurrentUpdateError when the stored revision differs from
        `expected_revision`; returns the stored copy with revision bumped.
        """
        ...

    # Stage documents (append-only)
    async def latest_stage_document(self, capability_id: str, stage_key: str) -> StageDocument | None: ...

    async def append_stage_document(self, doc: StageDocument) -> StageDocument:
        """Raises ConcurrentUpdateError when (capability, stage, version) already exists."""
        ...

    async def list_stage_documents(
        self, capability_id: str, stage_key: str | None = None
    ) -> list[StageDocument]:
        """Newest first."""
        ...

    # Pull requests
    async def get_pull_request(self, capability_id: str, repo: str) -> PullRequestRecord | None: ...

    async def list_pull_requests(self, capability_id: str) -> list[PullRequestRecord]: ...

    async def save_pull_request(self, pr: PullRequestRecord) -> PullRequestRecord:
        """Insert or replace the record for (capability, repo)."""
        ...

    # Artifacts and tickets
    async def add_artifact(self, artifact: Artifact) -> Artifact: ...

    async def list_artifacts(self, capability_id: str, artifact_type: str | None = None) -> list[Artifact]: ...

    async def add_ticket(self, ticket: Ticket) -> Ticket: ...

    async def list_tickets(self, capability_id: str) -> list[Ticket]: ...
