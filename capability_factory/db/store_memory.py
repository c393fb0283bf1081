"""InMemoryFactoryStore: deterministic dict-backed FactoryStore.

Every read and write goes through a deep copy, so callers can never mutate
stored state without going through the store.
"""

from capability_factory.core.exceptions import ConcurrentUpdateError, NotFoundError
from capability_factory.schemas.factory import (
    Artifact,
    Capability,
    Idea,
    PullRequestRecord,
    StageDocument,
    Ticket,
    utc_now,
)


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


class InMemoryFactoryStore:
    def __init__(self):
        self.ideas: dict[str, Idea] = {}
        self.capabilities: dict[str, Capability] = {}
        self.stage_documents: list[StageDocument] = []
        self.pull_requests: dict[tuple[str, str], PullRequestRecord] = {}
        self.artifacts: list[Artifact] = []
        self.tickets: list[Ticket] = []

    # Ideas

    async def create_idea(self, idea: Idea) -> Idea:
        self.ideas[idea.idea_id] = _copy(idea)
        return _copy(idea)

    async def get_idea(self, idea_id: str) -> Idea | None:
        return _copy(self.ideas.get(idea_id))

    async def update_idea_status(self, idea_id: str, status: str) -> Idea | None:
        idea = self.ideas.get(idea_id)
        if idea is None:
            return None
        idea.status = status
        return _copy(idea)

    async def list_ideas(self, org_id: str, sandbox_id: str, product_id: str) -> list[Idea]:
        return [
            _copy(idea)
            for idea in self.ideas.values()
            if (idea.org_id, idea.sandbox_id, idea.product_id) == (org_id, sandbox_id, product_id)
        ]

    # Capabilities

    async def create_capability(self, capability: Capability) -> Capability:
        self.capabilities[capability.capability_id] = _copy(capability)
        return _copy(capability)

    async def get_capability(self, capability_id: str) -> Capability | None:
        return _copy(self.capabilities.get(capability_id))

    async def get_capability_by_idea(self, idea_id: str) -> Capability | None:
        for capability in self.capabilities.values():
            if capability.idea_id == idea_id:
                return _copy(capability)
        return None

    async def list_capabilities(self, org_id: str, sandbox_id: str, product_id: str) -> list[Capability]:
        return [
            _copy(cap)
            for cap in self.capabilities.values()
            if (cap.org_id, cap.sandbox_id, cap.product_id) == (org_id, sandbox_id, product_id)
        ]

    async def save_capability(self, capability: Capability, expected_revision: int) -> Capability:
        current = self.capabilities.get(capability.capability_id)
        if current is None:
            raise NotFoundError(f"Capability not found: {capability.capability_id}")
        if current.revision != expected_revision:
            raise ConcurrentUpdateError(
                f"Capability {capability.capability_id} changed concurrently "
                f"(expected revision {expected_revision}, found {current.revision})"
            )
        stored = capability.model_copy(
            deep=True,
            update={"revision": expected_revision + 1, "updated_at": utc_now()},
        )
        self.capabilities[capability.capability_id] = stored
        return _copy(stored)

    # Stage documents

    async def latest_stage_document(self, capability_id: str, stage_key: str) -> StageDocument | None:
        docs = await self.list_stage_documents(capability_id, stage_key)
        return docs[0] if docs else None

    async def append_stage_document(self, doc: StageDocument) -> StageDocument:
        for existing in self.stage_documents:
            if (existing.capability_id, existing.stage_key, existing.version) == (
                doc.capability_id,
                doc.stage_key,
                doc.version,
            ):
                raise ConcurrentUpdateError(
                    f"{doc.stage_key} document version {doc.version} already exists for {doc.capability_id}"
                )
        self.stage_documents.append(doc)
        return doc

    async def list_stage_documents(
        self, capability_id: str, stage_key: str | None = None
    ) -> list[StageDocument]:
        docs = [
            doc
            for doc in self.stage_documents
            if doc.capability_id == capability_id and (stage_key is None or doc.stage_key == stage_key)
        ]
        return sorted(docs, key=lambda d: (d.version, d.created_at), reverse=True)

    # Pull requests

    async def get_pull_request(self, capability_id: str, repo: str) -> PullRequestRecord | None:
        return _copy(self.pull_requests.get((capability_id, repo)))

    async def list_pull_requests(self, capability_id: str) -> list[PullRequestRecord]:
        return [_copy(pr) for (cap_id, _), pr in self.pull_requests.items() if cap_id == capability_id]

    async def save_pull_request(self, pr: PullRequestRecord) -> PullRequestRecord:
        self.pull_requests[(pr.capability_id, pr.repo)] = _copy(pr)
        return _copy(pr)

    # Artifacts and tickets

    async def add_artifact(self, artifact: Artifact) -> Artifact:
        self.artifacts.append(_copy(artifact))
        return _copy(artifact)

    async def list_artifacts(self, capability_id: str, artifact_type: str | None = None) -> list[Artifact]:
        return [
            _copy(a)
            for a in self.artifacts
            if a.capability_id == capability_id and (artifact_type is None or a.artifact_type == artifact_type)
        ]

    async def add_ticket(self, ticket: Ticket) -> Ticket:
        self.tickets.append(_copy(ticket))
        return _copy(ticket)

    async def list_tickets(self, capability_id: str) -> list[Ticket]:
        return [_copy(t) for t in self.tickets if t.capability_id == capability_id]
