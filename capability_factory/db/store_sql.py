"""SqlFactoryStore: FactoryStore on SQLAlchemy async sessions.

Follows the session-per-operation pattern: every method opens its own
session from the injected factory and commits before returning.
"""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from capability_factory.core.exceptions import ConcurrentUpdateError, NotFoundError
from capability_factory.db.models import (
    FactoryArtifact,
    FactoryCapability,
    FactoryIdea,
    FactoryPullRequest,
    FactoryStageDocument,
    FactoryTicket,
)
from capability_factory.schemas.factory import (
    Artifact,
    Capability,
    HistoryEvent,
    Idea,
    IdeaDetails,
    PullRequestRecord,
    StageDocument,
    Ticket,
    utc_now,
)


def _idea_from_row(row: FactoryIdea) -> Idea:
    return Idea(
        idea_id=row.idea_id,
        org_id=row.org_id,
        sandbox_id=row.sandbox_id,
        product_id=row.product_id,
        title=row.title,
        description=row.description or "",
        details=IdeaDetails.model_validate(row.details or {}),
        status=row.status,
        created_by=row.created_by,
        created_at=row.created_at,
    )


def _capability_from_row(row: FactoryCapability) -> Capability:
    return Capability(
        capability_id=row.capability_id,
        idea_id=row.idea_id,
        org_id=row.org_id,
        sandbox_id=row.sandbox_id,
        product_id=row.product_id,
        title=row.title,
        description=row.description or "",
        stage=row.stage,
        status=row.status,
        history=[HistoryEvent.model_validate(event) for event in row.history or []],
        revision=row.revision,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _history_to_json(capability: Capability) -> list[dict]:
    return [event.model_dump(mode="json") for event in capability.history]


def _doc_from_row(row: FactoryStageDocument) -> StageDocument:
    return StageDocument(
        doc_id=row.doc_id,
        capability_id=row.capability_id,
        stage_key=row.stage_key,
        version=row.version,
        content=row.content or "",
        diagram_source=row.diagram_source or "",
        attachments=tuple(row.attachments or ()),
        status=row.status,
        created_by=row.created_by,
        created_at=row.created_at,
    )


def _pr_from_row(row: FactoryPullRequest) -> PullRequestRecord:
    return PullRequestRecord(
        pr_id=row.pr_id,
        capability_id=row.capability_id,
        repo=row.repo,
        branch=row.branch,
        title=row.title,
        description=row.description or "",
        files=list(row.files or []),
        external_url=row.external_url,
        pr_number=row.pr_number,
        status=row.status,
        created_at=row.created_at,
        updated_at=row.updated_at,
        updated_by=row.updated_by,
    )


def _artifact_from_row(row: FactoryArtifact) -> Artifact:
    return Artifact(
        artifact_id=row.artifact_id,
        capability_id=row.capability_id,
        artifact_type=row.artifact_type,
        version=row.version,
        content=dict(row.content or {}),
        created_at=row.created_at,
    )


def _ticket_from_row(row: FactoryTicket) -> Ticket:
    return Ticket(
        ticket_id=row.ticket_id,
        capability_id=row.capability_id,
        repo=row.repo,
        title=row.title,
        body=row.body or "",
        labels=list(row.labels or []),
        status=row.status,
        external_url=row.external_url,
        issue_number=row.issue_number,
        created_at=row.created_at,
    )


class SqlFactoryStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # Ideas

    async def create_idea(self, idea: Idea) -> Idea:
        async with self.session_factory() as session:
            session.add(
                FactoryIdea(
                    idea_id=idea.idea_id,
                    org_id=idea.org_id,
                    sandbox_id=idea.sandbox_id,
                    product_id=idea.product_id,
                    title=idea.title,
                    description=idea.description,
                    details=idea.details.model_dump(mode="json"),
                    status=idea.status,
                    created_by=idea.created_by,
                    created_at=idea.created_at,
                )
            )
            await session.commit()
        return idea

    async def get_idea(self, idea_id: str) -> Idea | None:
        async with self.session_factory() as session:
            row = await session.get(FactoryIdea, idea_id)
            return _idea_from_row(row) if row else None

    async def update_idea_status(self, idea_id: str, status: str) -> Idea | None:
        async with self.session_factory() as session:
            row = await session.get(FactoryIdea, idea_id)
            if row is None:
                return None
            row.status = status
            await session.commit()
            return _idea_from_row(row)

    async def list_ideas(self, org_id: str, sandbox_id: str, product_id: str) -> list[Idea]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactoryIdea)
                .where(
                    FactoryIdea.org_id == org_id,
                    FactoryIdea.sandbox_id == sandbox_id,
                    FactoryIdea.product_id == product_id,
                )
                .order_by(FactoryIdea.created_at)
            )
            return [_idea_from_row(row) for row in result.scalars().all()]

    # Capabilities

    async def create_capability(self, capability: Capability) -> Capability:
        async with self.session_factory() as session:
            session.add(
                FactoryCapability(
                    capability_id=capability.capability_id,
                    idea_id=capability.idea_id,
                    org_id=capability.org_id,
                    sandbox_id=capability.sandbox_id,
                    product_id=capability.product_id,
                    title=capability.title,
                    description=capability.description,
                    stage=str(capability.stage),
                    status=str(capability.status),
                    history=_history_to_json(capability),
                    revision=capability.revision,
                    created_at=capability.created_at,
                    updated_at=capability.updated_at,
                )
            )
            await session.commit()
        return capability

    async def get_capability(self, capability_id: str) -> Capability | None:
        async with self.session_factory() as session:
            row = await session.get(FactoryCapability, capability_id)
            return _capability_from_row(row) if row else None

    async def get_capability_by_idea(self, idea_id: str) -> Capability | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactoryCapability)
                .where(FactoryCapability.idea_id == idea_id)
                .order_by(FactoryCapability.created_at)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _capability_from_row(row) if row else None

    async def list_capabilities(self, org_id: str, sandbox_id: str, product_id: str) -> list[Capability]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactoryCapability).where(
                    FactoryCapability.org_id == org_id,
                    FactoryCapability.sandbox_id == sandbox_id,
                    FactoryCapability.product_id == product_id,
                )
            )
            return [_capability_from_row(row) for row in result.scalars().all()]

    async def save_capability(self, capability: Capability, expected_revision: int) -> Capability:
        now = utc_now()
        async with self.session_factory() as session:
            result = await session.execute(
                update(FactoryCapability)
                .where(
                    FactoryCapability.capability_id == capability.capability_id,
                    FactoryCapability.revision == expected_revision,
                )
                .values(
                    title=capability.title,
                    description=capability.description,
                    stage=str(capability.stage),
                    status=str(capability.status),
                    history=_history_to_json(capability),
                    revision=expected_revision + 1,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                await session.rollback()
                exists = await session.get(FactoryCapability, capability.capability_id)
                if exists is None:
                    raise NotFoundError(f"Capability not found: {capability.capability_id}")
                raise ConcurrentUpdateError(
                    f"Capability {capability.capability_id} changed concurrently "
                    f"(expected revision {expected_revision})"
                )
            await session.commit()
        return capability.model_copy(update={"revision": expected_revision + 1, "updated_at": now})

    # Stage documents

    async def latest_stage_document(self, capability_id: str, stage_key: str) -> StageDocument | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactoryStageDocument)
                .where(
                    FactoryStageDocument.capability_id == capability_id,
                    FactoryStageDocument.stage_key == stage_key,
                )
                .order_by(FactoryStageDocument.version.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _doc_from_row(row) if row else None

    async def append_stage_document(self, doc: StageDocument) -> StageDocument:
        async with self.session_factory() as session:
            session.add(
                FactoryStageDocument(
                    doc_id=doc.doc_id,
                    capability_id=doc.capability_id,
                    stage_key=doc.stage_key,
                    version=doc.version,
                    content=doc.content,
                    diagram_source=doc.diagram_source,
                    attachments=list(doc.attachments),
                    status=doc.status,
                    created_by=doc.created_by,
                    created_at=doc.created_at,
                )
            )
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConcurrentUpdateError(
                    f"{doc.stage_key} document version {doc.version} already exists for {doc.capability_id}"
                ) from exc
        return doc

    async def list_stage_documents(
        self, capability_id: str, stage_key: str | None = None
    ) -> list[StageDocument]:
        query = select(FactoryStageDocument).where(FactoryStageDocument.capability_id == capability_id)
        if stage_key is not None:
            query = query.where(FactoryStageDocument.stage_key == stage_key)
        query = query.order_by(FactoryStageDocument.version.desc(), FactoryStageDocument.created_at.desc())
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [_doc_from_row(row) for row in result.scalars().all()]

    # Pull requests

    async def get_pull_request(self, capability_id: str, repo: str) -> PullRequestRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactoryPullRequest).where(
                    FactoryPullRequest.capability_id == capability_id,
                    FactoryPullRequest.repo == repo,
                )
            )
            row = result.scalar_one_or_none()
            return _pr_from_row(row) if row else None

    async def list_pull_requests(self, capability_id: str) -> list[PullRequestRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactoryPullRequest)
                .where(FactoryPullRequest.capability_id == capability_id)
                .order_by(FactoryPullRequest.created_at)
            )
            return [_pr_from_row(row) for row in result.scalars().all()]

    async def save_pull_request(self, pr: PullRequestRecord) -> PullRequestRecord:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactoryPullRequest).where(
                    FactoryPullRequest.capability_id == pr.capability_id,
                    FactoryPullRequest.repo == pr.repo,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = FactoryPullRequest(
                    pr_id=pr.pr_id,
                    capability_id=pr.capability_id,
                    repo=pr.repo,
                    created_at=pr.created_at,
                )
                session.add(row)
            row.branch = pr.branch
            row.title = pr.title
            row.description = pr.description
            row.files = list(pr.files)
            row.external_url = pr.external_url
            row.pr_number = pr.pr_number
            row.status = pr.status
            row.updated_by = pr.updated_by
            row.updated_at = pr.updated_at
            await session.commit()
            return _pr_from_row(row)

    # Artifacts and tickets

    async def add_artifact(self, artifact: Artifact) -> Artifact:
        async with self.session_factory() as session:
            session.add(
                FactoryArtifact(
                    artifact_id=artifact.artifact_id,
                    capability_id=artifact.capability_id,
                    artifact_type=artifact.artifact_type,
                    version=artifact.version,
                    content=artifact.content,
                    created_at=artifact.created_at,
                )
            )
            await session.commit()
        return artifact

    async def list_artifacts(self, capability_id: str, artifact_type: str | None = None) -> list[Artifact]:
        query = select(FactoryArtifact).where(FactoryArtifact.capability_id == capability_id)
        if artifact_type is not None:
            query = query.where(FactoryArtifact.artifact_type == artifact_type)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(FactoryArtifact.created_at))
            return [_artifact_from_row(row) for row in result.scalars().all()]

    async def add_ticket(self, ticket: Ticket) -> Ticket:
        async with self.session_factory() as session:
            session.add(
                FactoryTicket(
                    ticket_id=ticket.ticket_id,
                    capability_id=ticket.capability_id,
                    repo=ticket.repo,
                    title=ticket.title,
                    body=ticket.body,
                    labels=list(ticket.labels),
                    status=ticket.status,
                    external_url=ticket.external_url,
                    issue_number=ticket.issue_number,
                    created_at=ticket.created_at,
                )
            )
            await session.commit()
        return ticket

    async def list_tickets(self, capability_id: str) -> list[Ticket]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(FactoryTicket)
                .where(FactoryTicket.capability_id == capability_id)
                .order_by(FactoryTicket.created_at)
            )
            return [_ticket_from_row(row) for row in result.scalars().all()]
