"""StageDocumentService: version arithmetic on top of the append-only document store."""

import structlog

from capability_factory.core.exceptions import ConcurrentUpdateError
from capability_factory.db.store import FactoryStore
from capability_factory.schemas.factory import Artifact, StageDocument

logger = structlog.get_logger(__name__)

MAX_APPEND_ATTEMPTS = 2


class StageDocumentService:
    def __init__(self, store: FactoryStore):
        self.store = store

    async def latest(self, capability_id: str, stage_key: str) -> StageDocument | None:
        return await self.store.latest_stage_document(capability_id, stage_key)

    async def versions(self, capability_id: str, stage_key: str | None = None) -> list[StageDocument]:
        return await self.store.list_stage_documents(capability_id, stage_key)

    async def save(
        self,
        capability_id: str,
        stage_key: str,
        content: str,
        actor: str,
        diagram_source: str = "",
        attachments: list[str] | tuple[str, ...] = (),
        status: str = "draft",
    ) -> StageDocument:
        """Append the next version (latest + 1, or 1) and record a `<stage>-doc` artifact."""
        logger.info("stage_doc.write.start", capability_id=capability_id, stage_key=stage_key, status=status)

        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            latest = await self.store.latest_stage_document(capability_id, stage_key)
            doc = StageDocument(
                capability_id=capability_id,
                stage_key=stage_key,
                version=latest.version + 1 if latest else 1,
                content=content or "",
                diagram_source=diagram_source or "",
                attachments=tuple(attachments or ()),
                status=status,
                created_by=actor,
            )
            try:
                saved = await self.store.append_stage_document(doc)
                break
            except ConcurrentUpdateError:
                if attempt == MAX_APPEND_ATTEMPTS:
                    raise
                logger.warning("stage_doc.write.conflict", capability_id=capability_id, stage_key=stage_key)

        await self.store.add_artifact(
            Artifact(
                capability_id=capability_id,
                artifact_type=f"{stage_key}-doc",
                version=saved.version,
                content={"doc_id": saved.doc_id, "status": saved.status, "created_by": actor},
            )
        )
        logger.info(
            "stage_doc.write.success",
            capability_id=capability_id,
            stage_key=stage_key,
            version=saved.version,
            status=saved.status,
        )
        return saved

    async def snapshot_approved(self, latest: StageDocument, actor: str) -> StageDocument:
        """Append `latest.version + 1` with status approved and the same content.

        Fails with ConcurrentUpdateError if someone appended in between, so an
        approval never silently snapshots content it did not review.
        """
        approved = StageDocument(
            capability_id=latest.capability_id,
            stage_key=latest.stage_key,
            version=latest.version + 1,
            content=latest.content,
            diagram_source=latest.diagram_source,
            attachments=latest.attachments,
            status="approved",
            created_by=actor,
        )
        saved = await self.store.append_stage_document(approved)
        logger.info(
            "stage_doc.approved",
            capability_id=latest.capability_id,
            stage_key=latest.stage_key,
            version=saved.version,
        )
        return saved
