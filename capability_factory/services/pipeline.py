"""PipelineOrchestrator: drives a capability from idea to pull request.

Stage-at-a-time operations (triage, write, revise, sync, approve, build) each
enforce the stage guard for their stage. run_idea_to_pr chains them and stops
at the first failure, reporting the failing step with that step's own error.
Re-running it resumes from the stage the capability reached.

Every public method binds a correlation id (caller-supplied, request-scoped or
generated) and logs `<action>.start` and `<action>.success` / `<action>.failed`.
"""

import re
import uuid
from contextlib import asynccontextmanager
from typing import Any

import structlog

from capability_factory.core.config import FactoryConfig
from capability_factory.core.exceptions import (
    OPEN_FACTORY_CONFIG,
    RECONNECT_GITHUB,
    RETRY_RUN_PIPELINE,
    RETRY_SUBMIT_IDEA,
    FactoryError,
    NotFoundError,
    PipelineStepError,
    RemotePullRequestRequiredError,
    UnsupportedStageError,
)
from capability_factory.db.store import FactoryStore
from capability_factory.domain.review import review_document, summarize_rendition
from capability_factory.domain.stages import (
    STAGE_ARTIFACT_TYPES,
    STAGE_ORDER,
    CapabilityStatus,
    Stage,
    approval_rule_for,
    check_stage,
    rule_for,
)
from capability_factory.domain.triage import build_triage_analysis
from capability_factory.middleware.correlation import get_correlation_id
from capability_factory.schemas.factory import (
    Artifact,
    Capability,
    CapabilityDetail,
    HistoryEvent,
    Idea,
    IdeaCreated,
    IdeaDetails,
    PipelineRunResult,
    PullRequestRecord,
    Scope,
    SimilarIdeasResult,
    StageApprovalResult,
    StageDocument,
    StageDocumentDetail,
    StageDocumentResult,
    StageRendition,
    StageReviewResult,
    StageSyncResult,
    SyncFile,
    SyncResult,
    Ticket,
    TriageAnalysis,
    TriagePrResult,
    TriageResult,
    WebhookResult,
    BuildResult,
    utc_now,
)
from capability_factory.services.approval_gate import ApprovalGate
from capability_factory.services.background import BackgroundTaskQueue
from capability_factory.services.drafts import (
    DraftProducer,
    StageDraft,
    StageDraftRequest,
    TemplateDraftProducer,
    generated_component_paths,
    idea_to_markdown,
)
from capability_factory.services.idea_service import IdeaService
from capability_factory.services.source_sync import SourceSyncEngine, capability_branch, docs_base
from capability_factory.services.stage_documents import StageDocumentService
from capability_factory.services.stage_graph import StageGraph

logger = structlog.get_logger(__name__)

CAPABILITY_REF = re.compile(r"cap-([0-9a-f]{12})", re.IGNORECASE)

# Stage at which each approvable stage document is pending review
PENDING_APPROVAL: dict[Stage, str] = {
    Stage.TRIAGE: "triage",
    Stage.SPEC: "spec",
    Stage.ARCHITECTURE: "architecture",
    Stage.COMPLIANCE: "compliance",
}

# Architecture drafts are regenerated speculatively only before anyone reviews them
SPECULATIVE_STAGES = frozenset({Stage.TRIAGE, Stage.SPEC, Stage.SPEC_APPROVED})

IDEA_TO_PR_STEPS = (
    "triage",
    "write-spec",
    "approve-spec",
    "write-architecture",
    "approve-architecture",
    "write-compliance",
    "approve-compliance",
    "build-to-pr",
)

# Stages from which each step can run; a capability past them has completed it
STEP_STAGES: dict[str, tuple[Stage, ...]] = {
    "triage": (Stage.TRIAGE,),
    "write-spec": (Stage.TRIAGE,),
    "approve-spec": (Stage.SPEC,),
    "write-architecture": (Stage.SPEC_APPROVED,),
    "approve-architecture": (Stage.ARCHITECTURE,),
    "write-compliance": (Stage.ARCHITECTURE_APPROVED,),
    "approve-compliance": (Stage.COMPLIANCE,),
    "build-to-pr": (Stage.COMPLIANCE_APPROVED, Stage.BUILD),
}


def step_passed(step: str, stage: Stage) -> bool:
    last = max(STAGE_ORDER.index(s) for s in STEP_STAGES[step])
    return STAGE_ORDER.index(Stage(stage)) > last


class PipelineOrchestrator:
    def __init__(
        self,
        store: FactoryStore,
        config: FactoryConfig,
        sync_engine: SourceSyncEngine,
        draft_producer: DraftProducer | None = None,
        background: BackgroundTaskQueue | None = None,
    ):
        self.store = store
        self.config = config
        self.sync_engine = sync_engine
        self.drafts = draft_producer or TemplateDraftProducer()
        self.templates = TemplateDraftProducer()
        self.background = background
        self.ideas = IdeaService(store)
        self.stages = StageGraph(store)
        self.documents = StageDocumentService(store)
        self.gate = ApprovalGate(sync_engine, self.documents)

    # ------------------------------------------------------------------
    # Correlation + logging
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _operation(self, action: str, correlation_id: str | None = None, **fields: Any):
        cid = correlation_id or get_correlation_id() or str(uuid.uuid4())
        with structlog.contextvars.bound_contextvars(correlation_id=cid):
            logger.info(f"{action}.start", **fields)
            try:
                yield cid
            except FactoryError as exc:
                logger.warning(
                    f"{action}.failed",
                    reason=exc.reason[:240],
                    error_type=type(exc).__name__,
                    **fields,
                )
                raise
            except Exception as exc:
                logger.error(f"{action}.failed", error=str(exc)[:240], error_type=type(exc).__name__, **fields)
                raise
            logger.info(f"{action}.success", **fields)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _branch_for(self, capability: Capability) -> str:
        return capability_branch(self.config.branch_prefix, capability.product_id, capability.capability_id)

    @staticmethod
    def _docs_base(capability: Capability) -> str:
        return docs_base(capability.org_id, capability.sandbox_id, capability.product_id, capability.idea_id)

    @staticmethod
    def _pr_title(capability: Capability) -> str:
        return f"[{capability.product_id}/{capability.capability_id}] {capability.title}"

    async def _load_context(self, capability: Capability) -> tuple[Idea, TriageAnalysis]:
        idea = await self.store.get_idea(capability.idea_id)
        if idea is None:
            raise NotFoundError(f"Idea not found for capability {capability.capability_id}")
        context = await self.ideas.triage_context(idea)
        return idea, build_triage_analysis(idea, context)

    async def _draft(self, request: StageDraftRequest) -> StageDraft:
        draft = await self.drafts.draft(request)
        if draft is None or not draft.content.strip():
            draft = self.templates.render(request)
        if draft is None:
            raise UnsupportedStageError(request.stage_key, "draft")
        return draft

    async def _save_doc(
        self,
        capability: Capability,
        stage_key: str,
        content: str,
        actor: str,
        diagram_source: str = "",
        attachments: list[str] | tuple[str, ...] = (),
    ) -> StageDocument:
        doc = await self.documents.save(
            capability.capability_id,
            stage_key,
            content,
            actor,
            diagram_source=diagram_source,
            attachments=attachments,
        )
        if stage_key in ("triage", "spec"):
            self._schedule_speculative_architecture(capability.capability_id, actor, f"context-evolved:{stage_key}")
        return doc

    async def _upsert_pr(
        self,
        capability: Capability,
        sync: SyncResult,
        description: str,
        actor: str,
    ) -> PullRequestRecord:
        """Update the single record for (capability, repo) in place, or create it."""
        pr = await self.store.get_pull_request(capability.capability_id, sync.repo)
        if pr is None:
            pr = PullRequestRecord(
                capability_id=capability.capability_id,
                repo=sync.repo,
                branch=sync.branch,
                title=self._pr_title(capability),
            )
        pr.branch = sync.branch
        pr.title = self._pr_title(capability)
        pr.description = description
        pr.merge_files(sync.files)
        if sync.url:
            pr.external_url = sync.url
            pr.pr_number = sync.pr_number
        # A record that points at a real pull request stays open after a later draft sync
        pr.status = "open" if sync.mode == "github" or pr.external_url else "draft"
        pr.updated_at = utc_now()
        pr.updated_by = actor
        return await self.store.save_pull_request(pr)

    # ------------------------------------------------------------------
    # Speculative regeneration (background, best effort)
    # ------------------------------------------------------------------

    def _schedule_speculative_architecture(self, capability_id: str, actor: str, reason: str) -> None:
        if self.background is None or not self.config.speculative_regeneration:
            return
        self.background.submit(
            f"speculative-architecture:{capability_id}",
            lambda: self._regenerate_architecture(capability_id, f"{actor}:auto-evolve", reason),
        )

    async def _regenerate_architecture(self, capability_id: str, actor: str, reason: str) -> StageDocument | None:
        capability = await self.stages.load(capability_id)
        if capability.stage not in SPECULATIVE_STAGES:
            logger.info("speculative.architecture.skipped", capability_id=capability_id, stage=str(capability.stage))
            return None
        idea, analysis = await self._load_context(capability)
        spec = await self.documents.latest(capability_id, "spec")
        draft = await self._draft(
            StageDraftRequest(
                stage_key="architecture",
                capability=capability,
                idea=idea,
                triage=analysis,
                existing_content={"spec": spec.content} if spec else {},
            )
        )
        doc = await self.documents.save(
            capability_id, "architecture", draft.content, actor, diagram_source=draft.diagram_source
        )
        logger.info(
            "speculative.architecture.saved",
            capability_id=capability_id,
            version=doc.version,
            reason=reason,
        )
        return doc

    # ------------------------------------------------------------------
    # Ideas
    # ------------------------------------------------------------------

    async def create_idea(
        self,
        scope: Scope,
        title: str,
        description: str = "",
        details: IdeaDetails | dict | None = None,
        actor: str = "unknown",
        auto_pipeline: bool = False,
        require_remote_pr: bool | None = None,
        correlation_id: str | None = None,
    ) -> IdeaCreated:
        """Create an idea and attach a duplicate warning when a similar idea exists.

        With auto_pipeline the triage PR is opened right away; a failure there
        raises PipelineStepError(step="triage-pr").
        """
        async with self._operation("idea.create", correlation_id, product_id=scope.product_id) as cid:
            idea = await self.ideas.create(scope, title, description, details, actor)
            similar = await self.ideas.find_similar_to(idea)
            if similar.duplicate_warning:
                logger.info("idea.duplicate_warning", idea_id=idea.idea_id, warning=similar.duplicate_warning)

            triage_pr = None
            if auto_pipeline:
                try:
                    triage_pr = await self._create_triage_pr(
                        idea.idea_id, None, actor, self._require_remote(require_remote_pr)
                    )
                except FactoryError as exc:
                    raise PipelineStepError(
                        "triage-pr",
                        exc,
                        actions=[RETRY_SUBMIT_IDEA, OPEN_FACTORY_CONFIG, RECONNECT_GITHUB],
                    ) from exc
                triage_pr.correlation_id = cid
                idea = triage_pr.idea

            return IdeaCreated(
                idea=idea,
                duplicate_warning=similar.duplicate_warning,
                similar_ideas=similar.ideas,
                triage_pr=triage_pr,
                correlation_id=cid,
            )

    async def find_similar_ideas(
        self,
        scope: Scope,
        query: str,
        limit: int | None = 5,
        exclude_idea_id: str | None = None,
        correlation_id: str | None = None,
    ) -> SimilarIdeasResult:
        async with self._operation("idea.similar", correlation_id, product_id=scope.product_id):
            return await self.ideas.find_similar(scope, query, limit, exclude_idea_id)

    # ------------------------------------------------------------------
    # Triage
    # ------------------------------------------------------------------

    async def _triage(self, idea_id: str, capability_title: str | None, actor: str) -> TriageResult:
        idea = await self.ideas.get(idea_id)
        context = await self.ideas.triage_context(idea)
        analysis = build_triage_analysis(idea, context)
        capability = await self.store.create_capability(
            Capability(
                idea_id=idea.idea_id,
                org_id=idea.org_id,
                sandbox_id=idea.sandbox_id,
                product_id=idea.product_id,
                title=capability_title or analysis.proposed_capability_title or idea.title,
                description=idea.description,
                stage=Stage.TRIAGE,
                status=CapabilityStatus.IN_PROGRESS,
                history=[
                    HistoryEvent(
                        type="triaged",
                        actor=actor,
                        detail={"readiness_score": analysis.readiness_score},
                    )
                ],
            )
        )
        idea = await self.store.update_idea_status(idea.idea_id, "triaged") or idea
        self._schedule_speculative_architecture(capability.capability_id, actor, "triaged")
        return TriageResult(idea=idea, capability=capability, triage=analysis)

    async def triage(
        self,
        idea_id: str,
        capability_title: str | None = None,
        actor: str = "triage-agent",
        correlation_id: str | None = None,
    ) -> TriageResult:
        async with self._operation("triage", correlation_id, idea_id=idea_id) as cid:
            result = await self._triage(idea_id, capability_title, actor)
            result.correlation_id = cid
            logger.info(
                "triage.capability_created",
                capability_id=result.capability.capability_id,
                readiness_score=result.triage.readiness_score,
            )
            return result

    async def _create_triage_pr(
        self,
        idea_id: str,
        capability_title: str | None,
        actor: str,
        require_remote_pr: bool,
    ) -> TriagePrResult:
        capability = await self.store.get_capability_by_idea(idea_id)
        if capability is None:
            triaged = await self._triage(idea_id, capability_title, actor)
            idea, capability, analysis = triaged.idea, triaged.capability, triaged.triage
        else:
            idea, analysis = await self._load_context(capability)
        check_stage(capability, Stage.TRIAGE)

        raw_idea = idea_to_markdown(idea)
        enriched = await self._draft(StageDraftRequest("idea", capability, idea, analysis))
        triage_draft = await self._draft(StageDraftRequest("triage", capability, idea, analysis))
        idea_doc = await self._save_doc(capability, "idea", enriched.content, actor, attachments=idea.details.attachments)
        triage_doc = await self._save_doc(capability, "triage", triage_draft.content, actor)

        base = self._docs_base(capability)
        files = [SyncFile(path=f"{base}/idea.md", content=raw_idea, message=f"triage(raw): capture original idea {idea_id}")]
        if enriched.content != raw_idea:
            files.append(
                SyncFile(path=f"{base}/idea.md", content=enriched.content, message=f"triage(ai): enrich idea {idea_id}")
            )
        files.append(
            SyncFile(
                path=f"{base}/triage.md",
                content=triage_draft.content,
                message=f"triage(ai): add triage report for {capability.capability_id}",
            )
        )

        sync = await self.sync_engine.sync_docs_to_pull_request(
            self.config.primary_repo,
            self._branch_for(capability),
            self._pr_title(capability),
            "Auto-generated triage PR (raw idea + triage report)",
            files,
            org_id=capability.org_id,
        )
        pr = await self._upsert_pr(capability, sync, "Auto-generated triage PR (raw idea + triage report)", actor)
        if require_remote_pr and not sync.is_remote:
            raise RemotePullRequestRequiredError("triage", sync=sync.model_dump(mode="json"))

        capability = await self.stages.advance(
            capability.capability_id,
            Stage.TRIAGE,
            None,
            "triage-pr-synced",
            actor,
            detail={"pr_id": pr.pr_id, "mode": sync.mode, "url": sync.url},
        )
        return TriagePrResult(
            idea=idea,
            capability=capability,
            triage=analysis,
            idea_doc=idea_doc,
            triage_doc=triage_doc,
            pr=pr,
            sync=sync,
        )

    async def create_triage_pr(
        self,
        idea_id: str,
        capability_title: str | None = None,
        actor: str = "triage-agent",
        require_remote_pr: bool | None = None,
        correlation_id: str | None = None,
    ) -> TriagePrResult:
        """Reuse or create the idea's capability, write idea/triage documents and open the capability PR."""
        async with self._operation("triage_pr.create", correlation_id, idea_id=idea_id) as cid:
            result = await self._create_triage_pr(
                idea_id, capability_title, actor, self._require_remote(require_remote_pr)
            )
            result.correlation_id = cid
            return result

    # ------------------------------------------------------------------
    # Stage documents
    # ------------------------------------------------------------------

    async def _write_stage_document(
        self,
        capability_id: str,
        stage_key: str,
        actor: str,
        intent: str = "",
    ) -> StageDocumentResult:
        rule = rule_for(stage_key)
        capability = await self.stages.guard(capability_id, rule.write_requires)
        idea, analysis = await self._load_context(capability)

        existing: dict[str, str] = {}
        current = await self.documents.latest(capability_id, stage_key)
        if current is not None:
            existing[stage_key] = current.content
        if stage_key == "architecture":
            spec = await self.documents.latest(capability_id, "spec")
            if spec is not None:
                existing["spec"] = spec.content

        draft = await self._draft(StageDraftRequest(stage_key, capability, idea, analysis, intent, existing))
        doc = await self._save_doc(capability, stage_key, draft.content, actor, diagram_source=draft.diagram_source)

        artifact = None
        artifact_type = STAGE_ARTIFACT_TYPES.get(stage_key)
        if artifact_type is not None:
            previous = await self.store.list_artifacts(capability_id, artifact_type)
            content: dict[str, Any] = {"doc_id": doc.doc_id, "doc_version": doc.version, "source": draft.source}
            if stage_key == "build":
                content["generated_files"] = generated_component_paths(capability_id)
                content["tests"] = ["unit", "integration"]
            artifact = await self.store.add_artifact(
                Artifact(
                    capability_id=capability_id,
                    artifact_type=artifact_type,
                    version=len(previous) + 1,
                    content=content,
                )
            )

        capability = await self.stages.advance(
            capability_id,
            rule.write_requires,
            rule.write_moves_to,
            f"{stage_key}-written",
            actor,
            detail={"doc_id": doc.doc_id, "version": doc.version, "source": draft.source},
        )
        return StageDocumentResult(
            capability=capability,
            stage_key=stage_key,
            doc=doc,
            source=draft.source,
            artifact=artifact,
        )

    async def write_stage_document(
        self,
        capability_id: str,
        stage_key: str,
        actor: str = "unknown",
        intent: str = "",
        correlation_id: str | None = None,
    ) -> StageDocumentResult:
        async with self._operation(
            "stage_doc.generate", correlation_id, capability_id=capability_id, stage_key=stage_key
        ) as cid:
            result = await self._write_stage_document(capability_id, stage_key, actor, intent)
            result.correlation_id = cid
            return result

    async def revise_stage_document(
        self,
        capability_id: str,
        stage_key: str,
        content: str,
        actor: str = "unknown",
        diagram_source: str = "",
        attachments: list[str] | None = None,
        correlation_id: str | None = None,
    ) -> StageDocumentResult:
        """Append a human-edited draft version while the capability sits at that stage."""
        async with self._operation(
            "stage_doc.revise", correlation_id, capability_id=capability_id, stage_key=stage_key
        ) as cid:
            rule = rule_for(stage_key)
            required = rule.write_requires if rule.write_moves_to is None else rule.write_moves_to
            capability = await self.stages.guard(capability_id, required)
            doc = await self._save_doc(
                capability,
                stage_key,
                content,
                actor,
                diagram_source=diagram_source,
                attachments=attachments or [],
            )
            capability = await self.stages.advance(
                capability_id,
                required,
                None,
                f"{stage_key}-revised",
                actor,
                detail={"doc_id": doc.doc_id, "version": doc.version},
            )
            return StageDocumentResult(
                capability=capability,
                stage_key=stage_key,
                doc=doc,
                source="human",
                correlation_id=cid,
            )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    async def _sync_stage_to_pr(self, capability_id: str, stage_key: str, actor: str) -> StageSyncResult:
        rule_for(stage_key)
        capability = await self.stages.load(capability_id)
        doc = await self.documents.latest(capability_id, stage_key)
        if doc is None:
            raise NotFoundError(f"No {stage_key} document found to sync")

        base = self._docs_base(capability)
        files = [SyncFile(path=f"{base}/{stage_key}.md", content=doc.content)]
        if doc.diagram_source.strip():
            files.append(SyncFile(path=f"{base}/{stage_key}.mmd", content=doc.diagram_source))
        if stage_key == "spec":
            triage_doc = await self.documents.latest(capability_id, "triage")
            if triage_doc is not None and triage_doc.content:
                files.append(SyncFile(path=f"{base}/triage.md", content=triage_doc.content))

        description = f"Stage sync: {stage_key}"
        sync = await self.sync_engine.sync_docs_to_pull_request(
            self.config.primary_repo,
            self._branch_for(capability),
            self._pr_title(capability),
            description,
            files,
            org_id=capability.org_id,
        )
        pr = await self._upsert_pr(capability, sync, description, actor)
        logger.info(
            "stage.sync.completed",
            capability_id=capability_id,
            stage_key=stage_key,
            mode=sync.mode,
            pr_id=pr.pr_id,
            url=sync.url,
        )
        return StageSyncResult(capability=capability, stage_key=stage_key, doc=doc, pr=pr, sync=sync)

    async def sync_stage_to_pr(
        self,
        capability_id: str,
        stage_key: str,
        actor: str = "unknown",
        correlation_id: str | None = None,
    ) -> StageSyncResult:
        async with self._operation(
            "stage.sync", correlation_id, capability_id=capability_id, stage_key=stage_key
        ) as cid:
            result = await self._sync_stage_to_pr(capability_id, stage_key, actor)
            result.correlation_id = cid
            return result

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    async def _transition_after_approval(
        self, capability_id: str, stage_key: str, actor: str, approval_mode: str
    ) -> Capability:
        rule = approval_rule_for(stage_key)
        if stage_key == "triage":
            await self.stages.advance(
                capability_id,
                Stage.TRIAGE,
                None,
                "triage-approved",
                actor,
                detail={"approval_mode": approval_mode},
            )
            written = await self._write_stage_document(capability_id, "spec", actor)
            return written.capability
        return await self.stages.advance(
            capability_id,
            rule.approve_requires,
            rule.approve_moves_to,
            f"{stage_key}-approved",
            actor,
            detail={"approval_mode": approval_mode},
        )

    async def _approve_stage(
        self,
        capability_id: str,
        stage_key: str,
        actor: str,
        note: str,
        require_remote_pr: bool,
    ) -> StageApprovalResult:
        rule = approval_rule_for(stage_key)
        capability = await self.stages.guard(capability_id, rule.approve_requires)
        latest = await self.documents.latest(capability_id, stage_key)
        if latest is None:
            raise NotFoundError(f"No {stage_key} document found")

        synced = await self._sync_stage_to_pr(capability_id, stage_key, actor)
        approval, approved_doc = await self.gate.approve(
            capability,
            stage_key,
            latest,
            synced.pr,
            synced.sync,
            actor,
            note=note,
            require_remote_pr=require_remote_pr,
        )
        capability = await self._transition_after_approval(capability_id, stage_key, actor, approval.mode)
        logger.info(
            "approval.applied",
            capability_id=capability_id,
            stage_key=stage_key,
            mode=approval.mode,
            stage=str(capability.stage),
        )
        return StageApprovalResult(
            capability=capability,
            stage_key=stage_key,
            approval=approval,
            approved_doc=approved_doc,
            pr=synced.pr,
            sync=synced.sync,
        )

    async def approve_stage(
        self,
        capability_id: str,
        stage_key: str,
        actor: str = "unknown",
        note: str = "",
        require_remote_pr: bool | None = None,
        correlation_id: str | None = None,
    ) -> StageApprovalResult:
        async with self._operation(
            "stage.approve", correlation_id, capability_id=capability_id, stage_key=stage_key
        ) as cid:
            result = await self._approve_stage(
                capability_id, stage_key, actor, note, self._require_remote(require_remote_pr)
            )
            result.correlation_id = cid
            return result

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def _build_document(self, capability_id: str, actor: str) -> tuple[Capability, StageDocument]:
        """Write the build document, or reuse it when an earlier build stopped after the write."""
        capability = await self.stages.load(capability_id)
        if capability.stage == Stage.BUILD:
            doc = await self.documents.latest(capability_id, "build")
            if doc is not None:
                logger.info("build.resume", capability_id=capability_id, version=doc.version)
                return capability, doc
        written = await self._write_stage_document(capability_id, "build", actor)
        return written.capability, written.doc

    async def _build_to_pr(self, capability_id: str, actor: str, require_remote_pr: bool) -> BuildResult:
        capability, doc = await self._build_document(capability_id, actor)

        base = self._docs_base(capability)
        stub = f'// generated by Capability Factory\nexport const capability = "{capability.title}";\n'
        files = [SyncFile(path=f"{base}/build.md", content=doc.content)]
        files += [
            SyncFile(path=path, content=stub, message=f"add {path}")
            for path in generated_component_paths(capability_id)
        ]

        code_repos = self.config.target_code_repos()
        description = "Auto-generated by Capability Factory build pipeline"
        prs: list[PullRequestRecord] = []
        syncs: list[SyncResult] = []
        for repo in code_repos:
            sync = await self.sync_engine.sync_docs_to_pull_request(
                repo,
                self._branch_for(capability),
                self._pr_title(capability),
                description,
                files,
                org_id=capability.org_id,
            )
            prs.append(await self._upsert_pr(capability, sync, description, actor))
            syncs.append(sync)
            if require_remote_pr and not sync.is_remote:
                raise RemotePullRequestRequiredError("build", sync=sync.model_dump(mode="json"))

        labels = self.config.merged_ticket_labels()
        ticket_title = f"{self._pr_title(capability)} implementation"
        ticket_body = f"Capability: {capability_id}\nStage: build\nRepos: {', '.join(code_repos)}."
        existing = {ticket.repo: ticket for ticket in await self.store.list_tickets(capability_id)}
        tickets: list[Ticket] = []
        for repo in self.config.target_ticket_repos():
            if repo in existing:
                tickets.append(existing[repo])
                continue
            issue = await self.sync_engine.create_issue(repo, ticket_title, ticket_body, labels, org_id=capability.org_id)
            tickets.append(
                await self.store.add_ticket(
                    Ticket(
                        capability_id=capability_id,
                        repo=repo,
                        title=ticket_title,
                        body=ticket_body,
                        labels=labels,
                        status="open" if issue.mode == "github" else "draft",
                        external_url=issue.url,
                        issue_number=issue.issue_number,
                    )
                )
            )

        capability = await self.stages.advance(
            capability_id,
            Stage.BUILD,
            Stage.PR_CREATED,
            "pr-created",
            actor,
            detail={"pr_id": prs[0].pr_id if prs else None, "pr_url": prs[0].external_url if prs else None},
            status=CapabilityStatus.READY_FOR_REVIEW,
        )
        return BuildResult(capability=capability, doc=doc, prs=prs, syncs=syncs, tickets=tickets)

    async def build_to_pr(
        self,
        capability_id: str,
        actor: str = "pipeline-agent",
        require_remote_pr: bool | None = None,
        correlation_id: str | None = None,
    ) -> BuildResult:
        async with self._operation("build.to_pr", correlation_id, capability_id=capability_id) as cid:
            result = await self._build_to_pr(capability_id, actor, self._require_remote(require_remote_pr))
            result.correlation_id = cid
            return result

    # ------------------------------------------------------------------
    # End to end
    # ------------------------------------------------------------------

    def _require_remote(self, require_remote_pr: bool | None) -> bool:
        return self.config.enforce_remote_pr if require_remote_pr is None else require_remote_pr

    async def _run_step(
        self,
        step: str,
        idea_id: str,
        capability_id: str | None,
        capability_title: str | None,
        actor: str,
        require_remote_pr: bool,
    ) -> Capability:
        match step:
            case "triage":
                result = await self._create_triage_pr(idea_id, capability_title, actor, require_remote_pr)
            case "build-to-pr":
                result = await self._build_to_pr(capability_id, actor, require_remote_pr)
            case _:
                action, stage_key = step.split("-", 1)
                if action == "write":
                    result = await self._write_stage_document(capability_id, stage_key, actor)
                else:
                    result = await self._approve_stage(capability_id, stage_key, actor, "", require_remote_pr)
        return result.capability

    async def run_idea_to_pr(
        self,
        idea_id: str,
        capability_title: str | None = None,
        actor: str = "pipeline-agent",
        require_remote_pr: bool | None = None,
        correlation_id: str | None = None,
    ) -> PipelineRunResult:
        """Triage -> spec -> approve -> architecture -> approve -> compliance -> approve -> build PR.

        A capability that already exists for the idea resumes from its current
        stage; steps whose stage it has moved past are reported as skipped.

        Raises:
            PipelineStepError: the first failing step, carrying that step's error
        """
        require_remote = self._require_remote(require_remote_pr)
        async with self._operation(
            "pipeline.idea_to_pr", correlation_id, idea_id=idea_id, require_remote_pr=require_remote
        ) as cid:
            existing = await self.store.get_capability_by_idea(idea_id)
            capability_id = existing.capability_id if existing else None
            stage = existing.stage if existing else Stage.TRIAGE
            completed: list[str] = []
            skipped: list[str] = []
            step = IDEA_TO_PR_STEPS[0]
            try:
                for step in IDEA_TO_PR_STEPS:
                    if step_passed(step, stage):
                        skipped.append(step)
                        continue
                    capability = await self._run_step(
                        step, idea_id, capability_id, capability_title, actor, require_remote
                    )
                    capability_id, stage = capability.capability_id, capability.stage
                    completed.append(step)
            except FactoryError as exc:
                actions = list(exc.actions)
                if RETRY_RUN_PIPELINE not in actions:
                    actions.append(RETRY_RUN_PIPELINE)
                raise PipelineStepError(step, exc, actions=actions) from exc

            if skipped:
                logger.info("pipeline.resumed", capability_id=capability_id, skipped=skipped)
            prs = await self.store.list_pull_requests(capability_id)
            return PipelineRunResult(
                idea=await self.ideas.get(idea_id),
                capability=await self.stages.load(capability_id),
                prs=prs,
                pr_url=prs[0].external_url if prs else None,
                tickets=await self.store.list_tickets(capability_id),
                artifacts=await self.store.list_artifacts(capability_id),
                steps=completed,
                skipped_steps=skipped,
                correlation_id=cid,
            )

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    async def apply_review_approval(
        self,
        capability_id: str,
        actor: str = "github-webhook",
        correlation_id: str | None = None,
    ) -> WebhookResult:
        """Apply an approval performed directly on GitHub to whichever stage is pending review."""
        async with self._operation("webhook.approval", correlation_id, capability_id=capability_id) as cid:
            capability = await self.store.get_capability(capability_id)
            if capability is None:
                return WebhookResult(
                    ignored=True, capability_id=capability_id, detail="capability not found", correlation_id=cid
                )
            stage_key = PENDING_APPROVAL.get(capability.stage)
            if stage_key is None:
                return WebhookResult(
                    ignored=True,
                    capability_id=capability_id,
                    stage=capability.stage,
                    detail=f"no approval pending at stage {capability.stage}",
                    correlation_id=cid,
                )
            latest = await self.documents.latest(capability_id, stage_key)
            if latest is None:
                return WebhookResult(
                    ignored=True,
                    capability_id=capability_id,
                    stage=capability.stage,
                    detail=f"no {stage_key} document to approve",
                    correlation_id=cid,
                )

            await self.documents.snapshot_approved(latest, actor)
            capability = await self._transition_after_approval(capability_id, stage_key, actor, "github-webhook")
            return WebhookResult(
                ignored=False,
                capability_id=capability_id,
                stage=capability.stage,
                detail=f"{stage_key} approved via pull request review",
                correlation_id=cid,
            )

    async def handle_review_webhook(
        self, payload: dict[str, Any], correlation_id: str | None = None
    ) -> WebhookResult:
        review = payload.get("review") or {}
        head = (payload.get("pull_request") or {}).get("head") or {}
        ref = str(head.get("ref") or "")
        if str(review.get("state") or "").lower() != "approved" or not ref:
            return WebhookResult(ignored=True, detail="not an approved review", correlation_id=correlation_id)

        match = CAPABILITY_REF.search(ref)
        if match is None:
            return WebhookResult(ignored=True, detail=f"ref {ref} does not name a capability", correlation_id=correlation_id)
        return await self.apply_review_approval(f"CAP-{match.group(1).lower()}", correlation_id=correlation_id)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get_capability_detail(self, capability_id: str, correlation_id: str | None = None) -> CapabilityDetail:
        async with self._operation("capability.detail", correlation_id, capability_id=capability_id) as cid:
            capability = await self.stages.load(capability_id)
            return CapabilityDetail(
                capability=capability,
                artifacts=await self.store.list_artifacts(capability_id),
                pull_requests=await self.store.list_pull_requests(capability_id),
                tickets=await self.store.list_tickets(capability_id),
                correlation_id=cid,
            )

    async def get_stage_document(
        self, capability_id: str, stage_key: str, correlation_id: str | None = None
    ) -> StageDocumentDetail:
        async with self._operation(
            "stage_doc.get", correlation_id, capability_id=capability_id, stage_key=stage_key
        ) as cid:
            await self.stages.load(capability_id)
            versions = await self.documents.versions(capability_id, stage_key)
            return StageDocumentDetail(
                capability_id=capability_id,
                stage_key=stage_key,
                latest=versions[0] if versions else None,
                versions=versions,
                correlation_id=cid,
            )

    async def review_stage_document(
        self, capability_id: str, stage_key: str, correlation_id: str | None = None
    ) -> StageReviewResult:
        async with self._operation(
            "stage_doc.review", correlation_id, capability_id=capability_id, stage_key=stage_key
        ) as cid:
            latest = await self.documents.latest(capability_id, stage_key)
            if latest is None:
                raise NotFoundError(f"No {stage_key} document found")
            return StageReviewResult(doc=latest, review=review_document(stage_key, latest.content), correlation_id=cid)

    async def get_stage_rendition(
        self,
        capability_id: str,
        stage_key: str,
        source: str = "auto",
        correlation_id: str | None = None,
    ) -> StageRendition:
        """Stage content as it reads on the capability branch, falling back to the local document."""
        async with self._operation(
            "stage.rendition", correlation_id, capability_id=capability_id, stage_key=stage_key
        ) as cid:
            capability = await self.stages.load(capability_id)
            base = self._docs_base(capability)
            stage_path, diagram_path = f"{base}/{stage_key}.md", f"{base}/{stage_key}.mmd"

            mode, content, diagram = "local", "", ""
            if source in ("auto", "github"):
                remote = await self.sync_engine.read_files(
                    self.config.primary_repo,
                    self._branch_for(capability),
                    [stage_path, diagram_path],
                    org_id=capability.org_id,
                )
                if remote.get(stage_path) or remote.get(diagram_path):
                    mode = "github"
                    content = remote.get(stage_path, "")
                    diagram = remote.get(diagram_path, "")

            if not content and not diagram:
                local = await self.documents.latest(capability_id, stage_key)
                content = local.content if local else ""
                diagram = local.diagram_source if local else ""

            return StageRendition(
                capability_id=capability_id,
                stage_key=stage_key,
                source=mode,
                content=content,
                diagram_source=diagram,
                rendition=summarize_rendition(content),
                correlation_id=cid,
            )
