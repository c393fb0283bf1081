"""ApprovalGate: turn a synced stage document into a confirmed approval.

Sequence (the caller has already synced the stage to its PR):
1. require_remote_pr without a remote PR -> RemotePullRequestRequiredError, no writes
2. no resolvable PR number/repo -> local approval
3. remote APPROVE review -> Approved | ApprovedWithFallback | Rejected
4. Rejected -> ApprovalFailedError, no writes
5. otherwise snapshot an approved document version; the caller transitions after
"""

import structlog

from capability_factory.core.exceptions import (
    APPROVE_WITH_DIFFERENT_USER,
    OPEN_PR,
    RECONNECT_GITHUB,
    RETRY_APPROVE_STAGE,
    ApprovalFailedError,
    FactoryError,
    RemotePullRequestRequiredError,
)
from capability_factory.domain.approval import (
    ApprovalOutcome,
    Approved,
    ApprovedWithFallback,
    Rejected,
    is_approved,
    is_self_approval_block,
)
from capability_factory.integrations.github import parse_pr_number
from capability_factory.schemas.factory import (
    ApprovalRecord,
    Capability,
    PullRequestRecord,
    StageDocument,
    SyncResult,
)
from capability_factory.services.source_sync import SourceSyncEngine
from capability_factory.services.stage_documents import StageDocumentService

logger = structlog.get_logger(__name__)

REJECTED_ACTIONS = [RETRY_APPROVE_STAGE, OPEN_PR, RECONNECT_GITHUB]
FALLBACK_ACTIONS = [APPROVE_WITH_DIFFERENT_USER, RETRY_APPROVE_STAGE]


def resolve_pr_number(pr: PullRequestRecord, sync: SyncResult) -> int | None:
    return pr.pr_number or parse_pr_number(pr.external_url) or sync.pr_number or parse_pr_number(sync.url)


class ApprovalGate:
    def __init__(self, sync_engine: SourceSyncEngine, documents: StageDocumentService):
        self.sync_engine = sync_engine
        self.documents = documents

    async def review(
        self,
        capability: Capability,
        stage_key: str,
        pr: PullRequestRecord,
        sync: SyncResult,
        note: str = "",
    ) -> ApprovalOutcome:
        pr_number = resolve_pr_number(pr, sync)
        if not pr_number or not pr.repo:
            return Approved(mode="local")

        body = note or f"Stage {stage_key} approved in Capability Factory"
        try:
            review = await self.sync_engine.submit_approval(pr.repo, pr_number, body, org_id=capability.org_id)
        except FactoryError as exc:
            if is_self_approval_block(exc):
                logger.warning(
                    "approval.self_approval_fallback",
                    capability_id=capability.capability_id,
                    stage_key=stage_key,
                    repo=pr.repo,
                    pr_number=pr_number,
                    upstream_error=exc.error,
                )
                return ApprovedWithFallback(upstream_error=exc.error, pr_number=pr_number)
            return Rejected(reason=exc.error, pr_number=pr_number, actions=list(REJECTED_ACTIONS))

        if review.state != "APPROVED":
            return Rejected(
                reason=f"GitHub review state {review.state}",
                pr_number=pr_number,
                actions=list(REJECTED_ACTIONS),
            )
        return Approved(mode=review.mode, url=review.url, pr_number=pr_number)

    async def approve(
        self,
        capability: Capability,
        stage_key: str,
        latest: StageDocument,
        pr: PullRequestRecord,
        sync: SyncResult,
        actor: str,
        note: str = "",
        require_remote_pr: bool = False,
    ) -> tuple[ApprovalRecord, StageDocument]:
        """Gate an approval; returns the approval record and the approved snapshot.

        Raises:
            RemotePullRequestRequiredError: remote PR required but sync stayed local
            ApprovalFailedError: the remote review failed for any reason other than self-approval
        """
        if require_remote_pr and not sync.is_remote:
            raise RemotePullRequestRequiredError(stage_key, sync=sync.model_dump(mode="json"))

        outcome = await self.review(capability, stage_key, pr, sync, note)
        record = self._record(outcome, stage_key, pr, note)
        if not is_approved(outcome):
            logger.warning(
                "approval.failed",
                capability_id=capability.capability_id,
                stage_key=stage_key,
                reason=outcome.reason[:240],
            )
            raise ApprovalFailedError(record.model_dump(mode="json"))

        approved_doc = await self.documents.snapshot_approved(latest, actor)
        return record, approved_doc

    @staticmethod
    def _record(outcome: ApprovalOutcome, stage_key: str, pr: PullRequestRecord, note: str) -> ApprovalRecord:
        match outcome:
            case Approved(mode="local"):
                return ApprovalRecord(
                    mode="local",
                    state="APPROVED",
                    pr_id=pr.pr_id,
                    note=note or f"Stage {stage_key} approved in Capability Factory (local mode)",
                )
            case Approved():
                return ApprovalRecord(
                    mode=outcome.mode,
                    state="APPROVED",
                    repo=pr.repo,
                    pr_number=outcome.pr_number,
                    pr_id=pr.pr_id,
                    url=outcome.url,
                    note=note,
                )
            case ApprovedWithFallback():
                return ApprovalRecord(
                    mode="local-self-approval-fallback",
                    state="APPROVED",
                    repo=pr.repo,
                    pr_number=outcome.pr_number,
                    pr_id=pr.pr_id,
                    note=note or "GitHub blocked self-approval; approval recorded locally",
                    error=outcome.upstream_error,
                    actions=list(FALLBACK_ACTIONS),
                )
            case Rejected():
                return ApprovalRecord(
                    mode="github-error",
                    state="APPROVAL_FAILED",
                    repo=pr.repo,
                    pr_number=outcome.pr_number,
                    pr_id=pr.pr_id,
                    note=note,
                    error=outcome.reason,
                    actions=list(outcome.actions or REJECTED_ACTIONS),
                )
        raise TypeError(f"Unknown approval outcome: {outcome!r}")
