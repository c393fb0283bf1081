from typing import Any

RETRY_APPROVE_STAGE = "retry-approve-stage"
RETRY_SYNC_STAGE = "retry-sync-stage"
RETRY_SUBMIT_IDEA = "retry-submit-idea"
RETRY_RUN_PIPELINE = "retry-run-pipeline"
OPEN_PR = "open-pr"
RECONNECT_GITHUB = "reconnect-github"
OPEN_FACTORY_CONFIG = "open-factory-config"
APPROVE_WITH_DIFFERENT_USER = "approve-in-github-with-different-user"


class FactoryError(Exception):
    """Base exception for the capability factory.

    Every error carries a human message, a short machine-checkable reason and
    a list of remediation actions that callers can branch on.
    """

    default_reason = "factory_error"

    def __init__(
        self,
        error: str,
        reason: str | None = None,
        actions: list[str] | None = None,
        **extra: Any,
    ):
        self.error = error
        self.reason = reason or self.default_reason
        self.actions = list(actions or [])
        self.extra = extra
        super().__init__(error)

    def to_payload(self, correlation_id: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "error": self.error,
            "reason": self.reason,
            "actions": list(self.actions),
            "correlation_id": correlation_id,
        }
        payload.update(self.extra)
        return payload


class NotFoundError(FactoryError):
    """Raised when an idea, capability or stage document does not exist."""

    default_reason = "not_found"


class StageMismatchError(FactoryError):
    """Raised when a guarded action runs against a capability in the wrong stage."""

    default_reason = "stage_mismatch"

    def __init__(self, required: str, actual: str, capability_id: str | None = None):
        self.required = str(required)
        self.actual = str(actual)
        super().__init__(
            f"Capability must be in {self.required} stage (current: {self.actual})",
            required=self.required,
            actual=self.actual,
            capability_id=capability_id,
        )


class RemoteSyncError(FactoryError):
    """Raised when a call to the source-control platform fails (transport, timeout, auth)."""

    default_reason = "remote_sync_failed"

    def __init__(self, error: str, reason: str | None = None, actions: list[str] | None = None, **extra: Any):
        super().__init__(
            error,
            reason=reason or error,
            actions=actions if actions is not None else [RETRY_SYNC_STAGE, RECONNECT_GITHUB],
            **extra,
        )


class GitHubAPIError(RemoteSyncError):
    """Raised when the GitHub REST API answers with an error status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(
            f"GitHub API error ({status_code}): {message}",
            status_code=status_code,
        )


class ApprovalFailedError(FactoryError):
    """Raised when the remote review could not be submitted and the stage must not advance."""

    default_reason = "approval_failed"

    def __init__(self, approval: dict[str, Any]):
        self.approval = approval
        upstream = approval.get("error") or "Approval failed"
        super().__init__(
            f"Stage approval failed: {upstream}",
            reason=upstream,
            actions=approval.get("actions") or [RETRY_APPROVE_STAGE, OPEN_PR, RECONNECT_GITHUB],
            approval=approval,
        )


class RemotePullRequestRequiredError(FactoryError):
    """Raised when a remote PR was required but sync ran in draft or local mode."""

    default_reason = "github_pr_not_created"

    def __init__(self, stage_key: str, sync: dict[str, Any] | None = None):
        self.stage_key = stage_key
        super().__init__(
            f"GitHub PR was required for {stage_key} but sync did not create one",
            actions=[RECONNECT_GITHUB, OPEN_FACTORY_CONFIG, RETRY_SYNC_STAGE],
            stage_key=stage_key,
            sync=sync,
        )


class ConcurrentUpdateError(FactoryError):
    """Raised when a conditional write loses to a concurrent writer."""

    default_reason = "concurrent_update"


class UnsupportedStageError(FactoryError):
    """Raised for stage keys that have no document or approval rule."""

    default_reason = "unsupported_stage"

    def __init__(self, stage_key: str, operation: str = "document"):
        self.stage_key = stage_key
        super().__init__(
            f"Unsupported stage for {operation}: {stage_key}",
            stage_key=stage_key,
        )


class PipelineStepError(FactoryError):
    """Raised by end-to-end runs; carries the failing step and the step's own error."""

    def __init__(self, step: str, cause: FactoryError, actions: list[str] | None = None):
        self.step = step
        self.cause = cause
        super().__init__(
            cause.error,
            reason=cause.reason,
            actions=actions if actions is not None else cause.actions,
            **cause.extra,
        )
        self.extra["step"] = step
