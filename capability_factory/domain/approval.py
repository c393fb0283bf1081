"""Approval outcomes.

The gate never uses exceptions to tell an expected self-approval block
apart from a real failure: callers match on one of three variants.
"""

import re
from dataclasses import dataclass, field

from capability_factory.core.exceptions import GitHubAPIError

_OWN_PULL_REQUEST = re.compile(r"own pull request", re.IGNORECASE)


@dataclass(frozen=True)
class Approved:
    mode: str
    url: str | None = None
    pr_number: int | None = None


@dataclass(frozen=True)
class ApprovedWithFallback:
    upstream_error: str
    pr_number: int | None = None
    mode: str = "local-self-approval-fallback"


@dataclass(frozen=True)
class Rejected:
    reason: str
    pr_number: int | None = None
    mode: str = "github-error"
    actions: list[str] = field(default_factory=list)


ApprovalOutcome = Approved | ApprovedWithFallback | Rejected


def is_self_approval_block(error: Exception) -> bool:
    """True for the platform's refusal to let a PR author approve their own PR (HTTP 422)."""
    if not isinstance(error, GitHubAPIError) or error.status_code != 422:
        return False
    return bool(_OWN_PULL_REQUEST.search(error.message))


def is_approved(outcome: ApprovalOutcome) -> bool:
    return isinstance(outcome, (Approved, ApprovedWithFallback))
