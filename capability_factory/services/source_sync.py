"""SourceSyncEngine: make a capability branch and pull request match its stage documents.

Every primitive is idempotent so a failed multi-file sync can simply be
re-run; files upserted before the failure stay in place. Draft mode (no
credential) is a first-class success path that performs no network call.
"""

import re
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx
import structlog

from capability_factory.core.config import GitHubConfig
from capability_factory.core.exceptions import GitHubAPIError
from capability_factory.integrations.github import (
    GitHubClient,
    decode_content,
    parse_pr_number,
    parse_repo,
)
from capability_factory.integrations.github_auth import CredentialResolver
from capability_factory.schemas.factory import SyncFile, SyncResult

logger = structlog.get_logger(__name__)

_NON_TOKEN = re.compile(r"[^a-z0-9-]+")
_DASH_RUN = re.compile(r"-+")


def normalize_branch_token(value: str | None, fallback: str) -> str:
    token = _NON_TOKEN.sub("-", (value or "").lower())
    token = _DASH_RUN.sub("-", token).strip("-")
    return token or fallback


def capability_branch(branch_prefix: str, product_id: str | None, capability_id: str | None) -> str:
    """Deterministic branch name `{prefix}/{product}/{capability}`."""
    product = normalize_branch_token(product_id, "product")
    capability = normalize_branch_token(capability_id, "capability")
    return f"{branch_prefix}/{product}/{capability}"


def docs_base(org_id: str, sandbox_id: str, product_id: str, idea_id: str) -> str:
    return f"{org_id}/{sandbox_id}/{product_id}/{idea_id}"


@dataclass(frozen=True)
class BranchInfo:
    base: str
    branch: str


@dataclass(frozen=True)
class IssueResult:
    mode: str
    repo: str
    url: str | None = None
    issue_number: int | None = None


@dataclass(frozen=True)
class ReviewResult:
    mode: str
    state: str
    url: str | None = None


class SourceSyncEngine:
    def __init__(
        self,
        config: GitHubConfig,
        resolver: CredentialResolver,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            config: GitHub connection settings (API root, timeout)
            resolver: Decides draft mode and supplies the bearer token
            transport: Optional httpx transport shared by every client (tests)
            clock: Seconds since epoch; used for the collision suffix
        """
        self.config = config
        self.resolver = resolver
        self._transport = transport
        self._clock = clock

    async def client_for(self, org_id: str | None) -> GitHubClient | None:
        """A client for the org's credential, or None in draft mode."""
        auth = await self.resolver.resolve(org_id)
        if auth.is_draft:
            return None
        return GitHubClient(
            auth.token,
            base_url=self.config.api_url,
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )

    # Primitives

    async def ensure_branch(self, client: GitHubClient, repo: str, branch: str) -> BranchInfo:
        """Create `branch` from the default branch unless it already exists.

        A 422 on ref creation means a concurrent creator won the race; retry
        once with a time-suffixed name. Anything else propagates.
        """
        owner, name = parse_repo(repo)
        base = await client.get_default_branch(owner, name)

        if await client.get_branch_ref(owner, name, branch) is not None:
            return BranchInfo(base=base, branch=branch)

        base_ref = await client.get_branch_ref(owner, name, base)
        if base_ref is None:
            raise GitHubAPIError(404, f"Base branch {base} not found in {repo}")
        base_sha = base_ref["object"]["sha"]

        try:
            await client.create_ref(owner, name, branch, base_sha)
        except GitHubAPIError as exc:
            if exc.status_code != 422:
                raise
            fallback = f"{branch}-{int(self._clock() * 1000)}"
            logger.warning("sync.branch.collision", repo=repo, branch=branch, fallback=fallback)
            await client.create_ref(owner, name, fallback, base_sha)
            return BranchInfo(base=base, branch=fallback)

        logger.info("sync.branch.created", repo=repo, branch=branch, base=base)
        return BranchInfo(base=base, branch=branch)

    async def upsert_file(
        self,
        client: GitHubClient,
        repo: str,
        branch: str,
        path: str,
        content: str,
        message: str | None = None,
    ) -> None:
        owner, name = parse_repo(repo)
        existing = await client.get_file(owner, name, path, branch)
        await client.create_or_update_file(
            owner,
            name,
            path,
            content or "",
            message or f"sync {path}",
            branch,
            sha=existing.get("sha") if existing else None,
        )

    async def ensure_pull_request(
        self,
        client: GitHubClient,
        repo: str,
        branch: str,
        base: str,
        title: str,
        description: str,
    ) -> dict:
        """Return the first open PR for the branch, creating one only when none exists."""
        owner, name = parse_repo(repo)
        open_prs = await client.list_open_pull_requests(owner, name, branch)
        if open_prs:
            return open_prs[0]
        return await client.create_pull_request(owner, name, title, description, head=branch, base=base)

    # Composite operations

    async def sync_docs_to_pull_request(
        self,
        repo: str,
        branch: str,
        title: str,
        description: str,
        files: list[SyncFile],
        org_id: str | None = None,
    ) -> SyncResult:
        paths = list(dict.fromkeys(f.path for f in files))
        client = await self.client_for(org_id)
        if client is None:
            logger.info("sync.draft_mode", repo=repo, branch=branch, file_count=len(files))
            return SyncResult(mode="draft", repo=repo, branch=branch, url=None, pr_number=None, files=paths)

        logger.info("sync.start", repo=repo, branch=branch, file_count=len(files))
        branch_info = await self.ensure_branch(client, repo, branch)
        for file in files:
            await self.upsert_file(client, repo, branch_info.branch, file.path, file.content, file.message)

        pr = await self.ensure_pull_request(
            client, repo, branch_info.branch, branch_info.base, title, description
        )
        url = pr.get("html_url")
        pr_number = pr.get("number") or parse_pr_number(url)
        logger.info("sync.success", repo=repo, branch=branch_info.branch, pr_number=pr_number, url=url)
        return SyncResult(
            mode="github",
            repo=repo,
            branch=branch_info.branch,
            url=url,
            pr_number=pr_number,
            files=paths,
        )

    async def create_issue(
        self,
        repo: str,
        title: str,
        body: str,
        labels: list[str] | None = None,
        org_id: str | None = None,
    ) -> IssueResult:
        client = await self.client_for(org_id)
        if client is None:
            return IssueResult(mode="draft", repo=repo)
        owner, name = parse_repo(repo)
        issue = await client.create_issue(owner, name, title, body, list(labels or []))
        return IssueResult(mode="github", repo=repo, url=issue.get("html_url"), issue_number=issue.get("number"))

    async def read_files(
        self,
        repo: str,
        branch: str,
        paths: list[str],
        org_id: str | None = None,
    ) -> dict[str, str]:
        """Decoded contents of the paths present on the branch; absent paths are omitted."""
        client = await self.client_for(org_id)
        if client is None:
            return {}
        owner, name = parse_repo(repo)
        files: dict[str, str] = {}
        for path in paths:
            path = (path or "").strip()
            if not path:
                continue
            payload = await client.get_file(owner, name, path, branch)
            if not payload or isinstance(payload, list) or not payload.get("content"):
                continue
            files[path] = decode_content(payload)
        return files

    async def submit_approval(
        self,
        repo: str,
        pr_number: int,
        body: str,
        org_id: str | None = None,
    ) -> ReviewResult:
        """Submit an APPROVE review. Failures propagate to the approval gate."""
        client = await self.client_for(org_id)
        if client is None:
            return ReviewResult(mode="draft", state="APPROVED")
        owner, name = parse_repo(repo)
        review = await client.create_review(owner, name, pr_number, body)
        return ReviewResult(mode="github", state=str(review.get("state") or "APPROVED").upper(), url=review.get("html_url"))
