"""GitHub Integration: repositories, branch refs, contents, pull requests, issues and reviews.

Thin REST client. Every call is bounded by the configured timeout; a 404 on
a read can be requested as "absent" instead of an error.
"""

import base64
import re
from typing import Any
from urllib.parse import quote

import httpx
import structlog

from capability_factory.core.exceptions import GitHubAPIError, RemoteSyncError

logger = structlog.get_logger(__name__)

_PR_NUMBER = re.compile(r"/pull/([0-9]+)")


def parse_repo(repo: str) -> tuple[str, str]:
    """Split `owner/name`; raises RemoteSyncError on anything else."""
    owner, _, name = (repo or "").partition("/")
    if not owner or not name or "/" in name:
        raise RemoteSyncError(
            f"Invalid repo format: {repo}. Expected owner/name",
            reason="invalid_repo",
            actions=["open-factory-config"],
        )
    return owner, name


def parse_pr_number(url: str | None) -> int | None:
    if not url:
        return None
    match = _PR_NUMBER.search(url)
    return int(match.group(1)) if match else None


def encode_path(path: str) -> str:
    return "/".join(quote(segment, safe="") for segment in path.split("/"))


def decode_content(payload: dict) -> str:
    raw = str(payload.get("content") or "").replace("\n", "")
    return base64.b64decode(raw).decode("utf-8")


class GitHubClient:
    """Client for GitHub REST API operations with a resolved bearer token."""

    BASE_URL = "https://api.github.com"

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize GitHub client.

        Args:
            token: Personal access token or installation access token
            base_url: API root (GitHub Enterprise or tests)
            timeout: Per-request deadline in seconds
            transport: Optional httpx transport (httpx.MockTransport in tests)
        """
        self.token = token
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict | None = None,
        allow_404: bool = False,
    ) -> Any:
        """Make an authenticated request to GitHub API."""
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        logger.debug("github.request.start", method=method, endpoint=endpoint)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{endpoint}",
                    headers=headers,
                    json=data,
                )
        except httpx.TimeoutException as exc:
            logger.warning("github.request.failed", method=method, endpoint=endpoint, error="timeout")
            raise RemoteSyncError(f"GitHub request timed out: {method} {endpoint}") from exc
        except httpx.HTTPError as exc:
            logger.warning("github.request.failed", method=method, endpoint=endpoint, error=str(exc)[:240])
            raise RemoteSyncError(f"GitHub request failed: {exc}") from exc

        if response.status_code == 404 and allow_404:
            return None

        if response.status_code >= 400:
            logger.warning(
                "github.request.failed",
                method=method,
                endpoint=endpoint,
                status=response.status_code,
                error=response.text[:240],
            )
            raise GitHubAPIError(response.status_code, response.text)

        if response.status_code == 204:
            return {}

        return response.json()

    # Repository operations

    async def get_repo(self, owner: str, repo: str) -> dict:
        """Get repository information."""
        return await self._request("GET", f"/repos/{owner}/{repo}")

    async def get_default_branch(self, owner: str, repo: str) -> str:
        repo_info = await self.get_repo(owner, repo)
        return repo_info.get("default_branch") or "main"

    # Branch operations

    async def get_branch_ref(self, owner: str, repo: str, branch: str) -> dict | None:
        """Return the ref for `branch`, or None when it does not exist."""
        return await self._request(
            "GET", f"/repos/{owner}/{repo}/git/ref/heads/{encode_path(branch)}", allow_404=True
        )

    async def create_ref(self, owner: str, repo: str, branch: str, sha: str) -> dict:
        return await self._request(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            data={"ref": f"refs/heads/{branch}", "sha": sha},
        )

    # File operations

    async def get_file(self, owner: str, repo: str, path: str, branch: str) -> dict | None:
        """Return the contents payload ('content' base64, 'sha', 'path'), or None when absent."""
        return await self._request(
            "GET",
            f"/repos/{owner}/{repo}/contents/{encode_path(path)}?ref={quote(branch, safe='')}",
            allow_404=True,
        )

    async def create_or_update_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        message: str,
        branch: str,
        sha: str | None = None,
    ) -> dict:
        """Create or update a file in the repository.

        Args:
            content: Plain text (base64 encoded for transport)
            sha: Current blob SHA (required for updates)
        """
        data = {
            "message": message,
            "content": base64.b64encode(content.encode()).decode(),
            "branch": branch,
        }

        if sha:
            data["sha"] = sha

        return await self._request("PUT", f"/repos/{owner}/{repo}/contents/{encode_path(path)}", data=data)

    # Pull request operations

    async def list_open_pull_requests(self, owner: str, repo: str, head_branch: str) -> list[dict]:
        head = quote(f"{owner}:{head_branch}", safe="")
        result = await self._request("GET", f"/repos/{owner}/{repo}/pulls?state=open&head={head}")
        return result if isinstance(result, list) else []

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
    ) -> dict:
        return await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            data={
                "title": title,
                "body": body,
                "head": head,
                "base": base,
            },
        )

    async def create_review(self, owner: str, repo: str, pr_number: int, body: str, event: str = "APPROVE") -> dict:
        return await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls/{pr_number}/reviews",
            data={"event": event, "body": body},
        )

    # Issue operations

    async def create_issue(self, owner: str, repo: str, title: str, body: str, labels: list[str]) -> dict:
        return await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues",
            data={"title": title, "body": body, "labels": labels},
        )
