"""Shared test fixtures for all test groups."""

import base64
import json
import re

import httpx
import pytest
import structlog

from capability_factory.core.config import FactoryConfig, GitHubConfig
from capability_factory.db.store_memory import InMemoryFactoryStore
from capability_factory.integrations.github_auth import CredentialResolver
from capability_factory.schemas.factory import Scope
from capability_factory.services.pipeline import PipelineOrchestrator
from capability_factory.services.source_sync import SourceSyncEngine

FIXED_CLOCK = 1_700_000_000.0


@pytest.fixture(autouse=True, scope="session")
def _uncached_structlog():
    """Keep loggers re-resolving their config so capture_logs works in every test."""
    structlog.configure(cache_logger_on_first_use=False)


class FakeGitHub:
    """In-memory GitHub REST double served through httpx.MockTransport.

    Knobs:
        ref_conflicts: branch names whose creation answers 422
        review_error: (status, message) returned by the review endpoint
        review_state: state reported for submitted reviews
        issue_error: (status, message) returned by the issues endpoint
    """

    def __init__(self, default_branch: str = "main"):
        self.default_branch = default_branch
        self.refs: dict[tuple[str, str], str] = {}
        self.files: dict[tuple[str, str, str], tuple[str, str]] = {}
        self.pulls: list[dict] = []
        self.reviews: list[dict] = []
        self.issues: list[dict] = []
        self.requests: list[tuple[str, str]] = []
        self.ref_conflicts: set[str] = set()
        self.review_error: tuple[int, str] | None = None
        self.review_state = "APPROVED"
        self.issue_error: tuple[int, str] | None = None
        self._sha = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _next_sha(self) -> str:
        self._sha += 1
        return f"sha-{self._sha:04d}"

    def calls(self, method: str, fragment: str = "") -> list[str]:
        return [path for m, path in self.requests if m == method and fragment in path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method
        self.requests.append((method, path))
        body = json.loads(request.content) if request.content else {}

        if match := re.fullmatch(r"/repos/([^/]+)/([^/]+)", path):
            repo = f"{match[1]}/{match[2]}"
            return httpx.Response(200, json={"full_name": repo, "default_branch": self.default_branch})

        if match := re.fullmatch(r"/repos/([^/]+)/([^/]+)/git/ref/heads/(.+)", path):
            repo, branch = f"{match[1]}/{match[2]}", match[3]
            if branch == self.default_branch:
                return httpx.Response(200, json={"ref": f"refs/heads/{branch}", "object": {"sha": "base-sha"}})
            if (repo, branch) in self.refs:
                return httpx.Response(200, json={"ref": f"refs/heads/{branch}", "object": {"sha": self.refs[(repo, branch)]}})
            return httpx.Response(404, json={"message": "Not Found"})

        if method == "POST" and (match := re.fullmatch(r"/repos/([^/]+)/([^/]+)/git/refs", path)):
            repo = f"{match[1]}/{match[2]}"
            branch = body["ref"].removeprefix("refs/heads/")
            if branch in self.ref_conflicts:
                return httpx.Response(422, json={"message": "Reference already exists"})
            self.refs[(repo, branch)] = body["sha"]
            return httpx.Response(201, json={"ref": body["ref"], "object": {"sha": body["sha"]}})

        if match := re.fullmatch(r"/repos/([^/]+)/([^/]+)/contents/(.+)", path):
            repo, file_path = f"{match[1]}/{match[2]}", match[3]
            if method == "GET":
                key = (repo, request.url.params.get("ref", ""), file_path)
                if key not in self.files:
                    return httpx.Response(404, json={"message": "Not Found"})
                content, sha = self.files[key]
                encoded = base64.b64encode(content.encode()).decode()
                return httpx.Response(200, json={"path": file_path, "sha": sha, "content": encoded})
            key = (repo, body["branch"], file_path)
            if key in self.files and body.get("sha") != self.files[key][1]:
                return httpx.Response(409, json={"message": "sha does not match"})
            sha = self._next_sha()
            self.files[key] = (base64.b64decode(body["content"]).decode(), sha)
            return httpx.Response(201, json={"content": {"path": file_path, "sha": sha}})

        if match := re.fullmatch(r"/repos/([^/]+)/([^/]+)/pulls", path):
            owner, name = match[1], match[2]
            if method == "GET":
                head = request.url.params.get("head", "")
                found = [pr for pr in self.pulls if pr["repo"] == f"{owner}/{name}" and f"{owner}:{pr['head']['ref']}" == head]
                return httpx.Response(200, json=found)
            number = len(self.pulls) + 1
            pr = {
                "repo": f"{owner}/{name}",
                "number": number,
                "html_url": f"https://github.com/{owner}/{name}/pull/{number}",
                "title": body["title"],
                "head": {"ref": body["head"]},
                "base": {"ref": body["base"]},
                "state": "open",
            }
            self.pulls.append(pr)
            return httpx.Response(201, json=pr)

        if match := re.fullmatch(r"/repos/([^/]+)/([^/]+)/pulls/(\d+)/reviews", path):
            if self.review_error is not None:
                status, message = self.review_error
                return httpx.Response(status, json={"message": message})
            review = {
                "id": len(self.reviews) + 1,
                "state": self.review_state,
                "body": body.get("body"),
                "html_url": f"https://github.com/{match[1]}/{match[2]}/pull/{match[3]}#review",
            }
            self.reviews.append(review)
            return httpx.Response(200, json=review)

        if match := re.fullmatch(r"/repos/([^/]+)/([^/]+)/issues", path):
            if self.issue_error is not None:
                status, message = self.issue_error
                return httpx.Response(status, json={"message": message})
            number = len(self.issues) + 1
            issue = {
                "number": number,
                "html_url": f"https://github.com/{match[1]}/{match[2]}/issues/{number}",
                "title": body["title"],
                "labels": body.get("labels", []),
            }
            self.issues.append(issue)
            return httpx.Response(201, json=issue)

        return httpx.Response(404, json={"message": f"unhandled {method} {path}"})


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def scope():
    return Scope(org_id="acme", sandbox_id="sandbox-1", product_id="widgets")


@pytest.fixture
def store():
    return InMemoryFactoryStore()


@pytest.fixture
def factory_config():
    return FactoryConfig(code_repos=["acme/widgets"])


@pytest.fixture
def draft_github_config():
    return GitHubConfig()


@pytest.fixture
def remote_github_config():
    return GitHubConfig(token="ghp-test", local_pr_only=False, api_url="https://api.github.test")


@pytest.fixture
def draft_engine(draft_github_config):
    return SourceSyncEngine(draft_github_config, CredentialResolver(draft_github_config))


@pytest.fixture
def remote_engine(remote_github_config, fake_github):
    return SourceSyncEngine(
        remote_github_config,
        CredentialResolver(remote_github_config),
        transport=fake_github.transport,
        clock=lambda: FIXED_CLOCK,
    )


@pytest.fixture
def orchestrator(store, factory_config, draft_engine):
    """Orchestrator in draft mode: no network, template drafts."""
    return PipelineOrchestrator(store, factory_config, draft_engine)


@pytest.fixture
def remote_orchestrator(store, factory_config, remote_engine):
    """Orchestrator wired to FakeGitHub."""
    return PipelineOrchestrator(store, factory_config, remote_engine)


@pytest.fixture
def idea_details():
    return {
        "problemStatement": "Sales reps cannot tell which inbound leads are worth a call",
        "userPersona": "Sales representative",
        "businessGoal": "Raise lead conversion by ranking inbound leads",
        "acceptanceCriteria": ["Leads carry a score", "Scores refresh hourly"],
        "constraints": "Must reuse the existing CRM export without schema changes",
        "nonGoals": "Automated outreach",
        "attachments": ["https://example.test/lead-flow.png"],
    }
