"""Tests for the GitHub REST client error mapping."""

import httpx
import pytest
from structlog.testing import capture_logs

from capability_factory.core.exceptions import GitHubAPIError, RemoteSyncError
from capability_factory.integrations.github import (
    GitHubClient,
    encode_path,
    parse_pr_number,
    parse_repo,
)

pytestmark = pytest.mark.unit


def _client(handler) -> GitHubClient:
    return GitHubClient("token", base_url="https://api.github.test", transport=httpx.MockTransport(handler))


def test_parse_repo():
    assert parse_repo("acme/widgets") == ("acme", "widgets")
    for bad in ["", "acme", "acme/", "acme/widgets/extra"]:
        with pytest.raises(RemoteSyncError):
            parse_repo(bad)


def test_parse_pr_number():
    assert parse_pr_number("https://github.com/acme/widgets/pull/42") == 42
    assert parse_pr_number("https://github.com/acme/widgets") is None
    assert parse_pr_number(None) is None


def test_encode_path_keeps_separators():
    assert encode_path("docs/my file.md") == "docs/my%20file.md"


async def test_sends_auth_headers():
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(200, json={"default_branch": "trunk"})

    assert await _client(handler).get_default_branch("acme", "widgets") == "trunk"
    assert seen["authorization"] == "Bearer token"
    assert seen["accept"] == "application/vnd.github+json"


async def test_error_status_raises_github_api_error():
    def handler(request):
        return httpx.Response(403, text="Resource not accessible by integration")

    with capture_logs() as logs:
        with pytest.raises(GitHubAPIError) as exc_info:
            await _client(handler).get_repo("acme", "widgets")

    err = exc_info.value
    assert err.status_code == 403
    assert err.error == "GitHub API error (403): Resource not accessible by integration"
    assert any(entry["event"] == "github.request.failed" and entry["status"] == 403 for entry in logs)


async def test_404_as_absent():
    def handler(request):
        return httpx.Response(404, json={"message": "Not Found"})

    client = _client(handler)
    assert await client.get_branch_ref("acme", "widgets", "feature/x") is None
    assert await client.get_file("acme", "widgets", "a.md", "main") is None
    with pytest.raises(GitHubAPIError):
        await client.get_repo("acme", "widgets")


async def test_timeout_raises_remote_sync_error():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(RemoteSyncError) as exc_info:
        await _client(handler).get_repo("acme", "widgets")

    assert not isinstance(exc_info.value, GitHubAPIError)
    assert "timed out" in exc_info.value.error


async def test_create_or_update_file_encodes_content():
    captured = {}

    def handler(request):
        captured["json"] = request.read()
        return httpx.Response(201, json={"content": {"sha": "abc"}})

    await _client(handler).create_or_update_file("acme", "widgets", "a.md", "hi", "msg", "main", sha="old")

    assert b'"content":"aGk="' in captured["json"].replace(b" ", b"")
    assert b'"sha":"old"' in captured["json"].replace(b" ", b"")
