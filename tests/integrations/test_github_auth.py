"""Tests for credential resolution and GitHub App installation tokens."""

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from capability_factory.core.config import GitHubConfig
from capability_factory.core.exceptions import RemoteSyncError
from capability_factory.integrations.github_auth import CredentialResolver, GitHubAppTokenMinter

pytestmark = pytest.mark.unit


@pytest.fixture(scope="module")
def private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()


class TestCredentialResolver:
    async def test_local_pr_only_is_draft_even_with_token(self):
        auth = await CredentialResolver(GitHubConfig(token="ghp", local_pr_only=True)).resolve("acme")
        assert auth.is_draft

    async def test_static_token(self):
        auth = await CredentialResolver(GitHubConfig(token="ghp", local_pr_only=False)).resolve("acme")
        assert (auth.mode, auth.token) == ("token", "ghp")

    async def test_no_credential_is_draft(self):
        auth = await CredentialResolver(GitHubConfig(local_pr_only=False)).resolve("acme")
        assert auth.is_draft

    async def test_github_app_with_org_installation(self):
        class StubMinter:
            async def get_installation_token(self, installation_id):
                return f"inst-token-{installation_id}"

        async def lookup(org_id):
            return {"acme": "777"}.get(org_id)

        resolver = CredentialResolver(
            GitHubConfig(local_pr_only=False), minter=StubMinter(), installation_lookup=lookup
        )

        auth = await resolver.resolve("acme")
        assert (auth.mode, auth.token, auth.installation_id) == ("github_app", "inst-token-777", "777")
        assert (await resolver.resolve("other")).is_draft


class TestTokenMinter:
    async def test_mints_and_caches(self, private_key_pem):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(201, json={"token": "ghs_installation"})

        minter = GitHubAppTokenMinter(
            "12345", private_key_pem, base_url="https://api.github.test", transport=httpx.MockTransport(handler)
        )

        assert await minter.get_installation_token("99") == "ghs_installation"
        assert await minter.get_installation_token("99") == "ghs_installation"

        assert len(calls) == 1
        assert calls[0].url.path == "/app/installations/99/access_tokens"
        bearer = calls[0].headers["authorization"].removeprefix("Bearer ")
        claims = jwt.decode(bearer, options={"verify_signature": False})
        assert claims["iss"] == "12345"

    async def test_non_201_raises(self, private_key_pem):
        minter = GitHubAppTokenMinter(
            "12345",
            private_key_pem,
            transport=httpx.MockTransport(lambda request: httpx.Response(401, text="Bad credentials")),
        )

        with pytest.raises(RemoteSyncError) as exc_info:
            await minter.get_installation_token("99")
        assert exc_info.value.extra["status_code"] == 401
