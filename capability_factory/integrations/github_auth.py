"""GitHub credential resolution.

Decides, per organization, whether remote calls are possible and with which
bearer token. "draft" means no network call may be made at all.
"""

import base64
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

import httpx
import jwt
import structlog

from capability_factory.core.config import GitHubConfig
from capability_factory.core.exceptions import RemoteSyncError

logger = structlog.get_logger(__name__)

AuthMode = Literal["draft", "token", "github_app"]

# Installation tokens live one hour; refresh a little early
INSTALLATION_TOKEN_TTL = timedelta(minutes=55)


@dataclass(frozen=True)
class GitHubAuth:
    mode: AuthMode
    token: str = ""
    installation_id: str | None = None

    @property
    def is_draft(self) -> bool:
        return self.mode == "draft" or not self.token


DRAFT_AUTH = GitHubAuth(mode="draft")


class GitHubAppTokenMinter:
    """Mints and caches installation access tokens for a GitHub App."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        base_url: str = "https://api.github.com",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._cache: dict[str, tuple[str, datetime]] = {}

    def _get_jwt(self) -> str:
        """Generate a short-lived RS256 JWT identifying the app."""
        now = datetime.now(UTC)
        payload = {
            "iat": int(now.timestamp()) - 60,  # Issued 60 seconds ago
            "exp": int((now + timedelta(minutes=9)).timestamp()),
            "iss": self.app_id,
        }

        # Private key may be base64 encoded or raw PEM
        private_key = self.private_key
        if not private_key.startswith("-----BEGIN"):
            private_key = base64.b64decode(private_key).decode()

        return jwt.encode(payload, private_key, algorithm="RS256")

    async def get_installation_token(self, installation_id: str) -> str:
        cached = self._cache.get(installation_id)
        if cached and datetime.now(UTC) < cached[1]:
            return cached[0]

        jwt_token = self._get_jwt()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/app/installations/{installation_id}/access_tokens",
                    headers={
                        "Authorization": f"Bearer {jwt_token}",
                        "Accept": "application/vnd.github+json",
                        "X-GitHub-Api-Version": "2022-11-28",
                    },
                )
        except httpx.HTTPError as exc:
            raise RemoteSyncError(f"GitHub App token request failed: {exc}") from exc

        if response.status_code != 201:
            raise RemoteSyncError(
                f"Failed to get installation access token: {response.text}",
                status_code=response.status_code,
            )

        token = response.json()["token"]
        self._cache[installation_id] = (token, datetime.now(UTC) + INSTALLATION_TOKEN_TTL)
        logger.info("github.app_token.minted", installation_id=installation_id)
        return token


InstallationLookup = Callable[[str], Awaitable[str | None]]


class CredentialResolver:
    """Resolve the GitHub credential for an organization.

    Order:
        1. local_pr_only -> draft (never touch the network)
        2. static token -> token
        3. GitHub App with an installation for the org -> github_app
        4. otherwise -> draft
    """

    def __init__(
        self,
        config: GitHubConfig,
        minter: GitHubAppTokenMinter | None = None,
        installation_lookup: InstallationLookup | None = None,
    ):
        self.config = config
        self.minter = minter
        if self.minter is None and config.app_id and config.private_key:
            self.minter = GitHubAppTokenMinter(
                config.app_id,
                config.private_key,
                base_url=config.api_url,
                timeout=config.timeout_seconds,
            )
        self.installation_lookup = installation_lookup

    async def resolve(self, org_id: str | None = None) -> GitHubAuth:
        if self.config.local_pr_only:
            return DRAFT_AUTH
        if self.config.token:
            return GitHubAuth(mode="token", token=self.config.token)

        if self.minter is not None:
            installation_id = None
            if org_id and self.installation_lookup is not None:
                installation_id = await self.installation_lookup(org_id)
            installation_id = installation_id or self.config.installation_id or None
            if installation_id:
                token = await self.minter.get_installation_token(installation_id)
                return GitHubAuth(mode="github_app", token=token, installation_id=installation_id)

        return DRAFT_AUTH
