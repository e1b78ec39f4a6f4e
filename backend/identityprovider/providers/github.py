"""GitHub OAuth Provider.

OAuth 2.0 flow for GitHub and GitHub Enterprise Server.
"""

from typing import Any

from pydantic import Field

from identityprovider.base import ProviderFactory
from identityprovider.config import get_settings
from identityprovider.errors import UpstreamExchangeError
from identityprovider.options import DynamicOptions, decode_options
from identityprovider.providers.generic_oauth2 import (
    GenericOAuth2Provider,
    OAuth2ClientOptions,
)
from identityprovider.registry import register_factory
from identityprovider.state import CallbackState, StateStore


class GitHubOptions(OAuth2ClientOptions):
    """Options accepted by the github provider type."""

    # Override for GitHub Enterprise Server
    web_url: str = "https://github.com"
    api_url: str = "https://api.github.com"

    # GitHub user ids are numeric, logins are renameable
    attribute_mapping: dict[str, list[str]] | None = Field(
        default_factory=lambda: {"external_id": ["id"], "username": ["login"], "email": ["email"]}
    )


class GitHubProvider(GenericOAuth2Provider):
    """GitHub OAuth provider implementation."""

    options: GitHubOptions

    @property
    def provider_type(self) -> str:
        return "github"

    def _default_scopes(self) -> list[str]:
        return ["read:user", "user:email"]

    async def _authorize_endpoint(self) -> str:
        return f"{self.options.web_url.rstrip('/')}/login/oauth/authorize"

    async def _token_endpoint(self) -> str:
        return f"{self.options.web_url.rstrip('/')}/login/oauth/access_token"

    async def _userinfo_endpoint(self) -> str | None:
        return f"{self.options.api_url.rstrip('/')}/user"

    async def fetch_attributes(
        self,
        tokens: dict[str, Any],
        state: CallbackState,
    ) -> dict[str, Any]:
        """Fetch the user profile, falling back to the emails API for email."""
        access_token = tokens["access_token"]
        user_data = await self._get_userinfo(access_token)

        if user_data.get("email"):
            return user_data

        # Profile email is null when the user keeps it private
        async with self._get_client() as client:
            emails_response = await client.get(
                f"{self.options.api_url.rstrip('/')}/user/emails",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )

        # Missing user:email scope answers 403; keep the profile without email
        if emails_response.status_code != 200:
            return user_data

        try:
            emails = emails_response.json()
        except ValueError as e:
            raise UpstreamExchangeError(
                "GitHub emails request returned invalid JSON", provider_name=self.name
            ) from e
        if not isinstance(emails, list) or not all(isinstance(e, dict) for e in emails):
            raise UpstreamExchangeError(
                "GitHub emails request returned unexpected payload", provider_name=self.name
            )

        primary = next(
            (e for e in emails if e.get("primary") and e.get("verified") and e.get("email")),
            None,
        )
        if primary:
            user_data = {**user_data, "email": primary["email"]}

        return user_data


class GitHubFactory(ProviderFactory):
    """Factory for github providers."""

    @property
    def type(self) -> str:
        return "github"

    def create(
        self,
        name: str,
        options: DynamicOptions,
        state_store: StateStore,
    ) -> GitHubProvider:
        decoded = decode_options(GitHubOptions, options, name)
        return GitHubProvider(
            name,
            state_store,
            decoded,
            http_timeout=decoded.timeout_seconds or get_settings().http_timeout_seconds,
            transport=self.transport,
        )


register_factory(GitHubFactory())
