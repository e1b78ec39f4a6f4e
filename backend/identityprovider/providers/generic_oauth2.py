"""Generic OAuth 2.0 Provider.

Authorization code flow against any OAuth2 server with a user-info
endpoint, e.g. LDAP-backed OAuth bridges or in-house SSO.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from identityprovider.base import OAuthProvider, ProviderFactory
from identityprovider.config import get_settings
from identityprovider.identity import AttributeMapping
from identityprovider.options import DynamicOptions, decode_options
from identityprovider.registry import register_factory
from identityprovider.state import CallbackState, StateStore


class OAuth2ClientOptions(BaseModel):
    """Client options shared by OAuth2 based provider types."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    scopes: list[str] = Field(default_factory=list)

    # How client credentials are sent to the token endpoint
    token_auth_method: Literal["client_secret_post", "client_secret_basic"] = "client_secret_post"

    # Extra fixed parameters for the authorization URL (e.g. {"prompt": "login"})
    authorize_params: dict[str, str] = Field(default_factory=dict)

    # Candidate upstream attribute names per identity field
    attribute_mapping: dict[str, list[str]] | None = None

    timeout_seconds: float | None = Field(default=None, gt=0)


class GenericOAuth2Options(OAuth2ClientOptions):
    """Options accepted by the generic-oauth2 provider type."""

    authorize_url: str
    token_url: str
    userinfo_url: str

    @field_validator("authorize_url", "token_url", "userinfo_url")
    @classmethod
    def require_http_url(cls, value: str) -> str:
        if not value.startswith(("https://", "http://")):
            raise ValueError("must be an http(s) URL")
        return value


class GenericOAuth2Provider(OAuthProvider):
    """Generic OAuth2 provider implementation."""

    def __init__(
        self,
        name: str,
        state_store: StateStore,
        options: OAuth2ClientOptions,
        **kwargs,
    ):
        super().__init__(
            name,
            state_store,
            client_id=options.client_id,
            client_secret=options.client_secret,
            scopes=options.scopes,
            attribute_mapping=AttributeMapping.from_options(options.attribute_mapping),
            **kwargs,
        )
        self.options = options

    @property
    def provider_type(self) -> str:
        return "generic-oauth2"

    async def _authorize_endpoint(self) -> str:
        return self.options.authorize_url

    async def _token_endpoint(self) -> str:
        return self.options.token_url

    async def _userinfo_endpoint(self) -> str | None:
        return self.options.userinfo_url

    async def get_authorization_url(
        self,
        redirect_uri: str,
        state: CallbackState,
        **kwargs,
    ) -> str:
        """Generate authorization URL."""
        params: dict[str, Any] = dict(self.options.authorize_params)

        # Optional: prompt / login_hint and other per-request parameters
        params.update({k: v for k, v in kwargs.items() if v is not None})

        params.update({
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.get_scopes()) or None,
            "state": state.value,
            "nonce": state.nonce,
        })

        return self._build_url(await self._authorize_endpoint(), params)

    async def exchange_code(self, code: str, redirect_uri: str) -> dict[str, Any]:
        """Exchange code for tokens."""
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        auth = None
        if self.options.token_auth_method == "client_secret_basic":
            auth = (self.client_id, self.client_secret)
        else:
            data["client_id"] = self.client_id
            data["client_secret"] = self.client_secret

        token_url = await self._token_endpoint()
        async with self._get_client() as client:
            response = await client.post(
                token_url,
                data=data,
                auth=auth,
                headers={"Accept": "application/json"},
            )
        return self._json(response, "Token exchange")

    async def _get_userinfo(self, access_token: str) -> dict[str, Any]:
        userinfo_url = await self._userinfo_endpoint()
        async with self._get_client() as client:
            response = await client.get(
                userinfo_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        return self._json(response, "User info request")

    async def fetch_attributes(
        self,
        tokens: dict[str, Any],
        state: CallbackState,
    ) -> dict[str, Any]:
        """Fetch user info with the access token."""
        return await self._get_userinfo(tokens["access_token"])


class GenericOAuth2Factory(ProviderFactory):
    """Factory for generic-oauth2 providers."""

    @property
    def type(self) -> str:
        return "generic-oauth2"

    def create(
        self,
        name: str,
        options: DynamicOptions,
        state_store: StateStore,
    ) -> GenericOAuth2Provider:
        decoded = decode_options(GenericOAuth2Options, options, name)
        return GenericOAuth2Provider(
            name,
            state_store,
            decoded,
            http_timeout=decoded.timeout_seconds or get_settings().http_timeout_seconds,
            transport=self.transport,
        )


register_factory(GenericOAuth2Factory())
