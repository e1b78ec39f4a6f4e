"""Generic OpenID Connect (OIDC) Provider.

Supports any OIDC-compliant identity provider:
- Keycloak
- Auth0
- Dex and other OAuth bridges in front of LDAP

Uses OIDC Discovery to auto-configure endpoints.
"""

import secrets
from typing import Any

import jwt
from pydantic import field_validator, model_validator

from identityprovider.base import ProviderFactory
from identityprovider.config import get_settings
from identityprovider.errors import StateValidationError, UpstreamExchangeError
from identityprovider.options import DynamicOptions, decode_options
from identityprovider.providers.generic_oauth2 import (
    GenericOAuth2Provider,
    OAuth2ClientOptions,
)
from identityprovider.registry import register_factory
from identityprovider.state import CallbackState, StateStore

DISCOVERY_PATH = "/.well-known/openid-configuration"


class OIDCOptions(OAuth2ClientOptions):
    """Options accepted by the oidc provider type.

    Either ``issuer`` or ``discovery_url`` is required. Explicit endpoint
    URLs take precedence over the discovery document.
    """

    issuer: str | None = None
    discovery_url: str | None = None
    authorize_url: str | None = None
    token_url: str | None = None
    userinfo_url: str | None = None

    # Always call the user-info endpoint, even when the ID token has a subject
    fetch_userinfo: bool = True

    @field_validator("issuer", "discovery_url", "authorize_url", "token_url", "userinfo_url")
    @classmethod
    def require_http_url(cls, value: str | None) -> str | None:
        if value is not None and not value.startswith(("https://", "http://")):
            raise ValueError("must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def require_discovery(self) -> "OIDCOptions":
        if not self.issuer and not self.discovery_url:
            raise ValueError("issuer or discovery_url is required")
        return self

    def get_discovery_url(self) -> str:
        return self.discovery_url or f"{self.issuer.rstrip('/')}{DISCOVERY_PATH}"


class OIDCProvider(GenericOAuth2Provider):
    """Generic OIDC provider implementation.

    Uses OIDC Discovery (.well-known/openid-configuration) for configuration
    and binds a nonce into each login attempt.
    """

    options: OIDCOptions

    def __init__(self, name: str, state_store: StateStore, options: OIDCOptions, **kwargs):
        super().__init__(name, state_store, options, **kwargs)
        self._discovery_cache: dict[str, Any] | None = None

    @property
    def provider_type(self) -> str:
        return "oidc"

    def _default_scopes(self) -> list[str]:
        return ["openid", "profile", "email"]

    def new_nonce(self) -> str | None:
        return secrets.token_urlsafe(16)

    async def _get_discovery(self) -> dict[str, Any]:
        """Fetch OIDC discovery document."""
        if self._discovery_cache:
            return self._discovery_cache

        async with self._get_client() as client:
            response = await client.get(self.options.get_discovery_url())
        self._discovery_cache = self._json(response, "OIDC discovery")
        return self._discovery_cache

    async def _discovered(self, key: str) -> str:
        discovery = await self._get_discovery()
        value = discovery.get(key)
        if not value:
            raise UpstreamExchangeError(
                f"OIDC discovery document has no {key}", provider_name=self.name
            )
        return value

    async def _authorize_endpoint(self) -> str:
        return self.options.authorize_url or await self._discovered("authorization_endpoint")

    async def _token_endpoint(self) -> str:
        return self.options.token_url or await self._discovered("token_endpoint")

    async def _userinfo_endpoint(self) -> str | None:
        if self.options.userinfo_url:
            return self.options.userinfo_url
        discovery = await self._get_discovery()
        return discovery.get("userinfo_endpoint")

    def _decode_id_token(self, id_token: str, state: CallbackState) -> dict[str, Any]:
        """Decode ID token claims and check audience, issuer and nonce.

        The token comes straight from the token endpoint over TLS, so its
        signature is not verified here.
        """
        try:
            claims = jwt.decode(id_token, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            raise UpstreamExchangeError("Invalid ID token", provider_name=self.name) from e

        audience = claims.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if self.client_id not in audiences:
            raise UpstreamExchangeError(
                "ID token was issued for another client", provider_name=self.name
            )

        if self.options.issuer and claims.get("iss") != self.options.issuer:
            raise UpstreamExchangeError(
                "ID token issuer does not match", provider_name=self.name
            )

        if state.nonce and claims.get("nonce") != state.nonce:
            raise StateValidationError("ID token nonce mismatch", provider_name=self.name)

        return claims

    async def fetch_attributes(
        self,
        tokens: dict[str, Any],
        state: CallbackState,
    ) -> dict[str, Any]:
        """Collect claims from the ID token and the user-info endpoint."""
        claims: dict[str, Any] = {}
        if tokens.get("id_token"):
            claims = self._decode_id_token(tokens["id_token"], state)

        if self.options.fetch_userinfo or not claims.get("sub"):
            userinfo_url = await self._userinfo_endpoint()
            if userinfo_url:
                userinfo = await self._get_userinfo(tokens["access_token"])
                if claims.get("sub") and userinfo.get("sub") != claims["sub"]:
                    raise UpstreamExchangeError(
                        "User info subject does not match ID token",
                        provider_name=self.name,
                    )
                claims = {**claims, **userinfo}

        if not claims:
            raise UpstreamExchangeError(
                "No ID token or user info returned", provider_name=self.name
            )
        return claims


class OIDCFactory(ProviderFactory):
    """Factory for oidc providers."""

    @property
    def type(self) -> str:
        return "oidc"

    def create(
        self,
        name: str,
        options: DynamicOptions,
        state_store: StateStore,
    ) -> OIDCProvider:
        decoded = decode_options(OIDCOptions, options, name)
        return OIDCProvider(
            name,
            state_store,
            decoded,
            http_timeout=decoded.timeout_seconds or get_settings().http_timeout_seconds,
            transport=self.transport,
        )


register_factory(OIDCFactory())
