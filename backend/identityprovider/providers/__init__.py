"""Built-in identity provider types.

Importing this package registers each type with the process-wide registry:
- generic-oauth2 (any OAuth2 server with a user-info endpoint)
- oidc (OpenID Connect with discovery) - Keycloak, Auth0, Dex
- github (GitHub and GitHub Enterprise Server)
"""

from identityprovider.providers.generic_oauth2 import (
    GenericOAuth2Factory,
    GenericOAuth2Options,
    GenericOAuth2Provider,
)
from identityprovider.providers.github import GitHubFactory, GitHubOptions, GitHubProvider
from identityprovider.providers.oidc import OIDCFactory, OIDCOptions, OIDCProvider

__all__ = [
    "GenericOAuth2Factory",
    "GenericOAuth2Options",
    "GenericOAuth2Provider",
    "GitHubFactory",
    "GitHubOptions",
    "GitHubProvider",
    "OIDCFactory",
    "OIDCOptions",
    "OIDCProvider",
]
