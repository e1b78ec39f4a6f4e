"""Pluggable external identity providers.

Operators register OAuth2/OIDC identity sources by configuration. Each
configured provider exchanges an authorization callback for a normalized
Identity, regardless of which upstream issued it.
"""

from identityprovider.base import CallbackRequest, LoginRedirect, OAuthProvider, ProviderFactory
from identityprovider.errors import (
    DuplicateProviderTypeError,
    ExchangeCancelledError,
    IdentityProviderError,
    MalformedCallbackError,
    ProviderConstructionError,
    StateStoreUnavailableError,
    StateValidationError,
    UnknownProviderTypeError,
    UpstreamExchangeError,
)
from identityprovider.identity import Identity
from identityprovider.manager import ConfigureReport, ProviderManager, get_provider_manager
from identityprovider.options import ProviderConfig
from identityprovider.registry import default_registry, lookup_factory, register_factory

__all__ = [
    "CallbackRequest",
    "ConfigureReport",
    "DuplicateProviderTypeError",
    "ExchangeCancelledError",
    "Identity",
    "IdentityProviderError",
    "LoginRedirect",
    "MalformedCallbackError",
    "OAuthProvider",
    "ProviderConfig",
    "ProviderConstructionError",
    "ProviderFactory",
    "ProviderManager",
    "StateStoreUnavailableError",
    "StateValidationError",
    "UnknownProviderTypeError",
    "UpstreamExchangeError",
    "default_registry",
    "get_provider_manager",
    "lookup_factory",
    "register_factory",
]
