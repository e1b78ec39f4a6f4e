"""Identity provider error taxonomy.

Configuration errors (unknown type, construction failure) are isolated to a
single provider entry. Exchange errors are terminal for one login attempt.
Registry errors are programming defects and are never caught by the core.
"""


class IdentityProviderError(Exception):
    """Base class for classified identity provider failures."""

    status_code: int = 500

    def __init__(self, message: str, provider_name: str | None = None):
        super().__init__(message)
        self.message = message
        self.provider_name = provider_name


class UnknownProviderTypeError(IdentityProviderError):
    """Configuration references a provider type nobody registered."""

    def __init__(self, provider_type: str, provider_name: str | None = None):
        super().__init__(
            f"Unknown provider type: {provider_type}",
            provider_name=provider_name,
        )
        self.provider_type = provider_type


class ProviderConstructionError(IdentityProviderError):
    """Factory rejected the provider options."""


class MalformedCallbackError(IdentityProviderError):
    """Callback request is missing code or state."""

    status_code = 400


class StateValidationError(IdentityProviderError):
    """State is unknown, reused, expired or bound to another login."""

    status_code = 401


class UpstreamExchangeError(IdentityProviderError):
    """Token or user-info call failed or returned invalid data."""

    status_code = 502


class ExchangeCancelledError(IdentityProviderError):
    """Exchange was cancelled or ran out of time."""

    status_code = 504


class StateStoreUnavailableError(IdentityProviderError):
    """Callback state backend could not be reached."""

    status_code = 503


class DuplicateProviderTypeError(RuntimeError):
    """A provider type was registered twice."""


class RegistryClosedError(RuntimeError):
    """Registration attempted after the registry was sealed."""


class InvalidTransitionError(RuntimeError):
    """Login attempt moved between phases in an illegal order."""
