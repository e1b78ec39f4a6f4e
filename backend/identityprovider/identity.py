"""Normalized identity returned by a successful exchange.

All providers return data in this shape regardless of their native
user info structure.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from identityprovider.errors import UpstreamExchangeError

DEFAULT_ID_CLAIMS = ("sub", "id", "uid", "user_id")
DEFAULT_USERNAME_CLAIMS = ("preferred_username", "login", "username", "name")
DEFAULT_EMAIL_CLAIMS = ("email", "mail")


@dataclass(frozen=True)
class Identity:
    """Normalized identity of an upstream account."""

    provider_name: str  # Configured provider name, not its type
    external_id: str  # Stable subject identifier from the upstream provider
    username: str
    email: str | None = None

    # Upstream attributes that were not mapped onto the fields above
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.external_id:
            raise ValueError("external_id must not be empty")
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_name": self.provider_name,
            "external_id": self.external_id,
            "username": self.username,
            "email": self.email,
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class AttributeMapping:
    """Candidate upstream attribute names for each identity field.

    The first candidate present with a non-empty value wins.
    """

    external_id: tuple[str, ...] = DEFAULT_ID_CLAIMS
    username: tuple[str, ...] = DEFAULT_USERNAME_CLAIMS
    email: tuple[str, ...] = DEFAULT_EMAIL_CLAIMS

    @classmethod
    def from_options(cls, options: Mapping[str, list[str]] | None) -> "AttributeMapping":
        """Build a mapping from an options dict, keeping defaults for missing keys."""
        if not options:
            return cls()
        defaults = cls()
        return cls(
            external_id=tuple(options.get("external_id") or defaults.external_id),
            username=tuple(options.get("username") or defaults.username),
            email=tuple(options.get("email") or defaults.email),
        )


def _pick(attributes: Mapping[str, Any], candidates: tuple[str, ...]) -> tuple[str | None, Any]:
    for key in candidates:
        value = attributes.get(key)
        if value is not None and value != "":
            return key, value
    return None, None


def normalize_identity(
    provider_name: str,
    attributes: Mapping[str, Any],
    mapping: AttributeMapping | None = None,
) -> Identity:
    """Map heterogeneous upstream attributes onto an Identity.

    Args:
        provider_name: Configured provider name
        attributes: Raw user info / claims from the upstream provider
        mapping: Candidate attribute names (defaults cover OIDC and OAuth2 APIs)

    Returns:
        Normalized identity; unmapped attributes end up in ``extra``

    Raises:
        UpstreamExchangeError: If no stable subject identifier is present
    """
    mapping = mapping or AttributeMapping()

    id_key, external_id = _pick(attributes, mapping.external_id)
    if id_key is None:
        raise UpstreamExchangeError(
            "Upstream user info has no subject identifier",
            provider_name=provider_name,
        )
    external_id = str(external_id)

    username_key, username = _pick(attributes, mapping.username)
    email_key, email = _pick(attributes, mapping.email)

    consumed = {k for k in (id_key, username_key, email_key) if k is not None}
    extra = {k: v for k, v in attributes.items() if k not in consumed}

    return Identity(
        provider_name=provider_name,
        external_id=external_id,
        # Fall back to email, then the subject id
        username=str(username) if username is not None else (email or external_id),
        email=str(email) if email is not None else None,
        extra=extra,
    )
