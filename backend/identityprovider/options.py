"""Provider configuration records.

Options are an opaque, type-tagged blob. Each factory decodes them into its
own pydantic model at construction time, so malformed options surface as a
ProviderConstructionError instead of failing deep inside request handling.
"""

from typing import Any, Mapping, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from identityprovider.errors import ProviderConstructionError

DynamicOptions = Mapping[str, Any]

OptionsT = TypeVar("OptionsT", bound=BaseModel)


class ProviderConfig(BaseModel):
    """One configured provider as supplied by the configuration store."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)  # Operator-chosen, used in callback routing
    type: str = Field(min_length=1)  # Selects the factory
    options: dict[str, Any] = Field(default_factory=dict)


def decode_options(model: type[OptionsT], options: DynamicOptions, provider_name: str) -> OptionsT:
    """Decode dynamic options into a provider's typed options model.

    Raises:
        ProviderConstructionError: If the options do not validate
    """
    try:
        return model.model_validate(dict(options))
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "options" for err in e.errors())
        raise ProviderConstructionError(
            f"Invalid options for provider {provider_name}: {fields}",
            provider_name=provider_name,
        ) from e
