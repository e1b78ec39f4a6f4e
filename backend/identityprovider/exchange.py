"""Login attempt state machine.

    INITIATED -> AWAITING_CALLBACK -> EXCHANGING -> SUCCEEDED
                                                 -> FAILED

Any non-terminal phase may also move straight to FAILED. Terminal phases
accept no further transitions; a failed attempt is never retried, the end
user starts a fresh login instead.
"""

import logging
from enum import Enum

from identityprovider.errors import IdentityProviderError, InvalidTransitionError
from identityprovider.identity import Identity

logger = logging.getLogger(__name__)


class ExchangePhase(str, Enum):
    """Phases of one login attempt."""

    INITIATED = "initiated"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExchangePhase.SUCCEEDED, ExchangePhase.FAILED)


_TRANSITIONS = {
    ExchangePhase.INITIATED: {ExchangePhase.AWAITING_CALLBACK, ExchangePhase.FAILED},
    ExchangePhase.AWAITING_CALLBACK: {ExchangePhase.EXCHANGING, ExchangePhase.FAILED},
    ExchangePhase.EXCHANGING: {ExchangePhase.SUCCEEDED, ExchangePhase.FAILED},
    ExchangePhase.SUCCEEDED: set(),
    ExchangePhase.FAILED: set(),
}


class ExchangeAttempt:
    """Tracks the phase of a single login attempt."""

    def __init__(
        self,
        provider_name: str,
        phase: ExchangePhase = ExchangePhase.INITIATED,
    ):
        self.provider_name = provider_name
        self.phase = phase
        self.identity: Identity | None = None
        self.error: BaseException | None = None

    def transition(self, target: ExchangePhase) -> None:
        if target not in _TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"Cannot move login attempt from {self.phase.value} to {target.value}"
            )
        logger.debug(
            f"Login attempt for {self.provider_name}: {self.phase.value} -> {target.value}"
        )
        self.phase = target

    def succeed(self, identity: Identity) -> Identity:
        self.transition(ExchangePhase.SUCCEEDED)
        self.identity = identity
        return identity

    def fail(self, error: BaseException) -> None:
        self.transition(ExchangePhase.FAILED)
        self.error = error
        if isinstance(error, IdentityProviderError):
            logger.warning(
                f"Login via {self.provider_name} failed: "
                f"{type(error).__name__}: {error.message}"
            )
        else:
            logger.warning(f"Login via {self.provider_name} failed: {type(error).__name__}")
