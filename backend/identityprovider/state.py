"""Callback state storage.

A CallbackState correlates an outbound authorization redirect with its
inbound callback. States are single use and time bounded. Consumption is
a single atomic take, so concurrent duplicate callbacks carrying the same
state yield at most one success.

Backends:
- In-memory storage (development/single instance)
- Redis storage (production/distributed)
"""

import asyncio
import hmac
import json
import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from redis.exceptions import RedisError

from identityprovider.config import Settings, get_settings
from identityprovider.errors import StateStoreUnavailableError, StateValidationError

logger = logging.getLogger(__name__)

STATE_BYTES = 32


@dataclass(frozen=True)
class CallbackState:
    """Issued state for one login attempt."""

    value: str
    provider_name: str
    session_id: str | None
    redirect_uri: str
    created_at: float  # Unix timestamp
    expires_at: float  # Unix timestamp
    nonce: str | None = None  # OIDC replay protection for the ID token

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "CallbackState":
        return cls(**json.loads(raw))


class StateStore(ABC):
    """Abstract backend for callback state storage."""

    def __init__(self, ttl_seconds: int = 300, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @abstractmethod
    async def _save(self, state: CallbackState) -> None:
        """Persist a freshly issued state."""
        pass

    @abstractmethod
    async def _take(self, value: str) -> Optional[CallbackState]:
        """Atomically remove and return a state, or None if absent."""
        pass

    async def issue(
        self,
        provider_name: str,
        redirect_uri: str,
        session_id: str | None = None,
        nonce: str | None = None,
    ) -> CallbackState:
        """Create and store a fresh state for a login attempt.

        Args:
            provider_name: Configured provider the login is started with
            redirect_uri: Callback URL sent to the upstream provider
            session_id: Browser session the attempt is bound to
            nonce: Optional OIDC nonce to verify in the ID token

        Returns:
            The issued state
        """
        now = self._clock()
        state = CallbackState(
            value=secrets.token_urlsafe(STATE_BYTES),
            provider_name=provider_name,
            session_id=session_id,
            redirect_uri=redirect_uri,
            created_at=now,
            expires_at=now + self.ttl_seconds,
            nonce=nonce,
        )
        await self._save(state)
        return state

    async def discard(self, value: str) -> None:
        """Drop an issued state that will never be sent upstream."""
        await self._take(value)

    async def consume(
        self,
        value: str,
        provider_name: str,
        session_id: str | None = None,
    ) -> CallbackState:
        """Validate and invalidate a state in one step.

        The state is removed before its bindings are checked, so a state
        presented with the wrong provider or session cannot be retried.

        Raises:
            StateValidationError: If the state is unknown, already used,
                expired, or bound to another provider or session
        """
        state = await self._take(value)
        if state is None:
            raise StateValidationError(
                "Unknown or already used state", provider_name=provider_name
            )
        if state.is_expired(self._clock()):
            raise StateValidationError("Expired state", provider_name=provider_name)
        if state.provider_name != provider_name:
            raise StateValidationError(
                "State was issued for another provider", provider_name=provider_name
            )
        if state.session_id is not None and not hmac.compare_digest(
            state.session_id, session_id or ""
        ):
            raise StateValidationError(
                "State is bound to another session", provider_name=provider_name
            )
        return state


class InMemoryStateStore(StateStore):
    """In-memory state storage.

    Suitable for development and single-instance deployments.
    """

    def __init__(self, ttl_seconds: int = 300, clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self._states: dict[str, CallbackState] = {}
        self._lock = asyncio.Lock()

    async def _save(self, state: CallbackState) -> None:
        async with self._lock:
            self._purge_expired()
            self._states[state.value] = state

    async def _take(self, value: str) -> Optional[CallbackState]:
        async with self._lock:
            return self._states.pop(value, None)

    def _purge_expired(self) -> None:
        now = self._clock()
        expired = [k for k, s in self._states.items() if s.is_expired(now)]
        for key in expired:
            del self._states[key]

    def __len__(self) -> int:
        return len(self._states)


class RedisStateStore(StateStore):
    """Redis-based state storage for distributed deployments.

    Uses Lua scripting for an atomic get-and-delete. Redis failures surface
    as StateStoreUnavailableError.
    """

    # Lua script for atomic consume
    TAKE_SCRIPT = """
    local value = redis.call('GET', KEYS[1])
    if value then
        redis.call('DEL', KEYS[1])
    end
    return value
    """

    KEY_PREFIX = "idp:state:"

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.time,
        client=None,
    ):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self._redis_url = redis_url
        self._redis = client
        self._take_script = None

    def _get_redis(self):
        if self._redis is None:
            import redis.asyncio as redis

            self._redis = redis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        if self._take_script is None:
            # Reloads itself on NOSCRIPT after a Redis restart or SCRIPT FLUSH
            self._take_script = self._redis.register_script(self.TAKE_SCRIPT)
        return self._redis

    async def _save(self, state: CallbackState) -> None:
        redis = self._get_redis()
        try:
            await redis.set(
                f"{self.KEY_PREFIX}{state.value}",
                state.to_json(),
                ex=self.ttl_seconds,
                nx=True,
            )
        except RedisError as e:
            raise StateStoreUnavailableError(
                f"Cannot store callback state: {type(e).__name__}",
                provider_name=state.provider_name,
            ) from e

    async def _take(self, value: str) -> Optional[CallbackState]:
        self._get_redis()
        try:
            raw = await self._take_script(keys=[f"{self.KEY_PREFIX}{value}"])
        except RedisError as e:
            raise StateStoreUnavailableError(
                f"Cannot consume callback state: {type(e).__name__}"
            ) from e
        if raw is None:
            return None
        return CallbackState.from_json(raw)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._take_script = None


def create_state_store(settings: Settings | None = None) -> StateStore:
    """Create the configured state store backend."""
    settings = settings or get_settings()
    if settings.state_backend == "redis":
        if not settings.redis_url:
            raise ValueError("IDP_REDIS_URL is required for the redis state backend")
        logger.info("Using Redis callback state store")
        return RedisStateStore(
            redis_url=settings.redis_url,
            ttl_seconds=settings.state_ttl_seconds,
        )
    if settings.state_backend != "memory":
        raise ValueError(f"Unknown state backend: {settings.state_backend}")
    return InMemoryStateStore(ttl_seconds=settings.state_ttl_seconds)
