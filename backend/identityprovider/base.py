"""Base OAuth Provider Interface.

Defines the contract that all identity providers must implement.

Each provider must implement:
- get_authorization_url(): Build the upstream authorization URL
- exchange_code(): Exchange authorization code for tokens
- fetch_attributes(): Fetch subject attributes with the obtained tokens

The base class drives the login attempt: it issues and consumes callback
state, enforces timeouts and cancellation, classifies failures and
normalizes attributes into an Identity.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urlencode

import httpx

from identityprovider.errors import (
    ExchangeCancelledError,
    MalformedCallbackError,
    UpstreamExchangeError,
)
from identityprovider.exchange import ExchangeAttempt, ExchangePhase
from identityprovider.identity import AttributeMapping, Identity, normalize_identity
from identityprovider.metrics import metrics
from identityprovider.options import DynamicOptions
from identityprovider.state import CallbackState, StateStore

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 10.0


@dataclass(frozen=True)
class CallbackRequest:
    """Inbound authorization callback as seen by a provider."""

    query: Mapping[str, str] = field(default_factory=dict)
    session_id: str | None = None  # Browser session the login was started from

    @property
    def code(self) -> str | None:
        return self.query.get("code") or None

    @property
    def state(self) -> str | None:
        return self.query.get("state") or None

    @property
    def error(self) -> str | None:
        return self.query.get("error") or None

    @classmethod
    def from_request(cls, request, session_cookie: str = "idp_session") -> "CallbackRequest":
        """Build from a Starlette/FastAPI request."""
        return cls(
            query=dict(request.query_params),
            session_id=request.cookies.get(session_cookie),
        )


@dataclass
class LoginRedirect:
    """Result of starting a login attempt."""

    url: str
    state: CallbackState
    attempt: ExchangeAttempt


class OAuthProvider(ABC):
    """Abstract base class for identity providers."""

    def __init__(
        self,
        name: str,
        state_store: StateStore,
        client_id: str,
        client_secret: str,
        scopes: list[str] | None = None,
        attribute_mapping: AttributeMapping | None = None,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self.state_store = state_store
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = scopes or []
        self.attribute_mapping = attribute_mapping or AttributeMapping()
        self.http_timeout = http_timeout
        self._transport = transport

    @property
    @abstractmethod
    def provider_type(self) -> str:
        """Registered type of this provider (e.g., 'generic-oauth2')."""
        pass

    @abstractmethod
    async def get_authorization_url(
        self,
        redirect_uri: str,
        state: CallbackState,
        **kwargs,
    ) -> str:
        """Generate the upstream authorization URL.

        Args:
            redirect_uri: Callback URL after authorization
            state: Issued callback state for this attempt
            **kwargs: Provider-specific parameters

        Returns:
            Full authorization URL to redirect the user to
        """
        pass

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> dict[str, Any]:
        """Exchange authorization code for tokens.

        Returns:
            Token response containing at least 'access_token'
        """
        pass

    @abstractmethod
    async def fetch_attributes(
        self,
        tokens: dict[str, Any],
        state: CallbackState,
    ) -> dict[str, Any]:
        """Fetch raw subject attributes from the upstream provider."""
        pass

    def _default_scopes(self) -> list[str]:
        return []

    def get_scopes(self) -> list[str]:
        """Configured scopes or provider defaults."""
        return self.scopes or self._default_scopes()

    def new_nonce(self) -> str | None:
        """Nonce to bind into the state; None for plain OAuth2."""
        return None

    def normalize(self, attributes: Mapping[str, Any]) -> Identity:
        return normalize_identity(self.name, attributes, self.attribute_mapping)

    def _get_client(self) -> httpx.AsyncClient:
        """Create a per-call HTTP client."""
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.http_timeout),
            transport=self._transport,
        )

    def _build_url(self, base_url: str, params: dict[str, Any]) -> str:
        query = urlencode({k: v for k, v in params.items() if v is not None})
        separator = "&" if "?" in base_url else "?"
        return f"{base_url}{separator}{query}"

    def _json(self, response: httpx.Response, what: str) -> dict[str, Any]:
        """Decode a successful JSON object response or raise UpstreamExchangeError."""
        if response.status_code != 200:
            logger.debug(f"{what} for {self.name} returned {response.status_code}: {response.text}")
            raise UpstreamExchangeError(
                f"{what} failed with HTTP {response.status_code}",
                provider_name=self.name,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamExchangeError(
                f"{what} returned invalid JSON", provider_name=self.name
            ) from e
        if not isinstance(data, dict):
            raise UpstreamExchangeError(
                f"{what} returned unexpected payload", provider_name=self.name
            )
        return data

    async def begin_login(
        self,
        redirect_uri: str,
        session_id: str | None = None,
        **kwargs,
    ) -> LoginRedirect:
        """Start a login attempt.

        Issues a fresh callback state bound to the session and builds the
        authorization redirect.

        Args:
            redirect_uri: Callback URL registered with the upstream provider
            session_id: Browser session to bind the attempt to
            **kwargs: Provider-specific authorization parameters

        Returns:
            Redirect URL, issued state and the attempt, now awaiting callback
        """
        attempt = ExchangeAttempt(self.name)
        try:
            state = await self.state_store.issue(
                provider_name=self.name,
                redirect_uri=redirect_uri,
                session_id=session_id,
                nonce=self.new_nonce(),
            )
            try:
                url = await self.get_authorization_url(redirect_uri, state, **kwargs)
            except BaseException:
                # The state never reaches the browser
                await self.state_store.discard(state.value)
                raise
        except httpx.HTTPError as e:
            error = UpstreamExchangeError(
                f"Could not prepare authorization: {type(e).__name__}",
                provider_name=self.name,
            )
            attempt.fail(error)
            raise error from e
        except BaseException as e:
            attempt.fail(e)
            raise
        attempt.transition(ExchangePhase.AWAITING_CALLBACK)
        return LoginRedirect(url=url, state=state, attempt=attempt)

    async def identity_exchange_callback(
        self,
        request: CallbackRequest,
        *,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        attempt: ExchangeAttempt | None = None,
    ) -> Identity:
        """Handle an authorization callback and exchange it for an Identity.

        Args:
            request: Callback carrying 'code' and 'state'
            timeout: Seconds before the exchange fails as cancelled
            cancel_event: Set by the caller to abandon the exchange
            attempt: Optional tracker, observed in AWAITING_CALLBACK

        Returns:
            Normalized identity of the upstream account

        Raises:
            MalformedCallbackError: Missing code or state
            StateValidationError: Unknown, reused, expired or foreign state
            UpstreamExchangeError: Token or user-info call failed
            ExchangeCancelledError: Timed out or cancelled by the caller
        """
        attempt = attempt or ExchangeAttempt(self.name, ExchangePhase.AWAITING_CALLBACK)
        try:
            with metrics.track_exchange(self.name):
                identity = await self._run_cancellable(
                    self._exchange(request, attempt), timeout, cancel_event
                )
        except BaseException as e:
            attempt.fail(e)
            raise
        logger.info(f"Login via {self.name} succeeded for subject {identity.external_id}")
        return attempt.succeed(identity)

    async def _exchange(self, request: CallbackRequest, attempt: ExchangeAttempt) -> Identity:
        attempt.transition(ExchangePhase.EXCHANGING)

        if not request.state or not (request.code or request.error):
            raise MalformedCallbackError(
                "Callback is missing code or state", provider_name=self.name
            )

        # State is checked before any upstream call, whatever the code says
        state = await self.state_store.consume(
            request.state, provider_name=self.name, session_id=request.session_id
        )

        if request.error:
            raise UpstreamExchangeError(
                f"Upstream denied authorization: {request.error}",
                provider_name=self.name,
            )

        try:
            tokens = await self.exchange_code(request.code, state.redirect_uri)
            if not tokens.get("access_token"):
                raise UpstreamExchangeError(
                    "Token response has no access_token", provider_name=self.name
                )
            attributes = await self.fetch_attributes(tokens, state)
        except httpx.HTTPError as e:
            raise UpstreamExchangeError(
                f"Upstream request failed: {type(e).__name__}",
                provider_name=self.name,
            ) from e

        return self.normalize(attributes)

    async def _run_cancellable(
        self,
        coro,
        timeout: float | None,
        cancel_event: asyncio.Event | None,
    ):
        task = asyncio.ensure_future(coro)
        waiters = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            for waiter in waiters:
                waiter.cancel()
            raise
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel_event is not None and cancel_event.is_set():
            raise ExchangeCancelledError("Exchange cancelled", provider_name=self.name)
        raise ExchangeCancelledError("Exchange timed out", provider_name=self.name)


class ProviderFactory(ABC):
    """Builds live providers of one type from dynamic options."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.transport = transport

    @property
    @abstractmethod
    def type(self) -> str:
        """Unique type of the provider."""
        pass

    @abstractmethod
    def create(
        self,
        name: str,
        options: DynamicOptions,
        state_store: StateStore,
    ) -> OAuthProvider:
        """Apply the dynamic options.

        Raises:
            ProviderConstructionError: If the options are rejected
        """
        pass
