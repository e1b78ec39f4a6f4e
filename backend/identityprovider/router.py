"""OAuth callback router.

Resolves a configured provider by name and drives the login flow:
- GET /oauth/providers: configured provider names
- GET /oauth/login/{name}: redirect to the upstream authorization page
- GET /oauth/callback/{name}: exchange the callback for an Identity

Session issuance happens downstream; this router returns the normalized
identity. Failures are logged with their classification, the browser only
sees a generic message and a status code.
"""

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse

from identityprovider.base import CallbackRequest, OAuthProvider
from identityprovider.config import get_settings
from identityprovider.errors import IdentityProviderError
from identityprovider.limiter import limiter
from identityprovider.manager import ProviderManager, get_provider_manager

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/oauth", tags=["oauth"])

LOGIN_FAILED = "Login failed"


def get_manager() -> ProviderManager:
    """Dependency returning the provider manager."""
    return get_provider_manager()


def _resolve(manager: ProviderManager, name: str) -> OAuthProvider:
    provider = manager.get(name)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown or unconfigured provider: {name}",
        )
    return provider


def _login_failed(error: IdentityProviderError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=LOGIN_FAILED)


@router.get("/providers")
async def list_configured_providers(manager: ProviderManager = Depends(get_manager)):
    """List configured identity providers."""
    return {
        "providers": [
            {"name": name, "type": provider.provider_type}
            for name, provider in sorted(manager.providers().items())
        ]
    }


@router.get("/login/{name}")
@limiter.limit(settings.login_rate_limit)
async def oauth_login(
    name: str,
    request: Request,
    manager: ProviderManager = Depends(get_manager),
):
    """Start a login with the named provider."""
    provider = _resolve(manager, name)

    session_id = request.cookies.get(settings.session_cookie_name) or secrets.token_urlsafe(32)
    redirect_uri = f"{settings.backend_url}{router.prefix}/callback/{name}"

    try:
        redirect = await provider.begin_login(redirect_uri, session_id=session_id)
    except IdentityProviderError as e:
        raise _login_failed(e) from e

    response = RedirectResponse(redirect.url)
    # Lax so the cookie survives the top-level redirect back from the provider
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session_id,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.state_ttl_seconds,
    )
    return response


@router.get("/callback/{name}")
@limiter.limit(settings.login_rate_limit)
async def oauth_callback(
    name: str,
    request: Request,
    manager: ProviderManager = Depends(get_manager),
):
    """Handle the authorization callback from the named provider."""
    provider = _resolve(manager, name)
    callback = CallbackRequest.from_request(request, settings.session_cookie_name)

    try:
        identity = await provider.identity_exchange_callback(
            callback, timeout=settings.exchange_timeout_seconds
        )
    except IdentityProviderError as e:
        raise _login_failed(e) from e

    return {"identity": identity.to_dict()}
