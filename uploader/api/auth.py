"""
GitHub OAuth and session endpoints.

The router is mounted under both ``/auth`` (browser OAuth redirects) and
``/api/auth`` (JSON endpoints used by the front end).

Rate limit: ``rate_limit_auth`` per IP on the OAuth start and callback.
"""

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import RedirectResponse

from uploader.api.deps import (
    GitHubClientFactory,
    get_app_settings,
    get_current_session,
    get_github_client_factory,
    get_github_oauth,
    get_optional_session,
    get_session_store,
)
from uploader.core.config import Settings
from uploader.core.errors import UploaderError, UpstreamAuthError, UpstreamError
from uploader.core.limiter import limiter, settings_limit
from uploader.core.logging_config import log_authentication_attempt, log_security_event
from uploader.core.security import (
    generate_oauth_state,
    get_client_ip,
    is_https_request,
    mask_sensitive_data,
    verify_oauth_state,
)
from uploader.core.utils.session_store import Session, SessionStore
from uploader.services.github_client import GitHubClient, GitHubOAuth

logger = logging.getLogger(__name__)

router = APIRouter()

OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_STATE_MAX_AGE = 600


def _error_redirect(message: str) -> RedirectResponse:
    return RedirectResponse(url=f"/?auth=error&message={quote(message)}", status_code=302)


def _secure_cookies(request: Request, settings: Settings) -> bool:
    return settings.is_production or is_https_request(request)


def _unauthenticated() -> dict:
    return {"success": True, "data": {"authenticated": False, "user": None}}


@router.get("/github")
@limiter.limit(settings_limit("rate_limit_auth"))
async def start_github_login(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    oauth: GitHubOAuth = Depends(get_github_oauth),
):
    """Redirect the browser to GitHub's authorization page."""
    if not settings.github_client_id:
        logger.error("GitHub OAuth is not configured (GITHUB_CLIENT_ID missing)")
        return _error_redirect("Failed to start authentication")

    state = generate_oauth_state()
    response = RedirectResponse(url=oauth.authorization_url(state), status_code=302)
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        state,
        max_age=OAUTH_STATE_MAX_AGE,
        httponly=True,
        samesite="lax",
        secure=_secure_cookies(request, settings),
    )
    return response


@router.get("/github/callback")
@limiter.limit(settings_limit("rate_limit_auth"))
async def github_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    settings: Settings = Depends(get_app_settings),
    store: SessionStore = Depends(get_session_store),
    oauth: GitHubOAuth = Depends(get_github_oauth),
):
    """
    Complete the OAuth web flow.

    Verifies the state cookie, exchanges the code for an access token,
    creates a session and sets the session cookie. Every failure redirects
    to the front page with ``auth=error``.
    """
    client_ip = get_client_ip(request)

    if error:
        logger.info(f"GitHub authorization was not granted: {error}")
        return _error_redirect(error_description or "GitHub authentication was cancelled")

    if not code or not state:
        return _error_redirect("Invalid authentication parameters")

    expected_state = request.cookies.get(OAUTH_STATE_COOKIE)
    if not verify_oauth_state(expected_state, state):
        log_security_event(
            "oauth_state_mismatch",
            "OAuth callback state did not match the state cookie",
            level="warning",
            ip_address=client_ip,
            extra_data=mask_sensitive_data(
                {"received_state": state, "cookie_state": expected_state}, sensitive_keys=["state"]
            ),
        )
        return _error_redirect("Invalid authentication state")

    try:
        access_token = await oauth.exchange_code(code)
        async with GitHubClient.from_settings(settings, access_token, transport=oauth.transport) as client:
            user = await client.get_authenticated_user()
    except UploaderError as e:
        logger.error(f"OAuth callback failed: {e.message}")
        log_authentication_attempt(False, ip_address=client_ip)
        return _error_redirect("Authentication failed")

    session_id = store.create_session(user.id, user.login, access_token)
    token = store.generate_jwt(session_id)
    log_authentication_attempt(True, user_id=user.login, ip_address=client_ip)

    response = RedirectResponse(url="/?auth=success", status_code=302)
    response.delete_cookie(OAUTH_STATE_COOKIE)
    response.set_cookie(
        settings.session_cookie_name,
        token,
        max_age=int(settings.session_max_age_seconds),
        httponly=True,
        samesite="lax",
        secure=_secure_cookies(request, settings),
    )
    return response


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    session: Optional[Session] = Depends(get_optional_session),
    settings: Settings = Depends(get_app_settings),
    store: SessionStore = Depends(get_session_store),
):
    if session is not None:
        store.destroy_session(session.session_id)
        log_security_event(
            "logout", f"User {session.login} logged out", user_id=session.login, ip_address=get_client_ip(request)
        )

    response.delete_cookie(settings.session_cookie_name)
    return {"success": True, "message": "Logged out"}


@router.get("/status")
async def auth_status(
    response: Response,
    session: Optional[Session] = Depends(get_optional_session),
    settings: Settings = Depends(get_app_settings),
    store: SessionStore = Depends(get_session_store),
    client_factory: GitHubClientFactory = Depends(get_github_client_factory),
):
    """
    Report whether the caller is logged in.

    The access token is re-checked against GitHub; a rejected token ends the
    session.
    """
    if session is None:
        return _unauthenticated()

    try:
        async with client_factory(session) as client:
            user = await client.get_authenticated_user()
    except (UpstreamAuthError, UpstreamError) as e:
        logger.info(f"Upstream credential check failed, ending session: {e.message}")
        store.destroy_session(session.session_id)
        response.delete_cookie(settings.session_cookie_name)
        return _unauthenticated()

    return {"success": True, "data": {"authenticated": True, "user": user.summary()}}


@router.get("/profile")
async def profile(
    session: Session = Depends(get_current_session),
    client_factory: GitHubClientFactory = Depends(get_github_client_factory),
):
    async with client_factory(session) as client:
        user = await client.get_authenticated_user()
    return {"success": True, "data": {"user": user.model_dump()}}
