"""
Shared FastAPI dependencies: settings, session store and the current session.

Components live on ``app.state`` (set up by ``uploader.main.create_app``) and
are handed to route functions through these dependencies.
"""

import logging
from typing import Callable, Optional

import httpx
from fastapi import Depends, Request

from uploader.core.config import Settings
from uploader.core.errors import AuthenticationError
from uploader.core.logging_config import log_security_event
from uploader.core.security import get_client_ip
from uploader.core.utils.session_store import Session, SessionEncryptionError, SessionStore
from uploader.services.github_client import GitHubClient, GitHubOAuth

logger = logging.getLogger(__name__)

GitHubClientFactory = Callable[[Session], GitHubClient]


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def _github_transport(request: Request) -> Optional[httpx.AsyncBaseTransport]:
    return getattr(request.app.state, "github_transport", None)


def get_github_client_factory(
    request: Request, settings: Settings = Depends(get_app_settings)
) -> GitHubClientFactory:
    """Build GitHub clients bound to a session's access token."""
    transport = _github_transport(request)

    def factory(session: Session) -> GitHubClient:
        return GitHubClient.from_settings(
            settings,
            session.access_token.get_secret_value(),
            owner=session.login,
            transport=transport,
        )

    return factory


def get_github_oauth(request: Request, settings: Settings = Depends(get_app_settings)) -> GitHubOAuth:
    return GitHubOAuth(settings, transport=_github_transport(request))


def extract_session_token(request: Request, cookie_name: str) -> Optional[str]:
    """Bearer token from the Authorization header, else the session cookie."""
    auth_header = request.headers.get("authorization", "")
    scheme, _, credentials = auth_header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(cookie_name)


def resolve_session(request: Request, settings: Settings, store: SessionStore) -> Optional[Session]:
    """
    Resolve the request's session, or None when unauthenticated.

    A valid lookup slides the session's expiry forward. A record whose stored
    token cannot be decrypted is destroyed.
    """
    token = extract_session_token(request, settings.session_cookie_name)
    if not token:
        return None

    session_id = store.verify_jwt(token)
    if not session_id:
        log_security_event(
            "invalid_token",
            "Rejected an invalid or expired session token",
            level="warning",
            ip_address=get_client_ip(request),
        )
        return None

    try:
        session = store.get_session(session_id)
    except SessionEncryptionError:
        logger.error("Stored access token could not be decrypted; destroying session")
        store.destroy_session(session_id)
        return None

    if session is None:
        return None

    store.refresh_session(session_id)
    return session


def get_optional_session(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    store: SessionStore = Depends(get_session_store),
) -> Optional[Session]:
    return resolve_session(request, settings, store)


def get_current_session(session: Optional[Session] = Depends(get_optional_session)) -> Session:
    """Require an authenticated session; responds 401 UNAUTHORIZED otherwise."""
    if session is None:
        raise AuthenticationError("Login required")
    return session
