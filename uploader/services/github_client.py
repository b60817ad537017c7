"""GitHub REST API client.

Implements the repository-writer capability used by the upload orchestrator
plus the OAuth code exchange and the account lookups the auth routes need.
All upstream failures are mapped onto the uploader error taxonomy.
"""

import base64
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, Field

from uploader.core.config import Settings
from uploader.core.errors import (
    FileWriteError,
    RepositoryCreationError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamRateLimitError,
)
from uploader.services.file_materializer import ENCODING_BASE64

logger = logging.getLogger(__name__)

USER_AGENT = "GitHub-Uploader-Service/1.0.0"
COMMITTER = {"name": "GitHub Uploader", "email": "noreply@github-uploader.com"}
DEFAULT_DESCRIPTION = "Project uploaded via GitHub Uploader"


class RepositoryDescriptor(BaseModel):
    id: int
    name: str
    full_name: str
    html_url: str
    clone_url: str = ""
    ssh_url: str = ""
    private: bool = False
    description: str = ""
    topics: List[str] = Field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""
    language: Optional[str] = None
    stargazers_count: int = 0
    forks_count: int = 0

    @classmethod
    def from_api(cls, data: Dict[str, Any], topics: Optional[List[str]] = None) -> "RepositoryDescriptor":
        return cls(
            id=data["id"],
            name=data["name"],
            full_name=data["full_name"],
            html_url=data["html_url"],
            clone_url=data.get("clone_url") or "",
            ssh_url=data.get("ssh_url") or "",
            private=bool(data.get("private")),
            description=data.get("description") or "",
            topics=topics if topics is not None else (data.get("topics") or []),
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
            language=data.get("language"),
            stargazers_count=data.get("stargazers_count") or 0,
            forks_count=data.get("forks_count") or 0,
        )


class CommitDescriptor(BaseModel):
    sha: str
    message: str
    url: str = ""


class GitHubUser(BaseModel):
    id: int
    login: str
    name: str
    email: str = ""
    avatar_url: str = ""
    bio: Optional[str] = None
    location: Optional[str] = None
    blog: Optional[str] = None
    company: Optional[str] = None
    public_repos: int = 0
    followers: int = 0
    following: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        return self.model_dump(include={"id", "login", "name", "email", "avatar_url"})


class RepositoryWriter(ABC):
    """Capability the orchestrator needs to publish a project.

    Implementations raise RepositoryCreationError, FileWriteError,
    UpstreamRateLimitError or UpstreamAuthError on failure.
    """

    @property
    @abstractmethod
    def owner(self) -> str:
        """Login of the account repositories are created under."""
        pass

    @abstractmethod
    async def repository_exists(self, owner: str, name: str) -> bool:
        pass

    @abstractmethod
    async def create_repository(
        self,
        name: str,
        description: str = "",
        private: bool = False,
        topics: Optional[List[str]] = None,
    ) -> RepositoryDescriptor:
        pass

    @abstractmethod
    async def write_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        message: str,
        encoding: str = "utf-8",
    ) -> CommitDescriptor:
        """Create a file; content is utf-8 text or base64 as given by encoding."""
        pass


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(payload, dict):
        message = payload.get("message") or response.reason_phrase
        errors = payload.get("errors")
        if errors:
            message = f"{message}: {errors}"
        return str(message)
    return response.reason_phrase


def _retry_after(response: httpx.Response) -> Optional[int]:
    header = response.headers.get("retry-after")
    if header and header.isdigit():
        return int(header)
    reset = response.headers.get("x-ratelimit-reset")
    if reset and reset.isdigit():
        return max(0, int(reset) - int(time.time()))
    return None


def raise_for_upstream(response: httpx.Response) -> None:
    """Raise the shared upstream errors (auth, rate limit); other statuses pass through."""
    if response.status_code == 401:
        raise UpstreamAuthError(details=_error_message(response))

    rate_limited = response.status_code == 429 or (
        response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"
    )
    if rate_limited:
        raise UpstreamRateLimitError(
            retry_after=_retry_after(response), details=_error_message(response)
        )


class GitHubClient(RepositoryWriter):
    """Async GitHub API client bound to one user's access token.

    Args:
        access_token: OAuth access token of the user
        api_url: GitHub REST base URL
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        access_token: str,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        owner: Optional[str] = None,
    ):
        self._owner = owner
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": USER_AGENT,
            },
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        access_token: str,
        owner: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "GitHubClient":
        return cls(
            access_token,
            api_url=settings.github_api_url,
            timeout=settings.github_request_timeout,
            transport=transport,
            owner=owner,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def owner(self) -> str:
        if not self._owner:
            raise UpstreamError("Repository owner is unknown; call get_authenticated_user first")
        return self._owner

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"GitHub API {method} {url} failed: {e}")
            raise UpstreamError(details=str(e)) from e

        raise_for_upstream(response)
        return response

    async def get_authenticated_user(self) -> GitHubUser:
        response = await self._request("GET", "/user")
        if response.status_code != 200:
            raise UpstreamError(
                "Failed to retrieve user information from GitHub",
                details=_error_message(response),
            )
        user = response.json()

        email = user.get("email") or ""
        emails_response = await self._request("GET", "/user/emails")
        if emails_response.status_code == 200:
            primary = next((item for item in emails_response.json() if item.get("primary")), None)
            if primary and primary.get("email"):
                email = primary["email"]
        else:
            logger.debug(f"Could not list user emails: HTTP {emails_response.status_code}")

        self._owner = user["login"]
        return GitHubUser(
            id=user["id"],
            login=user["login"],
            name=user.get("name") or user["login"],
            email=email,
            avatar_url=user.get("avatar_url") or "",
            bio=user.get("bio"),
            location=user.get("location"),
            blog=user.get("blog"),
            company=user.get("company"),
            public_repos=user.get("public_repos") or 0,
            followers=user.get("followers") or 0,
            following=user.get("following") or 0,
            created_at=user.get("created_at"),
            updated_at=user.get("updated_at"),
        )

    async def repository_exists(self, owner: str, name: str) -> bool:
        response = await self._request("GET", f"/repos/{quote(owner)}/{quote(name)}")
        if response.status_code == 404:
            return False
        if response.status_code == 200:
            return True
        raise UpstreamError(
            f"Failed to check repository {owner}/{name}", details=_error_message(response)
        )

    async def create_repository(
        self,
        name: str,
        description: str = "",
        private: bool = False,
        topics: Optional[List[str]] = None,
    ) -> RepositoryDescriptor:
        response = await self._request(
            "POST",
            "/user/repos",
            json={
                "name": name,
                "description": description or DEFAULT_DESCRIPTION,
                "private": private,
                "auto_init": False,
                "has_issues": True,
                "has_projects": True,
                "has_wiki": True,
            },
        )
        if response.status_code != 201:
            detail = _error_message(response)
            logger.error(f"Repository creation failed: {detail}")
            raise RepositoryCreationError(details=detail)

        data = response.json()
        owner = data.get("owner", {}).get("login") or self._owner
        applied_topics = list(topics or [])

        if applied_topics and owner:
            topics_response = await self._request(
                "PUT",
                f"/repos/{quote(owner)}/{quote(data['name'])}/topics",
                json={"names": applied_topics},
            )
            if topics_response.status_code != 200:
                # Topics are cosmetic; the repository itself exists
                logger.warning(f"Failed to set topics: {_error_message(topics_response)}")

        logger.info(f"Repository created: {data.get('full_name')}")
        return RepositoryDescriptor.from_api(data, topics=applied_topics)

    async def write_file(
        self,
        owner: str,
        repo: str,
        path: str,
        content: str,
        message: str,
        encoding: str = "utf-8",
    ) -> CommitDescriptor:
        if encoding == ENCODING_BASE64:
            encoded = content
        else:
            encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")

        try:
            response = await self._request(
                "PUT",
                f"/repos/{quote(owner)}/{quote(repo)}/contents/{quote(path, safe='/')}",
                json={"message": message, "content": encoded, "committer": COMMITTER},
            )
        except UpstreamError as e:
            # Transport failures belong to this file; rate limit and auth errors still propagate
            raise FileWriteError(path, details=e.details) from e
        if response.status_code not in (200, 201):
            raise FileWriteError(path, details=_error_message(response))

        commit = response.json().get("commit", {})
        return CommitDescriptor(
            sha=commit.get("sha", ""),
            message=commit.get("message") or message,
            url=commit.get("html_url") or "",
        )

    async def list_repositories(self, page: int = 1, per_page: int = 30) -> List[RepositoryDescriptor]:
        response = await self._request(
            "GET",
            "/user/repos",
            params={"sort": "updated", "direction": "desc", "page": page, "per_page": per_page},
        )
        if response.status_code != 200:
            raise UpstreamError("Failed to get repositories", details=_error_message(response))
        return [RepositoryDescriptor.from_api(repo) for repo in response.json()]


class GitHubOAuth:
    """OAuth web-flow helpers for the configured GitHub application."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    def authorization_url(self, state: str) -> str:
        query = urlencode(
            {
                "client_id": self.settings.github_client_id,
                "redirect_uri": self.settings.oauth_redirect_uri,
                "scope": self.settings.github_oauth_scope,
                "state": state,
            }
        )
        return f"{self.settings.github_oauth_url.rstrip('/')}/authorize?{query}"

    async def exchange_code(self, code: str) -> str:
        """Trade an authorization code for an access token."""
        async with httpx.AsyncClient(
            timeout=self.settings.github_request_timeout, transport=self.transport
        ) as client:
            try:
                response = await client.post(
                    f"{self.settings.github_oauth_url.rstrip('/')}/access_token",
                    data={
                        "client_id": self.settings.github_client_id,
                        "client_secret": self.settings.github_client_secret,
                        "code": code,
                        "redirect_uri": self.settings.oauth_redirect_uri,
                    },
                    headers={"Accept": "application/json", "User-Agent": USER_AGENT},
                )
            except httpx.HTTPError as e:
                raise UpstreamError("Failed to reach GitHub OAuth", details=str(e)) from e

        try:
            payload = response.json() if response.status_code == 200 else {}
        except ValueError:
            payload = {}
        token = payload.get("access_token")
        if not token:
            detail = payload.get("error_description") or payload.get("error") or f"HTTP {response.status_code}"
            raise UpstreamAuthError("Failed to obtain an access token from GitHub", details=detail)
        return token
