"""
Upload endpoints.

POST /api/upload takes a multipart form (file, projectName,
projectDescription, isPrivate, topics) and returns the created repository
with upload statistics.

Rate limit: ``rate_limit_upload`` per IP on POST /api/upload.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from uploader.api.deps import (
    GitHubClientFactory,
    get_app_settings,
    get_current_session,
    get_github_client_factory,
)
from uploader.core.config import Settings
from uploader.core.limiter import limiter, settings_limit
from uploader.core.types.api import ErrorResponse
from uploader.core.utils.session_store import Session
from uploader.services.upload_orchestrator import UploadOrchestrator, UploadRequest, parse_topics

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    status: {"model": ErrorResponse}
    for status in (400, 401, 409, 422, 429, 502, 504)
}


def _form_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("true", "1", "on", "yes")


@router.post("", responses=ERROR_RESPONSES)
@limiter.limit(settings_limit("rate_limit_upload"))
async def upload_project(
    request: Request,
    file: Optional[UploadFile] = File(None),
    projectName: Optional[str] = Form(None),
    projectDescription: str = Form(""),
    isPrivate: Optional[str] = Form(None),
    topics: Optional[str] = Form(None),
    session: Session = Depends(get_current_session),
    settings: Settings = Depends(get_app_settings),
    client_factory: GitHubClientFactory = Depends(get_github_client_factory),
):
    """
    Create a GitHub repository from an uploaded .tar.gz archive.

    Errors are rendered by the application's UploaderError handler.
    """
    upload_request = UploadRequest(
        filename=file.filename if file is not None else None,
        project_name=projectName,
        description=projectDescription or "",
        is_private=_form_flag(isPrivate),
        topics=parse_topics(topics),
        declared_size=file.size if file is not None else None,
    )
    logger.info(f"Upload requested by {session.login}: {upload_request.filename}")

    async with client_factory(session) as client:
        orchestrator = UploadOrchestrator(settings, client)
        try:
            outcome = await orchestrator.run(upload_request, file.file if file is not None else None)
        finally:
            if file is not None:
                await file.close()

    return {"success": True, "data": outcome.to_response(), "message": outcome.message}


@router.get("/status/{upload_id}")
async def upload_status(upload_id: str, session: Session = Depends(get_current_session)):
    # Progress tracking is not implemented; every upload is reported complete
    return {
        "success": True,
        "data": {
            "uploadId": upload_id,
            "status": "completed",
            "progress": 100,
            "message": "Upload complete",
        },
    }


@router.get("/repositories")
async def list_repositories(
    session: Session = Depends(get_current_session),
    client_factory: GitHubClientFactory = Depends(get_github_client_factory),
):
    async with client_factory(session) as client:
        repositories = await client.list_repositories()

    return {
        "success": True,
        "data": {
            "repositories": [
                repo.model_dump(exclude={"clone_url", "ssh_url"}) for repo in repositories
            ]
        },
    }
