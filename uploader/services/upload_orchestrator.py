"""
Upload pipeline: archive in, populated GitHub repository out.

    validate -> persist -> extract -> materialize -> resolve name
    -> create repository -> write files -> ensure README -> report

Temporary files are removed on every exit path. Blocking filesystem work
runs in the threadpool and the whole run is bounded by
``upload_timeout_seconds``. On timeout the in-flight threadpool step is told
to stop and awaited before cleanup, so nothing writes into the workspace
after it has been removed.
"""

import asyncio
import json
import logging
import re
import secrets
import shutil
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from uploader.core.config import Settings
from uploader.core.errors import (
    FileWriteError,
    NameCollisionExhausted,
    OperationCancelled,
    UploaderError,
    UploadTimeoutError,
    ValidationError,
)
from uploader.services import file_rules
from uploader.services.archive_extractor import ArchiveExtractor, ExtractionReport
from uploader.services.file_materializer import FileEntry, get_project_stats, materialize
from uploader.services.github_client import RepositoryDescriptor, RepositoryWriter

logger = logging.getLogger(__name__)

PROJECT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
MAX_PROJECT_NAME_LENGTH = 100
ARCHIVE_SUFFIXES = (".tar.gz", ".tgz")
COPY_CHUNK_SIZE = 1024 * 1024


class UploadState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    PERSISTED = "persisted"
    EXTRACTED = "extracted"
    MATERIALIZED = "materialized"
    NAME_RESOLVED = "name_resolved"
    REPOSITORY_CREATED = "repository_created"
    FILES_WRITTEN = "files_written"
    README_ENSURED = "readme_ensured"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadRequest(BaseModel):
    """Fields of the upload form, before validation."""

    filename: Optional[str] = None
    project_name: Optional[str] = None
    description: str = ""
    is_private: bool = False
    topics: List[str] = Field(default_factory=list)
    declared_size: Optional[int] = None


class FileWriteResult(BaseModel):
    path: str
    success: bool
    commit_sha: Optional[str] = None
    error: Optional[str] = None


class BatchReport(BaseModel):
    """Per-file outcome of writing a project into the repository."""

    results: List[FileWriteResult] = Field(default_factory=list)

    @property
    def uploaded_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed_paths(self) -> List[str]:
        return [result.path for result in self.results if not result.success]


class UploadOutcome(BaseModel):
    repository: RepositoryDescriptor
    project_name: str
    requested_name: str
    total_files: int
    uploaded_files: int
    total_size: int
    processing_time: int
    readme_generated: bool = False
    failed_files: List[str] = Field(default_factory=list)
    stats: Dict[str, Any] = Field(default_factory=dict)

    @property
    def renamed(self) -> bool:
        return self.project_name != self.requested_name

    @property
    def message(self) -> str:
        if self.renamed:
            return (
                f'Project uploaded successfully as "{self.project_name}" '
                f'because "{self.requested_name}" already exists'
            )
        return "Project uploaded successfully"

    def to_response(self) -> Dict[str, Any]:
        repo = self.repository
        return {
            "success": True,
            "project_name": self.project_name,
            "renamed": self.renamed,
            "repository": {
                "id": repo.id,
                "name": repo.name,
                "full_name": repo.full_name,
                "html_url": repo.html_url,
                "clone_url": repo.clone_url,
                "ssh_url": repo.ssh_url,
                "private": repo.private,
                "description": repo.description,
                "topics": repo.topics,
                "created_at": repo.created_at,
                "updated_at": repo.updated_at,
            },
            "upload_stats": {
                "total_files": self.total_files,
                "uploaded_files": self.uploaded_files,
                "total_size": self.total_size,
                "processing_time": self.processing_time,
                "failed_files": self.failed_files,
                "readme_generated": self.readme_generated,
                "languages": self.stats.get("languages", []),
                "file_types": self.stats.get("file_types", {}),
            },
        }


def parse_topics(raw: Optional[str]) -> List[str]:
    """Accept a JSON list or a comma-separated string; blank items are dropped."""
    if not raw or not raw.strip():
        return []

    items: List[Any]
    try:
        parsed = json.loads(raw)
        items = parsed if isinstance(parsed, list) else raw.split(",")
    except ValueError:
        items = raw.split(",")

    return [str(item).strip() for item in items if str(item).strip()]


def is_valid_project_name(name: Optional[str]) -> bool:
    if not name or len(name) > MAX_PROJECT_NAME_LENGTH:
        return False
    if not PROJECT_NAME_PATTERN.match(name):
        return False
    return not (name.startswith((".", "-")) or name.endswith((".", "-")))


def is_valid_archive_filename(filename: str) -> bool:
    return filename.lower().endswith(ARCHIVE_SUFFIXES)


def validate_upload(request: UploadRequest, max_upload_size: int) -> None:
    """Reject bad input before anything touches disk or GitHub."""
    if not request.filename:
        raise ValidationError("No file was selected", code="NO_FILE")

    if not is_valid_project_name(request.project_name):
        raise ValidationError(
            "Invalid project name. Use letters, digits, hyphens, underscores and dots only",
            code="INVALID_PROJECT_NAME",
        )

    if not is_valid_archive_filename(request.filename):
        raise ValidationError(
            "Unsupported file type. Please select a .tar.gz or .tgz file",
            code="INVALID_FILE_TYPE",
        )

    if request.declared_size is not None and request.declared_size > max_upload_size:
        raise ValidationError(_too_large_message(max_upload_size), code="FILE_TOO_LARGE")


def _too_large_message(max_upload_size: int) -> str:
    return f"File is too large. Please select a file of {max_upload_size // (1024 * 1024)}MB or less"


def generate_readme(project_name: str, description: str = "", topics: Optional[List[str]] = None) -> str:
    today = datetime.now(timezone.utc).date().isoformat()

    lines = [f"# {project_name}", ""]
    if description:
        lines += [description, ""]
    if topics:
        lines += ["## Topics", ""]
        lines += [f"- {topic}" for topic in topics]
        lines.append("")

    lines += [
        "## Overview",
        "",
        "This project was uploaded with GitHub Uploader.",
        "",
        "## Installation",
        "",
        "```bash",
        f"git clone https://github.com/[username]/{project_name}.git",
        f"cd {project_name}",
        "```",
        "",
        "## Usage",
        "",
        "Describe how to use the project here.",
        "",
        "## License",
        "",
        "Describe the license of the project here.",
        "",
        "---",
        "",
        f"*This README was generated automatically on {today}.*",
        "",
    ]
    return "\n".join(lines)


class UploadOrchestrator:
    """
    Runs one upload against a repository writer.

    Args:
        settings: Application settings (limits, temp dir, timeout)
        writer: Repository-writer capability bound to the uploading user
    """

    def __init__(self, settings: Settings, writer: RepositoryWriter):
        self.settings = settings
        self.writer = writer
        self.extractor = ArchiveExtractor(settings.extraction_limits)
        self.state = UploadState.RECEIVED
        self.upload_id = secrets.token_hex(8)
        self._cancel = threading.Event()
        self._blocking: Optional[asyncio.Future] = None

    def _transition(self, state: UploadState) -> None:
        logger.debug(f"Upload {self.upload_id}: {self.state.value} -> {state.value}")
        self.state = state

    async def run(self, request: UploadRequest, source: Optional[BinaryIO]) -> UploadOutcome:
        """
        Execute the full pipeline.

        Raises:
            ValidationError: Bad form input; nothing was written
            UploadTimeoutError: The run exceeded upload_timeout_seconds
            UploaderError: Any other pipeline failure (extraction, naming, upstream)
        """
        started = time.perf_counter()
        try:
            validate_upload(request, self.settings.max_upload_size)
        except ValidationError:
            self._transition(UploadState.FAILED)
            raise
        self._transition(UploadState.VALIDATED)

        archive_path, extract_dir = self._workspace_paths()
        try:
            return await asyncio.wait_for(
                self._pipeline(request, source, archive_path, extract_dir, started),
                timeout=self.settings.upload_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            self._transition(UploadState.FAILED)
            logger.error(f"Upload {self.upload_id} timed out")
            raise UploadTimeoutError() from e
        except Exception:
            self._transition(UploadState.FAILED)
            raise
        finally:
            self._cancel.set()
            await self._drain_blocking()
            await run_in_threadpool(self._cleanup, archive_path, extract_dir)

    async def _pipeline(
        self,
        request: UploadRequest,
        source: BinaryIO,
        archive_path: Path,
        extract_dir: Path,
        started: float,
    ) -> UploadOutcome:
        archive_size = await self._in_thread(self._persist, source, archive_path)
        self._transition(UploadState.PERSISTED)
        logger.info(f"File uploaded: {request.filename} ({archive_size} bytes) -> {archive_path}")

        report: ExtractionReport = await self._in_thread(
            self.extractor.extract, archive_path, extract_dir, self._cancel
        )
        self._transition(UploadState.EXTRACTED)

        files: List[FileEntry] = await self._in_thread(materialize, report.paths, extract_dir)
        self._transition(UploadState.MATERIALIZED)

        owner = self.writer.owner
        requested_name = request.project_name or ""
        final_name = await self.resolve_repository_name(owner, requested_name)
        self._transition(UploadState.NAME_RESOLVED)

        repository = await self.writer.create_repository(
            final_name,
            description=request.description,
            private=request.is_private,
            topics=request.topics,
        )
        self._transition(UploadState.REPOSITORY_CREATED)

        batch = await self.write_files(owner, repository.name, files)
        self._transition(UploadState.FILES_WRITTEN)

        readme_generated = False
        if not any(file_rules.is_readme(path) for path in report.paths):
            readme_generated = await self._write_readme(owner, repository.name, final_name, request)
        self._transition(UploadState.README_ENSURED)

        stats = get_project_stats(files)
        outcome = UploadOutcome(
            repository=repository,
            project_name=final_name,
            requested_name=requested_name,
            total_files=len(report.paths),
            uploaded_files=batch.uploaded_count,
            total_size=archive_size,
            processing_time=int((time.perf_counter() - started) * 1000),
            readme_generated=readme_generated,
            failed_files=batch.failed_paths,
            stats=stats,
        )
        self._transition(UploadState.COMPLETED)
        logger.info(
            f"Upload {self.upload_id} completed: {outcome.uploaded_files}/{outcome.total_files} files "
            f"to {repository.full_name}",
            extra={"languages": stats["languages"], "processing_time_ms": outcome.processing_time},
        )
        return outcome

    async def resolve_repository_name(self, owner: str, name: str) -> str:
        """First of name, name-2, name-3, ... that does not exist yet."""
        for attempt in range(1, self.settings.max_name_attempts + 1):
            candidate = name if attempt == 1 else f"{name}-{attempt}"
            if not await self.writer.repository_exists(owner, candidate):
                if candidate != name:
                    logger.info(f'Repository "{name}" exists, using "{candidate}"')
                return candidate

        raise NameCollisionExhausted(
            f'Could not find an unused name for "{name}" after {self.settings.max_name_attempts} attempts'
        )

    async def write_files(self, owner: str, repo: str, files: List[FileEntry]) -> BatchReport:
        """Write files one by one in extractor order. Single failures do not stop the batch."""
        batch = BatchReport()
        logger.info(f"Starting upload of {len(files)} files to {owner}/{repo}")

        for entry in files:
            try:
                commit = await self.writer.write_file(
                    owner, repo, entry.path, entry.content, f"Add {entry.path}", entry.encoding
                )
            except FileWriteError as e:
                logger.error(f"Failed to upload file {entry.path}: {e.message}")
                batch.results.append(FileWriteResult(path=entry.path, success=False, error=e.message))
                continue
            batch.results.append(FileWriteResult(path=entry.path, success=True, commit_sha=commit.sha))

        logger.info(f"Upload complete: {batch.uploaded_count}/{len(files)} files uploaded successfully")
        return batch

    async def _write_readme(self, owner: str, repo: str, project_name: str, request: UploadRequest) -> bool:
        content = generate_readme(project_name, request.description, request.topics)
        try:
            await self.writer.write_file(owner, repo, "README.md", content, "Add auto-generated README.md")
        except FileWriteError as e:
            logger.error(f"Failed to create auto-generated README.md: {e.message}")
            return False
        logger.info("Auto-generated README.md created")
        return True

    async def _in_thread(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking step in the threadpool; cancelling the caller leaves it tracked."""
        self._blocking = asyncio.ensure_future(run_in_threadpool(func, *args))
        return await asyncio.shield(self._blocking)

    async def _drain_blocking(self) -> None:
        task, self._blocking = self._blocking, None
        if task is None or task.done():
            return
        try:
            await task
        except (UploaderError, OSError) as e:
            # The run already failed; this is the abandoned step winding down
            logger.warning(f"Upload {self.upload_id}: abandoned step ended with {type(e).__name__}: {e}")

    def _workspace_paths(self) -> Tuple[Path, Path]:
        temp_dir = Path(self.settings.temp_dir)
        stamp = f"{int(time.time() * 1000)}_{self.upload_id}"
        return temp_dir / f"upload_{stamp}.tar.gz", temp_dir / f"extract_{stamp}"

    def _persist(self, source: BinaryIO, archive_path: Path) -> int:
        """Copy the upload to disk, enforcing the size limit on the actual bytes."""
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.settings.max_upload_size
        written = 0
        with open(archive_path, "wb") as out:
            while True:
                if self._cancel.is_set():
                    raise OperationCancelled("Persisting the upload was cancelled")
                chunk = source.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > limit:
                    raise ValidationError(_too_large_message(limit), code="FILE_TOO_LARGE")
                out.write(chunk)
        return written

    def _cleanup(self, archive_path: Path, extract_dir: Path) -> None:
        try:
            if archive_path.exists():
                archive_path.unlink()
                logger.debug(f"Cleaned up temp file: {archive_path}")
            if extract_dir.exists():
                shutil.rmtree(extract_dir)
                logger.debug(f"Cleaned up temp directory: {extract_dir}")
        except OSError as e:
            logger.error(f"Cleanup error for upload {self.upload_id}: {e}")
