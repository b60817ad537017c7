"""
Archive extraction for uploaded projects.

Turns an untrusted .tar.gz stream into a filtered, flat list of relative file
paths written under a destination directory. The archive is read in stream
mode so no entry is materialized before it passes the filter.

Rejected entries are never errors: they are counted per reason on the
ExtractionReport and logged. Only a corrupt gzip/tar stream fails the
extraction (ArchiveExtractionError).

Extraction can be stopped between entries through a threading.Event, which
lets an abandoned upload reclaim its directory before cleanup.
"""

import gzip
import logging
import shutil
import tarfile
import threading
import zlib
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from uploader.core.config import ExtractionLimits
from uploader.core.errors import ArchiveExtractionError, OperationCancelled
from uploader.core.logging_config import log_security_event
from uploader.services import file_rules

logger = logging.getLogger(__name__)

# Drop reasons reported on ExtractionReport.dropped
DROP_EXCLUDED = "excluded"
DROP_COUNT_CAP = "count_cap"
DROP_TOO_LARGE = "too_large"
DROP_UNSAFE_PATH = "unsafe_path"
DROP_NOT_ALLOWED = "not_allowed"
DROP_UNSUPPORTED_TYPE = "unsupported_type"
DROP_EMPTY_AFTER_ROOT = "root_only"
DROP_DUPLICATE = "duplicate"
DROP_PATH_CONFLICT = "path_conflict"

_STREAM_ERRORS = (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile)


@dataclass
class ExtractedEntry:
    """One file that survived the extraction filter."""

    relative_path: str
    size_bytes: int


@dataclass
class ExtractionReport:
    """Outcome of one extraction: accepted entries in stream order plus drop counters."""

    entries: List[ExtractedEntry] = field(default_factory=list)
    detected_root: Optional[str] = None
    entries_seen: int = 0
    dropped: Counter = field(default_factory=Counter)

    @property
    def paths(self) -> List[str]:
        return [entry.relative_path for entry in self.entries]

    @property
    def total_dropped(self) -> int:
        return sum(self.dropped.values())


class ArchiveExtractor:
    """
    Safe extractor for gzip-compressed tar archives.

    Args:
        limits: Count and per-entry size caps
    """

    def __init__(self, limits: Optional[ExtractionLimits] = None):
        self.limits = limits or ExtractionLimits()

    def extract(
        self,
        archive_path: Union[str, Path],
        destination: Union[str, Path],
        cancel_event: Optional[threading.Event] = None,
    ) -> ExtractionReport:
        """
        Extract an archive into destination.

        Args:
            archive_path: Path of the persisted .tar.gz/.tgz file
            destination: Directory to write accepted files into (created if absent)
            cancel_event: When set, extraction stops before the next entry

        Returns:
            ExtractionReport whose paths are root-stripped and in stream order

        Raises:
            ArchiveExtractionError: The gzip or tar stream is malformed
            OperationCancelled: cancel_event was set during extraction
            OSError: The destination directory cannot be created
        """
        dest_root = Path(destination)
        dest_root.mkdir(parents=True, exist_ok=True)
        dest_root = dest_root.resolve()

        report = ExtractionReport()
        recorded: Dict[str, int] = {}

        try:
            with tarfile.open(archive_path, mode="r|gz") as tar:
                for member in tar:
                    if cancel_event is not None and cancel_event.is_set():
                        logger.warning(f"Extraction cancelled after {report.entries_seen} entries")
                        raise OperationCancelled("Archive extraction was cancelled")
                    report.entries_seen += 1
                    self._process_member(tar, member, dest_root, report, recorded)
        except _STREAM_ERRORS as e:
            logger.error(f"Archive extraction failed: {e}")
            raise ArchiveExtractionError(
                "Failed to extract the archive. Make sure it is a valid .tar.gz file",
                details=str(e),
            ) from e

        if report.dropped:
            logger.info(
                f"Dropped {report.total_dropped} of {report.entries_seen} archive entries",
                extra={"dropped": dict(report.dropped)},
            )
        logger.info(f"Successfully extracted {len(report.entries)} files")
        return report

    def _process_member(
        self,
        tar: tarfile.TarFile,
        member: tarfile.TarInfo,
        dest_root: Path,
        report: ExtractionReport,
        recorded: Dict[str, int],
    ) -> None:
        name = member.name

        # Root detection uses the first directory entry only, before any filtering
        if member.isdir() and report.detected_root is None:
            normalized = file_rules.normalize_archive_path(name)
            report.detected_root = (normalized or name).split("/")[0]
            logger.debug(f"Detected root directory: {report.detected_root}")

        reason = self._rejection_reason(member, len(recorded))
        if reason:
            report.dropped[reason] += 1
            if reason == DROP_UNSAFE_PATH:
                log_security_event(
                    "unsafe_archive_path",
                    f"Unsafe path, skipping: {name!r}",
                    level="warning",
                    extra_data={"member_type": member.type.decode("ascii", "replace")},
                )
            else:
                logger.debug(f"Skipping {name!r}: {reason}")
            return

        normalized = file_rules.normalize_archive_path(name)

        if member.isdir():
            clean_dir = self._strip_root(normalized, report.detected_root)
            if clean_dir:
                try:
                    self._safe_target(dest_root, clean_dir).mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    self._drop_conflict(report, name, e)
            return

        clean_path = self._strip_root(normalized, report.detected_root)
        if clean_path is None:
            report.dropped[DROP_EMPTY_AFTER_ROOT] += 1
            logger.debug(f"Skipping empty or root path: {name!r}")
            return

        try:
            self._write_member(tar, member, self._safe_target(dest_root, clean_path))
        except OSError as e:
            # A file and a directory claim the same path
            self._drop_conflict(report, name, e)
            return

        if clean_path in recorded:
            # Later copies overwrite the file on disk but are listed once
            report.dropped[DROP_DUPLICATE] += 1
            report.entries[recorded[clean_path]].size_bytes = member.size
            return

        recorded[clean_path] = len(report.entries)
        report.entries.append(ExtractedEntry(relative_path=clean_path, size_bytes=member.size))

    def _rejection_reason(self, member: tarfile.TarInfo, accepted: int) -> Optional[str]:
        """Single filter predicate; returns the drop reason or None to accept."""
        name = member.name
        is_dir = member.isdir()

        if not (is_dir or member.isreg()):
            return DROP_UNSUPPORTED_TYPE
        if file_rules.should_exclude_path(name, is_directory=is_dir):
            return DROP_EXCLUDED
        if not is_dir and accepted >= self.limits.max_files:
            return DROP_COUNT_CAP
        if member.size > self.limits.max_file_size:
            return DROP_TOO_LARGE
        if file_rules.normalize_archive_path(name) is None:
            return DROP_UNSAFE_PATH
        if not is_dir and not file_rules.is_allowed_file(name):
            return DROP_NOT_ALLOWED
        return None

    @staticmethod
    def _drop_conflict(report: ExtractionReport, name: str, error: OSError) -> None:
        report.dropped[DROP_PATH_CONFLICT] += 1
        logger.warning(f"Skipping {name!r}: cannot be written ({error.strerror or error})")

    @staticmethod
    def _strip_root(path: str, root: Optional[str]) -> Optional[str]:
        clean = path
        if root and path.startswith(root + "/"):
            clean = path[len(root) + 1:]
        if not clean or clean == root:
            return None
        return clean

    @staticmethod
    def _safe_target(dest_root: Path, relative_path: str) -> Path:
        target = (dest_root / relative_path).resolve()
        if target != dest_root and dest_root not in target.parents:
            # normalize_archive_path already rejects traversal; this guards symlinked dirs
            raise ArchiveExtractionError(
                "Archive contains an entry that escapes the extraction directory",
                details=relative_path,
            )
        return target

    @staticmethod
    def _write_member(tar: tarfile.TarFile, member: tarfile.TarInfo, target: Path) -> None:
        source = tar.extractfile(member)
        if source is None:
            return
        target.parent.mkdir(parents=True, exist_ok=True)
        with source, open(target, "wb") as out:
            shutil.copyfileobj(source, out)


def extract_archive(
    archive_path: Union[str, Path],
    destination: Union[str, Path],
    limits: Optional[ExtractionLimits] = None,
) -> List[str]:
    """Extract an archive and return the clean relative paths in stream order."""
    return ArchiveExtractor(limits).extract(archive_path, destination).paths
