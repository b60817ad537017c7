"""
Turn extracted paths into uploadable file records.

Each clean path is read from the extraction directory, classified as text or
binary and encoded accordingly (utf-8 text or base64). A file that cannot be
read is logged and left out; it never fails the batch.
"""

import base64
import logging
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel

from uploader.services import file_rules

logger = logging.getLogger(__name__)

ENCODING_UTF8 = "utf-8"
ENCODING_BASE64 = "base64"

SNIFF_SAMPLE_SIZE = 1024
NUL_RATIO_THRESHOLD = 0.01
CONTROL_RATIO_THRESHOLD = 0.05
_TEXT_CONTROL_BYTES = frozenset({9, 10, 13})


class FileEntry(BaseModel):
    """A file ready to be committed."""

    path: str
    content: str
    encoding: str
    size: int

    @property
    def is_binary(self) -> bool:
        return self.encoding == ENCODING_BASE64


def is_binary_content(data: bytes) -> bool:
    """
    Sniff the first bytes of a file.

    Binary when more than 1% of the sample is NUL or more than 5% are
    control bytes other than tab, LF and CR.
    """
    sample = data[:SNIFF_SAMPLE_SIZE]
    if not sample:
        return False

    nul_count = sample.count(0)
    control_count = sum(1 for byte in sample if byte < 32 and byte not in _TEXT_CONTROL_BYTES)

    return (
        nul_count / len(sample) > NUL_RATIO_THRESHOLD
        or control_count / len(sample) > CONTROL_RATIO_THRESHOLD
    )


def is_binary_file(path: str, data: bytes) -> bool:
    return file_rules.has_binary_extension(path) or is_binary_content(data)


def encode_file(path: str, data: bytes) -> FileEntry:
    """Encode raw bytes as a FileEntry; undecodable text falls back to base64."""
    if not is_binary_file(path, data):
        try:
            return FileEntry(path=path, content=data.decode("utf-8"), encoding=ENCODING_UTF8, size=len(data))
        except UnicodeDecodeError:
            logger.debug(f"{path} is not valid UTF-8, encoding as base64")

    return FileEntry(
        path=path,
        content=base64.b64encode(data).decode("ascii"),
        encoding=ENCODING_BASE64,
        size=len(data),
    )


def materialize(paths: Iterable[str], base_dir: Union[str, Path]) -> List[FileEntry]:
    """
    Read and encode every path under base_dir.

    Args:
        paths: Clean relative paths as returned by the extractor
        base_dir: Extraction directory

    Returns:
        FileEntry records in input order, minus unreadable files
    """
    root = Path(base_dir).resolve()
    paths = list(paths)
    entries: List[FileEntry] = []

    for relative_path in paths:
        target = (root / relative_path).resolve()
        if root not in target.parents:
            logger.warning(f"Refusing to read outside the extraction directory: {relative_path!r}")
            continue

        try:
            data = target.read_bytes()
        except OSError as e:
            logger.error(f"Failed to read file {relative_path}: {e}")
            continue

        entries.append(encode_file(relative_path, data))

    logger.info(f"Materialized {len(entries)} of {len(paths)} files")
    return entries


def get_project_stats(files: List[FileEntry]) -> Dict[str, Any]:
    """Summary of a materialized project: file types, languages, totals."""
    file_types: Counter = Counter()
    languages = set()
    total_size = 0

    for entry in files:
        ext = file_rules.extension_of(entry.path) or "no-extension"
        file_types[ext] += 1
        total_size += entry.size

        language = file_rules.language_for(entry.path)
        if language:
            languages.add(language)

    return {
        "total_files": len(files),
        "total_size": total_size,
        "file_types": dict(file_types),
        "languages": sorted(languages),
    }


def format_file_size(num_bytes: Optional[int]) -> str:
    """Human-readable size, e.g. 1536 -> '1.5 KB'."""
    if not num_bytes:
        return "0 Bytes"

    units = ["Bytes", "KB", "MB", "GB"]
    size = float(num_bytes)
    index = 0
    while size >= 1024 and index < len(units) - 1:
        size /= 1024
        index += 1

    return f"{round(size, 2):g} {units[index]}"
