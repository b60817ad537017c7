"""
Path and filename rules shared by the archive extractor and the file materializer.

All functions take archive-style paths (forward slashes, relative).
"""

import posixpath
import re
from typing import Optional

# Directory names that are never worth uploading
EXCLUDED_DIRECTORIES = frozenset({
    "node_modules", ".git", ".svn", ".hg",
    ".vscode", ".idea",
    "dist", "build", "coverage", ".nyc_output",
    ".cache", ".next", ".nuxt", ".vuepress",
    "vendor", "bower_components",
    "__pycache__", ".pytest_cache", ".mypy_cache", ".tox", ".eggs",
    ".gradle", "target",
})

EXCLUDED_FILENAMES = frozenset({".DS_Store", "Thumbs.db"})

ALLOWED_EXTENSIONS = frozenset({
    # text
    ".txt", ".md", ".rst", ".log",
    # source code
    ".js", ".ts", ".jsx", ".tsx", ".vue", ".svelte",
    ".py", ".rb", ".php", ".java", ".c", ".cpp", ".h", ".hpp",
    ".cs", ".go", ".rs", ".swift", ".kt", ".scala",
    ".html", ".htm", ".css", ".scss", ".sass", ".less",
    ".json", ".xml", ".yaml", ".yml", ".toml", ".ini",
    ".sql", ".sh", ".bat", ".ps1", ".dockerfile",
    # config
    ".gitignore", ".gitattributes", ".editorconfig",
    ".eslintrc", ".prettierrc", ".babelrc",
    ".env",
    # documents
    ".pdf", ".doc", ".docx",
    # images
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico",
    # misc
    ".license", ".changelog", ".makefile",
})

# Conventional files that carry no extension
ALLOWED_BARE_FILENAMES = frozenset({
    "readme", "license", "changelog", "makefile", "dockerfile",
    "gemfile", "rakefile", "procfile", "vagrantfile",
})

CONFIG_FILE_PATTERNS = (
    re.compile(r"^\..*rc$"),            # .eslintrc, .npmrc
    re.compile(r"^\..*ignore$"),        # .gitignore, .dockerignore
    re.compile(r"^\.env"),              # .env, .env.local
    re.compile(r"package\.json$"),
    re.compile(r"composer\.json$"),
    re.compile(r"requirements\.txt$"),
    re.compile(r"yarn\.lock$"),
    re.compile(r"package-lock\.json$"),
)

BINARY_EXTENSIONS = frozenset({
    ".exe", ".dll", ".so", ".dylib", ".bin", ".dat",
    ".zip", ".tar", ".gz", ".bz2", ".xz", ".7z", ".rar",
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".webp", ".ico",
    ".mp3", ".mp4", ".avi", ".mov", ".wmv", ".flv",
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".ttf", ".otf", ".woff", ".woff2", ".eot",
})

LANGUAGE_BY_EXTENSION = {
    ".js": "JavaScript", ".jsx": "JavaScript",
    ".ts": "TypeScript", ".tsx": "TypeScript",
    ".vue": "Vue", ".svelte": "Svelte",
    ".py": "Python", ".rb": "Ruby", ".php": "PHP", ".java": "Java",
    ".c": "C", ".h": "C", ".cpp": "C++", ".hpp": "C++",
    ".cs": "C#", ".go": "Go", ".rs": "Rust", ".swift": "Swift",
    ".kt": "Kotlin", ".scala": "Scala",
    ".html": "HTML", ".htm": "HTML", ".css": "CSS", ".scss": "SCSS",
    ".sass": "Sass", ".less": "Less",
    ".json": "JSON", ".xml": "XML", ".yaml": "YAML", ".yml": "YAML",
    ".toml": "TOML", ".sql": "SQL", ".sh": "Shell", ".bat": "Batch",
    ".ps1": "PowerShell",
}

_RESERVED_DEVICE_NAME = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\..*)?$", re.IGNORECASE)
# Characters rejected by common target filesystems, plus ASCII control bytes
_ILLEGAL_CHARS = re.compile(r'[<>:"|?*\\\x00-\x1f\x7f]')


def extension_of(path: str) -> str:
    """Lower-cased extension of the last path segment ('' when there is none)."""
    return posixpath.splitext(posixpath.basename(path))[1].lower()


def normalize_archive_path(path: str) -> Optional[str]:
    """
    Normalize an archive member name into a safe relative path.

    Returns:
        The normalized path, or None when the path must be rejected
    """
    if not path or "\x00" in path:
        return None
    if path.startswith("/"):
        return None

    segments = path.split("/")
    if ".." in segments:
        return None

    normalized = posixpath.normpath(path)
    if normalized in (".", "") or normalized.startswith(("/", "..")):
        return None

    for segment in normalized.split("/"):
        if not segment.strip("."):
            return None
        if _ILLEGAL_CHARS.search(segment):
            return None
        if _RESERVED_DEVICE_NAME.match(segment):
            return None

    return normalized


def should_exclude_path(path: str, is_directory: bool = False) -> bool:
    """True when the path lies in (or is) a deny-listed directory or artifact file."""
    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        return False

    directories = segments if is_directory else segments[:-1]
    if any(segment in EXCLUDED_DIRECTORIES for segment in directories):
        return True

    return not is_directory and segments[-1] in EXCLUDED_FILENAMES


def is_allowed_file(path: str) -> bool:
    """Allow-list check applied to regular files only."""
    file_name = posixpath.basename(path).lower()

    if file_name in ALLOWED_BARE_FILENAMES:
        return True

    ext = extension_of(path)
    if ext and ext in ALLOWED_EXTENSIONS:
        return True

    # Dotfiles such as .editorconfig carry their "extension" as the whole name
    if file_name.startswith(".") and file_name in ALLOWED_EXTENSIONS:
        return True

    return any(pattern.search(file_name) for pattern in CONFIG_FILE_PATTERNS)


def has_binary_extension(path: str) -> bool:
    return extension_of(path) in BINARY_EXTENSIONS


def language_for(path: str) -> Optional[str]:
    return LANGUAGE_BY_EXTENSION.get(extension_of(path))


def is_readme(path: str) -> bool:
    return path.lower() in ("readme", "readme.md", "readme.txt")
