"""URL helpers for dependency sources.

Dependency identity is keyed on the normalized form of a source URL so that
``git@github.com:fmtlib/fmt.git`` and ``https://github.com/fmtlib/fmt`` land
on the same cache entry.
"""

import re
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse, urlunparse

_SCP_LIKE = re.compile(r"^(?:[\w.-]+@)?([\w.-]+):(?!//)(.+)$")
_SHORTHAND = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


def is_github_url(url: str) -> bool:
    """Check if a URL points at github.com."""
    return "github.com" in normalize_url(url)


def is_local_path(url: str) -> bool:
    """Check if a dependency source refers to a local directory."""
    if url.startswith("file://"):
        return True
    if "://" in url:
        return False
    if _SCP_LIKE.match(url) and not re.match(r"^[A-Za-z]:[\\/]", url):
        return False
    return url.startswith(("/", ".", "~")) or re.match(r"^[A-Za-z]:[\\/]", url) is not None


def normalize_url(url: str) -> str:
    """Normalize a source URL for identity comparison.

    Rules:
        - scheme and host are lowercased
        - scp-like ``git@host:owner/repo`` becomes ``https://host/owner/repo``
        - trailing slashes and a trailing ``.git`` are stripped
        - local paths become absolute POSIX paths

    Args:
        url: Source URL or local path as written in the manifest

    Returns:
        Normalized URL string
    """
    url = url.strip()

    if is_local_path(url):
        path = url[len("file://"):] if url.startswith("file://") else url
        resolved = Path(path).expanduser().resolve().as_posix()
        return _strip_suffixes(resolved)

    if "://" not in url:
        match = _SCP_LIKE.match(url)
        if match:
            url = f"https://{match.group(1)}/{match.group(2)}"

    parsed = urlparse(url)
    netloc = parsed.netloc.lower()
    # Credentials never take part in identity
    if "@" in netloc:
        netloc = netloc.split("@", 1)[1]
    scheme = parsed.scheme.lower()
    if scheme in ("http", "git", "ssh"):
        scheme = "https"

    path = _strip_suffixes(parsed.path)
    return urlunparse((scheme, netloc, path, "", "", ""))


def _strip_suffixes(path: str) -> str:
    path = path.rstrip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    return path.rstrip("/")


def repo_name_from_url(url: str) -> str:
    """Extract the repository name (last path component) from a URL.

    Example:
        https://github.com/fmtlib/fmt.git -> fmt
    """
    normalized = normalize_url(url)
    name = normalized.rstrip("/").rsplit("/", 1)[-1]
    return name or normalized


def parse_github_url(url: str) -> Optional[Tuple[str, str]]:
    """Split a GitHub URL into (owner, repo), or None if not GitHub."""
    if not is_github_url(url):
        return None
    parts = urlparse(normalize_url(url)).path.strip("/").split("/")
    if len(parts) < 2:
        return None
    return parts[0], parts[1]


def is_github_shorthand(value: str) -> bool:
    """Check for ``owner/repo`` shorthand."""
    return bool(_SHORTHAND.match(value)) and not value.startswith(".")


def github_shorthand_to_url(value: str) -> str:
    """Expand ``owner/repo`` into a full GitHub URL."""
    return f"https://github.com/{value.strip('/')}"
