"""Utility functions for content package checkouts."""

import hashlib
import re
import time
from pathlib import Path, PurePosixPath
from typing import Union

# =============================================================================
# Constants for checkouts and packages
# =============================================================================

# Directory that maps to the repository root inside a checkout
JCR_ROOT: str = "jcr_root"

# Per-directory ignore file name
VLTIGNORE: str = ".vltignore"

# Directory-level metadata file
CONTENT_XML: str = ".content.xml"

# File names that are never packaged, regardless of filters
EXCLUDES: tuple[str, ...] = (
    ".vlt",
    ".vltignore",
    ".vlt-sync.log",
    ".vlt-sync-config.properties",
    ".DS_Store",
)

# Group under which temporary sync packages are created
PACKAGE_GROUP: str = "tmp/repo"

# Remote folder used for installing dependency bundles
INSTALL_FOLDER: str = "/apps/system/install"

# Chunk size used when hashing files (64 KB)
HASH_CHUNK_SIZE: int = 64 * 1024

PathLike = Union[str, Path]


# =============================================================================
# Checkout path utilities
# =============================================================================


def is_path_in_checkout(path: PathLike) -> bool:
    """Check if a path belongs to a jcr_root checkout.

    Examples:
        >>> is_path_in_checkout("/work/pkg/jcr_root/apps/myproj")
        True
        >>> is_path_in_checkout("/work/pkg/src")
        False
    """
    return JCR_ROOT in Path(path).parts


def get_jcr_root(path: PathLike) -> Path:
    """Return the ``jcr_root`` directory that contains ``path``.

    Raises:
        ValueError: If the path is not inside a checkout
    """
    parts = Path(path).parts
    if JCR_ROOT not in parts:
        raise ValueError(f"Path {path} is not inside a {JCR_ROOT} folder")
    return Path(*parts[: parts.index(JCR_ROOT) + 1])


def get_checkout_root(path: PathLike) -> Path:
    """Return the content package folder (the parent of ``jcr_root``).

    Examples:
        >>> get_checkout_root("/work/pkg/jcr_root/apps/myproj").as_posix()
        '/work/pkg'
    """
    return get_jcr_root(path).parent


def get_remote_path(path: PathLike) -> str:
    """Return the repository path of a checkout path.

    The repository path is the part after ``jcr_root``, always POSIX style
    and rooted at ``/``.

    Examples:
        >>> get_remote_path("/work/pkg/jcr_root/apps/myproj/a.html")
        '/apps/myproj/a.html'
        >>> get_remote_path("/work/pkg/jcr_root")
        '/'
    """
    parts = Path(path).parts
    if JCR_ROOT not in parts:
        raise ValueError(f"Path {path} is not inside a {JCR_ROOT} folder")
    tail = parts[parts.index(JCR_ROOT) + 1 :]
    return str(PurePosixPath("/", *tail))


def find_filter_file(path: PathLike) -> Path:
    """Return the location of the workspace filter for a checkout path.

    The filter lives next to ``jcr_root``, in ``META-INF/vault/filter.xml``.
    """
    return get_checkout_root(path) / "META-INF" / "vault" / "filter.xml"


def is_basic_exclude(path: PathLike) -> bool:
    """Check if a file name is one of the fixed package exclusions."""
    return Path(path).name in EXCLUDES


def get_remote_url_for(path: PathLike, server_url: str) -> str:
    """Build the URL rendering a checkout path on the server.

    Examples:
        >>> get_remote_url_for(
        ...     "/work/pkg/jcr_root/content/site/.content.xml",
        ...     "http://localhost:4502/",
        ... )
        'http://localhost:4502/content/site.html'
    """
    remote_path = get_remote_path(path)
    remote_path = re.sub(r"\.content\.xml$", "", remote_path)
    remote_path = re.sub(r"/*$", ".html", remote_path, count=1)
    return server_url.rstrip("/") + "/" + remote_path.lstrip("/")


# =============================================================================
# Package naming utilities
# =============================================================================


def get_package_name(remote_path: str) -> str:
    """Return the package name used for syncing a repository path.

    Examples:
        >>> get_package_name("/apps/myproj")
        'repo_apps_myproj'
    """
    name = "repo_" + remote_path.replace("/", "_").replace("\\", "_")
    return re.sub(r"_{2,}", "_", name)


def get_package_version() -> str:
    """Return the current time in epoch milliseconds, used as package version."""
    return str(int(time.time() * 1000))


def get_full_package_name(package_name: str, version: str) -> str:
    """Return the name of a package as stored by the package manager.

    Examples:
        >>> get_full_package_name("repo_apps", "1")
        'tmp/repo/repo_apps-1.zip'
    """
    return f"{PACKAGE_GROUP}/{package_name}-{version}.zip"


# =============================================================================
# Hash calculation utilities
# =============================================================================


def calculate_file_hash(file_path: PathLike) -> str:
    """Calculate the MD5 digest of a file's content.

    Args:
        file_path: File to hash

    Returns:
        Hex encoded 128-bit digest
    """
    md5 = hashlib.md5()  # noqa: S324
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            md5.update(chunk)
    return md5.hexdigest()


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"
