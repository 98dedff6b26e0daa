"""pyvault - sync a content package checkout with a content repository."""

from .api import PackageManagerClient
from .exceptions import (
    AuthenticationError,
    InvalidResponseError,
    MalformedFilterError,
    NotInCheckoutError,
    PackagingError,
    PathNotFoundError,
    RemoteConnectionError,
    RemoteError,
    RemoteProtocolError,
    SyncInProgressError,
    VaultError,
)
from .utils import get_package_name, get_remote_path

__all__ = [
    "PackageManagerClient",
    "VaultError",
    "MalformedFilterError",
    "PathNotFoundError",
    "NotInCheckoutError",
    "PackagingError",
    "SyncInProgressError",
    "RemoteError",
    "AuthenticationError",
    "RemoteProtocolError",
    "InvalidResponseError",
    "RemoteConnectionError",
    "get_package_name",
    "get_remote_path",
]
