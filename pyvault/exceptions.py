"""Exceptions raised by pyvault."""

from __future__ import annotations


class VaultError(Exception):
    """Base exception for all pyvault errors."""


class MalformedFilterError(VaultError):
    """The workspace filter file could not be parsed."""


class PathNotFoundError(VaultError):
    """The path to synchronise does not exist."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Path not found: {path}")


class NotInCheckoutError(VaultError):
    """The path does not belong to a jcr_root checkout."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Path {path} does not seem to belong to a JCR checkout.")


class PackagingError(VaultError):
    """Staging, archiving or extracting a content package failed."""


class SyncInProgressError(VaultError):
    """Another sync operation is already running for the same checkout."""


class RemoteError(VaultError):
    """Base exception for errors reported while talking to the server."""

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class AuthenticationError(RemoteError):
    """The server rejected the configured credentials (HTTP 401)."""


class RemoteProtocolError(RemoteError):
    """The server answered with an unexpected status or an unsuccessful reply."""

    def __init__(self, message: str, url: str | None = None, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message, url=url)


class InvalidResponseError(RemoteProtocolError):
    """The server reply could not be decoded."""


class RemoteConnectionError(RemoteError, ConnectionError):
    """No connection could be established with the server."""

    def __init__(self, message: str, url: str | None = None, reason: str = ""):
        self.reason = reason
        super().__init__(message, url=url)
