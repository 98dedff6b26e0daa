"""Client for the package manager HTTP service."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, BinaryIO, Iterable

import httpx

from .config import config
from .exceptions import (
    AuthenticationError,
    InvalidResponseError,
    PackagingError,
    RemoteConnectionError,
    RemoteProtocolError,
)

logger = logging.getLogger(__name__)

SERVICE_PATH = "/crx/packmgr/service/.json"
PACKAGES_PATH = "/etc/packages"


class PackageManagerClient:
    """Client for uploading, installing, building and downloading packages.

    Every command replies with ``{"success": bool, "msg": str}``; a reply
    without ``success: true`` is treated as an error. Requests are never
    retried.
    """

    def __init__(
        self,
        server_url: str | None = None,
        user: str | None = None,
        password: str | None = None,
        accept_self_signed: bool | None = None,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """Initialize the package manager client.

        Args:
            server_url: Server URL, e.g. http://localhost:4502 (uses config
                if not provided)
            user: User allowed to manage packages (uses config if not provided)
            password: The user's password (uses config if not provided)
            accept_self_signed: Whether to skip TLS certificate validation
                (uses config if not provided)
            timeout: Request timeout in seconds (default: 60.0)
            transport: Optional httpx transport, mainly for testing
        """
        default_user, default_password = config.get_credentials()
        self.server_url = (server_url or config.get_remote_url()).rstrip("/")
        self.user = user or default_user
        self.password = password or default_password
        self.accept_self_signed = (
            config.accept_self_signed
            if accept_self_signed is None
            else accept_self_signed
        )
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                auth=(self.user, self.password),
                timeout=httpx.Timeout(self.timeout),
                verify=not self.accept_self_signed,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> PackageManagerClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _check_status(
        self, response: httpx.Response, expected: tuple[int, ...] = (200,)
    ) -> None:
        """Map unexpected HTTP status codes to exceptions.

        Raises:
            AuthenticationError: On 401
            RemoteProtocolError: On any other unexpected status
        """
        status_code = response.status_code
        if status_code in expected:
            return
        url = str(response.request.url)
        if status_code == 401:
            raise AuthenticationError(
                f"Invalid user name or password for server {self.server_url}.",
                url=url,
            )
        raise RemoteProtocolError(
            f"Received status code {status_code} from {url}. Expected {expected[0]}.",
            url=url,
            status_code=status_code,
        )

    def _connection_error(self, url: str, e: httpx.RequestError) -> RemoteConnectionError:
        reason = str(e) or type(e).__name__
        return RemoteConnectionError(
            f"Cannot establish a connection to server {self.server_url}: {reason}",
            url=url,
            reason=reason,
        )

    def _request(
        self,
        method: str,
        path: str,
        expected: tuple[int, ...] = (200,),
        **kwargs: Any,
    ) -> httpx.Response:
        """Make a request against the server.

        Args:
            method: HTTP method
            path: Path below the server URL
            expected: Accepted status codes
            **kwargs: Additional arguments passed to httpx

        Returns:
            The response

        Raises:
            RemoteConnectionError: If the server cannot be reached
            AuthenticationError: If the credentials are rejected
            RemoteProtocolError: On any other unexpected status
        """
        url = f"{self.server_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            response = self._get_client().request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise self._connection_error(url, e) from e
        self._check_status(response, expected)
        return response

    def _service_request(self, path: str, action: str, **kwargs: Any) -> dict:
        """Call the package manager service and check its JSON reply."""
        response = self._request("POST", path, **kwargs)
        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError(
                f"Error {action}: invalid JSON response from server",
                url=str(response.request.url),
                status_code=response.status_code,
            ) from e

        if not isinstance(data, dict) or data.get("success") is not True:
            msg = data.get("msg") if isinstance(data, dict) else None
            raise RemoteProtocolError(
                msg or f"Error {action}: unsuccessful reply from server",
                url=str(response.request.url),
                status_code=response.status_code,
            )
        logger.debug("Package manager: %s", data.get("msg", ""))
        return data

    # =========================
    # Package Operations
    # =========================

    def upload_package(self, package_path: Path) -> dict:
        """Upload a package archive, replacing an existing one.

        Args:
            package_path: Path to the ZIP archive

        Returns:
            The service reply
        """
        package_path = Path(package_path)
        with _open_for_upload(package_path) as f:
            return self._service_request(
                f"{SERVICE_PATH}?cmd=upload",
                f"uploading package {package_path}",
                data={"force": "true"},
                files={"package": (package_path.name, f, "application/zip")},
            )

    def _package_command(self, package_name: str, cmd: str) -> dict:
        return self._service_request(
            f"{SERVICE_PATH}{PACKAGES_PATH}/{package_name}?cmd={cmd}",
            f"running {cmd} on package {package_name}",
        )

    def install_package(self, package_name: str) -> dict:
        """Install an uploaded package (e.g. ``tmp/repo/name-1.zip``)."""
        return self._package_command(package_name, "install")

    def build_package(self, package_name: str) -> dict:
        """Build an uploaded package from the content selected by its filter."""
        return self._package_command(package_name, "build")

    def delete_package(self, package_name: str) -> dict:
        """Delete a package from the server."""
        return self._package_command(package_name, "delete")

    def download_package(self, package_name: str, output_path: Path) -> Path:
        """Download a package archive.

        Args:
            package_name: Full package name (e.g. ``tmp/repo/name-1.zip``)
            output_path: File to write the archive to

        Returns:
            Path where the archive was saved
        """
        output_path = Path(output_path)
        url = f"{self.server_url}{PACKAGES_PATH}/{package_name}"
        logger.debug("GET %s", url)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with self._get_client().stream("GET", url) as response:
                self._check_status(response)
                with open(output_path, "wb") as f:
                    for chunk in response.iter_bytes(chunk_size=8192):
                        f.write(chunk)
        except httpx.RequestError as e:
            raise self._connection_error(url, e) from e
        except OSError as e:
            raise PackagingError(
                f"Unable to write remote file {url} to {output_path}: {e}"
            ) from e
        return output_path

    # =========================
    # Sling POST Operations
    # =========================

    def post_file(self, parent_path: str, file_path: Path) -> None:
        """Post a file below a repository folder.

        Posting to an ``.../install`` folder also sets the folder's node
        type, so that the folder can be created on the fly.

        Args:
            parent_path: Repository path of the parent folder
            file_path: Local file to post
        """
        file_path = Path(file_path)
        data = {"_charset_": "utf-8"}
        if parent_path.rstrip("/").endswith("/install"):
            data["jcr:primaryType"] = "nt:folder"
        with _open_for_upload(file_path) as f:
            self._request(
                "POST",
                parent_path,
                expected=(200, 201),
                data=data,
                files={"*": (file_path.name, f)},
            )
        logger.info("Posted %s to %s", file_path.name, parent_path)

    def post_files(
        self, parent_path: str, file_paths: Iterable[Path], max_workers: int = 4
    ) -> list[Path]:
        """Post several files concurrently.

        The first failure aborts the batch and is raised; results of the
        other requests are discarded.

        Returns:
            The posted files
        """
        file_paths = list(file_paths)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(self.post_file, parent_path, file_path)
                for file_path in file_paths
            ]
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception:
                    for pending in futures:
                        pending.cancel()
                    raise
        return file_paths


def _open_for_upload(file_path: Path) -> BinaryIO:
    try:
        return open(file_path, "rb")
    except OSError as e:
        raise PackagingError(f"Cannot read {file_path}: {e}") from e
