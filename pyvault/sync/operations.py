"""Remote package lifecycle sequences on top of the package manager client."""

import logging
from pathlib import Path

from ..api import PackageManagerClient
from ..exceptions import RemoteError
from .package import PackageInfo

logger = logging.getLogger(__name__)


class PackageOperations:
    """Uploads, installs, builds and downloads sync packages.

    Every uploaded package is deleted from the server again, also when a
    later command fails.
    """

    def __init__(self, client: PackageManagerClient):
        """Initialize package operations.

        Args:
            client: Package manager client
        """
        self.client = client

    def upload(self, archive_path: Path, package: PackageInfo) -> None:
        """Upload a package archive."""
        logger.info("Uploading package %s", package.full_name)
        self.client.upload_package(archive_path)

    def install(self, package: PackageInfo) -> None:
        """Install an uploaded package, then delete it from the server."""
        try:
            self.client.install_package(package.full_name)
        except Exception:
            self.discard(package)
            raise
        logger.info("Installed package %s", package.full_name)
        self.client.delete_package(package.full_name)

    def build(self, package: PackageInfo) -> None:
        """Build an uploaded package on the server."""
        try:
            self.client.build_package(package.full_name)
        except Exception:
            self.discard(package)
            raise
        logger.info("Built package %s", package.full_name)

    def download(self, package: PackageInfo, output_path: Path) -> Path:
        """Download a built package, then delete it from the server."""
        try:
            self.client.download_package(package.full_name, output_path)
        except Exception:
            self.discard(package)
            raise
        logger.info("Downloaded package %s", package.full_name)
        self.client.delete_package(package.full_name)
        return output_path

    def discard(self, package: PackageInfo) -> None:
        """Delete a package, logging instead of raising on failure."""
        try:
            self.client.delete_package(package.full_name)
        except RemoteError as e:
            logger.warning("Failed to delete package %s: %s", package.full_name, e)
