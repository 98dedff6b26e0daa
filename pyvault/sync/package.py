"""Content package assembly.

A sync package is a ZIP archive with the synced files under
``jcr_root/`` and the package metadata under ``META-INF/vault/``::

    jcr_root/apps/myproj/...
    META-INF/vault/filter.xml
    META-INF/vault/properties.xml
"""

import logging
import shutil
import tempfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional
from xml.sax.saxutils import escape

from ..exceptions import PackagingError
from ..utils import (
    JCR_ROOT,
    PACKAGE_GROUP,
    get_full_package_name,
    get_jcr_root,
    get_package_name,
    get_package_version,
    is_basic_exclude,
)
from .filter_xml import render_filter_xml
from .filters import Filter
from .scanner import SyncStatusMap
from .verdict import SyncVerdict

logger = logging.getLogger(__name__)

META_INF = "META-INF"
ARCHIVE_NAME = "pkg.zip"
EXCLUDES_FILE_NAME = ".excludes"

PROPERTIES_TEMPLATE = """\
<?xml version="1.0" encoding="UTF-8" standalone="no"?>
<!DOCTYPE properties SYSTEM "http://java.sun.com/dtd/properties.dtd">
<properties>
<entry key="name">{name}</entry>
<entry key="version">{version}</entry>
<entry key="group">{group}</entry>
</properties>
"""


@dataclass(frozen=True)
class PackageInfo:
    """Identity of a sync package on the server."""

    name: str
    version: str
    group: str = PACKAGE_GROUP

    @classmethod
    def for_remote_path(cls, remote_path: str) -> "PackageInfo":
        """Create a new package identity for syncing ``remote_path``."""
        return cls(name=get_package_name(remote_path), version=get_package_version())

    @property
    def full_name(self) -> str:
        """Name used by the package manager (e.g. ``tmp/repo/name-1.zip``)."""
        return get_full_package_name(self.name, self.version)


@dataclass
class TempWorkspace:
    """Temporary working folder owned by a single sync operation.

    Use as a context manager; the folder and everything in it is removed
    on exit, whether the operation succeeded or not.
    """

    prefix: str = "pyvault-"
    path: Optional[Path] = field(default=None, init=False)

    def __enter__(self) -> "TempWorkspace":
        self.create()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cleanup()

    def create(self) -> Path:
        """Create a fresh, uniquely named folder."""
        self.path = Path(tempfile.mkdtemp(prefix=self.prefix))
        logger.debug("Created temporary workspace %s", self.path)
        return self.path

    def cleanup(self) -> None:
        """Remove the folder, if it was created."""
        if self.path is None:
            return
        try:
            shutil.rmtree(self.path)
            logger.debug("Removed temporary workspace %s", self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove temporary workspace %s: %s", self.path, e)
        self.path = None

    def _require(self) -> Path:
        if self.path is None:
            raise PackagingError("Temporary workspace was not created")
        return self.path

    @property
    def jcr_root(self) -> Path:
        return self._require() / JCR_ROOT

    @property
    def vault_dir(self) -> Path:
        return self._require() / META_INF / "vault"

    @property
    def excludes_path(self) -> Path:
        return self._require() / EXCLUDES_FILE_NAME

    @property
    def archive_path(self) -> Path:
        return self._require() / ARCHIVE_NAME


def get_touched_filters(status: SyncStatusMap) -> list[Filter]:
    """Return the filters owning at least one included path.

    Filters are deduplicated by root and kept in order of first use.
    """
    touched: dict[str, Filter] = {}
    for entry in status.values():
        if entry.verdict is SyncVerdict.INCLUDED and entry.filter is not None:
            touched.setdefault(entry.filter.root, entry.filter)
    return list(touched.values())


class PackageAssembler:
    """Stages files and metadata in a workspace and archives them."""

    def __init__(self, workspace: TempWorkspace):
        """Initialize the assembler.

        Args:
            workspace: Workspace the package is assembled in
        """
        self.workspace = workspace

    def stage(self, source_path: Path, status: SyncStatusMap) -> list[str]:
        """Copy every included file into the workspace's jcr_root.

        Args:
            source_path: Synced path of the checkout
            status: Sync status computed for ``source_path``

        Returns:
            Repository paths of the staged files

        Raises:
            PackagingError: If a file cannot be copied
        """
        source_root = get_jcr_root(source_path)
        target_root = self.workspace.jcr_root
        staged: list[str] = []

        try:
            target_root.mkdir(parents=True, exist_ok=True)
            for remote_path, entry in status.items():
                if entry.verdict is not SyncVerdict.INCLUDED:
                    continue
                if is_basic_exclude(remote_path):
                    continue
                relative = remote_path.lstrip("/")
                destination = target_root / relative
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source_root / relative, destination)
                staged.append(remote_path)
        except OSError as e:
            raise PackagingError(f"Failed to stage {source_path}: {e}") from e

        logger.info("Staged %d file(s) for packaging", len(staged))
        return staged

    def write_meta_inf(
        self, filters: Iterable[Filter], remote_path: str, package: PackageInfo
    ) -> None:
        """Write ``filter.xml`` and ``properties.xml``.

        Raises:
            PackagingError: If the files cannot be written
        """
        vault_dir = self.workspace.vault_dir
        try:
            vault_dir.mkdir(parents=True, exist_ok=True)
            self.workspace.jcr_root.mkdir(parents=True, exist_ok=True)
            (vault_dir / "filter.xml").write_text(
                render_filter_xml(filters, remote_path), encoding="utf-8"
            )
            (vault_dir / "properties.xml").write_text(
                PROPERTIES_TEMPLATE.format(
                    name=escape(package.name),
                    version=escape(package.version),
                    group=escape(package.group),
                ),
                encoding="utf-8",
            )
        except OSError as e:
            raise PackagingError(f"Failed to write package metadata: {e}") from e

    def archive(self) -> Path:
        """Create the ZIP archive from the staged tree.

        Returns:
            Path to the archive

        Raises:
            PackagingError: If the archive cannot be written
        """
        base = self.workspace.path
        archive_path = self.workspace.archive_path
        try:
            with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf:
                for top in (JCR_ROOT, META_INF):
                    self._add_tree(zf, base / top, base)
        except (OSError, zipfile.BadZipFile) as e:
            raise PackagingError(f"Failed to create archive {archive_path}: {e}") from e

        logger.debug("Created package archive %s", archive_path)
        return archive_path

    @staticmethod
    def _add_tree(zf: zipfile.ZipFile, folder: Path, base: Path) -> None:
        if not folder.is_dir():
            return
        zf.write(folder, folder.relative_to(base).as_posix() + "/")
        for item in sorted(folder.rglob("*")):
            if is_basic_exclude(item):
                continue
            arcname = item.relative_to(base).as_posix()
            if item.is_dir():
                zf.write(item, arcname + "/")
            else:
                zf.write(item, arcname)


def extract_package(archive_path: Path, target: Path) -> None:
    """Extract a downloaded package into ``target``.

    Raises:
        PackagingError: If the archive is invalid or has members pointing
            outside ``target``
    """
    target = Path(target)
    target_resolved = target.resolve()
    try:
        with zipfile.ZipFile(archive_path) as zf:
            for member in zf.namelist():
                destination = (target / member).resolve()
                if not destination.is_relative_to(target_resolved):
                    raise PackagingError(
                        f"Archive member {member} points outside {target}"
                    )
            zf.extractall(target)
    except (OSError, zipfile.BadZipFile) as e:
        raise PackagingError(f"Failed to extract {archive_path}: {e}") from e
    logger.debug("Extracted %s to %s", archive_path, target)
