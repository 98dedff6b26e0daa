"""Reconciliation of a pulled package with the local checkout.

After a pull the package content is extracted into a temporary folder.
The reconciler then:

1. hashes the local tree and the extracted tree
2. copies included files whose content differs (or which are missing
   locally) from the extracted tree into the checkout
3. deletes local files that a fresh evaluation would include but that the
   server did not send, reporting them as DELETED_FROM_REMOTE
4. removes the folders of deleted ``.content.xml`` files, according to
   the configured :class:`MarkerFolderPolicy`
"""

import logging
import shutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from ..exceptions import PackagingError, PathNotFoundError
from ..utils import (
    CONTENT_XML,
    calculate_file_hash,
    get_remote_path,
    is_basic_exclude,
)
from .filters import Filter
from .ignore import IgnoreRuleSet
from .scanner import FileSyncStatus, SyncStatusBuilder, SyncStatusMap, list_descendants
from .state import SyncTimestampCache
from .verdict import SyncVerdict

logger = logging.getLogger(__name__)


class MarkerFolderPolicy(str, Enum):
    """What to do with a folder whose ``.content.xml`` was deleted."""

    IF_EMPTY = "if_empty"
    """Remove the folder once nothing is left in it"""

    RECURSIVE = "recursive"
    """Remove the folder with everything still in it"""

    KEEP = "keep"
    """Never remove folders"""


@dataclass
class ReconcileResult:
    """Outcome of reconciling one pull."""

    status: SyncStatusMap = field(default_factory=dict)
    """Verdicts of the pulled paths plus the deleted ones"""

    copied: list[str] = field(default_factory=list)
    """Repository paths written to the checkout"""

    unchanged: list[str] = field(default_factory=list)
    """Repository paths whose content was already up to date"""

    deleted: list[str] = field(default_factory=list)
    """Repository paths removed from the checkout"""


def _sync_base(path: Path) -> Path:
    return path if path.is_dir() else path.parent


class Reconciler:
    """Applies a pulled tree to the local checkout."""

    def __init__(
        self,
        filters: Sequence[Filter],
        ignore_rules: IgnoreRuleSet,
        cache: Optional[SyncTimestampCache] = None,
        marker_policy: MarkerFolderPolicy = MarkerFolderPolicy.IF_EMPTY,
        max_workers: int = 4,
        lister: Callable[[Path], list[Path]] = list_descendants,
    ):
        """Initialize the reconciler.

        Args:
            filters: Filters of the checkout
            ignore_rules: Ignore rules of the operation
            cache: Optional cache used to skip hashing unchanged local files
            marker_policy: Folder removal policy for deleted .content.xml files
            max_workers: Number of parallel hashing workers
            lister: Directory enumeration function
        """
        self.builder = SyncStatusBuilder(filters, ignore_rules, lister)
        self.cache = cache
        self.marker_policy = marker_policy
        self.max_workers = max_workers
        self.lister = lister

    def reconcile(self, local_path: Path, extracted_root: Path) -> ReconcileResult:
        """Apply the extracted package to the checkout.

        Args:
            local_path: Synced path in the checkout
            extracted_root: The ``jcr_root`` folder of the extracted package

        Returns:
            ReconcileResult with the final verdicts

        Raises:
            PathNotFoundError: If ``local_path`` does not exist
            PackagingError: If a file cannot be hashed or copied
        """
        local_path = Path(local_path)
        if not local_path.exists():
            raise PathNotFoundError(str(local_path))

        remote_path = get_remote_path(local_path)
        remote_sync_path = extracted_root / remote_path.lstrip("/")
        local_base = _sync_base(local_path)

        local_hashes = self.hash_tree(local_base, self.lister(local_path), True)

        result = ReconcileResult()
        seen: set[str] = set()
        if remote_sync_path.exists():
            remote_base = _sync_base(remote_sync_path)
            remote_hashes = self.hash_tree(
                remote_base, self.lister(remote_sync_path), False
            )
            result.status = self.builder.build(remote_sync_path)
            self._copy_changed(
                result, seen, remote_base, local_base, remote_hashes, local_hashes
            )
        else:
            # Nothing came back: the content may have been deleted on the server
            logger.info("Server returned no content for %s", remote_path)

        self._delete_missing(result, seen, local_path)

        logger.info(
            "Reconciled %s: %d copied, %d unchanged, %d deleted",
            remote_path,
            len(result.copied),
            len(result.unchanged),
            len(result.deleted),
        )
        return result

    def hash_tree(
        self, base: Path, files: list[Path], use_cache: bool
    ) -> dict[str, str]:
        """Hash files concurrently.

        Args:
            base: Folder the map keys are relative to
            files: Files to hash
            use_cache: Whether cached digests may be reused

        Returns:
            Map of relative path to digest

        Raises:
            PackagingError: On the first file that cannot be hashed
        """
        hashes: dict[str, str] = {}
        to_hash: list[Path] = []
        for file_path in files:
            relative = file_path.relative_to(base).as_posix()
            digest = self._cached_digest(file_path) if use_cache else None
            if digest is not None:
                hashes[relative] = digest
            else:
                to_hash.append(file_path)

        if not to_hash:
            return hashes

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(calculate_file_hash, file_path): file_path
                for file_path in to_hash
            }
            for future in as_completed(futures):
                file_path = futures[future]
                try:
                    digest = future.result()
                except OSError as e:
                    for pending in futures:
                        pending.cancel()
                    raise PackagingError(f"Failed to hash {file_path}: {e}") from e
                hashes[file_path.relative_to(base).as_posix()] = digest
                if use_cache and self.cache is not None:
                    self._remember(file_path, digest)

        return hashes

    def _cached_digest(self, file_path: Path) -> Optional[str]:
        if self.cache is None:
            return None
        try:
            st = file_path.stat()
        except OSError:
            return None
        return self.cache.lookup_digest(
            get_remote_path(file_path), st.st_mtime_ns, st.st_size
        )

    def _remember(self, file_path: Path, digest: str) -> None:
        if self.cache is None:
            return
        try:
            st = file_path.stat()
        except OSError as e:
            logger.debug("Not caching %s: %s", file_path, e)
            return
        self.cache.put(get_remote_path(file_path), st.st_mtime_ns, st.st_size, digest)

    def _copy_changed(
        self,
        result: ReconcileResult,
        seen: set[str],
        remote_base: Path,
        local_base: Path,
        remote_hashes: dict[str, str],
        local_hashes: dict[str, str],
    ) -> None:
        for remote_path, entry in result.status.items():
            if entry.verdict is not SyncVerdict.INCLUDED:
                continue
            seen.add(remote_path)
            relative = self._relative_key(remote_base, remote_path)
            remote_digest = remote_hashes.get(relative)
            if remote_digest is not None and local_hashes.get(relative) == remote_digest:
                logger.debug("Unchanged: %s", remote_path)
                result.unchanged.append(remote_path)
                continue

            destination = local_base / relative
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(remote_base / relative, destination)
            except OSError as e:
                raise PackagingError(f"Failed to write {destination}: {e}") from e
            logger.debug("Copied from remote: %s", remote_path)
            result.copied.append(remote_path)
            if remote_digest is not None:
                self._remember(destination, remote_digest)

    @staticmethod
    def _relative_key(base: Path, remote_path: str) -> str:
        """Map a repository path to its key relative to a synced folder."""
        base_remote = get_remote_path(base)
        if base_remote == "/":
            return remote_path.lstrip("/")
        return remote_path[len(base_remote) :].lstrip("/")

    def _delete_missing(
        self, result: ReconcileResult, seen: set[str], local_path: Path
    ) -> None:
        local_status = self.builder.build(local_path)
        local_base = _sync_base(local_path)
        marker_folders: list[Path] = []

        for remote_path, entry in local_status.items():
            if remote_path in seen or entry.verdict is not SyncVerdict.INCLUDED:
                continue
            if is_basic_exclude(remote_path):
                continue
            file_path = local_base / self._relative_key(local_base, remote_path)
            try:
                file_path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise PackagingError(f"Failed to delete {file_path}: {e}") from e
            logger.debug("Deleted (removed from remote): %s", remote_path)
            result.status[remote_path] = FileSyncStatus(SyncVerdict.DELETED_FROM_REMOTE)
            result.deleted.append(remote_path)
            if self.cache is not None:
                self.cache.remove(remote_path)
            if file_path.name == CONTENT_XML:
                marker_folders.append(file_path.parent)

        self._remove_marker_folders(marker_folders)

    def _remove_marker_folders(self, folders: list[Path]) -> None:
        if self.marker_policy is MarkerFolderPolicy.KEEP:
            return
        # Deepest first, so that emptied parents can go too
        for folder in sorted(folders, key=lambda p: len(p.parts), reverse=True):
            if not folder.is_dir():
                continue
            try:
                if self.marker_policy is MarkerFolderPolicy.RECURSIVE:
                    shutil.rmtree(folder)
                elif not any(folder.iterdir()):
                    folder.rmdir()
                else:
                    logger.info("Keeping non-empty folder %s", folder)
                    continue
            except OSError as e:
                raise PackagingError(f"Failed to remove folder {folder}: {e}") from e
            logger.debug("Removed folder %s", folder)
