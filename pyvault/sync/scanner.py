"""Directory scanning and sync status computation."""

import logging
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Optional, Sequence

from ..exceptions import PathNotFoundError
from ..utils import CONTENT_XML, get_remote_path
from .filters import Filter
from .ignore import IgnoreRuleSet
from .verdict import SyncVerdict

logger = logging.getLogger(__name__)


@dataclass
class FileSyncStatus:
    """Verdict of one path together with the filter that decided it."""

    verdict: SyncVerdict
    """Verdict for the path"""

    filter: Optional[Filter] = None
    """Filter owning the path (None when no filter claims it)"""


SyncStatusMap = dict[str, FileSyncStatus]
"""Repository path -> status, built fresh for every sync operation"""


def list_descendants(path: Path) -> list[Path]:
    """Recursively list the files below a directory.

    Directories are traversed but not returned. A file path yields a
    list containing only that file.

    Args:
        path: Directory (or file) to list

    Returns:
        Sorted list of file paths

    Raises:
        PathNotFoundError: If ``path`` does not exist
    """
    if not path.exists():
        raise PathNotFoundError(str(path))
    if not path.is_dir():
        return [path]

    files: list[Path] = []
    try:
        for item in sorted(path.iterdir()):
            if item.is_dir():
                files.extend(list_descendants(item))
            elif item.is_file():
                files.append(item)
    except PermissionError as e:
        logger.warning("Skipping unreadable directory %s: %s", path, e)
    return files


class SyncStatusBuilder:
    """Computes the sync verdict of every file below a checkout path.

    Verdicts of the individual filters are combined as follows: the first
    filter including a path wins, otherwise the last filter with a verdict
    other than IGNORED decides. Included paths are then checked against
    the ignore rules, relative to the synced folder.

    Examples:
        >>> builder = SyncStatusBuilder(filters, IgnoreRuleSet.compile(""))
        >>> status = builder.build(Path("/work/pkg/jcr_root/apps/myproj"))
        >>> status["/apps/myproj/a.html"].verdict
        <SyncVerdict.INCLUDED: 1>
    """

    def __init__(
        self,
        filters: Sequence[Filter],
        ignore_rules: IgnoreRuleSet,
        lister: Callable[[Path], list[Path]] = list_descendants,
    ):
        """Initialize the builder.

        Args:
            filters: Filters in the order they appear in filter.xml
            ignore_rules: Compiled ignore rules for the operation
            lister: Directory enumeration function
        """
        self.filters = list(filters)
        self.ignore_rules = ignore_rules
        self.lister = lister

    def build(self, root_path: Path) -> SyncStatusMap:
        """Build the status map for every file below ``root_path``.

        Raises:
            PathNotFoundError: If ``root_path`` does not exist
        """
        root_path = Path(root_path)
        if not root_path.exists():
            raise PathNotFoundError(str(root_path))
        base = root_path if root_path.is_dir() else root_path.parent

        status: SyncStatusMap = {}
        for file_path in self.lister(root_path):
            remote_path = get_remote_path(file_path)
            relative_path = file_path.relative_to(base).as_posix()
            status[remote_path] = self.evaluate(remote_path, relative_path)

        logger.debug(
            "Computed sync status for %d path(s) below %s", len(status), root_path
        )
        return status

    def evaluate(self, remote_path: str, relative_path: str) -> FileSyncStatus:
        """Compute the status of a single path.

        Args:
            remote_path: Repository path of the file
            relative_path: Path relative to the synced folder, used for
                the ignore rules

        Returns:
            FileSyncStatus for the path
        """
        result = FileSyncStatus(SyncVerdict.IGNORED)
        for f in self.filters:
            verdict = self._filter_verdict(f, remote_path)
            if verdict is SyncVerdict.INCLUDED:
                result = FileSyncStatus(verdict, f)
                break
            if verdict is not SyncVerdict.IGNORED:
                result = FileSyncStatus(verdict, f)

        if result.verdict is SyncVerdict.INCLUDED and self.ignore_rules.denies(
            relative_path
        ):
            logger.debug("Excluded by ignore rules: %s", remote_path)
            return FileSyncStatus(SyncVerdict.EXCLUDED_BY_IGNORE_FILE)
        return result

    @staticmethod
    def _filter_verdict(f: Filter, remote_path: str) -> SyncVerdict:
        """Evaluate a filter, treating .content.xml as part of its folder.

        A marker belongs to every filter covering its folder, whatever the
        filter's rules say about the folder or the marker itself.
        """
        posix_path = PurePosixPath(remote_path)
        if posix_path.name == CONTENT_XML and f.covers(str(posix_path.parent)):
            return SyncVerdict.INCLUDED
        return f.get_sync_status(remote_path)


def build_sync_status_list(
    filters: Sequence[Filter],
    ignore_rules: IgnoreRuleSet,
    root_path: Path,
) -> SyncStatusMap:
    """Compute the sync status map for ``root_path``.

    Convenience wrapper around :class:`SyncStatusBuilder`.
    """
    return SyncStatusBuilder(filters, ignore_rules).build(root_path)
