"""Sync orchestration: push and pull as an explicit state machine.

A push walks through::

    PARSING_FILTERS -> STAGING -> ARCHIVING -> UPLOADING -> INSTALLING

and a pull through::

    PARSING_FILTERS -> STAGING -> ARCHIVING -> UPLOADING -> BUILDING
        -> DOWNLOADING -> EXTRACTING -> RECONCILING

Both end in CLEANING_UP followed by DONE. Any phase may fail; the engine
then reports FAILED, still runs CLEANING_UP and re-raises the error.
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol

from ..api import PackageManagerClient
from ..exceptions import (
    MalformedFilterError,
    NotInCheckoutError,
    PathNotFoundError,
    SyncInProgressError,
)
from ..utils import (
    find_filter_file,
    get_jcr_root,
    get_remote_path,
    is_path_in_checkout,
)
from .filter_xml import parse_filter_xml, select_filters
from .filters import Filter
from .ignore import IgnoreRuleSet, build_ignore_content, load_ignore_rules
from .operations import PackageOperations
from .package import (
    PackageAssembler,
    PackageInfo,
    TempWorkspace,
    extract_package,
    get_touched_filters,
)
from .reconcile import MarkerFolderPolicy, Reconciler
from .scanner import SyncStatusBuilder, SyncStatusMap, list_descendants
from .state import SyncTimestampCache
from .verdict import SyncResult

logger = logging.getLogger(__name__)


class SyncDirection(str, Enum):
    """Direction of a sync operation."""

    PUSH = "push"
    """Local checkout -> server"""

    PULL = "pull"
    """Server -> local checkout"""


class SyncPhase(str, Enum):
    """States of a sync operation."""

    IDLE = "idle"
    PARSING_FILTERS = "parsing_filters"
    STAGING = "staging"
    ARCHIVING = "archiving"
    UPLOADING = "uploading"
    INSTALLING = "installing"
    BUILDING = "building"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    RECONCILING = "reconciling"
    CLEANING_UP = "cleaning_up"
    DONE = "done"
    FAILED = "failed"

    @property
    def description(self) -> str:
        """Human readable description, e.g. "Parsing filters"."""
        return self.value.replace("_", " ").capitalize()


PUSH_PHASES = (
    SyncPhase.PARSING_FILTERS,
    SyncPhase.STAGING,
    SyncPhase.ARCHIVING,
    SyncPhase.UPLOADING,
    SyncPhase.INSTALLING,
)

PULL_PHASES = (
    SyncPhase.PARSING_FILTERS,
    SyncPhase.STAGING,
    SyncPhase.ARCHIVING,
    SyncPhase.UPLOADING,
    SyncPhase.BUILDING,
    SyncPhase.DOWNLOADING,
    SyncPhase.EXTRACTING,
    SyncPhase.RECONCILING,
)


class SyncReporter(Protocol):
    """Receives progress and results of sync operations."""

    def report_progress(self, phase: SyncPhase) -> None: ...

    def report_result(self, results: list[SyncResult]) -> None: ...


class NullReporter:
    """Reporter that discards everything."""

    def report_progress(self, phase: SyncPhase) -> None:
        pass

    def report_result(self, results: list[SyncResult]) -> None:
        pass


class SyncLockRegistry:
    """Tracks which checkout/server pairs have a sync in flight."""

    def __init__(self) -> None:
        self._active: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    @contextmanager
    def hold(self, jcr_root: Path, server_url: str) -> Iterator[None]:
        """Hold the lock for a checkout/server pair.

        Raises:
            SyncInProgressError: If another sync holds it already
        """
        key = (str(jcr_root), server_url)
        with self._lock:
            if key in self._active:
                raise SyncInProgressError(
                    f"A sync of {jcr_root} with {server_url} is already in progress"
                )
            self._active.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._active.discard(key)

    def is_locked(self, jcr_root: Path, server_url: str) -> bool:
        with self._lock:
            return (str(jcr_root), server_url) in self._active


_default_locks = SyncLockRegistry()


@dataclass
class SyncRun:
    """State carried through the phases of one sync operation."""

    direction: SyncDirection
    path: Path
    remote_path: str
    package: PackageInfo
    workspace: TempWorkspace = field(default_factory=TempWorkspace)
    download_workspace: Optional[TempWorkspace] = None
    filters: list[Filter] = field(default_factory=list)
    ignore_rules: Optional[IgnoreRuleSet] = None
    status: SyncStatusMap = field(default_factory=dict)
    phase: SyncPhase = SyncPhase.IDLE


class VaultSyncEngine:
    """Pushes checkout content to a server and pulls it back."""

    def __init__(
        self,
        client: PackageManagerClient,
        reporter: Optional[SyncReporter] = None,
        cache: Optional[SyncTimestampCache] = None,
        locks: Optional[SyncLockRegistry] = None,
        marker_policy: MarkerFolderPolicy = MarkerFolderPolicy.IF_EMPTY,
        max_workers: int = 4,
        lister: Callable[[Path], list[Path]] = list_descendants,
    ):
        """Initialize the sync engine.

        Args:
            client: Package manager client
            reporter: Receiver of progress and results
            cache: Last-synced cache owned by this engine
            locks: Registry preventing concurrent syncs of the same target
                (shared process-wide by default)
            marker_policy: Folder removal policy for deleted .content.xml files
            max_workers: Number of parallel hashing workers
            lister: Directory enumeration function
        """
        self.client = client
        self.operations = PackageOperations(client)
        self.reporter = reporter or NullReporter()
        self.cache = cache if cache is not None else SyncTimestampCache()
        self.locks = locks if locks is not None else _default_locks
        self.marker_policy = marker_policy
        self.max_workers = max_workers
        self.lister = lister

    def push(self, path: Path) -> list[SyncResult]:
        """Push a checkout path to the server.

        Returns:
            Verdict of every file below ``path``
        """
        return self.sync(path, SyncDirection.PUSH)

    def pull(self, path: Path) -> list[SyncResult]:
        """Pull a checkout path from the server.

        Returns:
            Verdict of every pulled file, plus the files deleted locally
        """
        return self.sync(path, SyncDirection.PULL)

    def status(self, path: Path) -> list[SyncResult]:
        """Compute the verdicts of a checkout path without syncing it."""
        path = self._check_path(path)
        filters = parse_filter_xml(find_filter_file(path))
        builder = SyncStatusBuilder(filters, load_ignore_rules(path), self.lister)
        return _to_results(builder.build(path))

    def sync(self, path: Path, direction: SyncDirection) -> list[SyncResult]:
        """Run a sync operation.

        Raises:
            NotInCheckoutError: If ``path`` is not below a jcr_root folder
            PathNotFoundError: If ``path`` does not exist
            SyncInProgressError: If the same target is already being synced
            VaultError: Any error of the failing phase
        """
        path = self._check_path(path)
        remote_path = get_remote_path(path)
        run = SyncRun(
            direction=direction,
            path=path,
            remote_path=remote_path,
            package=PackageInfo.for_remote_path(remote_path),
        )

        with self.locks.hold(get_jcr_root(path), self.client.server_url):
            logger.info("Starting %s of %s", direction.value, remote_path)
            results = self._run(run)

        self._enter(run, SyncPhase.DONE)
        self.reporter.report_result(results)
        return results

    @staticmethod
    def _check_path(path: Path) -> Path:
        path = Path(path).resolve()
        if not is_path_in_checkout(path):
            raise NotInCheckoutError(str(path))
        if not path.exists():
            raise PathNotFoundError(str(path))
        return path

    def _run(self, run: SyncRun) -> list[SyncResult]:
        handlers = {
            SyncPhase.PARSING_FILTERS: self._parse_filters,
            SyncPhase.STAGING: self._stage,
            SyncPhase.ARCHIVING: self._archive,
            SyncPhase.UPLOADING: self._upload,
            SyncPhase.INSTALLING: self._install,
            SyncPhase.BUILDING: self._build,
            SyncPhase.DOWNLOADING: self._download,
            SyncPhase.EXTRACTING: self._extract,
            SyncPhase.RECONCILING: self._reconcile,
        }
        phases = PUSH_PHASES if run.direction is SyncDirection.PUSH else PULL_PHASES

        try:
            for phase in phases:
                self._enter(run, phase)
                handlers[phase](run)
        except Exception as e:
            logger.debug("%s of %s failed: %s", run.direction.value, run.remote_path, e)
            self._enter(run, SyncPhase.FAILED)
            raise
        finally:
            self._clean_up(run)

        return _to_results(run.status)

    def _enter(self, run: SyncRun, phase: SyncPhase) -> None:
        logger.debug("%s %s: %s", run.direction.value, run.remote_path, phase.value)
        run.phase = phase
        self.reporter.report_progress(phase)

    # =========================
    # Phases
    # =========================

    def _parse_filters(self, run: SyncRun) -> None:
        filter_file = find_filter_file(run.path)
        if not filter_file.is_file():
            raise MalformedFilterError(f"Filter file {filter_file} does not exist")
        run.filters = parse_filter_xml(filter_file)

        run.workspace.create()
        excludes_path = run.workspace.excludes_path
        excludes_path.write_text(build_ignore_content(run.path), encoding="utf-8")
        run.ignore_rules = IgnoreRuleSet.compile(
            excludes_path.read_text(encoding="utf-8")
        )
        excludes_path.unlink()
        logger.debug("Loaded %d filter(s) from %s", len(run.filters), filter_file)

    def _stage(self, run: SyncRun) -> None:
        if run.direction is SyncDirection.PULL:
            # A pull package only carries the filter
            return
        builder = SyncStatusBuilder(run.filters, run.ignore_rules, self.lister)
        run.status = builder.build(run.path)
        PackageAssembler(run.workspace).stage(run.path, run.status)

    def _archive(self, run: SyncRun) -> None:
        if run.direction is SyncDirection.PUSH:
            filters = get_touched_filters(run.status)
        else:
            filters = select_filters(run.filters, run.remote_path)
        assembler = PackageAssembler(run.workspace)
        assembler.write_meta_inf(filters, run.remote_path, run.package)
        assembler.archive()

    def _upload(self, run: SyncRun) -> None:
        self.operations.upload(run.workspace.archive_path, run.package)

    def _install(self, run: SyncRun) -> None:
        self.operations.install(run.package)

    def _build(self, run: SyncRun) -> None:
        self.operations.build(run.package)

    def _download(self, run: SyncRun) -> None:
        run.download_workspace = TempWorkspace()
        run.download_workspace.create()
        self.operations.download(run.package, run.download_workspace.archive_path)

    def _extract(self, run: SyncRun) -> None:
        workspace = run.download_workspace
        extract_package(workspace.archive_path, workspace.path)

    def _reconcile(self, run: SyncRun) -> None:
        reconciler = Reconciler(
            run.filters,
            run.ignore_rules,
            cache=self.cache,
            marker_policy=self.marker_policy,
            max_workers=self.max_workers,
            lister=self.lister,
        )
        result = reconciler.reconcile(run.path, run.download_workspace.jcr_root)
        run.status = result.status

    def _clean_up(self, run: SyncRun) -> None:
        failed = run.phase is SyncPhase.FAILED
        self._enter(run, SyncPhase.CLEANING_UP)
        run.workspace.cleanup()
        if run.download_workspace is not None:
            run.download_workspace.cleanup()
        if failed:
            run.phase = SyncPhase.FAILED


def _to_results(status: SyncStatusMap) -> list[SyncResult]:
    return [SyncResult(path, entry.verdict) for path, entry in status.items()]
