"""Sync engine for pyvault - filters, packaging, push and pull."""

from .engine import (
    NullReporter,
    SyncDirection,
    SyncLockRegistry,
    SyncPhase,
    SyncReporter,
    VaultSyncEngine,
)
from .filter_xml import (
    parse_filter_string,
    parse_filter_xml,
    render_filter_xml,
    select_filters,
)
from .filters import Filter, FilterRule, RuleKind
from .ignore import (
    IGNORE_FILE_NAME,
    IgnoreRuleSet,
    build_ignore_content,
    load_ignore_rules,
)
from .operations import PackageOperations
from .package import PackageAssembler, PackageInfo, TempWorkspace, extract_package
from .reconcile import MarkerFolderPolicy, ReconcileResult, Reconciler
from .scanner import (
    FileSyncStatus,
    SyncStatusBuilder,
    SyncStatusMap,
    build_sync_status_list,
    list_descendants,
)
from .state import SyncedFileState, SyncTimestampCache
from .verdict import SyncResult, SyncSummary, SyncVerdict

__all__ = [
    "VaultSyncEngine",
    "SyncDirection",
    "SyncPhase",
    "SyncReporter",
    "NullReporter",
    "SyncLockRegistry",
    "PackageOperations",
    "Filter",
    "FilterRule",
    "RuleKind",
    "parse_filter_xml",
    "parse_filter_string",
    "render_filter_xml",
    "select_filters",
    "IGNORE_FILE_NAME",
    "IgnoreRuleSet",
    "build_ignore_content",
    "load_ignore_rules",
    "PackageAssembler",
    "PackageInfo",
    "TempWorkspace",
    "extract_package",
    "MarkerFolderPolicy",
    "ReconcileResult",
    "Reconciler",
    "FileSyncStatus",
    "SyncStatusBuilder",
    "SyncStatusMap",
    "build_sync_status_list",
    "list_descendants",
    "SyncedFileState",
    "SyncTimestampCache",
    "SyncResult",
    "SyncSummary",
    "SyncVerdict",
]
