"""Sync verdicts assigned to paths during a sync operation."""

from dataclasses import dataclass
from enum import Enum, IntEnum


class SyncVerdict(IntEnum):
    """Outcome of a sync operation for a single path.

    The integer values are the ones exchanged with status consumers and
    must not change.
    """

    INCLUDED = 1
    """Allowed by filters"""

    IGNORED = 0
    """Not covered by any filter root"""

    EXCLUDED = -1
    """Excluded by filter rules"""

    EXCLUDED_BY_IGNORE_FILE = -2
    """Excluded by .vltignore files or by the built-in excludes"""

    DELETED_FROM_REMOTE = -3
    """Deleted locally because the server no longer has it"""

    @property
    def label(self) -> str:
        """Human-readable description of the verdict."""
        return _LABELS[self]

    @property
    def is_synced(self) -> bool:
        """Whether the path was transferred (or removed) by the operation."""
        return self in (SyncVerdict.INCLUDED, SyncVerdict.DELETED_FROM_REMOTE)


_LABELS = {
    SyncVerdict.INCLUDED: "synced",
    SyncVerdict.IGNORED: "ignored",
    SyncVerdict.EXCLUDED: "excluded",
    SyncVerdict.EXCLUDED_BY_IGNORE_FILE: "excluded by .vltignore",
    SyncVerdict.DELETED_FROM_REMOTE: "deleted from remote",
}


class SyncSummary(str, Enum):
    """Overall result of a sync operation."""

    FULL = "full"
    """Every reported path was synced"""

    PARTIAL = "partial"
    """Some reported paths were synced"""

    NONE = "none"
    """Nothing was synced"""

    @classmethod
    def from_results(cls, results: list["SyncResult"]) -> "SyncSummary":
        synced = sum(1 for r in results if r.verdict.is_synced)
        if synced == 0:
            return cls.NONE
        if synced == len(results):
            return cls.FULL
        return cls.PARTIAL


@dataclass(frozen=True)
class SyncResult:
    """Final verdict for one repository path."""

    path: str
    """Repository path (POSIX style, rooted at /)"""

    verdict: SyncVerdict
    """Verdict assigned by the sync operation"""

    def to_dict(self) -> dict:
        """Convert to the ``{path, result}`` form used by status consumers."""
        return {"path": self.path, "result": int(self.verdict)}
