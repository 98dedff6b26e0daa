"""In-memory cache of what the last sync saw.

The cache remembers, per repository path, the modification time, size
and content digest a file had when it was last synced. It only saves work
(hashing unchanged files) and can be cleared at any time without
affecting the outcome of a sync.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncedFileState:
    """State of a file when it was last synced."""

    mtime_ns: int
    """Modification time in nanoseconds (``st_mtime_ns``)"""

    size: int
    """File size in bytes"""

    digest: str
    """Content digest"""


class SyncTimestampCache:
    """Thread-safe map of repository path to :class:`SyncedFileState`.

    One instance is owned by a sync engine; engines for different targets
    should not share an instance.
    """

    def __init__(self) -> None:
        self._entries: dict[str, SyncedFileState] = {}
        self._lock = threading.Lock()

    def get(self, remote_path: str) -> Optional[SyncedFileState]:
        """Get the cached state of a path, if any."""
        with self._lock:
            return self._entries.get(remote_path)

    def put(self, remote_path: str, mtime_ns: int, size: int, digest: str) -> None:
        """Remember the state of a path."""
        with self._lock:
            self._entries[remote_path] = SyncedFileState(mtime_ns, size, digest)

    def remove(self, remote_path: str) -> None:
        """Forget a path."""
        with self._lock:
            self._entries.pop(remote_path, None)

    def clear(self) -> None:
        """Forget everything."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.debug("Cleared %d cached sync state(s)", count)

    def lookup_digest(
        self, remote_path: str, mtime_ns: int, size: int
    ) -> Optional[str]:
        """Return the cached digest if the file was not modified since.

        Both the modification time and the size must match, so an edit
        within the timestamp resolution of the filesystem that changes the
        size is still noticed.

        Args:
            remote_path: Repository path of the file
            mtime_ns: Current ``st_mtime_ns`` of the file
            size: Current size of the file in bytes

        Returns:
            The cached digest, or None when unknown or stale
        """
        entry = self.get(remote_path)
        if entry is not None and (entry.mtime_ns, entry.size) == (mtime_ns, size):
            return entry.digest
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
