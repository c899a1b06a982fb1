"""Pivot: a local SQLite mirror of GitHub issues with a per-issue sync state machine."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pivot-issues")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from pivot.core import PivotDB, open_store
from pivot.sync_state import SyncEvent, SyncState

__all__ = ["PivotDB", "SyncEvent", "SyncState", "__version__", "open_store"]
