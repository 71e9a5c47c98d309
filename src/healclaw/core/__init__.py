"""HealClaw core components."""

from healclaw.core.dedup import group_by_repository
from healclaw.core.history import HistoryAnalysis, HistoryStore
from healclaw.core.locks import LockAcquisitionError, LockManager
from healclaw.core.retry import retry_async
from healclaw.core.scheduler import create_batches
from healclaw.core.throttle import SafetyThrottle, SkipReason
from healclaw.core.workspace import WorkspaceManager

__all__ = [
    "HistoryAnalysis",
    "HistoryStore",
    "LockAcquisitionError",
    "LockManager",
    "SafetyThrottle",
    "SkipReason",
    "WorkspaceManager",
    "create_batches",
    "group_by_repository",
    "retry_async",
]
