from .Sync_State_Manager import (
    SyncState, SyncStateManager, SyncStatus, SyncType, SyncStateError, SyncForceStoppedError
)
from .Sync_Engine import SyncEngine
from .Safe_Batch_Sync import (
    SafeBatchSyncManager, MergeDecision, ServerUnavailableError, FullSyncSessionError, resolve_conflict
)
from .Sync_Controller import SyncController
from .Sync_Helpers import BatchSyncResult, ChangeRecord, FullApplyResult, PullResult, SyncResult
from .Table_Registry import (
    ConflictResolutionRule, RecordValidationError, TableSpec, UnknownTableError,
    SYNC_TABLES, get_table_spec, resolve_server_table
)

__all__ = [
    "SyncState", "SyncStateManager", "SyncStatus", "SyncType", "SyncStateError", "SyncForceStoppedError",
    "SyncEngine",
    "SafeBatchSyncManager", "MergeDecision", "ServerUnavailableError", "FullSyncSessionError", "resolve_conflict",
    "SyncController",
    "BatchSyncResult", "ChangeRecord", "FullApplyResult", "PullResult", "SyncResult",
    "ConflictResolutionRule", "RecordValidationError", "TableSpec", "UnknownTableError",
    "SYNC_TABLES", "get_table_spec", "resolve_server_table",
]
