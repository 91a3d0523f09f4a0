# asset_sync/sync_api/__init__.py
from .client import SyncAPIClient
from .exceptions import (
    SyncAPIError, APIConnectionError, APIRequestError,
    APIResponseError, AuthenticationError, is_network_error
)
from .schemas import (
    ConflictItem, SyncResponse, ServerChangeLog, GetChangesResponse,
    FullSyncResponse, TableInfo, FullSyncSession, StartFullSyncResponse,
    PaginationInfo, FullSyncBatchResponse,
    OperationType, SyncMetadataStatus  # Export Literals
)

__all__ = [
    "SyncAPIClient",
    "SyncAPIError", "APIConnectionError", "APIRequestError",
    "APIResponseError", "AuthenticationError", "is_network_error",
    "ConflictItem", "SyncResponse", "ServerChangeLog", "GetChangesResponse",
    "FullSyncResponse", "TableInfo", "FullSyncSession", "StartFullSyncResponse",
    "PaginationInfo", "FullSyncBatchResponse",
    "OperationType", "SyncMetadataStatus",
]
