# asset_sync/sync_api/schemas.py
import json
from typing import List, Optional, Dict, Any, Literal
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Enum-like Literals from the sync service
OperationType = Literal['INSERT', 'UPDATE', 'DELETE']
SyncMetadataStatus = Literal['pending', 'in_progress', 'completed', 'failed']


class _WireModel(BaseModel):
    # The service mixes snake_case and camelCase keys; unknown keys are kept, not rejected.
    model_config = ConfigDict(populate_by_name=True, extra="allow")


# --- Incremental upload ---
class ConflictItem(_WireModel):
    uuid: str
    reason: str = "conflict"
    server_version: Optional[int] = None


class SyncResponse(_WireModel):
    success: bool = True
    message: str = ""
    synced_count: int = 0
    failed_count: int = 0
    conflicts: List[ConflictItem] = Field(default_factory=list)

    @field_validator("conflicts", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return value or []


# --- Incremental download ---
class ServerChangeLog(_WireModel):
    sequence_id: int
    target_table: str
    operation_type: OperationType
    change_data: Dict[str, Any] = Field(default_factory=dict)
    record_uuid: Optional[str] = None
    device_id: Optional[str] = None
    created_at: Optional[str] = None

    @field_validator("change_data", mode="before")
    @classmethod
    def _decode_change_data(cls, value):
        if value is None:
            return {}
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return value


class GetChangesResponse(_WireModel):
    changes: List[ServerChangeLog] = Field(default_factory=list)
    has_more: bool = Field(default=False, validation_alias=AliasChoices("has_more", "hasMore"))
    last_sequence_id: int = Field(default=0, validation_alias=AliasChoices("last_sequence_id", "lastSequenceId"))


# --- Whole table download ---
class FullSyncResponse(_WireModel):
    success: bool = True
    message: str = ""
    data: List[Dict[str, Any]] = Field(default_factory=list)


class TableInfo(_WireModel):
    last_modified: Optional[str] = Field(default=None, validation_alias=AliasChoices("last_modified", "lastModified"))
    version: Optional[int] = None


# --- Paginated full sync session ---
class FullSyncSession(_WireModel):
    session_id: str
    table_name: Optional[str] = None
    total_count: int = 0
    page_size: int = 0
    total_pages: int = 0
    current_page: int = 0
    is_completed: bool = False
    created_at: Optional[str] = None


class StartFullSyncResponse(_WireModel):
    success: bool = True
    message: str = ""
    session: Optional[FullSyncSession] = None


class PaginationInfo(_WireModel):
    current_page: int = 0
    page_size: int = 0
    total_count: int = 0
    total_pages: int = 0
    has_next: bool = False
    has_prev: bool = False


class FullSyncBatchResponse(_WireModel):
    success: bool = True
    message: str = ""
    data: List[Dict[str, Any]] = Field(default_factory=list)
    pagination: Optional[PaginationInfo] = None
    is_last: bool = False
    checksum: Optional[str] = None
