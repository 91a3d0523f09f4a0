# Tests/conftest.py
# Shared fixtures for the asset sync test suite.
#
# Imports
import math
import uuid
from typing import Any, Dict, List, Optional
#
# Third-Party Imports
import pytest
from hypothesis import HealthCheck, settings
#
# Local Imports
from asset_sync.config import SyncConfig
from asset_sync.Crypto.Field_Encryption import AESGCMEncryptionService
from asset_sync.DB.Sync_DB import SyncDatabase
from asset_sync.sync_api.schemas import (
    ConflictItem, FullSyncBatchResponse, FullSyncResponse, FullSyncSession, GetChangesResponse,
    ServerChangeLog, StartFullSyncResponse, SyncResponse, TableInfo,
)
#
#######################################################################################################################
#
# --- Hypothesis Settings ---

settings.register_profile(
    "sync_suite",
    deadline=2000,
    max_examples=60,
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
)
settings.load_profile("sync_suite")


# --- In-memory sync service ---

class FakeSyncServer:
    """
    Stands in for SyncAPIClient. Stores uploaded records per table, serves change logs and
    paginated full-sync sessions, and can be told to fail specific calls.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {"t_assets_sync": {}, "t_asset_chains_sync": {}}
        self.changes: List[ServerChangeLog] = []
        self.uploads: List[tuple] = []
        self.conflict_uuids: Dict[str, str] = {}
        self.last_modified: Dict[str, Optional[str]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.started_sessions: List[str] = []
        self.finished_sessions: List[str] = []
        self.batch_requests: List[tuple] = []
        self.fail_with: Dict[str, BaseException] = {}
        self.batch_failures: Dict[int, BaseException] = {}
        self.batch_failure_counts: Dict[int, int] = {}
        self.fixed_checksum: Optional[str] = None
        self.closed = False
        self._sequence = 0

    def _maybe_fail(self, name: str):
        error = self.fail_with.get(name)
        if error is not None:
            raise error

    # --- test helpers ---
    def seed(self, table_name: str, records: List[Dict[str, Any]]):
        for record in records:
            self.tables[table_name][record["uuid"]] = dict(record)

    def add_change(self, target_table: str, operation_type: str, change_data: Dict[str, Any],
                   device_id: str = "other-device") -> ServerChangeLog:
        self._sequence += 1
        change = ServerChangeLog(
            sequence_id=self._sequence,
            target_table=target_table,
            operation_type=operation_type,
            change_data=change_data,
            record_uuid=change_data.get("uuid"),
            device_id=device_id,
        )
        self.changes.append(change)
        return change

    # --- SyncAPIClient surface ---
    async def backup_init(self) -> Dict[str, Any]:
        self._maybe_fail("backup_init")
        return {"message": "ok"}

    async def incremental_sync(self, table_name: str, records: List[Dict[str, Any]]) -> SyncResponse:
        self._maybe_fail("incremental_sync")
        self.uploads.append((table_name, [dict(r) for r in records]))
        conflicts = [ConflictItem(uuid=r["uuid"], reason=self.conflict_uuids[r["uuid"]])
                     for r in records if r.get("uuid") in self.conflict_uuids]
        for record in records:
            if record.get("uuid") in self.conflict_uuids:
                continue
            stored = {k: v for k, v in record.items() if k != "operation_type"}
            if record.get("operation_type") == "DELETE":
                self.tables[table_name].pop(record["uuid"], None)
            else:
                self.tables[table_name].setdefault(record["uuid"], {}).update(stored)
        return SyncResponse(success=True, message="ok", synced_count=len(records) - len(conflicts),
                            conflicts=conflicts)

    async def get_changes(self, since: int = 0, limit: int = 100) -> GetChangesResponse:
        self._maybe_fail("get_changes")
        after = [c for c in self.changes if c.sequence_id > since]
        page = after[:limit]
        return GetChangesResponse(
            changes=page,
            has_more=len(after) > limit,
            last_sequence_id=page[-1].sequence_id if page else since,
        )

    async def full_sync(self, table_name: str) -> FullSyncResponse:
        self._maybe_fail("full_sync")
        return FullSyncResponse(success=True, data=[dict(r) for r in self.tables[table_name].values()])

    async def get_table_info(self, table_name: str) -> TableInfo:
        self._maybe_fail("get_table_info")
        return TableInfo(last_modified=self.last_modified.get(table_name))

    async def start_full_sync(self, table_name: str, page_size: int = 100) -> StartFullSyncResponse:
        self._maybe_fail("start_full_sync")
        records = [dict(r) for r in self.tables[table_name].values()]
        session_id = f"session-{len(self.sessions) + 1}"
        total_pages = math.ceil(len(records) / page_size) if records else 0
        self.sessions[session_id] = {"records": records, "page_size": page_size, "total_pages": total_pages}
        self.started_sessions.append(session_id)
        return StartFullSyncResponse(success=True, session=FullSyncSession(
            session_id=session_id,
            table_name=table_name,
            total_count=len(records),
            page_size=page_size,
            total_pages=total_pages,
        ))

    async def get_batch_data(self, session_id: str, page: int) -> FullSyncBatchResponse:
        self.batch_requests.append((session_id, page))
        if self.batch_failure_counts.get(page, 0) > 0:
            self.batch_failure_counts[page] -= 1
            raise self.batch_failures[page]
        self._maybe_fail("get_batch_data")
        session = self.sessions[session_id]
        size = session["page_size"]
        data = session["records"][(page - 1) * size: page * size]
        return FullSyncBatchResponse(
            success=True,
            data=data,
            is_last=page >= session["total_pages"],
            checksum=self.fixed_checksum or f"{session_id}-{page}",
        )

    async def finish_full_sync(self, session_id: str) -> None:
        self.finished_sessions.append(session_id)
        self._maybe_fail("finish_full_sync")

    async def close(self):
        self.closed = True


# --- Fixtures ---

@pytest.fixture(scope="function")
def memory_db_factory():
    """Factory fixture to create in-memory SyncDatabase instances."""
    created_dbs = []

    def _create_db():
        db = SyncDatabase(":memory:")
        created_dbs.append(db)
        return db

    yield _create_db
    for db in created_dbs:
        db.close_connection()


@pytest.fixture
def sync_db(memory_db_factory):
    return memory_db_factory()


@pytest.fixture
def sync_config():
    """Zero-delay configuration so retries and page pauses don't slow the suite."""
    return SyncConfig(
        device_id="device-test",
        retry_attempts=2,
        retry_base_delay=0,
        retry_max_delay=0,
        page_retry_attempts=3,
        page_retry_delay=0,
        page_delay=0,
        error_recovery_delay=0.01,
        batch_size=100,
        safe_batch_page_size=100,
    )


@pytest.fixture
def encryption():
    return AESGCMEncryptionService(AESGCMEncryptionService.generate_key())


@pytest.fixture
def fake_server():
    return FakeSyncServer()


@pytest.fixture
def make_asset():
    """Builds a plausible asset row; keyword arguments override fields."""
    counter = iter(range(1, 1_000_000))

    def _make(**overrides):
        n = next(counter)
        record = {
            "uuid": str(uuid.uuid4()),
            "label": f"host-{n}",
            "asset_ip": f"10.0.{n // 250}.{n % 250}",
            "group_name": "default",
            "auth_type": "password",
            "port": 22,
            "username": "root",
            "password": f"secret-{n}",
            "asset_type": "person",
            "favorite": 2,
            "created_at": "2024-01-01T00:00:00.000Z",
            "updated_at": "2024-01-01T00:00:00.000Z",
            "version": 1,
        }
        record.update(overrides)
        return record

    return _make
