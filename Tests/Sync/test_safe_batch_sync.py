# test_safe_batch_sync.py
#
# Full-table reconciliation: necessity check, atomic replace, intelligent merge, paging and cleanup.
#
# Imports
from unittest.mock import AsyncMock, MagicMock
#
# Third-Party Imports
import pytest
#
# Local Imports
from asset_sync.DB.Sync_DB import SchemaError
from asset_sync.sync_api import APIConnectionError, APIResponseError, AuthenticationError
from asset_sync.sync_api.schemas import StartFullSyncResponse
from asset_sync.Sync.Safe_Batch_Sync import (
    SAME_VERSION_REASON, FullSyncSessionError, SafeBatchSyncManager, resolve_conflict,
)
from asset_sync.Sync.Table_Registry import ASSETS, ConflictResolutionRule
#
#######################################################################################################################
#
# Functions:

@pytest.fixture
def batch_sync(sync_db, fake_server, sync_config, encryption):
    return SafeBatchSyncManager(sync_db, fake_server, sync_config, encryption)


def _mark_recently_synced(sync_db, fake_server):
    sync_db.update_sync_metadata("t_assets_sync", last_sync_time="2024-06-01T00:00:00.000Z")
    fake_server.last_modified["t_assets_sync"] = "2024-05-01T00:00:00.000Z"


# --- Necessity and short paths ---

@pytest.mark.asyncio
async def test_nothing_to_do_is_skipped(batch_sync, sync_db, fake_server):
    _mark_recently_synced(sync_db, fake_server)

    result = await batch_sync.perform_safe_batch_sync("t_assets_sync")

    assert result.action == "skipped"
    assert fake_server.started_sessions == []


@pytest.mark.asyncio
async def test_historical_rows_are_uploaded_without_a_session(batch_sync, sync_db, fake_server, make_asset):
    _mark_recently_synced(sync_db, fake_server)
    with sync_db.remote_apply_guard():
        for _ in range(10):
            sync_db.upsert_asset(make_asset())

    result = await batch_sync.perform_safe_batch_sync("t_assets")

    assert result.action == "historical_only"
    assert result.historical_uploaded == 10
    assert len(fake_server.uploads) == 1
    assert all(r["operation_type"] == "INSERT" and "password" not in r for r in fake_server.uploads[0][1])
    assert fake_server.started_sessions == []
    assert sync_db.get_historical_data_count("t_assets") == 0


@pytest.mark.asyncio
async def test_unreachable_server_abandons_run(batch_sync, sync_db, fake_server):
    fake_server.fail_with["get_table_info"] = APIConnectionError("connection refused")

    result = await batch_sync.perform_safe_batch_sync("t_assets_sync")

    assert result.action == "server_unavailable"
    assert fake_server.started_sessions == []
    assert sync_db.get_sync_metadata("t_assets_sync")["sync_status"] == "pending"


@pytest.mark.asyncio
async def test_table_info_error_defaults_to_syncing(batch_sync, fake_server, make_asset):
    fake_server.fail_with["get_table_info"] = APIResponseError(500, "oops")
    fake_server.seed("t_assets_sync", [make_asset()])

    result = await batch_sync.perform_safe_batch_sync("t_assets_sync")

    assert result.action == "atomic_replace"


@pytest.mark.asyncio
async def test_refused_session_raises(batch_sync, fake_server):
    fake_server.start_full_sync = AsyncMock(return_value=StartFullSyncResponse(success=False, message="busy"))

    with pytest.raises(FullSyncSessionError):
        await batch_sync.perform_safe_batch_sync("t_assets_sync")


# --- Atomic replace ---

@pytest.mark.asyncio
async def test_atomic_replace_swaps_in_server_copy(batch_sync, sync_db, fake_server, make_asset):
    fake_server.seed("t_assets_sync", [make_asset() for _ in range(250)])
    progress = []

    result = await batch_sync.perform_safe_batch_sync(
        "t_assets_sync", on_progress=lambda page, total, pct: progress.append((page, total, pct)))

    assert result.action == "atomic_replace"
    assert result.applied == 250
    assert progress == [(1, 3, 33), (2, 3, 67), (3, 3, 100)]
    assert sync_db.count_records("t_assets") == 250
    assert [t for t in sync_db.list_tables() if "_temp_" in t or "_backup_" in t] == []
    assert fake_server.finished_sessions == ["session-1"]

    metadata = sync_db.get_sync_metadata("t_assets_sync")
    assert metadata["sync_status"] == "completed"
    assert metadata["last_sync_version"] == 250
    assert sync_db.get_historical_data_count("t_assets") == 0
    assert sync_db.get_pending_changes() == []

    # change tracking must survive the swap
    sync_db.upsert_asset(make_asset())
    assert len(sync_db.get_pending_changes()) == 1


@pytest.mark.asyncio
async def test_repeated_checksum_pages_are_skipped(batch_sync, sync_db, fake_server, make_asset):
    fake_server.seed("t_assets_sync", [make_asset() for _ in range(250)])
    fake_server.fixed_checksum = "same"

    result = await batch_sync.perform_safe_batch_sync("t_assets_sync")

    assert len(fake_server.batch_requests) == 3
    assert result.applied == 100


# --- Intelligent merge ---

@pytest.mark.asyncio
async def test_intelligent_merge_resolves_each_record(batch_sync, sync_db, fake_server, make_asset):
    both_edited = make_asset(version=3, favorite=1, label="local-label")
    stale_local = make_asset(version=1)
    newer_local = make_asset(version=4, label="mine")
    for asset in (both_edited, stale_local, newer_local):
        sync_db.upsert_asset(asset)
    server_only = make_asset()
    fake_server.seed("t_assets_sync", [
        dict(both_edited, favorite=2, label="server-label"),
        server_only,
        dict(stale_local, version=5, port=2022),
        dict(newer_local, version=2, label="theirs"),
    ])

    result = await batch_sync.perform_safe_batch_sync("t_assets_sync")

    assert result.action == "intelligent_merge"
    assert (result.applied, result.kept_local, result.conflicts) == (3, 1, 0)

    merged = sync_db.get_record_by_uuid("t_assets", both_edited["uuid"])
    assert merged["favorite"] == 1
    assert merged["label"] == "server-label"
    assert merged["version"] == 4

    assert sync_db.get_record_by_uuid("t_assets", server_only["uuid"]) is not None
    adopted = sync_db.get_record_by_uuid("t_assets", stale_local["uuid"])
    assert (adopted["port"], adopted["version"]) == (2022, 6)
    assert sync_db.get_record_by_uuid("t_assets", newer_local["uuid"])["label"] == "mine"

    # merge writes are not queued as new local changes
    assert len(sync_db.get_pending_changes()) == 3
    assert sync_db.get_sync_metadata("t_assets_sync")["sync_status"] == "completed"


@pytest.mark.asyncio
async def test_identical_record_with_pending_change_is_recorded_as_conflict(batch_sync, sync_db, fake_server, make_asset):
    asset = make_asset(version=2)
    sync_db.upsert_asset(asset)
    fake_server.seed("t_assets_sync", [asset])

    result = await batch_sync.perform_safe_batch_sync("t_assets_sync")

    assert result.conflicts == 1
    conflicts = sync_db.list_sync_conflicts("t_assets_sync")
    assert [(c["record_uuid"], c["conflict_reason"]) for c in conflicts] == [(asset["uuid"], SAME_VERSION_REASON)]


# --- Paging failures ---

@pytest.mark.asyncio
async def test_persistent_page_failure_marks_failed_and_closes_session(batch_sync, sync_db, fake_server, make_asset):
    fake_server.seed("t_assets_sync", [make_asset() for _ in range(3)])
    fake_server.fail_with["get_batch_data"] = APIResponseError(500, "boom")

    with pytest.raises(APIResponseError):
        await batch_sync.perform_safe_batch_sync("t_assets_sync")

    assert len(fake_server.batch_requests) == 4  # first try plus page_retry_attempts
    assert fake_server.finished_sessions == ["session-1"]
    assert sync_db.get_sync_metadata("t_assets_sync")["sync_status"] == "failed"
    assert sync_db.count_records("t_assets") == 0
    assert [t for t in sync_db.list_tables() if "_temp_" in t] == []


@pytest.mark.asyncio
async def test_transient_page_failure_is_retried(batch_sync, sync_db, fake_server, make_asset):
    fake_server.seed("t_assets_sync", [make_asset() for _ in range(3)])
    fake_server.batch_failures[1] = APIResponseError(503, "busy")
    fake_server.batch_failure_counts[1] = 2

    result = await batch_sync.perform_safe_batch_sync("t_assets_sync")

    assert result.applied == 3
    assert fake_server.batch_requests == [("session-1", 1)] * 3


@pytest.mark.asyncio
async def test_auth_failure_on_page_is_not_retried(batch_sync, fake_server, make_asset):
    fake_server.seed("t_assets_sync", [make_asset()])
    fake_server.fail_with["get_batch_data"] = AuthenticationError("token expired")

    with pytest.raises(AuthenticationError):
        await batch_sync.perform_safe_batch_sync("t_assets_sync")
    assert len(fake_server.batch_requests) == 1
    assert fake_server.finished_sessions == ["session-1"]


@pytest.mark.asyncio
async def test_finish_failure_does_not_mask_result(batch_sync, fake_server, make_asset):
    fake_server.seed("t_assets_sync", [make_asset()])
    fake_server.fail_with["finish_full_sync"] = APIConnectionError("gone")

    result = await batch_sync.perform_safe_batch_sync("t_assets_sync")

    assert result.action == "atomic_replace"
    assert fake_server.finished_sessions == ["session-1"]


# --- Shadow table ---

def test_shadow_table_needs_a_readable_schema():
    db = MagicMock()
    manager = SafeBatchSyncManager(db, MagicMock())

    db.get_table_schema_sql.return_value = None
    with pytest.raises(SchemaError):
        manager._create_shadow_table(ASSETS)

    db.get_table_schema_sql.return_value = "CREATE VIEW t_assets AS SELECT 1"
    with pytest.raises(SchemaError):
        manager._create_shadow_table(ASSETS)
    db.execute_query.assert_not_called()


def test_shadow_table_renames_only_the_table_name():
    db = MagicMock()
    db.get_table_schema_sql.return_value = 'CREATE TABLE "t_assets"(uuid TEXT UNIQUE, note TEXT DEFAULT \'t_assets\')'
    manager = SafeBatchSyncManager(db, MagicMock())

    shadow = manager._create_shadow_table(ASSETS)

    assert shadow.startswith("t_assets_temp_")
    created_sql = db.execute_query.call_args[0][0]
    assert created_sql.startswith(f'CREATE TABLE "{shadow}"(')
    assert "DEFAULT 't_assets'" in created_sql


# --- Conflict resolution ---

RULES = ASSETS.conflict_rules
STAMP = "2024-01-01T00:00:00.000Z"


def _pair(**server_changes):
    local = {"uuid": "u", "label": "a", "port": 22, "favorite": 1, "version": 2, "updated_at": STAMP}
    return local, dict(local, **server_changes)


class TestResolveConflict:

    def test_higher_server_version_wins(self):
        local, server = _pair(version=5, label="b")
        decision = resolve_conflict(local, server, RULES)
        assert decision.action == "apply_server"
        assert decision.record["version"] == 6
        assert decision.record["label"] == "b"

    def test_higher_local_version_is_kept(self):
        local, server = _pair(version=1)
        assert resolve_conflict(local, server, RULES).action == "keep_local"

    def test_newer_timestamp_wins_on_equal_version(self):
        local, server = _pair(updated_at="2024-02-01T00:00:00.000Z")
        assert resolve_conflict(local, server, RULES).action == "apply_server"
        local, server = _pair(updated_at="2023-12-01T00:00:00.000Z")
        assert resolve_conflict(local, server, RULES).action == "keep_local"

    def test_missing_local_timestamp_prefers_server(self):
        local, server = _pair()
        local.pop("updated_at")
        assert resolve_conflict(local, server, RULES).action == "apply_server"

    def test_field_rules_merge_on_full_tie(self):
        local, server = _pair(label="b", port=2222, favorite=2)
        decision = resolve_conflict(local, server, RULES, now="2024-09-09T00:00:00.000Z")
        assert decision.action == "merge"
        assert decision.record["label"] == "b"
        assert decision.record["port"] == 2222
        assert decision.record["favorite"] == 1
        assert decision.record["version"] == 3
        assert decision.record["updated_at"] == "2024-09-09T00:00:00.000Z"

    def test_merge_rule_keeps_local_favorite_and_bumps_version(self):
        rules = (ConflictResolutionRule("favorite", "merge"), ConflictResolutionRule("label", "server_wins"))
        local, server = _pair(version=3, favorite=2, label="server label")
        local["version"] = 3

        decision = resolve_conflict(local, server, rules)

        assert decision.action == "merge"
        assert decision.record["favorite"] == 1
        assert decision.record["label"] == "server label"
        assert decision.record["version"] == 4

    def test_manual_rule_produces_conflict(self):
        rules = RULES + (ConflictResolutionRule("asset_type", "manual", 1),)
        local, server = _pair(asset_type="organization")
        local["asset_type"] = "person"
        decision = resolve_conflict(local, server, rules)
        assert decision.action == "conflict"
        assert "asset_type" in decision.reason

    def test_no_differing_rule_field_is_a_conflict(self):
        local, server = _pair()
        decision = resolve_conflict(local, server, RULES)
        assert (decision.action, decision.reason) == ("conflict", SAME_VERSION_REASON)

    def test_custom_rules_override_table_defaults(self, sync_db, fake_server):
        manager = SafeBatchSyncManager(sync_db, fake_server, conflict_rules={
            "t_assets_sync": (ConflictResolutionRule("favorite", "server_wins"),)})
        local, server = _pair(favorite=2)
        decision = resolve_conflict(local, server, manager.rules_for(ASSETS))
        assert decision.record["favorite"] == 2

#
# End of test_safe_batch_sync.py
#######################################################################################################################
