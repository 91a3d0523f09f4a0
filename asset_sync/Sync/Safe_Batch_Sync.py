# Safe_Batch_Sync.py
# Description: Full-table reconciliation through paginated server sessions.
#
"""
Safe_Batch_Sync.py
------------------

Brings one local table in line with the server's copy without losing local work.

Flow of `SafeBatchSyncManager.perform_safe_batch_sync`:

1. Ask the server whether the table changed since the last completed full sync.
2. Nothing changed: stop, or only upload never-logged ("historical") local rows.
3. Open a paginated full-sync session.
4. Small table with no local changes: download into a shadow table and swap it in atomically.
   Otherwise: merge page by page, resolving conflicts per record and recording the ones that
   need a human in `sync_conflicts`.
5. Upload historical rows, update `sync_metadata`, always close the session.
"""
# Imports
import asyncio
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from ..config import SyncConfig
from ..Crypto.Field_Encryption import DecryptionError, EncryptionError, EncryptionService
from ..DB.Sync_DB import ConflictError, SchemaError, SyncDatabase, utc_now_iso, validate_identifier
from ..sync_api.client import SyncAPIClient
from ..sync_api.exceptions import APIRequestError, AuthenticationError, is_network_error
from ..sync_api.schemas import FullSyncBatchResponse, FullSyncSession
from .Record_Transform import prepare_incoming_record, prepare_record_for_upload
from .Sync_Helpers import BatchSyncResult, ProgressCallback, chunked, parse_timestamp, with_retry
from .Table_Registry import ConflictResolutionRule, RecordValidationError, TableSpec, get_table_spec
#
#######################################################################################################################
#
# Functions:

SAME_VERSION_REASON = "Version and timestamp are the same, requires manual resolution"


class ServerUnavailableError(Exception):
    """The sync service could not be reached; the run is abandoned without touching local data."""
    is_network_error = True


class FullSyncSessionError(Exception):
    """The server refused to open a full sync session."""
    pass


@dataclass
class MergeDecision:
    action: str  # apply_server | keep_local | merge | conflict
    record: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None


def _version_of(record: Dict[str, Any]) -> int:
    value = record.get("version")
    try:
        return int(value) if value is not None else 1
    except (TypeError, ValueError):
        return 1


def _timestamp_of(record: Dict[str, Any]):
    return parse_timestamp(record.get("updated_at")) or parse_timestamp(record.get("created_at"))


def resolve_conflict(local: Dict[str, Any], server: Dict[str, Any],
                     rules: Sequence[ConflictResolutionRule], now: Optional[str] = None) -> MergeDecision:
    """
    Decides what happens to a record that changed both locally (pending upload) and on the server.

    - The higher `version` wins outright.
    - Equal versions: the newer `updated_at` wins.
    - Equal versions and timestamps: the table's field rules are applied to the fields that differ.
      `client_wins` keeps the local value; `server_wins` and `latest_wins` take the server value;
      `merge` keeps the local `favorite` flag and takes the server value for anything else. A
      differing `manual` field, or no differing rule field at all, is a conflict.

    Records adopted from the server or merged carry `version = max(local, server) + 1`.
    """
    local_version = _version_of(local)
    server_version = _version_of(server)

    if server_version > local_version:
        return MergeDecision("apply_server", {**server, "version": server_version + 1})
    if local_version > server_version:
        return MergeDecision("keep_local")

    local_time = _timestamp_of(local)
    server_time = _timestamp_of(server)
    if local_time != server_time:
        if local_time is None or (server_time is not None and server_time > local_time):
            return MergeDecision("apply_server", {**server, "version": server_version + 1})
        return MergeDecision("keep_local")

    merged = dict(local)
    differing = False
    manual_fields: List[str] = []
    for rule in sorted(rules, key=lambda r: r.priority):
        if rule.field not in server:
            continue
        local_value, server_value = local.get(rule.field), server.get(rule.field)
        if local_value == server_value:
            continue
        differing = True
        if rule.strategy == "manual":
            manual_fields.append(rule.field)
        elif rule.strategy == "client_wins":
            merged[rule.field] = local_value
        elif rule.strategy == "merge" and rule.field == "favorite":
            merged[rule.field] = local_value
        else:
            merged[rule.field] = server_value

    if manual_fields:
        return MergeDecision("conflict", reason=f"Fields require manual resolution: {', '.join(manual_fields)}")
    if not differing:
        return MergeDecision("conflict", reason=SAME_VERSION_REASON)

    merged["version"] = max(local_version, server_version) + 1
    merged["updated_at"] = now or utc_now_iso()
    return MergeDecision("merge", merged)


class SafeBatchSyncManager:
    """
    Full-table reconciliation for one table at a time.

    The atomic-replace path is only taken when nothing local could be lost: the table is small,
    nothing is pending upload and there are no historical rows. Everything else goes through the
    page-by-page merge.
    """

    _NON_RETRYABLE = (AuthenticationError, APIRequestError)

    def __init__(self, db: SyncDatabase, api: SyncAPIClient, config: Optional[SyncConfig] = None,
                 encryption: Optional[EncryptionService] = None,
                 conflict_rules: Optional[Dict[str, Sequence[ConflictResolutionRule]]] = None):
        self.db = db
        self.api = api
        self.config = config or SyncConfig()
        self.encryption = encryption
        self.conflict_rules = dict(conflict_rules or {})
        self._processed_checksums: Set[str] = set()

    def rules_for(self, spec: TableSpec) -> Sequence[ConflictResolutionRule]:
        return self.conflict_rules.get(spec.sync_name, spec.conflict_rules)

    async def perform_safe_batch_sync(self, table_name: str, page_size: Optional[int] = None,
                                      on_progress: Optional[ProgressCallback] = None) -> BatchSyncResult:
        """
        Reconciles `table_name` with the server.

        Returns:
            BatchSyncResult: `action` is one of skipped, server_unavailable, historical_only,
            atomic_replace or intelligent_merge.

        Raises:
            Any error after the session was opened; the table's metadata is set to `failed` first.
        """
        spec = get_table_spec(table_name)
        page_size = page_size or self.config.safe_batch_page_size
        self.db.prepare_sync_environment()
        metadata = self.db.get_sync_metadata(spec.sync_name)

        try:
            needs_sync = await self.check_sync_necessity(spec, metadata)
        except ServerUnavailableError as e:
            logger.warning(f"Server unavailable, skipping batch sync of {spec.sync_name}: {e}")
            return BatchSyncResult(spec.sync_name, "server_unavailable", str(e))

        historical_count = self.db.get_historical_data_count(spec.local_name)
        if not needs_sync and historical_count == 0:
            logger.info(f"{spec.sync_name} needs no sync: no server updates and no historical data")
            return BatchSyncResult(spec.sync_name, "skipped", "No server updates and no historical data")
        if not needs_sync:
            logger.info(f"No server updates for {spec.sync_name}; uploading {historical_count} historical row(s) only")
            uploaded = await self.upload_historical_data(spec)
            return BatchSyncResult(spec.sync_name, "historical_only",
                                   f"Uploaded {uploaded} historical row(s)", historical_uploaded=uploaded)

        try:
            response = await self._retry(lambda: self.api.start_full_sync(spec.sync_name, page_size),
                                         f"Starting full sync session for {spec.sync_name}")
        except Exception as e:
            if is_network_error(e):
                logger.warning(f"Server unavailable, cannot open full sync session for {spec.sync_name}: {e}")
                return BatchSyncResult(spec.sync_name, "server_unavailable", str(e))
            raise
        if not response.success or response.session is None:
            raise FullSyncSessionError(f"Server refused full sync of {spec.sync_name}: {response.message}")

        session = response.session
        self.db.update_sync_metadata(spec.sync_name, sync_status="in_progress")
        logger.info(f"Full sync session {session.session_id} for {spec.sync_name}: "
                    f"{session.total_count} record(s) in {self._total_pages(session, page_size)} page(s)")
        try:
            has_local_changes = (self.db.get_total_pending_changes_count(spec.sync_name) > 0
                                 or historical_count > 0)
            if session.total_count <= self.config.fast_path_threshold and not has_local_changes:
                result = await self.perform_atomic_replace(spec, session, page_size, on_progress)
            else:
                result = await self.perform_intelligent_merge(spec, session, page_size, on_progress)

            result.historical_uploaded = await self.upload_historical_data(spec)
            now = utc_now_iso()
            self.db.update_sync_metadata(
                spec.sync_name,
                last_sync_time=now,
                last_sync_version=session.total_count,
                local_last_modified=now,
                sync_status="completed",
            )
            logger.info(f"Batch sync of {spec.sync_name} finished ({result.action}): {result.message}")
            return result
        except Exception as e:
            logger.error(f"Batch sync of {spec.sync_name} failed: {e}")
            self.db.update_sync_metadata(spec.sync_name, sync_status="failed")
            raise
        finally:
            await self._finish_session(session.session_id)
            self._processed_checksums.clear()

    async def check_sync_necessity(self, spec: TableSpec, metadata: Dict[str, Any]) -> bool:
        """
        True when the server's `last_modified` is newer than our last completed sync, or either
        side is unknown. Errors other than connectivity default to syncing.

        Raises:
            ServerUnavailableError: The server could not be reached.
        """
        try:
            info = await self.api.get_table_info(spec.sync_name)
        except Exception as e:
            if is_network_error(e):
                raise ServerUnavailableError(str(e)) from e
            logger.warning(f"Could not read table info for {spec.sync_name}, syncing anyway: {e}")
            return True

        if info.last_modified:
            self.db.update_sync_metadata(spec.sync_name, server_last_modified=info.last_modified)
        server_time = parse_timestamp(info.last_modified)
        local_time = parse_timestamp(metadata.get("last_sync_time"))
        if server_time is None or local_time is None:
            return True
        return server_time > local_time

    # --- Fast path: shadow table + atomic swap ---
    async def perform_atomic_replace(self, spec: TableSpec, session: FullSyncSession, page_size: int,
                                     on_progress: Optional[ProgressCallback] = None) -> BatchSyncResult:
        shadow = self._create_shadow_table(spec)
        stored = skipped = 0
        try:
            async for page, total_pages, batch in self._iter_pages(spec, session, page_size):
                records, rejected = await self._prepare_incoming(spec, batch.data)
                skipped += rejected
                with self.db.transaction():
                    stored += self.db.insert_or_replace_records(shadow, records)
                self._report(on_progress, page, total_pages)
            self._swap_tables(spec, shadow)
        finally:
            if self.db.table_exists(shadow):
                self.db.execute_query(f"DROP TABLE IF EXISTS {shadow}", commit=True)
            self.db.forget_table_columns(shadow)

        self.db.mark_remote_records(spec.local_name, [r["uuid"] for r in self.db.get_all_records(spec.local_name)])
        message = f"Replaced {spec.local_name} with {stored} server record(s)"
        if skipped:
            message += f", {skipped} unreadable record(s) skipped"
        return BatchSyncResult(spec.sync_name, "atomic_replace", message,
                               total_records=session.total_count, applied=stored)

    def _create_shadow_table(self, spec: TableSpec) -> str:
        schema_sql = self.db.get_table_schema_sql(spec.local_name)
        if not schema_sql:
            raise SchemaError(f"Cannot read table structure of {spec.local_name}")
        shadow = validate_identifier(f"{spec.local_name}_temp_{int(time.time() * 1000)}")
        pattern = re.compile(
            rf"(CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?)([\"`']?){re.escape(spec.local_name)}\2(?![A-Za-z0-9_])",
            re.IGNORECASE)
        shadow_sql, replaced = pattern.subn(lambda m: f"{m.group(1)}{m.group(2)}{shadow}{m.group(2)}", schema_sql, 1)
        if not replaced:
            raise SchemaError(f"Unexpected table definition for {spec.local_name}: {schema_sql[:120]}")
        self.db.execute_query(shadow_sql, commit=True)
        logger.debug(f"Created shadow table {shadow}")
        return shadow

    def _swap_tables(self, spec: TableSpec, shadow: str):
        """Renames shadow -> original in one transaction; a failure rolls every rename back."""
        original = spec.local_name
        backup = validate_identifier(f"{original}_backup_{int(time.time() * 1000)}")
        with self.db.remote_apply_guard():
            with self.db.transaction():
                if self.db.table_exists(original):
                    self.db.execute_query(f"ALTER TABLE {original} RENAME TO {backup}")
                    self.db.execute_query(f"ALTER TABLE {shadow} RENAME TO {original}")
                    self.db.execute_query(f"DROP TABLE {backup}")
                else:
                    self.db.execute_query(f"ALTER TABLE {shadow} RENAME TO {original}")
        for name in (original, shadow, backup):
            self.db.forget_table_columns(name)
        self.db.ensure_data_table_objects(original)
        logger.info(f"Swapped server copy into {original}")

    # --- Merge path ---
    async def perform_intelligent_merge(self, spec: TableSpec, session: FullSyncSession, page_size: int,
                                        on_progress: Optional[ProgressCallback] = None) -> BatchSyncResult:
        result = BatchSyncResult(spec.sync_name, "intelligent_merge", total_records=session.total_count)
        rules = self.rules_for(spec)
        skipped = 0

        async for page, total_pages, batch in self._iter_pages(spec, session, page_size):
            records, rejected = await self._prepare_incoming(spec, batch.data)
            skipped += rejected
            uuids = [r["uuid"] for r in records]
            local_rows = self.db.get_records_by_uuids(spec.local_name, uuids)
            pending = self.db.get_pending_uuids(spec.sync_name, uuids)

            decisions = []
            for record in records:
                local = local_rows.get(record["uuid"])
                try:
                    if local is None or record["uuid"] not in pending:
                        decision = MergeDecision("apply_server", record)
                    else:
                        decision = resolve_conflict(local, record, rules)
                except Exception as e:
                    logger.error(f"Conflict resolution failed for {spec.sync_name} {record['uuid']}, keeping local: {e}")
                    decision = MergeDecision("keep_local")
                decisions.append((record, local, decision))

            self._apply_decisions(spec, decisions, result)
            self._report(on_progress, page, total_pages)
            if self.config.page_delay > 0 and page < total_pages:
                await asyncio.sleep(self.config.page_delay)

        result.message = (f"Merged {spec.sync_name}: {result.applied} applied, {result.kept_local} kept local, "
                          f"{result.conflicts} conflict(s), {skipped} unreadable")
        return result

    def _apply_decisions(self, spec: TableSpec, decisions, result: BatchSyncResult):
        adopted: List[str] = []
        with self.db.remote_apply_guard():
            with self.db.transaction():
                for server_record, local, decision in decisions:
                    if decision.action in ("apply_server", "merge"):
                        try:
                            self.db.upsert_record(spec.local_name, decision.record)
                        except ConflictError as e:
                            logger.error(f"Cannot apply {spec.sync_name} {server_record['uuid']}, keeping local: {e}")
                            result.kept_local += 1
                            continue
                        result.applied += 1
                        if decision.action == "apply_server":
                            adopted.append(server_record["uuid"])
                    elif decision.action == "conflict":
                        self.db.record_sync_conflict(spec.sync_name, server_record["uuid"],
                                                     decision.reason or "conflict", local, server_record)
                        result.conflicts += 1
                    else:
                        result.kept_local += 1
                self.db.mark_remote_records(spec.local_name, adopted)
        if result.conflicts:
            logger.warning(f"{result.conflicts} conflict(s) recorded for {spec.sync_name} so far")

    # --- Paging ---
    @staticmethod
    def _total_pages(session: FullSyncSession, page_size: int) -> int:
        if session.total_pages > 0:
            return session.total_pages
        size = session.page_size or page_size
        return math.ceil(session.total_count / size) if size else 0

    async def _iter_pages(self, spec: TableSpec, session: FullSyncSession, page_size: int):
        """Yields (page, total_pages, batch), skipping pages whose checksum was already processed."""
        total_pages = self._total_pages(session, page_size)
        for page in range(1, total_pages + 1):
            batch = await self._fetch_page(spec, session.session_id, page)
            if batch.checksum and batch.checksum in self._processed_checksums:
                logger.debug(f"Page {page} of {spec.sync_name} already processed (checksum {batch.checksum})")
            else:
                yield page, total_pages, batch
                if batch.checksum:
                    self._processed_checksums.add(batch.checksum)
            if batch.is_last:
                break

    async def _fetch_page(self, spec: TableSpec, session_id: str, page: int) -> FullSyncBatchResponse:
        retries = self.config.page_retry_attempts
        for attempt in range(retries + 1):
            try:
                batch = await self.api.get_batch_data(session_id, page)
                if not batch.success:
                    raise FullSyncSessionError(f"Server failed page {page} of {spec.sync_name}: {batch.message}")
                return batch
            except self._NON_RETRYABLE:
                raise
            except Exception as e:
                if attempt >= retries:
                    logger.error(f"Page {page} of {spec.sync_name} failed after {retries + 1} attempt(s): {e}")
                    raise
                logger.warning(f"Page {page} of {spec.sync_name} failed (attempt {attempt + 1}): {e}. "
                               f"Retrying in {self.config.page_retry_delay}s")
                await asyncio.sleep(self.config.page_retry_delay)
        raise FullSyncSessionError(f"Could not fetch page {page} of {spec.sync_name}")

    async def _prepare_incoming(self, spec: TableSpec, rows: List[Dict[str, Any]]):
        records: List[Dict[str, Any]] = []
        rejected = 0
        for data in rows:
            try:
                records.append(await prepare_incoming_record(spec, data, self.encryption))
            except (DecryptionError, RecordValidationError) as e:
                logger.error(f"Skipping server {spec.sync_name} record {data.get('uuid')}: {e}")
                rejected += 1
        return records, rejected

    @staticmethod
    def _report(on_progress: Optional[ProgressCallback], page: int, total_pages: int):
        if on_progress is None or total_pages <= 0:
            return
        on_progress(page, total_pages, int(page * 100 / total_pages + 0.5))

    # --- Historical rows ---
    async def upload_historical_data(self, spec: TableSpec) -> int:
        """
        Uploads local rows that never appeared in the change log, then logs them as synced.
        Stops quietly when the server is unreachable; the rows stay historical for next time.
        """
        total = self.db.get_historical_data_count(spec.local_name)
        if total == 0:
            return 0
        rows = self.db.get_historical_records(spec.local_name, limit=total)
        uploaded = failed = 0

        for batch in chunked(rows, self.config.historical_upload_batch_size):
            payloads: List[Dict[str, Any]] = []
            sent: List[Dict[str, Any]] = []
            for row in batch:
                try:
                    data = spec.filter_record(row)
                    payloads.append(await prepare_record_for_upload(
                        spec, {**data, "operation_type": "INSERT"}, self.encryption))
                    sent.append(data)
                except (EncryptionError, RecordValidationError) as e:
                    logger.error(f"Not uploading historical {spec.sync_name} row {row.get('uuid')}: {e}")
                    failed += 1
            if not payloads:
                continue
            try:
                response = await self._retry(lambda: self.api.incremental_sync(spec.sync_name, payloads),
                                             f"Historical upload of {len(payloads)} {spec.sync_name} row(s)")
            except Exception as e:
                if is_network_error(e):
                    logger.warning(f"Server unreachable, historical upload of {spec.sync_name} stopped: {e}")
                    break
                logger.error(f"Historical upload batch of {spec.sync_name} failed: {e}")
                failed += len(sent)
                continue
            if not response.success:
                logger.error(f"Server rejected historical {spec.sync_name} batch: {response.message}")
                failed += len(sent)
                continue
            if response.conflicts:
                logger.warning(f"Server reported {len(response.conflicts)} conflict(s) in historical "
                               f"{spec.sync_name} upload")
            self.db.record_historical_upload(spec.sync_name, sent)
            uploaded += len(sent)

        logger.info(f"Historical upload of {spec.sync_name}: {uploaded} uploaded, {failed} failed")
        return uploaded

    # --- Helpers ---
    async def _retry(self, operation, description: str):
        return await with_retry(
            operation,
            attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            description=description,
            non_retryable=self._NON_RETRYABLE,
        )

    async def _finish_session(self, session_id: str):
        try:
            await self.api.finish_full_sync(session_id)
            logger.debug(f"Full sync session {session_id} closed")
        except Exception as e:
            logger.warning(f"Could not close full sync session {session_id}: {e}")

#
# End of Safe_Batch_Sync.py
#######################################################################################################################
