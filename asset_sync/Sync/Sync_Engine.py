# Sync_Engine.py
# Description: Incremental push/pull of row-level changes between the local store and the sync service.
#
# Imports
import asyncio
import time
from typing import List, Optional, Tuple
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
from ..config import SyncConfig
from ..Crypto.Field_Encryption import DecryptionError, EncryptionError, EncryptionService
from ..DB.Sync_DB import ConflictError, SyncDatabase
from ..sync_api.client import SyncAPIClient
from ..sync_api.exceptions import APIRequestError, AuthenticationError, is_network_error
from ..sync_api.schemas import ServerChangeLog
from .Record_Transform import prepare_incoming_record, prepare_record_for_upload
from .Sync_Helpers import (
    ChangeRecord, FullApplyResult, PullResult, SyncResult,
    calculate_optimal_page_size, chunked, compress_changes, covered_change_ids,
    log_compression_stats, with_retry,
)
from .Table_Registry import (
    RecordValidationError, TableSpec, UnknownTableError, get_table_spec, resolve_server_table,
)
#
#######################################################################################################################
#
# Functions:

# (synced, failed, conflicts)
_Counts = Tuple[int, int, int]


class SyncEngine:
    """
    Incremental reconciliation of one device's local store with the sync service.

    Push: pending change-log rows are compressed, encrypted, uploaded in bounded-concurrency
    batches and marked synced/conflict from the server's answer.
    Pull: server change logs are fetched from the persisted sequence cursor and applied under
    the remote-apply guard so they are not queued for upload again.
    """

    _NON_RETRYABLE = (AuthenticationError, APIRequestError)

    def __init__(self, db: SyncDatabase, api: SyncAPIClient, config: Optional[SyncConfig] = None,
                 encryption: Optional[EncryptionService] = None):
        self.db = db
        self.api = api
        self.config = config or SyncConfig()
        self.encryption = encryption

    async def _retry(self, operation, description: str):
        return await with_retry(
            operation,
            attempts=self.config.retry_attempts,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
            description=description,
            non_retryable=self._NON_RETRYABLE,
        )

    # --- Push ---
    async def incremental_sync(self, table_name: str) -> SyncResult:
        """Uploads every pending change of `table_name`."""
        spec = get_table_spec(table_name)
        rows = self.db.get_pending_changes(spec.sync_name)
        if not rows:
            logger.debug(f"No pending changes for {spec.sync_name}")
            return SyncResult(True, f"No pending changes for {spec.sync_name}")

        changes = [ChangeRecord.from_row(row) for row in rows]
        synced, failed, conflicts = await self._upload_changes(spec, changes)
        message = (f"Incremental sync of {spec.sync_name}: {synced} synced, {failed} failed, "
                   f"{conflicts} conflict(s)")
        logger.info(message)
        return SyncResult(failed == 0, message, synced, failed, conflicts)

    async def incremental_sync_smart(self, table_name: str) -> SyncResult:
        """Standard upload for small backlogs, paginated large-data mode above `large_data_threshold`."""
        spec = get_table_spec(table_name)
        total = self.db.get_total_pending_changes_count(spec.sync_name)
        if total <= self.config.large_data_threshold:
            return await self.incremental_sync(spec.sync_name)
        logger.info(f"{total} pending changes for {spec.sync_name} exceed {self.config.large_data_threshold}; "
                    f"using paginated upload")
        return await self._incremental_sync_paged(spec, total)

    async def _incremental_sync_paged(self, spec: TableSpec, total: int) -> SyncResult:
        page_size = calculate_optimal_page_size(total, self.config.page_size, self.config.adaptive_page_size)
        semaphore = asyncio.Semaphore(self.config.max_concurrent_pages)
        started = time.monotonic()
        tasks: List[asyncio.Task] = []
        after_id = 0
        pages = 0

        while True:
            await semaphore.acquire()
            try:
                rows = self.db.get_pending_changes_page(spec.sync_name, page_size, after_id=after_id)
            except BaseException:
                semaphore.release()
                raise
            if not rows:
                semaphore.release()
                break
            after_id = rows[-1]["id"]
            pages += 1
            tasks.append(asyncio.create_task(self._process_page(spec, rows, pages, semaphore)))
            if len(rows) < page_size:
                break

        outcomes = await asyncio.gather(*tasks)
        synced = sum(o[0] for o in outcomes)
        failed = sum(o[1] for o in outcomes)
        conflicts = sum(o[2] for o in outcomes)
        duration_ms = int((time.monotonic() - started) * 1000)
        throughput = synced / (duration_ms / 1000) if duration_ms > 0 else float(synced)
        message = (f"Large data sync of {spec.sync_name}: {pages} page(s) of {page_size}, {synced} succeeded, "
                   f"{failed} failed, {conflicts} conflict(s) in {duration_ms} ms "
                   f"({throughput:.1f} records/sec)")
        logger.info(message)
        return SyncResult(failed == 0, message, synced, failed, conflicts)

    async def _process_page(self, spec: TableSpec, rows, page_number: int, semaphore: asyncio.Semaphore) -> _Counts:
        try:
            changes = [ChangeRecord.from_row(row) for row in rows]
            return await self._upload_changes(spec, changes)
        except Exception as e:
            logger.error(f"Page {page_number} of {spec.sync_name} failed: {e}")
            return 0, len(rows), 0
        finally:
            semaphore.release()

    async def _upload_changes(self, spec: TableSpec, changes: List[ChangeRecord]) -> _Counts:
        if self.config.compression_enabled:
            compressed = compress_changes(changes)
            log_compression_stats(changes, compressed)
            collapsed = {c.id for c in changes} - covered_change_ids(compressed)
            if collapsed:
                # net effect is nothing to upload for these
                self.db.mark_changes_synced(collapsed)
        else:
            compressed = list(changes)

        semaphore = asyncio.Semaphore(self.config.max_concurrent_batches)

        async def run(batch: List[ChangeRecord]) -> _Counts:
            async with semaphore:
                return await self._upload_batch(spec, batch)

        outcomes = await asyncio.gather(*(run(list(b)) for b in chunked(compressed, self.config.batch_size)))
        return (sum(o[0] for o in outcomes), sum(o[1] for o in outcomes), sum(o[2] for o in outcomes))

    async def _upload_batch(self, spec: TableSpec, batch: List[ChangeRecord]) -> _Counts:
        records = []
        uploadable: List[ChangeRecord] = []
        failed = 0
        for change in batch:
            try:
                records.append(await prepare_record_for_upload(spec, change.to_upload_payload(), self.encryption))
                uploadable.append(change)
            except EncryptionError as e:
                # left pending; retried on the next cycle
                logger.error(f"Not uploading {spec.sync_name} {change.record_uuid}: encryption failed: {e}")
                failed += 1
        if not uploadable:
            return 0, failed, 0

        try:
            response = await self._retry(
                lambda: self.api.incremental_sync(spec.sync_name, records),
                f"Upload of {len(records)} {spec.sync_name} change(s)",
            )
        except Exception as e:
            if is_network_error(e):
                logger.warning(f"Server unreachable, {len(uploadable)} {spec.sync_name} change(s) stay pending: {e}")
                return 0, failed, 0
            logger.error(f"Upload of {len(uploadable)} {spec.sync_name} change(s) failed: {e}")
            return 0, failed + len(uploadable), 0

        if not response.success and not response.conflicts:
            logger.error(f"Server rejected {len(uploadable)} {spec.sync_name} change(s): {response.message}")
            return 0, failed + len(uploadable), 0

        reasons = {conflict.uuid: conflict.reason for conflict in response.conflicts}
        conflicted = [c for c in uploadable if c.record_uuid in reasons]
        succeeded = [c for c in uploadable if c.record_uuid not in reasons]

        if conflicted:
            reason = ",".join(f"{c.record_uuid}:{reasons[c.record_uuid]}" for c in conflicted)
            self.db.mark_changes_conflict([i for c in conflicted for i in c.merged_ids], reason)
        self.db.mark_changes_synced([i for c in succeeded for i in c.merged_ids])

        for change in succeeded:
            if change.operation_type != "UPDATE":
                continue
            version = change.change_data.get("version")
            if isinstance(version, int) and not isinstance(version, bool) and version > 0:
                self.db.set_version(spec.local_name, change.record_uuid, version + 1)

        return len(succeeded), failed, len(conflicted)

    # --- Pull ---
    async def download_and_apply_cloud_changes(self) -> PullResult:
        """
        Applies server change logs after the persisted cursor, page by page. The cursor is saved
        after every page; re-applying a page is harmless because writes are upserts/deletes.
        """
        since = self.db.get_last_sequence_id()
        result = PullResult(last_sequence_id=since)

        with self.db.remote_apply_guard():
            while True:
                cursor = since
                try:
                    response = await self._retry(
                        lambda: self.api.get_changes(cursor, self.config.batch_size),
                        f"Fetching changes since {cursor}",
                    )
                except Exception as e:
                    if is_network_error(e):
                        logger.warning(f"Server unreachable while pulling changes since {cursor}: {e}")
                        break
                    raise
                if not response.changes:
                    break

                for change in response.changes:
                    if change.sequence_id <= cursor:
                        logger.debug(f"Change {change.sequence_id} already applied (cursor {cursor})")
                        continue
                    if await self._apply_single_change(change):
                        result.applied += 1
                    else:
                        result.skipped += 1
                    result.last_sequence_id = max(result.last_sequence_id, change.sequence_id)

                self.db.set_last_sequence_id(result.last_sequence_id)
                if not response.has_more:
                    break
                if result.last_sequence_id <= cursor:
                    logger.warning(f"Server reported more changes but the cursor did not move past {cursor}; stopping")
                    break
                since = result.last_sequence_id

        logger.info(f"Pulled cloud changes: {result.applied} applied, {result.skipped} skipped, "
                    f"cursor at {result.last_sequence_id}")
        return result

    async def _apply_single_change(self, change: ServerChangeLog) -> bool:
        try:
            spec = resolve_server_table(change.target_table)
        except UnknownTableError as e:
            logger.warning(f"Skipping change {change.sequence_id}: {e}")
            return False

        data = dict(change.change_data)
        record_uuid = data.get("uuid") or change.record_uuid
        if record_uuid:
            data["uuid"] = record_uuid

        try:
            if change.operation_type == "DELETE":
                if not record_uuid:
                    logger.warning(f"Skipping DELETE change {change.sequence_id} without a uuid")
                    return False
                self.db.delete_record_by_uuid(spec.local_name, record_uuid)
                return True

            record = await prepare_incoming_record(spec, data, self.encryption)
            self.db.apply_upsert(spec.local_name, record)
            self.db.mark_remote_records(spec.local_name, [record["uuid"]])
            return True
        except DecryptionError as e:
            logger.error(f"Skipping change {change.sequence_id} ({spec.sync_name} {record_uuid}): {e}")
        except RecordValidationError as e:
            logger.error(f"Skipping change {change.sequence_id}: {e}")
        except ConflictError as e:
            logger.error(f"Skipping change {change.sequence_id}: {e}")
        return False

    async def full_sync_and_apply(self, table_name: str) -> FullApplyResult:
        """Downloads the whole remote table once and upserts every record without a pending local change."""
        spec = get_table_spec(table_name)
        response = await self._retry(lambda: self.api.full_sync(spec.sync_name), f"Full download of {spec.sync_name}")
        result = FullApplyResult()
        applied_uuids = []
        pending = self.db.get_pending_uuids(spec.sync_name, [d.get("uuid") for d in response.data])

        with self.db.remote_apply_guard():
            for data in response.data:
                try:
                    record = await prepare_incoming_record(spec, data, self.encryption)
                except (DecryptionError, RecordValidationError) as e:
                    logger.error(f"Skipping {spec.sync_name} record {data.get('uuid')}: {e}")
                    result.skipped += 1
                    continue
                if record["uuid"] in pending:
                    logger.debug(f"Keeping local {spec.sync_name} {record['uuid']}: change pending upload")
                    result.skipped += 1
                    continue
                self.db.apply_upsert(spec.local_name, record)
                result.applied += 1
                applied_uuids.append(record["uuid"])
            self.db.mark_remote_records(spec.local_name, applied_uuids)

        logger.info(f"Full apply of {spec.sync_name}: {result.applied} applied, {result.skipped} skipped")
        return result

#
# End of Sync_Engine.py
#######################################################################################################################
