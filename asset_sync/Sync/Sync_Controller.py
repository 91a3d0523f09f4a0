# Sync_Controller.py
# Description: Orchestrates incremental and full sync runs under the SyncStateManager gate.
#
# Imports
import asyncio
import contextlib
import time
from dataclasses import asdict
from typing import Any, Dict, Optional
#
# 3rd-Party Imports
import httpx
from loguru import logger
#
# Local Imports
from ..config import SyncConfig
from ..Crypto.Field_Encryption import EncryptionService
from ..DB.Sync_DB import SyncDatabase
from ..sync_api.client import SyncAPIClient
from ..sync_api.exceptions import is_network_error
from .Safe_Batch_Sync import SafeBatchSyncManager
from .Sync_Engine import SyncEngine
from .Sync_Helpers import BatchSyncResult, SyncResult
from .Sync_State_Manager import SyncForceStoppedError, SyncState, SyncStateManager, SyncType
from .Table_Registry import SYNC_TABLES, get_table_spec
#
#######################################################################################################################
#
# Functions:

class SyncController:
    """
    Entry point used by the application: one instance per signed-in user and database.

    Every run goes through the state manager (`request_sync` -> work -> `finish_sync` or
    `fail_sync`), so a full sync and an incremental sync never overlap except when a full sync
    preempts an incremental one.
    """

    def __init__(self, db: SyncDatabase, api: SyncAPIClient, config: Optional[SyncConfig] = None,
                 encryption: Optional[EncryptionService] = None,
                 state_manager: Optional[SyncStateManager] = None,
                 engine: Optional[SyncEngine] = None,
                 batch_sync: Optional[SafeBatchSyncManager] = None):
        self.db = db
        self.api = api
        self.config = config or SyncConfig()
        self.encryption = encryption
        self.state = state_manager or SyncStateManager(self.config.error_recovery_delay)
        self.engine = engine or SyncEngine(db, api, self.config, encryption)
        self.batch_sync = batch_sync or SafeBatchSyncManager(db, api, self.config, encryption)
        self._polling_task: Optional[asyncio.Task] = None
        self._full_sync_task: Optional[asyncio.Task] = None
        self._polling_paused = False

    @classmethod
    def from_config(cls, db: SyncDatabase, config: SyncConfig, encryption: Optional[EncryptionService] = None,
                    transport: Optional[httpx.AsyncBaseTransport] = None) -> "SyncController":
        device_id = config.device_id or db.get_device_id()
        api = SyncAPIClient.from_config(config, device_id, transport=transport)
        return cls(db, api, config, encryption)

    def is_encryption_ready(self) -> bool:
        return self.encryption is not None and self.encryption.is_ready()

    # --- Enable / disable ---
    def enable_sync(self, user_id: Optional[str] = None):
        self.state.enable_sync(user_id)

    async def disable_sync(self):
        await self.stop_auto_sync()
        self.state.disable_sync()

    async def backup_init(self) -> Dict[str, Any]:
        response = await self.api.backup_init()
        logger.info(f"Backup initialization: {response}")
        return response

    # --- Work ---
    async def incremental_sync_all(self) -> SyncResult:
        """Pushes every table's pending changes, then pulls server changes."""
        if not self.is_encryption_ready():
            logger.warning("Encryption not ready, skipping incremental sync")
            return SyncResult(True, "Encryption not ready, incremental sync skipped")

        synced = failed = conflicts = 0
        reached = 0
        for table in SYNC_TABLES:
            try:
                result = await self.engine.incremental_sync_smart(table)
            except Exception as e:
                if is_network_error(e):
                    logger.warning(f"Server unavailable, skipping incremental sync of {table}: {e}")
                    continue
                logger.error(f"Incremental sync of {table} failed: {e}")
                return SyncResult(False, f"Incremental sync failed: {e}", synced, failed + 1, conflicts)
            reached += 1
            synced += result.synced_count
            failed += result.failed_count
            conflicts += result.conflict_count

        try:
            pulled = await self.engine.download_and_apply_cloud_changes()
        except Exception as e:
            if not is_network_error(e):
                logger.error(f"Applying cloud changes failed: {e}")
                return SyncResult(False, f"Incremental sync failed: {e}", synced, failed + 1, conflicts)
            logger.warning(f"Server unavailable, skipping cloud changes download: {e}")
            pulled = None

        if reached == 0 and pulled is None:
            message = "Server unavailable, incremental sync skipped"
            logger.warning(message)
            return SyncResult(True, message)

        message = f"Incremental sync completed: {synced} pushed, {failed} failed, {conflicts} conflict(s)"
        if pulled is not None:
            message += f", {pulled.applied} pulled"
        logger.info(message)
        return SyncResult(True, message, synced, failed, conflicts)

    def has_historical_data(self) -> bool:
        counts = {table: self.db.get_historical_data_count(get_table_spec(table).local_name) for table in SYNC_TABLES}
        logger.info(f"Historical data check: {counts}")
        return any(counts.values())

    async def full_sync_all(self) -> SyncResult:
        """
        Full reconciliation of every table. Skipped once a pull cursor exists and no historical
        rows remain, because incremental sync then keeps the tables current.
        """
        has_historical = self.has_historical_data()
        if self.db.get_last_sequence_id() > 0 and not has_historical:
            logger.info("Already initialized (cursor set, no historical data), skipping full sync")
            return SyncResult(True, "Initialized, skipping full sync")

        label = "Historical data sync" if has_historical else "Forced full sync"
        logger.info(f"{label} starting")
        completed = 0
        try:
            for table in SYNC_TABLES:
                if await self.smart_full_sync(table) is not None:
                    completed += 1
        except Exception as e:
            logger.error(f"{label} failed: {e}")
            return SyncResult(False, f"{label} failed: {e}", failed_count=1)

        if completed == 0:
            message = "Server unavailable, sync operation skipped"
            logger.warning(message)
            return SyncResult(True, message)
        logger.info(f"{label} completed")
        return SyncResult(True, f"{label} completed", synced_count=completed)

    async def smart_full_sync(self, table_name: str) -> Optional[BatchSyncResult]:
        """
        Safe batch sync of one table, followed by a whole-table download when the server had
        updates. Returns None when the table was skipped (no encryption, server unreachable).
        """
        if not self.is_encryption_ready():
            logger.warning(f"Encryption not ready, skipping full sync of {table_name}")
            return None

        def report(current: int, total: int, percentage: int):
            logger.info(f"{table_name} full sync progress: {current}/{total} ({percentage}%)")

        try:
            result = await self.batch_sync.perform_safe_batch_sync(
                table_name, self.config.safe_batch_page_size, on_progress=report)
        except Exception as e:
            if is_network_error(e):
                logger.warning(f"Server unavailable during full sync of {table_name}: {e}")
                return None
            raise
        if result.action == "server_unavailable":
            return None

        if result.action in ("atomic_replace", "intelligent_merge"):
            try:
                applied = await self.engine.full_sync_and_apply(table_name)
                logger.info(f"{table_name} full download applied {applied.applied} record(s)")
            except Exception as e:
                if not is_network_error(e):
                    raise
                logger.warning(f"Server unavailable, skipping full download of {table_name}: {e}")
        return result

    # --- Runs under the state gate ---
    async def sync_now(self) -> bool:
        if not self.state.can_start_sync(SyncType.INCREMENTAL):
            status = self.state.get_current_status()
            logger.warning(f"Cannot start incremental sync now ({status.type.value}/{status.state.value})")
            return False
        return await self._run_gated(SyncType.INCREMENTAL, self.incremental_sync_all)

    async def full_sync_now(self) -> bool:
        if not self.state.can_start_sync(SyncType.FULL):
            status = self.state.get_current_status()
            logger.warning(f"Cannot start full sync now ({status.type.value}/{status.state.value})")
            return False
        return await self._run_gated(SyncType.FULL, self._execute_full_sync)

    async def _run_gated(self, sync_type: SyncType, work) -> bool:
        try:
            run_id = await self.state.request_sync(sync_type)
        except SyncForceStoppedError as e:
            logger.info(f"{sync_type.value} sync request dropped: {e}")
            return False
        try:
            result = await work()
        except Exception as e:
            await self.state.fail_sync(e, run_id)
            return False
        if result.success:
            await self.state.finish_sync(run_id, result.message)
        else:
            await self.state.fail_sync(result.message, run_id)
        return result.success

    async def _execute_full_sync(self) -> SyncResult:
        self.state.update_progress(10, "Preparing full sync...")
        self._polling_paused = True
        try:
            completed = 0
            for position, table in enumerate(SYNC_TABLES):
                progress = 30 + int(40 * position)
                self.state.update_progress(progress, f"Syncing {table}...")
                if await self.smart_full_sync(table) is not None:
                    completed += 1
            self.state.update_progress(100, "Full sync completed")
        finally:
            self._polling_paused = False
        logger.info(f"Full sync completed for {completed} table(s)")
        return SyncResult(True, "Full sync completed", synced_count=completed)

    # --- Auto sync ---
    async def start_auto_sync(self):
        """Polls incremental sync every `sync_interval_seconds` and runs a full sync every `full_sync_interval_seconds`."""
        if self._polling_task is not None and not self._polling_task.done():
            logger.debug("Auto sync already running")
            return
        if not self.state.is_sync_enabled():
            self.state.enable_sync()
        self._polling_task = asyncio.create_task(self._polling_loop())
        self._full_sync_task = asyncio.create_task(self._full_sync_loop())
        logger.info(f"Auto sync started (every {self.config.sync_interval_seconds}s, "
                    f"full every {self.config.full_sync_interval_seconds}s)")

    async def stop_auto_sync(self):
        tasks = [t for t in (self._polling_task, self._full_sync_task) if t is not None]
        self._polling_task = self._full_sync_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if tasks:
            logger.info("Auto sync stopped")

    def is_auto_sync_running(self) -> bool:
        return self._polling_task is not None and not self._polling_task.done()

    async def _polling_loop(self):
        while True:
            if self._polling_paused:
                logger.debug("Incremental polling paused during full sync")
            else:
                try:
                    await self.sync_now()
                except Exception as e:
                    logger.error(f"Scheduled incremental sync raised: {e}")
            await asyncio.sleep(self.config.sync_interval_seconds)

    async def _full_sync_loop(self):
        while True:
            await asyncio.sleep(self.config.full_sync_interval_seconds)
            try:
                await self.full_sync_now()
            except Exception as e:
                logger.error(f"Scheduled full sync raised: {e}")

    # --- Status / teardown ---
    def get_system_status(self) -> Dict[str, Any]:
        status = asdict(self.state.get_current_status())
        status["type"] = status["type"].value
        status["state"] = status["state"].value
        tables = {}
        for table in SYNC_TABLES:
            spec = get_table_spec(table)
            metadata = self.db.get_sync_metadata(spec.sync_name)
            tables[table] = {
                "pending_changes": self.db.get_total_pending_changes_count(spec.sync_name),
                "historical_rows": self.db.get_historical_data_count(spec.local_name),
                "last_full_sync": metadata.get("last_sync_time"),
                "full_sync_status": metadata.get("sync_status"),
            }
        return {
            "sync": status,
            "queue": self.state.get_queue_info(),
            "auto_sync_running": self.is_auto_sync_running(),
            "encryption_ready": self.is_encryption_ready(),
            "last_sequence_id": self.db.get_last_sequence_id(),
            "tables": tables,
        }

    async def cancel_current_sync(self) -> bool:
        """Force-stops the running sync and rejects queued requests. False when nothing was running."""
        status = self.state.get_current_status()
        if status.state != SyncState.RUNNING and not self.state.get_queue_info()["length"]:
            logger.info("No sync to cancel")
            return False
        self.state.force_stop("Sync cancelled by user")
        return True

    async def wait_for_current_sync(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while self.state.get_current_status().state == SyncState.RUNNING:
            if time.monotonic() >= deadline:
                logger.warning(f"Sync still running after {timeout}s")
                return False
            await asyncio.sleep(0.1)
        return True

    async def close(self):
        logger.info("Shutting down sync controller")
        await self.stop_auto_sync()
        await self.wait_for_current_sync()
        await self.api.close()

#
# End of Sync_Controller.py
#######################################################################################################################
