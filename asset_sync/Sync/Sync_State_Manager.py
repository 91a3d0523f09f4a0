# Sync_State_Manager.py
# Description: Arbitration between full and incremental sync runs.
#
"""
Sync_State_Manager.py
---------------------

Single authority deciding whether a FULL or INCREMENTAL sync may start now, must wait in the
queue, or preempts the running one. It holds no sync logic of its own.

State flow:
    DISABLED -> IDLE (enable) -> RUNNING (start) -> IDLE (finish)
                                                 -> ERROR (fail, back to IDLE after a cooldown)
                                                 -> PAUSED (a FULL request preempts an INCREMENTAL)
    any state -> DISABLED (disable: force stop, queued requests rejected)

One instance is constructed by the caller and passed to whoever needs it; there is no module
level singleton.
"""
# Imports
import asyncio
import itertools
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

class SyncType(str, Enum):
    NONE = "none"
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncState(str, Enum):
    DISABLED = "disabled"
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


class SyncStateError(Exception):
    """Base exception for sync arbitration errors."""
    pass


class SyncForceStoppedError(SyncStateError):
    """A queued sync request was rejected because sync was force stopped (disable, user switch)."""

    def __init__(self, sync_type: Optional["SyncType"] = None, message: str = "Sync force stopped"):
        super().__init__(message)
        self.sync_type = sync_type


@dataclass
class SyncStatus:
    type: SyncType = SyncType.NONE
    state: SyncState = SyncState.DISABLED
    enabled: bool = False
    current_user_id: Optional[str] = None
    start_time: Optional[float] = None
    progress: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    last_sync_time: Optional[float] = None


StatusListener = Callable[[SyncStatus], None]

_PRIORITY = {SyncType.FULL: 1, SyncType.INCREMENTAL: 2}


@dataclass
class _PendingRequest:
    type: SyncType
    priority: int
    sequence: int
    future: asyncio.Future


class SyncStateManager:

    def __init__(self, error_recovery_delay: float = 5.0):
        self.error_recovery_delay = error_recovery_delay
        self._status = SyncStatus()
        self._pending: List[_PendingRequest] = []
        self._listeners: List[StatusListener] = []
        self._sequence = itertools.count()
        self._recovery_task: Optional[asyncio.Task] = None
        self._run_ids = itertools.count(1)
        self._current_run: Optional[int] = None

    # --- Status ---
    def get_current_status(self) -> SyncStatus:
        return replace(self._status)

    def is_sync_enabled(self) -> bool:
        return self._status.enabled

    def add_status_listener(self, listener: StatusListener):
        self._listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _update_status(self, **changes: Any):
        self._status = replace(self._status, **changes)
        snapshot = replace(self._status)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Sync status listener {listener!r} raised: {e}")

    def get_queue_info(self) -> Dict[str, Any]:
        return {
            "length": len(self._pending),
            "types": [request.type.value for request in self._pending],
        }

    # --- Lifecycle ---
    def enable_sync(self, user_id: Optional[str] = None):
        changes: Dict[str, Any] = {"enabled": True, "message": "Sync enabled", "error": None}
        if user_id is not None:
            changes["current_user_id"] = user_id
        if self._status.state in (SyncState.DISABLED, SyncState.ERROR):
            changes.update(state=SyncState.IDLE, type=SyncType.NONE)
        self._update_status(**changes)
        logger.info(f"Sync enabled (user={self._status.current_user_id})")
        self._process_next_in_queue()

    def disable_sync(self):
        """Force-stops everything, rejecting queued requests, and leaves the manager DISABLED."""
        if self._status.state == SyncState.RUNNING or self._pending:
            self.force_stop()
        self._cancel_recovery()
        self._update_status(enabled=False, state=SyncState.DISABLED, type=SyncType.NONE, message="Sync disabled")
        logger.info("Sync disabled")

    def switch_user(self, new_user_id: str):
        if new_user_id == self._status.current_user_id:
            return
        logger.info(f"Switching sync user from {self._status.current_user_id} to {new_user_id}")
        self.force_stop()
        self._update_status(
            current_user_id=new_user_id,
            state=SyncState.IDLE if self._status.enabled else SyncState.DISABLED,
            type=SyncType.NONE,
            message=f"Switched to user {new_user_id}",
        )

    # --- Arbitration ---
    def can_start_sync(self, sync_type: SyncType) -> bool:
        if not self._status.enabled:
            return False
        if self._status.state == SyncState.IDLE:
            return True
        # FULL may preempt a running INCREMENTAL; nothing else preempts
        return (self._status.state == SyncState.RUNNING
                and self._status.type == SyncType.INCREMENTAL
                and sync_type == SyncType.FULL)

    async def request_sync(self, sync_type: SyncType) -> int:
        """
        Starts `sync_type` now if allowed, otherwise waits in the priority queue until it is
        started. Returns the run id to hand back to `finish_sync` / `fail_sync`.

        Raises:
            SyncForceStoppedError: The request was still queued when sync was force stopped.
        """
        if sync_type == SyncType.NONE:
            raise ValueError("Cannot request a sync of type NONE")
        if self.can_start_sync(sync_type):
            return self._start_sync(sync_type)

        future = asyncio.get_running_loop().create_future()
        self._pending.append(_PendingRequest(sync_type, _PRIORITY[sync_type], next(self._sequence), future))
        self._pending.sort(key=lambda r: (r.priority, r.sequence))
        logger.info(f"Sync request queued: {sync_type.value}, queue length: {len(self._pending)}")
        return await future

    def _start_sync(self, sync_type: SyncType) -> int:
        if self._status.state == SyncState.RUNNING and self._status.type == SyncType.INCREMENTAL \
                and sync_type == SyncType.FULL:
            logger.info("Full sync preempts the running incremental sync")
            self._update_status(state=SyncState.PAUSED, message="Incremental sync paused for full sync")

        self._current_run = next(self._run_ids)
        self._update_status(
            type=sync_type,
            state=SyncState.RUNNING,
            start_time=time.time(),
            progress=0,
            message=f"{sync_type.value} sync running",
            error=None,
        )
        logger.info(f"Sync started: {sync_type.value} (run {self._current_run})")
        return self._current_run

    def update_progress(self, progress: float, message: Optional[str] = None):
        if self._status.state != SyncState.RUNNING:
            return
        changes: Dict[str, Any] = {"progress": int(max(0, min(100, progress)))}
        if message is not None:
            changes["message"] = message
        self._update_status(**changes)

    def _is_stale_completion(self, run_id: Optional[int]) -> bool:
        """A run reporting back after another run took over (preempted, force stopped)."""
        if run_id is None or run_id == self._current_run:
            return False
        logger.info(f"Ignoring completion of run {run_id}; current run is {self._current_run}")
        return True

    async def finish_sync(self, run_id: Optional[int] = None, message: Optional[str] = None):
        """Ends the current run. A `run_id` other than the current run is ignored."""
        if self._is_stale_completion(run_id):
            return
        if self._status.state != SyncState.RUNNING:
            logger.warning(f"finish_sync called while state is {self._status.state.value}")
            return
        self._current_run = None
        finished = self._status.type
        elapsed = time.time() - (self._status.start_time or time.time())
        self._update_status(
            type=SyncType.NONE,
            state=SyncState.IDLE if self._status.enabled else SyncState.DISABLED,
            progress=100,
            last_sync_time=time.time(),
            message=message or f"{finished.value} sync completed",
        )
        logger.info(f"Sync finished: {finished.value} in {elapsed:.2f}s")
        self._process_next_in_queue()

    async def fail_sync(self, error: Any, run_id: Optional[int] = None):
        """Moves to ERROR; after `error_recovery_delay` returns to IDLE (if still enabled) and drains the queue."""
        if self._is_stale_completion(run_id):
            return
        if self._status.state != SyncState.RUNNING:
            logger.warning(f"fail_sync called while state is {self._status.state.value}: {error}")
            return
        self._current_run = None
        failed = self._status.type
        self._update_status(
            state=SyncState.ERROR,
            type=SyncType.NONE,
            error=str(error),
            message=f"{failed.value} sync failed: {error}",
        )
        logger.error(f"Sync failed ({failed.value}): {error}")
        self._cancel_recovery()
        self._recovery_task = asyncio.create_task(self._recover_after_error())

    async def _recover_after_error(self):
        await asyncio.sleep(self.error_recovery_delay)
        self._recovery_task = None
        if self._status.state == SyncState.ERROR and self._status.enabled:
            self._update_status(state=SyncState.IDLE, error=None, message="Recovered from sync error")
            self._process_next_in_queue()

    def _cancel_recovery(self):
        if self._recovery_task is not None and not self._recovery_task.done():
            self._recovery_task.cancel()
        self._recovery_task = None

    def _process_next_in_queue(self):
        while self._pending and self.can_start_sync(self._pending[0].type):
            request = self._pending.pop(0)
            if request.future.done():
                continue  # waiter was cancelled
            request.future.set_result(self._start_sync(request.type))
            return

    def force_stop(self, reason: str = "Sync force stopped"):
        """Rejects every queued request with SyncForceStoppedError and resets to IDLE/DISABLED."""
        pending, self._pending = self._pending, []
        for request in pending:
            if not request.future.done():
                request.future.set_exception(SyncForceStoppedError(request.type, reason))
        self._current_run = None
        self._update_status(
            type=SyncType.NONE,
            state=SyncState.IDLE if self._status.enabled else SyncState.DISABLED,
            message="Sync stopped",
        )
        logger.info(f"All sync operations force stopped ({len(pending)} queued request(s) rejected)")

#
# End of Sync_State_Manager.py
#######################################################################################################################
