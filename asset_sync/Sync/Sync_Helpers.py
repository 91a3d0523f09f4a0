# Sync_Helpers.py
# Description: Change compression, retry, paging and result types shared by the sync engine and batch manager.
#
# Imports
import asyncio
import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Type, TypeVar, Union
#
# 3rd-Party Imports
from loguru import logger
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

T = TypeVar("T")

# onProgress(current, total, percentage), called synchronously
ProgressCallback = Callable[[int, int, int], None]


@dataclass
class ChangeRecord:
    """A queued local mutation read from `change_log`."""
    id: Union[int, str]
    table_name: str
    record_uuid: str
    operation_type: str
    change_data: Dict[str, Any] = field(default_factory=dict)
    sync_status: str = "pending"
    # every change-log id this record stands for after compression
    merged_ids: List[Union[int, str]] = field(default_factory=list)

    def __post_init__(self):
        if not self.merged_ids:
            self.merged_ids = [self.id]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ChangeRecord":
        change_data = row.get("change_data") or {}
        if isinstance(change_data, str):
            change_data = json.loads(change_data)
        return cls(
            id=row["id"],
            table_name=row["table_name"],
            record_uuid=row["record_uuid"],
            operation_type=row["operation_type"],
            change_data=change_data,
            sync_status=row.get("sync_status", "pending"),
        )

    def to_upload_payload(self) -> Dict[str, Any]:
        payload = dict(self.change_data)
        payload.setdefault("uuid", self.record_uuid)
        payload["operation_type"] = self.operation_type
        return payload


@dataclass
class SyncResult:
    success: bool
    message: str
    synced_count: int = 0
    failed_count: int = 0
    conflict_count: int = 0


@dataclass
class PullResult:
    applied: int = 0
    skipped: int = 0
    last_sequence_id: int = 0


@dataclass
class FullApplyResult:
    applied: int = 0
    skipped: int = 0


@dataclass
class BatchSyncResult:
    table_name: str
    action: str  # skipped | server_unavailable | historical_only | atomic_replace | intelligent_merge
    message: str = ""
    total_records: int = 0
    applied: int = 0
    kept_local: int = 0
    conflicts: int = 0
    historical_uploaded: int = 0


def _id_sort_key(change_id: Union[int, str]) -> Tuple[int, Any]:
    try:
        return (0, int(change_id))
    except (TypeError, ValueError):
        return (1, str(change_id))


def compress_changes(changes: Sequence[ChangeRecord]) -> List[ChangeRecord]:
    """
    Collapses each record's change history to its net effect.

    - INSERT then DELETE: nothing is uploaded.
    - INSERT then UPDATE: one INSERT carrying the latest data.
    - UPDATE then UPDATE: the latest UPDATE, keeping the first change's id.
    - anything then DELETE: DELETE. Later INSERT/UPDATE of a deleted uuid are ignored.

    The result is ordered by change id (numeric, falling back to string order).
    """
    latest: Dict[str, ChangeRecord] = {}
    deleted: Set[str] = set()

    for change in changes:
        key = f"{change.table_name}-{change.record_uuid}"
        existing = latest.get(key)
        operation = change.operation_type

        if operation == "DELETE":
            if existing is not None and existing.operation_type == "INSERT":
                del latest[key]
            else:
                merged = (existing.merged_ids if existing else []) + [change.id]
                latest[key] = ChangeRecord(change.id, change.table_name, change.record_uuid, "DELETE",
                                           dict(change.change_data), change.sync_status, merged)
            deleted.add(key)
            continue

        if key in deleted:
            logger.debug(f"Ignoring {operation} for {change.record_uuid} after it was deleted in this batch")
            continue

        if existing is None:
            latest[key] = ChangeRecord(change.id, change.table_name, change.record_uuid, operation,
                                       dict(change.change_data), change.sync_status, [change.id])
            continue

        merged = existing.merged_ids + [change.id]
        if existing.operation_type == "INSERT" and operation == "UPDATE":
            latest[key] = ChangeRecord(existing.id, change.table_name, change.record_uuid, "INSERT",
                                       dict(change.change_data), change.sync_status, merged)
        elif existing.operation_type == "UPDATE" and operation == "UPDATE":
            latest[key] = ChangeRecord(existing.id, change.table_name, change.record_uuid, "UPDATE",
                                       dict(change.change_data), change.sync_status, merged)
        else:
            latest[key] = ChangeRecord(change.id, change.table_name, change.record_uuid, operation,
                                       dict(change.change_data), change.sync_status, merged)

    return sorted(latest.values(), key=lambda c: _id_sort_key(c.id))


def covered_change_ids(compressed: Iterable[ChangeRecord]) -> Set[Union[int, str]]:
    covered: Set[Union[int, str]] = set()
    for change in compressed:
        covered.update(change.merged_ids)
    return covered


def log_compression_stats(original: Sequence[ChangeRecord], compressed: Sequence[ChangeRecord]):
    if not original:
        return
    ratio = (1 - len(compressed) / len(original)) * 100
    distribution = Counter(c.operation_type for c in compressed)
    logger.info(
        f"Change compression: {len(original)} -> {len(compressed)} record(s) ({ratio:.1f}% reduction); "
        f"INSERT={distribution.get('INSERT', 0)} UPDATE={distribution.get('UPDATE', 0)} "
        f"DELETE={distribution.get('DELETE', 0)}")


def chunked(items: Sequence[T], size: int) -> List[Sequence[T]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    description: str = "operation",
    non_retryable: Tuple[Type[BaseException], ...] = (),
) -> T:
    """Runs `operation` up to `attempts` times, sleeping min(max_delay, base_delay * 2**n) between tries."""
    for attempt in range(attempts):
        try:
            return await operation()
        except non_retryable:
            raise
        except Exception as e:
            if attempt >= attempts - 1:
                raise
            delay = min(max_delay, base_delay * (2 ** attempt))
            logger.warning(f"{description} failed (attempt {attempt + 1}/{attempts}): {e}. Retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
    raise ValueError("with_retry needs at least one attempt")


def calculate_optimal_page_size(total_count: int, page_size: int, adaptive: bool = True) -> int:
    """Bigger pages for bigger backlogs, capped at 1000 / 1500 / 2000."""
    if not adaptive:
        return page_size
    if total_count <= 10_000:
        return min(page_size, 1000)
    if total_count <= 50_000:
        return min(int(page_size * 1.5), 1500)
    return min(page_size * 2, 2000)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parses ISO-8601 strings (with or without `Z`), SQLite `YYYY-MM-DD HH:MM:SS` text and
    epoch seconds/milliseconds. Naive values are taken as UTC. Unparseable input gives None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000 if value > 10_000_000_000 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug(f"Unparseable timestamp: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

#
# End of Sync_Helpers.py
#######################################################################################################################
