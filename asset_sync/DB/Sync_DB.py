# Sync_DB.py
# Description: Local SQLite store for synchronized assets, key chains and their change log.
#
"""
Sync_DB.py
----------

SQLite-backed local store used by the sync core.

This library provides:
- Thread-safe database connections using `threading.local`.
- The synchronized data tables (`t_assets`, `t_asset_chains`) with change-tracking triggers
  that append to `change_log` whenever a row is written locally.
- A remote-apply guard stored in `sync_meta`; while it is set the triggers stay silent, so
  writes that originate from the server are not queued for upload again.
- The persisted pull cursor (`last_sequence_id`), per-table `sync_metadata`, and the
  `sync_conflicts` table holding records that need manual resolution.
- A transaction context manager and custom exceptions mirroring the other local databases.

Change-log rows are recorded under the sync name of their table (`t_assets_sync`,
`t_asset_chains_sync`), which is the name the remote service uses.
"""
# Imports
import json
import re
import sqlite3
import threading
import uuid as uuid_lib
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Optional, Any, Union, Iterable, Set, Iterator
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# --- Custom Exceptions ---
class SyncDBError(Exception):
    """Base exception for SyncDatabase related errors."""
    pass


class SchemaError(SyncDBError):
    """Raised for unknown tables, missing table schemas, or failed schema setup."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class ConflictError(SyncDBError):
    """
    Indicates a unique constraint violation.

    Attributes:
        entity (Optional[str]): The table involved in the conflict.
        entity_id (Any): The uuid or id of the row involved.
    """

    def __init__(self, message="Conflict detected.", entity: Optional[str] = None, entity_id: Any = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity:
            details.append(f"Entity: {self.entity}")
        if self.entity_id:
            details.append(f"ID: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


# --- Table layout ---
# local table name -> name used by the sync service and in change_log.table_name
SYNC_TABLE_NAMES: Dict[str, str] = {
    "t_assets": "t_assets_sync",
    "t_asset_chains": "t_asset_chains_sync",
}
LOCAL_TABLE_NAMES: Dict[str, str] = {v: k for k, v in SYNC_TABLE_NAMES.items()}

TRACKED_COLUMNS: Dict[str, List[str]] = {
    "t_assets": [
        "uuid", "label", "asset_ip", "group_name", "auth_type", "port", "username", "password",
        "key_chain_id", "favorite", "asset_type", "need_proxy", "proxy_name",
        "created_at", "updated_at", "version",
    ],
    "t_asset_chains": [
        "key_chain_id", "uuid", "chain_name", "chain_type", "chain_private_key", "chain_public_key",
        "passphrase", "created_at", "updated_at", "version",
    ],
}

# Local surrogate keys that are never written from server payloads
_LOCAL_ONLY_COLUMNS: Dict[str, Set[str]] = {
    "t_assets": {"id"},
}

ASSET_NATURAL_KEY = ("asset_ip", "username", "port", "label", "asset_type")

EPOCH_ISO = "1970-01-01T00:00:00.000Z"
GUARD_KEY = "apply_remote_guard"
LAST_SEQUENCE_KEY = "last_sequence_id"
LAST_SYNC_TIME_KEY = "last_sync_time"
SYNC_SIGNAL_KEY = "sync_signal"
DEVICE_ID_KEY = "device_id"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def validate_identifier(name: str) -> str:
    """Table/column names are interpolated into SQL, so only plain identifiers are accepted."""
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise InputError(f"Invalid SQL identifier: {name!r}")
    return name


def _json_or_none(value: Optional[str]) -> Optional[Any]:
    if value is None or value == "":
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning(f"Stored JSON could not be decoded, returning raw text: {str(value)[:80]}")
        return value


# --- Database Class ---
class SyncDatabase:
    """
    Manages SQLite connections and operations for the synchronized local store.

    Attributes:
        db_path (Path): The absolute path to the SQLite database file, or Path(":memory:").
        is_memory_db (bool): True if the database is in-memory.
        db_path_str (str): String representation of the database path for SQLite connection.
    """
    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "asset_sync_schema"

    _FULL_SCHEMA_SQL_V1 = """
CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version     INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS t_assets(
  id           INTEGER PRIMARY KEY AUTOINCREMENT,
  uuid         TEXT    UNIQUE NOT NULL,
  label        TEXT,
  asset_ip     TEXT,
  group_name   TEXT,
  auth_type    TEXT,
  port         INTEGER,
  username     TEXT,
  password     TEXT,
  key_chain_id INTEGER,
  favorite     INTEGER DEFAULT 2,
  asset_type   TEXT,
  need_proxy   INTEGER DEFAULT 0,
  proxy_name   TEXT    DEFAULT '',
  created_at   TEXT,
  updated_at   TEXT,
  version      INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS t_asset_chains(
  key_chain_id      INTEGER PRIMARY KEY AUTOINCREMENT,
  uuid              TEXT    UNIQUE NOT NULL,
  chain_name        TEXT,
  chain_type        TEXT,
  chain_private_key TEXT,
  chain_public_key  TEXT,
  passphrase        TEXT,
  created_at        TEXT,
  updated_at        TEXT,
  version           INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS change_log(
  id             INTEGER PRIMARY KEY AUTOINCREMENT,
  table_name     TEXT NOT NULL,
  record_uuid    TEXT NOT NULL,
  operation_type TEXT NOT NULL CHECK(operation_type IN ('INSERT','UPDATE','DELETE')),
  change_data    TEXT,
  before_data    TEXT,
  sync_status    TEXT NOT NULL DEFAULT 'pending' CHECK(sync_status IN ('pending','synced','conflict')),
  error_message  TEXT,
  created_at     TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now')),
  synced_at      TEXT
);
CREATE INDEX IF NOT EXISTS idx_change_log_status ON change_log(table_name, sync_status, id);
CREATE INDEX IF NOT EXISTS idx_change_log_uuid   ON change_log(record_uuid);

CREATE TABLE IF NOT EXISTS sync_meta(
  key   TEXT PRIMARY KEY NOT NULL,
  value TEXT
);
"""

    _SYNC_ENVIRONMENT_SQL = """
CREATE TABLE IF NOT EXISTS sync_metadata(
  table_name           TEXT PRIMARY KEY NOT NULL,
  last_sync_time       TEXT NOT NULL DEFAULT '1970-01-01T00:00:00.000Z',
  last_sync_version    INTEGER NOT NULL DEFAULT 0,
  server_last_modified TEXT,
  local_last_modified  TEXT,
  sync_status          TEXT NOT NULL DEFAULT 'pending',
  updated_at           TEXT
);

CREATE TABLE IF NOT EXISTS sync_conflicts(
  id              INTEGER PRIMARY KEY AUTOINCREMENT,
  table_name      TEXT NOT NULL,
  record_uuid     TEXT NOT NULL,
  conflict_reason TEXT,
  local_data      TEXT,
  server_data     TEXT,
  status          TEXT NOT NULL DEFAULT 'pending',
  resolution      TEXT,
  created_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now')),
  resolved_at     TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_status ON sync_conflicts(table_name, status);
"""

    _DATA_TABLE_INDEXES = {
        "t_assets": [
            "CREATE INDEX IF NOT EXISTS idx_t_assets_natural_key ON t_assets(asset_ip, username, port)",
        ],
        "t_asset_chains": [],
    }

    def __init__(self, db_path: Union[str, Path]):
        """
        Opens (or creates) the local sync database.

        Args:
            db_path: Path to the SQLite database file or ":memory:" for an in-memory database.

        Raises:
            SyncDBError: If directory creation or schema setup fails.
        """
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise SyncDBError(f"Failed to create database directory {self.db_path.parent}: {e}") from e

        logger.info(f"Initializing SyncDatabase for path: {self.db_path_str}")
        self._local = threading.local()
        self._guard_lock = threading.RLock()
        self._guard_depth = 0
        self._column_cache: Dict[str, List[str]] = {}
        try:
            self._initialize_schema()
        except (SyncDBError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}")
            self.close_connection()
            raise SyncDBError(f"Database initialization failed: {e}") from e

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection for {self.db_path_str} became unusable. Reopening.")
                conn = None

        if not conn:
            try:
                conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=15)
                conn.row_factory = sqlite3.Row
                if not self.is_memory_db:
                    conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA foreign_keys = ON;")
                self._local.conn = conn
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                self._local.conn = None
                raise SyncDBError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return self._local.conn

    def get_connection(self) -> sqlite3.Connection:
        """Public method to get the current thread's database connection."""
        return self._get_thread_connection()

    def get_database(self) -> sqlite3.Connection:
        """Raw connection for ad-hoc queries (temp tables, table swaps)."""
        return self._get_thread_connection()

    def close_connection(self):
        """Closes the current thread's connection, rolling back any open transaction first."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            try:
                if conn.in_transaction:
                    logger.warning(f"Connection to {self.db_path_str} closed inside a transaction. Rolling back.")
                    conn.rollback()
                conn.close()
                logger.debug(f"Closed connection for thread {threading.get_ident()} to {self.db_path_str}.")
            except sqlite3.Error as e:
                logger.warning(f"Error during SQLite connection close for {self.db_path_str}: {e}")
            finally:
                self._local.conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None, *,
                      commit: bool = False, script: bool = False) -> sqlite3.Cursor:
        """
        Executes a single SQL statement or, with `script=True`, an SQL script.

        Raises:
            ConflictError: On a unique constraint violation.
            SyncDBError: For any other SQLite error.
        """
        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            logger.trace(f"Executing SQL (script={script}): {query[:300]} Params: {str(params)[:200]}")
            if script:
                cursor.executescript(query)
            else:
                cursor.execute(query, params or ())
            # inside `with db.transaction()` the outermost exit commits
            if commit and conn.in_transaction and getattr(self._local, 'depth', 0) == 0:
                conn.commit()
            return cursor
        except sqlite3.IntegrityError as e:
            logger.warning(f"Integrity constraint violation: {query[:300]} Error: {e}")
            if "unique constraint failed" in str(e).lower():
                raise ConflictError(message=f"Unique constraint violation: {e}") from e
            raise SyncDBError(f"Database constraint violation: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:300]} Error: {e}")
            raise SyncDBError(f"Query execution failed: {e}") from e

    def execute_many(self, query: str, params_list: List[tuple], *, commit: bool = False) -> Optional[sqlite3.Cursor]:
        """Executes `query` once per parameter tuple. Returns None for an empty list."""
        if not params_list:
            return None
        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            logger.trace(f"Executing Many: {query[:150]} with {len(params_list)} sets.")
            cursor.executemany(query, params_list)
            if commit and conn.in_transaction and getattr(self._local, 'depth', 0) == 0:
                conn.commit()
            return cursor
        except sqlite3.IntegrityError as e:
            logger.warning(f"Integrity constraint violation during batch: {query[:150]} Error: {e}")
            if "unique constraint failed" in str(e).lower():
                raise ConflictError(message=f"Unique constraint violation during batch: {e}") from e
            raise SyncDBError(f"Database constraint violation during batch: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Execute Many failed: {query[:150]} Error: {e}")
            raise SyncDBError(f"Execute Many failed: {e}") from e

    def transaction(self) -> "TransactionContextManager":
        """
        Returns a context manager for a database transaction.

        Usage:
            with db.transaction():
                db.execute_query("INSERT ...")
        """
        return TransactionContextManager(self)

    # --- Schema ---
    def _initialize_schema(self):
        conn = self.get_connection()
        conn.executescript(self._FULL_SCHEMA_SQL_V1)
        conn.executescript(self._SYNC_ENVIRONMENT_SQL)
        for local_table in SYNC_TABLE_NAMES:
            self.ensure_data_table_objects(local_table)
        conn.execute(
            "INSERT INTO db_schema_version(schema_name, version) VALUES(?, ?) "
            "ON CONFLICT(schema_name) DO UPDATE SET version = excluded.version",
            (self._SCHEMA_NAME, self._CURRENT_SCHEMA_VERSION),
        )
        # A guard left set by a crashed process would silence change tracking forever.
        conn.execute("DELETE FROM sync_meta WHERE key = ?", (GUARD_KEY,))
        conn.commit()
        logger.debug(f"Schema '{self._SCHEMA_NAME}' at version {self._CURRENT_SCHEMA_VERSION} for {self.db_path_str}")

    def prepare_sync_environment(self):
        """Ensures `sync_metadata` and `sync_conflicts` exist."""
        self.execute_query(self._SYNC_ENVIRONMENT_SQL, script=True)

    @staticmethod
    def _build_trigger_sql(local_table: str) -> List[str]:
        sync_name = SYNC_TABLE_NAMES[local_table]
        columns = TRACKED_COLUMNS[local_table]

        def snapshot(alias: str) -> str:
            return "json_object(" + ", ".join(f"'{c}', {alias}.{c}" for c in columns) + ")"

        guard = f"(SELECT value FROM sync_meta WHERE key = '{GUARD_KEY}') IS NULL"
        signal = (f"INSERT INTO sync_meta(key, value) VALUES('{SYNC_SIGNAL_KEY}', strftime('%Y-%m-%dT%H:%M:%fZ','now')) "
                  f"ON CONFLICT(key) DO UPDATE SET value = excluded.value;")
        return [
            f"""CREATE TRIGGER IF NOT EXISTS {local_table}_change_ai AFTER INSERT ON {local_table}
WHEN {guard}
BEGIN
  INSERT INTO change_log(table_name, record_uuid, operation_type, change_data)
  VALUES('{sync_name}', NEW.uuid, 'INSERT', {snapshot('NEW')});
  {signal}
END""",
            f"""CREATE TRIGGER IF NOT EXISTS {local_table}_change_au AFTER UPDATE ON {local_table}
WHEN {guard}
BEGIN
  INSERT INTO change_log(table_name, record_uuid, operation_type, change_data, before_data)
  VALUES('{sync_name}', NEW.uuid, 'UPDATE', {snapshot('NEW')}, {snapshot('OLD')});
  {signal}
END""",
            f"""CREATE TRIGGER IF NOT EXISTS {local_table}_change_ad AFTER DELETE ON {local_table}
WHEN {guard}
BEGIN
  INSERT INTO change_log(table_name, record_uuid, operation_type, change_data, before_data)
  VALUES('{sync_name}', OLD.uuid, 'DELETE', json_object('uuid', OLD.uuid), {snapshot('OLD')});
  {signal}
END""",
        ]

    def ensure_data_table_objects(self, local_table: str):
        """
        (Re)creates the change triggers and indexes of a data table. Needed after a table swap,
        because ALTER TABLE ... RENAME carries triggers along to the renamed (and dropped) table.
        """
        local_table = self.resolve_local_table(local_table)
        for statement in self._build_trigger_sql(local_table) + self._DATA_TABLE_INDEXES[local_table]:
            self.execute_query(statement)
        self._column_cache.pop(local_table, None)

    def resolve_local_table(self, table_name: str) -> str:
        """Accepts a local (`t_assets`) or sync (`t_assets_sync`) name and returns the local one."""
        if table_name in SYNC_TABLE_NAMES:
            return table_name
        if table_name in LOCAL_TABLE_NAMES:
            return LOCAL_TABLE_NAMES[table_name]
        raise SchemaError(f"Unknown synchronized table: {table_name}")

    def sync_table_name(self, table_name: str) -> str:
        return SYNC_TABLE_NAMES[self.resolve_local_table(table_name)]

    def table_exists(self, table_name: str) -> bool:
        row = self.execute_query(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table_name,)).fetchone()
        return row is not None

    def get_table_schema_sql(self, table_name: str) -> Optional[str]:
        row = self.execute_query(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (table_name,)).fetchone()
        return row["sql"] if row else None

    def get_table_columns(self, table_name: str) -> List[str]:
        if table_name not in self._column_cache:
            validate_identifier(table_name)
            rows = self.execute_query(f"PRAGMA table_info({table_name})").fetchall()
            self._column_cache[table_name] = [r["name"] for r in rows]
        return self._column_cache[table_name]

    def list_tables(self, pattern: str = "%") -> List[str]:
        rows = self.execute_query(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE ? ORDER BY name", (pattern,)).fetchall()
        return [r["name"] for r in rows]

    def forget_table_columns(self, table_name: str):
        self._column_cache.pop(table_name, None)

    # --- sync_meta key/value ---
    def get_meta(self, key: str) -> Optional[str]:
        row = self.execute_query("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: Optional[str]):
        if value is None:
            self.execute_query("DELETE FROM sync_meta WHERE key = ?", (key,), commit=True)
            return
        self.execute_query(
            "INSERT INTO sync_meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, str(value)), commit=True)

    def get_device_id(self) -> str:
        """Stable per-installation id, generated on first use."""
        device_id = self.get_meta(DEVICE_ID_KEY)
        if not device_id:
            device_id = str(uuid_lib.uuid4())
            self.set_meta(DEVICE_ID_KEY, device_id)
            logger.info(f"Generated new device id {device_id}")
        return device_id

    # --- Remote-apply guard ---
    def set_remote_apply_guard(self, enabled: bool):
        """Raw toggle. Prefer `remote_apply_guard()`, which always releases."""
        self.set_meta(GUARD_KEY, "1" if enabled else None)

    def is_remote_apply_guard_active(self) -> bool:
        return self.get_meta(GUARD_KEY) is not None

    @contextmanager
    def remote_apply_guard(self) -> Iterator[None]:
        """
        Scoped remote-apply guard. Nested scopes share one flag; it is set on the outermost
        entry and cleared on the outermost exit, exception or not.
        """
        with self._guard_lock:
            if self._guard_depth == 0:
                self.set_remote_apply_guard(True)
            self._guard_depth += 1
        try:
            yield
        finally:
            with self._guard_lock:
                self._guard_depth -= 1
                if self._guard_depth == 0:
                    self.set_remote_apply_guard(False)

    # --- Pull cursor / timestamps ---
    def get_last_sequence_id(self) -> int:
        value = self.get_meta(LAST_SEQUENCE_KEY)
        try:
            return int(value) if value is not None else 0
        except ValueError:
            logger.warning(f"Corrupt {LAST_SEQUENCE_KEY} value {value!r}; restarting from 0")
            return 0

    def set_last_sequence_id(self, sequence_id: int):
        self.set_meta(LAST_SEQUENCE_KEY, str(int(sequence_id)))

    def get_last_sync_time(self) -> Optional[str]:
        return self.get_meta(LAST_SYNC_TIME_KEY)

    def set_last_sync_time(self, timestamp: Optional[str] = None):
        self.set_meta(LAST_SYNC_TIME_KEY, timestamp or utc_now_iso())

    # --- Change log ---
    @staticmethod
    def _change_row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        entry = dict(row)
        entry["change_data"] = _json_or_none(entry.get("change_data")) or {}
        entry["before_data"] = _json_or_none(entry.get("before_data"))
        return entry

    def get_pending_changes(self, table_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """All pending change-log rows, oldest first, optionally for one sync table."""
        if table_name:
            sync_name = self.sync_table_name(table_name)
            cursor = self.execute_query(
                "SELECT * FROM change_log WHERE sync_status = 'pending' AND table_name = ? ORDER BY id", (sync_name,))
        else:
            cursor = self.execute_query("SELECT * FROM change_log WHERE sync_status = 'pending' ORDER BY id")
        return [self._change_row_to_dict(r) for r in cursor.fetchall()]

    def get_pending_changes_page(self, table_name: str, limit: int, offset: int = 0,
                                 after_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        One page of pending changes. With `after_id` the page starts after that change id and
        `offset` is ignored, which keeps pages stable while earlier rows are being marked synced.
        """
        sync_name = self.sync_table_name(table_name)
        if after_id is not None:
            cursor = self.execute_query(
                "SELECT * FROM change_log WHERE sync_status = 'pending' AND table_name = ? AND id > ? "
                "ORDER BY id LIMIT ?", (sync_name, after_id, limit))
        else:
            cursor = self.execute_query(
                "SELECT * FROM change_log WHERE sync_status = 'pending' AND table_name = ? "
                "ORDER BY id LIMIT ? OFFSET ?", (sync_name, limit, offset))
        return [self._change_row_to_dict(r) for r in cursor.fetchall()]

    def get_total_pending_changes_count(self, table_name: str) -> int:
        sync_name = self.sync_table_name(table_name)
        row = self.execute_query(
            "SELECT COUNT(*) AS cnt FROM change_log WHERE sync_status = 'pending' AND table_name = ?",
            (sync_name,)).fetchone()
        return row["cnt"]

    def get_change_log(self, table_name: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM change_log WHERE 1=1"
        params: List[Any] = []
        if table_name:
            query += " AND table_name = ?"
            params.append(self.sync_table_name(table_name))
        if status:
            query += " AND sync_status = ?"
            params.append(status)
        cursor = self.execute_query(query + " ORDER BY id", tuple(params))
        return [self._change_row_to_dict(r) for r in cursor.fetchall()]

    def get_pending_uuids(self, table_name: str, uuids: Iterable[str]) -> Set[str]:
        """Subset of `uuids` that still have a pending local change."""
        uuid_list = [u for u in uuids if u]
        if not uuid_list:
            return set()
        sync_name = self.sync_table_name(table_name)
        found: Set[str] = set()
        for start in range(0, len(uuid_list), 500):
            chunk = uuid_list[start:start + 500]
            placeholders = ",".join("?" for _ in chunk)
            rows = self.execute_query(
                f"SELECT DISTINCT record_uuid FROM change_log WHERE sync_status = 'pending' AND table_name = ? "
                f"AND record_uuid IN ({placeholders})", (sync_name, *chunk)).fetchall()
            found.update(r["record_uuid"] for r in rows)
        return found

    def mark_changes_synced(self, ids: Iterable[Union[int, str]]):
        id_list = [(utc_now_iso(), int(i)) for i in ids]
        if not id_list:
            return
        self.execute_many(
            "UPDATE change_log SET sync_status = 'synced', error_message = NULL, synced_at = ? WHERE id = ?",
            id_list, commit=True)
        logger.debug(f"Marked {len(id_list)} change(s) as synced")

    def mark_changes_conflict(self, ids: Iterable[Union[int, str]], reason: str):
        id_list = [(reason, int(i)) for i in ids]
        if not id_list:
            return
        self.execute_many(
            "UPDATE change_log SET sync_status = 'conflict', error_message = ? WHERE id = ?",
            id_list, commit=True)
        logger.warning(f"Marked {len(id_list)} change(s) as conflict: {reason[:200]}")

    def _insert_synced_markers(self, sync_name: str, uuids: List[str]):
        now = utc_now_iso()
        self.execute_many(
            "INSERT INTO change_log(table_name, record_uuid, operation_type, change_data, sync_status, synced_at) "
            "VALUES(?, ?, 'INSERT', ?, 'synced', ?)",
            [(sync_name, u, json.dumps({"uuid": u}), now) for u in uuids],
            commit=True)

    def record_historical_upload(self, table_name: str, records: List[Dict[str, Any]]):
        """Logs uploaded historical rows as already-synced INSERTs so they are not uploaded twice."""
        if not records:
            return
        self._insert_synced_markers(self.sync_table_name(table_name), [r["uuid"] for r in records])

    def mark_remote_records(self, table_name: str, uuids: Iterable[str]) -> int:
        """
        Logs rows that arrived from the server as synced, so they never count as historical data.
        Uuids already present in the change log are left alone. Returns the number of markers written.
        """
        local_table = self.resolve_local_table(table_name)
        sync_name = SYNC_TABLE_NAMES[local_table]
        uuid_list = [u for u in dict.fromkeys(uuids) if u]
        written = 0
        for start in range(0, len(uuid_list), 500):
            chunk = uuid_list[start:start + 500]
            placeholders = ",".join("?" for _ in chunk)
            rows = self.execute_query(
                f"SELECT DISTINCT record_uuid FROM change_log WHERE table_name IN (?, ?) "
                f"AND record_uuid IN ({placeholders})", (local_table, sync_name, *chunk)).fetchall()
            known = {r["record_uuid"] for r in rows}
            fresh = [u for u in chunk if u not in known]
            if fresh:
                self._insert_synced_markers(sync_name, fresh)
                written += len(fresh)
        return written

    # --- Historical data ---
    def _historical_where(self) -> str:
        return "uuid NOT IN (SELECT DISTINCT record_uuid FROM change_log WHERE table_name IN (?, ?))"

    def get_historical_data_count(self, table_name: str) -> int:
        """Rows in the data table that never appeared in the change log."""
        local_table = self.resolve_local_table(table_name)
        row = self.execute_query(
            f"SELECT COUNT(*) AS cnt FROM {local_table} WHERE {self._historical_where()}",
            (local_table, SYNC_TABLE_NAMES[local_table])).fetchone()
        return row["cnt"]

    def get_historical_records(self, table_name: str, limit: int, offset: int = 0) -> List[Dict[str, Any]]:
        local_table = self.resolve_local_table(table_name)
        rows = self.execute_query(
            f"SELECT * FROM {local_table} WHERE {self._historical_where()} ORDER BY rowid LIMIT ? OFFSET ?",
            (local_table, SYNC_TABLE_NAMES[local_table], limit, offset)).fetchall()
        return [dict(r) for r in rows]

    # --- Data tables ---
    def count_records(self, table_name: str) -> int:
        local_table = self.resolve_local_table(table_name)
        return self.execute_query(f"SELECT COUNT(*) AS cnt FROM {local_table}").fetchone()["cnt"]

    def get_record_by_uuid(self, table_name: str, record_uuid: str) -> Optional[Dict[str, Any]]:
        local_table = self.resolve_local_table(table_name)
        row = self.execute_query(f"SELECT * FROM {local_table} WHERE uuid = ?", (record_uuid,)).fetchone()
        return dict(row) if row else None

    def get_records_by_uuids(self, table_name: str, uuids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        uuid_list = [u for u in uuids if u]
        if not uuid_list:
            return {}
        local_table = self.resolve_local_table(table_name)
        placeholders = ",".join("?" for _ in uuid_list)
        rows = self.execute_query(
            f"SELECT * FROM {local_table} WHERE uuid IN ({placeholders})", tuple(uuid_list)).fetchall()
        return {r["uuid"]: dict(r) for r in rows}

    def get_all_records(self, table_name: str) -> List[Dict[str, Any]]:
        local_table = self.resolve_local_table(table_name)
        return [dict(r) for r in self.execute_query(f"SELECT * FROM {local_table} ORDER BY rowid").fetchall()]

    def _writable_columns(self, table_name: str, record: Dict[str, Any]) -> List[str]:
        allowed = set(self.get_table_columns(table_name)) - _LOCAL_ONLY_COLUMNS.get(table_name, set())
        return [c for c in record if c in allowed]

    def upsert_record(self, table_name: str, record: Dict[str, Any]) -> None:
        """
        INSERT ... ON CONFLICT(uuid) DO UPDATE for the columns present in `record`.
        Unknown keys are ignored. Works on data tables and their shadow copies.
        """
        validate_identifier(table_name)
        if not record.get("uuid"):
            raise InputError(f"Cannot upsert into {table_name} without a uuid")
        columns = self._writable_columns(table_name, record)
        placeholders = ", ".join("?" for _ in columns)
        updates = [c for c in columns if c != "uuid"]
        if updates:
            conflict_clause = "DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in updates)
        else:
            conflict_clause = "DO NOTHING"
        self.execute_query(
            f"INSERT INTO {table_name} ({', '.join(columns)}) VALUES ({placeholders}) "
            f"ON CONFLICT(uuid) {conflict_clause}",
            tuple(record[c] for c in columns), commit=True)

    def insert_or_replace_records(self, table_name: str, records: List[Dict[str, Any]]) -> int:
        """Bulk INSERT OR REPLACE used to fill shadow tables. Returns the number of rows written."""
        validate_identifier(table_name)
        written = 0
        for record in records:
            columns = self._writable_columns(table_name, record)
            if not columns:
                continue
            self.execute_query(
                f"INSERT OR REPLACE INTO {table_name} ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                tuple(record[c] for c in columns))
            written += 1
        return written

    def upsert_asset(self, record: Dict[str, Any]) -> None:
        """
        Upserts an asset by uuid. A different-uuid row with the same natural key
        (asset_ip, username, port, label, asset_type) is re-keyed first, so the same host
        created on two devices collapses into one row.
        """
        if not record.get("uuid"):
            raise InputError("Cannot upsert a record without a uuid")
        record = dict(record)
        with self.transaction():
            existing = self.get_record_by_uuid("t_assets", record["uuid"])
            if existing is None and all(k in record for k in ASSET_NATURAL_KEY):
                dup = self.execute_query(
                    "SELECT uuid FROM t_assets WHERE asset_ip IS ? AND username IS ? AND port IS ? "
                    "AND label IS ? AND asset_type IS ? LIMIT 1",
                    tuple(record[k] for k in ASSET_NATURAL_KEY)).fetchone()
                if dup is not None:
                    logger.info(f"Asset {record['uuid']} matches existing asset {dup['uuid']} by natural key; re-keying")
                    self.execute_query("UPDATE t_assets SET uuid = ? WHERE uuid = ?", (record["uuid"], dup["uuid"]))
                    existing = dup
            if existing is None:
                now = utc_now_iso()
                record.setdefault("favorite", 2)
                record.setdefault("need_proxy", 0)
                record.setdefault("proxy_name", "")
                record.setdefault("created_at", now)
                record.setdefault("updated_at", now)
                record.setdefault("version", 1)
            self.upsert_record("t_assets", record)

    def upsert_asset_chain(self, record: Dict[str, Any]) -> None:
        """Upserts a key chain by uuid; a different-uuid row holding the same key_chain_id is replaced."""
        if not record.get("uuid"):
            raise InputError("Cannot upsert a record without a uuid")
        record = dict(record)
        with self.transaction():
            if record.get("key_chain_id") is not None:
                clash = self.execute_query(
                    "SELECT uuid FROM t_asset_chains WHERE key_chain_id = ? AND uuid != ?",
                    (record["key_chain_id"], record["uuid"])).fetchone()
                if clash is not None:
                    logger.warning(f"Key chain id {record['key_chain_id']} moves from {clash['uuid']} to {record['uuid']}")
                    self.execute_query("DELETE FROM t_asset_chains WHERE uuid = ?", (clash["uuid"],))
            if self.get_record_by_uuid("t_asset_chains", record["uuid"]) is None:
                now = utc_now_iso()
                record.setdefault("created_at", now)
                record.setdefault("updated_at", now)
                record.setdefault("version", 1)
            self.upsert_record("t_asset_chains", record)

    def apply_upsert(self, table_name: str, record: Dict[str, Any]) -> None:
        local_table = self.resolve_local_table(table_name)
        if local_table == "t_assets":
            self.upsert_asset(record)
        elif local_table == "t_asset_chains":
            self.upsert_asset_chain(record)
        else:
            self.upsert_record(local_table, record)

    def delete_record_by_uuid(self, table_name: str, record_uuid: str) -> int:
        local_table = self.resolve_local_table(table_name)
        cursor = self.execute_query(f"DELETE FROM {local_table} WHERE uuid = ?", (record_uuid,), commit=True)
        return cursor.rowcount

    def delete_asset_by_uuid(self, record_uuid: str) -> int:
        return self.delete_record_by_uuid("t_assets", record_uuid)

    def delete_asset_chain_by_uuid(self, record_uuid: str) -> int:
        return self.delete_record_by_uuid("t_asset_chains", record_uuid)

    def set_version(self, table_name: str, record_uuid: str, version: int):
        """Records the server's post-update version without queueing a new local change."""
        local_table = self.resolve_local_table(table_name)
        with self.remote_apply_guard():
            self.execute_query(
                f"UPDATE {local_table} SET version = ?, updated_at = ? WHERE uuid = ?",
                (int(version), utc_now_iso(), record_uuid), commit=True)

    # --- Per-table sync metadata ---
    def get_sync_metadata(self, table_name: str) -> Dict[str, Any]:
        """Metadata row for `table_name`, created with epoch defaults on first touch."""
        self.execute_query(
            "INSERT OR IGNORE INTO sync_metadata(table_name, last_sync_time, updated_at) VALUES(?, ?, ?)",
            (table_name, EPOCH_ISO, utc_now_iso()), commit=True)
        row = self.execute_query("SELECT * FROM sync_metadata WHERE table_name = ?", (table_name,)).fetchone()
        return dict(row)

    _METADATA_FIELDS = ("last_sync_time", "last_sync_version", "server_last_modified",
                        "local_last_modified", "sync_status")

    def update_sync_metadata(self, table_name: str, **fields: Any) -> Dict[str, Any]:
        """Updates only the given metadata fields; the rest keep their stored values."""
        unknown = set(fields) - set(self._METADATA_FIELDS)
        if unknown:
            raise InputError(f"Unknown sync metadata field(s): {sorted(unknown)}")
        self.get_sync_metadata(table_name)
        if fields:
            assignments = ", ".join(f"{k} = ?" for k in fields)
            self.execute_query(
                f"UPDATE sync_metadata SET {assignments}, updated_at = ? WHERE table_name = ?",
                (*fields.values(), utc_now_iso(), table_name), commit=True)
        return self.get_sync_metadata(table_name)

    # --- Conflicts awaiting resolution ---
    def record_sync_conflict(self, table_name: str, record_uuid: str, reason: str,
                             local_data: Optional[Dict[str, Any]], server_data: Optional[Dict[str, Any]]) -> int:
        cursor = self.execute_query(
            "INSERT INTO sync_conflicts(table_name, record_uuid, conflict_reason, local_data, server_data, status) "
            "VALUES(?, ?, ?, ?, ?, 'pending')",
            (table_name, record_uuid, reason,
             json.dumps(local_data, default=str) if local_data is not None else None,
             json.dumps(server_data, default=str) if server_data is not None else None),
            commit=True)
        return cursor.lastrowid

    def list_sync_conflicts(self, table_name: Optional[str] = None, status: Optional[str] = "pending") -> List[Dict[str, Any]]:
        query = "SELECT * FROM sync_conflicts WHERE 1=1"
        params: List[Any] = []
        if table_name:
            query += " AND table_name = ?"
            params.append(table_name)
        if status:
            query += " AND status = ?"
            params.append(status)
        rows = self.execute_query(query + " ORDER BY id", tuple(params)).fetchall()
        conflicts = []
        for row in rows:
            entry = dict(row)
            entry["local_data"] = _json_or_none(entry["local_data"])
            entry["server_data"] = _json_or_none(entry["server_data"])
            conflicts.append(entry)
        return conflicts

    def resolve_sync_conflict(self, conflict_id: int, resolution: str) -> None:
        """
        Closes a recorded conflict. `apply_server` writes the stored server record (without
        queueing an upload); `keep_local` leaves the local row and its pending change alone.
        """
        if resolution not in ("apply_server", "keep_local"):
            raise InputError(f"Unknown conflict resolution: {resolution}")
        row = self.execute_query("SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,)).fetchone()
        if row is None:
            raise InputError(f"No sync conflict with id {conflict_id}")
        if row["status"] != "pending":
            raise ConflictError("Sync conflict already resolved", entity="sync_conflicts", entity_id=conflict_id)
        server_data = _json_or_none(row["server_data"])
        with self.remote_apply_guard():
            with self.transaction():
                if resolution == "apply_server" and isinstance(server_data, dict):
                    self.apply_upsert(row["table_name"], server_data)
                self.execute_query(
                    "UPDATE sync_conflicts SET status = 'resolved', resolution = ?, resolved_at = ? WHERE id = ?",
                    (resolution, utc_now_iso(), conflict_id))
        logger.info(f"Sync conflict {conflict_id} ({row['record_uuid']}) resolved with {resolution}")


class TransactionContextManager:
    """Begins on the outermost entry; commits or rolls back on the outermost exit."""

    def __init__(self, db_instance: SyncDatabase):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.db.get_connection()
        depth = getattr(self.db._local, 'depth', 0)
        if depth == 0:
            if self.conn.in_transaction:
                # implicit transaction left open by a non-committing statement
                self.conn.commit()
            self.conn.execute("BEGIN")
            self.is_outermost_transaction = True
            logger.trace(f"Transaction started (outermost) on thread {threading.get_ident()}.")
        self.db._local.depth = depth + 1
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.db._local.depth = getattr(self.db._local, 'depth', 1) - 1
        if not self.is_outermost_transaction:
            return False
        if exc_type:
            logger.error(f"Transaction failed, rolling back on thread {threading.get_ident()}: "
                         f"{exc_type.__name__} - {exc_val}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}")
            return False
        try:
            self.conn.commit()
            logger.trace(f"Transaction committed on thread {threading.get_ident()}.")
        except sqlite3.Error as commit_err:
            logger.error(f"Commit FAILED on thread {threading.get_ident()}, attempting rollback: {commit_err}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback after failed commit also FAILED: {rb_err}")
            raise SyncDBError(f"Commit failed: {commit_err}") from commit_err
        return False

#
# End of Sync_DB.py
#######################################################################################################################
