# Table_Registry.py
# Description: Per-table record variants, sensitive fields and conflict rules for synchronized tables.
#
# Imports
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Tuple, Type, Union
#
# 3rd-Party Imports
from pydantic import BaseModel, ConfigDict, ValidationError
#
# Local Imports
#
#######################################################################################################################
#
# Functions:

class UnknownTableError(LookupError):
    """A server change or caller named a table that is not synchronized."""

    def __init__(self, table_name: str):
        super().__init__(f"Unknown sync table: {table_name}")
        self.table_name = table_name


class RecordValidationError(ValueError):
    """A payload does not fit its table's record variant."""

    def __init__(self, table_name: str, message: str, record_uuid: Optional[str] = None):
        super().__init__(f"Invalid {table_name} record {record_uuid or '<no uuid>'}: {message}")
        self.table_name = table_name
        self.record_uuid = record_uuid


ConflictStrategy = Literal["server_wins", "client_wins", "latest_wins", "merge", "manual"]
Timestamp = Optional[Union[str, int, float]]


@dataclass(frozen=True)
class ConflictResolutionRule:
    field: str
    strategy: ConflictStrategy
    priority: int = 1


# --- Record variants ---
class AssetRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uuid: str
    label: Optional[str] = None
    asset_ip: Optional[str] = None
    group_name: Optional[str] = None
    auth_type: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    key_chain_id: Optional[int] = None
    favorite: Optional[int] = None
    asset_type: Optional[str] = None
    need_proxy: Optional[int] = None
    proxy_name: Optional[str] = None
    created_at: Timestamp = None
    updated_at: Timestamp = None
    version: Optional[int] = None


class AssetChainRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    uuid: str
    key_chain_id: Optional[int] = None
    chain_name: Optional[str] = None
    chain_type: Optional[str] = None
    chain_private_key: Optional[str] = None
    chain_public_key: Optional[str] = None
    passphrase: Optional[str] = None
    created_at: Timestamp = None
    updated_at: Timestamp = None
    version: Optional[int] = None


@dataclass(frozen=True)
class TableSpec:
    sync_name: str
    local_name: str
    record_model: Type[BaseModel]
    sensitive_fields: Tuple[str, ...]
    conflict_rules: Tuple[ConflictResolutionRule, ...] = ()
    aliases: Tuple[str, ...] = ()

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(self.record_model.model_fields)

    def filter_record(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validates `data` against the table variant and keeps only the table's fields.
        Fields absent from `data` stay absent so partial updates don't overwrite columns.
        """
        try:
            model = self.record_model.model_validate(data)
        except ValidationError as e:
            raise RecordValidationError(self.sync_name, str(e), record_uuid=data.get("uuid")) from e
        return model.model_dump(exclude_unset=True)

    def matches(self, table_name: str) -> bool:
        return table_name in (self.sync_name, self.local_name) or table_name in self.aliases


ASSETS = TableSpec(
    sync_name="t_assets_sync",
    local_name="t_assets",
    record_model=AssetRecord,
    sensitive_fields=("password", "username", "need_proxy", "proxy_name"),
    conflict_rules=(
        ConflictResolutionRule("label", "latest_wins", 1),
        ConflictResolutionRule("asset_ip", "server_wins", 1),
        ConflictResolutionRule("port", "server_wins", 1),
        ConflictResolutionRule("username", "server_wins", 2),
        ConflictResolutionRule("password", "server_wins", 2),
        ConflictResolutionRule("favorite", "client_wins", 3),
        ConflictResolutionRule("group_name", "merge", 2),
    ),
    aliases=("t_sync_assets",),
)

ASSET_CHAINS = TableSpec(
    sync_name="t_asset_chains_sync",
    local_name="t_asset_chains",
    record_model=AssetChainRecord,
    sensitive_fields=("chain_private_key", "passphrase", "chain_public_key"),
    conflict_rules=(
        ConflictResolutionRule("chain_name", "latest_wins", 1),
        ConflictResolutionRule("chain_type", "server_wins", 1),
        ConflictResolutionRule("chain_private_key", "server_wins", 1),
        ConflictResolutionRule("chain_public_key", "server_wins", 1),
        ConflictResolutionRule("passphrase", "server_wins", 2),
    ),
    aliases=("t_sync_asset_chains",),
)

TABLE_SPECS: Tuple[TableSpec, ...] = (ASSETS, ASSET_CHAINS)
SYNC_TABLES: Tuple[str, ...] = tuple(spec.sync_name for spec in TABLE_SPECS)


def get_table_spec(table_name: str) -> TableSpec:
    """Looks up a table by sync name, local name or alias."""
    for spec in TABLE_SPECS:
        if spec.matches(table_name):
            return spec
    raise UnknownTableError(table_name)


def resolve_server_table(target_table: str) -> TableSpec:
    """
    Maps a server change's `target_table` to its spec. The server may suffix table names
    (e.g. sharded `t_assets_sync_2`), so names are matched by prefix.
    """
    if not target_table:
        raise UnknownTableError(str(target_table))
    for spec in TABLE_SPECS:
        for name in (spec.sync_name,) + spec.aliases:
            if target_table.startswith(name):
                return spec
    raise UnknownTableError(target_table)

#
# End of Table_Registry.py
#######################################################################################################################
