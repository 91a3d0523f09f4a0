# test_change_compression.py
#
# Change compression: worked examples plus Hypothesis properties over random change histories.
#
# Imports
from typing import List
#
# Third-Party Imports
import pytest
from hypothesis import given, strategies as st
#
# Local Imports
from asset_sync.Sync.Sync_Helpers import (
    ChangeRecord, calculate_optimal_page_size, compress_changes, covered_change_ids, parse_timestamp,
)
#
#######################################################################################################################
#
# Functions:

UUIDS = ["a", "b", "c", "d"]


def _change(change_id, uuid, operation, **data):
    return ChangeRecord(id=change_id, table_name="t_assets_sync", record_uuid=uuid,
                        operation_type=operation, change_data={"uuid": uuid, **data})


class TestCompressionExamples:

    def test_insert_then_update_becomes_one_insert_with_latest_data(self):
        result = compress_changes([_change(1, "a", "INSERT", label="x"), _change(2, "a", "UPDATE", label="y")])
        assert len(result) == 1
        assert result[0].operation_type == "INSERT"
        assert result[0].change_data["label"] == "y"
        assert result[0].id == 1
        assert result[0].merged_ids == [1, 2]

    def test_insert_then_delete_uploads_nothing(self):
        changes = [_change(1, "a", "INSERT"), _change(2, "a", "DELETE")]
        assert compress_changes(changes) == []
        assert covered_change_ids(compress_changes(changes)) == set()

    def test_updates_collapse_keeping_first_id(self):
        result = compress_changes([_change(3, "a", "UPDATE", port=1), _change(7, "a", "UPDATE", port=2)])
        assert [(c.id, c.operation_type, c.change_data["port"]) for c in result] == [(3, "UPDATE", 2)]

    def test_update_then_delete_is_delete(self):
        result = compress_changes([_change(1, "a", "UPDATE"), _change(2, "a", "DELETE")])
        assert [(c.operation_type, c.merged_ids) for c in result] == [("DELETE", [1, 2])]

    def test_changes_after_delete_are_ignored(self):
        result = compress_changes([_change(1, "a", "UPDATE"), _change(2, "a", "DELETE"), _change(3, "a", "UPDATE")])
        assert [c.operation_type for c in result] == ["DELETE"]
        assert 3 not in covered_change_ids(result)

    def test_output_is_ordered_by_change_id(self):
        result = compress_changes([_change(5, "b", "UPDATE"), _change(2, "a", "UPDATE"), _change(9, "c", "INSERT")])
        assert [c.id for c in result] == [2, 5, 9]

    def test_string_ids_sort_after_numeric(self):
        result = compress_changes([_change("x-1", "b", "UPDATE"), _change(4, "a", "UPDATE")])
        assert [c.id for c in result] == [4, "x-1"]


# --- Hypothesis Strategies ---

@st.composite
def st_change_history(draw) -> List[ChangeRecord]:
    """Interleaved histories; each uuid starts with INSERT or UPDATE, later steps UPDATE or DELETE."""
    steps = draw(st.lists(
        st.tuples(st.sampled_from(UUIDS), st.sampled_from(["UPDATE", "DELETE"])), min_size=1, max_size=30))
    first_ops = draw(st.fixed_dictionaries({u: st.sampled_from(["INSERT", "UPDATE"]) for u in UUIDS}))
    seen = set()
    changes = []
    for change_id, (uuid, operation) in enumerate(steps, start=1):
        if uuid not in seen:
            operation = first_ops[uuid]
            seen.add(uuid)
        changes.append(_change(change_id, uuid, operation, label=f"v{change_id}"))
    return changes


class TestCompressionProperties:

    @given(changes=st_change_history())
    def test_at_most_one_record_per_uuid_in_id_order(self, changes):
        result = compress_changes(changes)
        uuids = [c.record_uuid for c in result]
        assert len(uuids) == len(set(uuids))
        assert [c.id for c in result] == sorted(c.id for c in result)

    @given(changes=st_change_history())
    def test_merged_ids_are_disjoint_and_come_from_input(self, changes):
        result = compress_changes(changes)
        all_ids = {c.id for c in changes}
        merged = [i for c in result for i in c.merged_ids]
        assert len(merged) == len(set(merged))
        assert set(merged) <= all_ids
        for record in result:
            assert record.id in record.merged_ids

    @given(changes=st_change_history())
    def test_net_effect_per_uuid(self, changes):
        result = {c.record_uuid: c for c in compress_changes(changes)}
        for uuid in UUIDS:
            history = [c for c in changes if c.record_uuid == uuid]
            if not history:
                assert uuid not in result
                continue
            if any(c.operation_type == "DELETE" for c in history):
                assert uuid not in result or result[uuid].operation_type == "DELETE"
                continue
            record = result[uuid]
            assert record.operation_type == history[0].operation_type
            assert record.id == history[0].id
            assert record.change_data == history[-1].change_data


# --- Paging / timestamps ---

@pytest.mark.parametrize("total, page_size, adaptive, expected", [
    (500, 1000, True, 1000),
    (500, 3000, True, 1000),
    (20_000, 1000, True, 1500),
    (20_000, 800, True, 1200),
    (80_000, 1000, True, 2000),
    (80_000, 700, True, 1400),
    (80_000, 700, False, 700),
])
def test_calculate_optimal_page_size(total, page_size, adaptive, expected):
    assert calculate_optimal_page_size(total, page_size, adaptive) == expected


def test_parse_timestamp_formats():
    iso = parse_timestamp("2024-03-01T10:00:00.000Z")
    assert iso is not None and iso.tzinfo is not None
    assert parse_timestamp("2024-03-01 10:00:00") == iso
    assert parse_timestamp(iso.timestamp() * 1000) == iso
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None

#
# End of test_change_compression.py
#######################################################################################################################
