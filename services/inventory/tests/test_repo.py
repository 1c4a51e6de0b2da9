"""Tests for the SQLAlchemy stock ledger.

Each test runs against a fresh SQLite database (see ``services/conftest.py``)
and checks the counters of the touched records directly, in particular that
``available == stock_level - reserved`` holds after every operation.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from services.inventory.repo import (
    InsufficientStock,
    InventoryRepo,
    OperationKeyConflict,
    RecordNotFound,
    StockBelowReserved,
    StockLine,
    merge_lines,
    operation_hash,
)


def _consistent(rec):
    return (
        rec["available"] == rec["stock_level"] - rec["reserved"]
        and 0 <= rec["reserved"] <= rec["stock_level"]
    )


@pytest.fixture
def repo(inventory_db):
    r = InventoryRepo(unknown_stock_policy="permissive")
    r.seed("AJ1", ["8", "9", "10"], stock_levels={"8": 10, "9": 2, "10": 0})
    return r


def test_seed_uses_default_table_and_is_rerunnable(inventory_db):
    """Seeding applies the per-size defaults and skips existing records."""
    repo = InventoryRepo()
    assert repo.seed("DUNK", [7, 8, "13"]) == 3
    levels = {r["size"]: r["stock_level"] for r in repo.list_for_product("DUNK")}
    assert levels == {"7": 20, "8": 25, "13": 10}
    assert repo.seed("DUNK", [7, 8, 9]) == 1


def test_list_for_product_sorts_sizes_numerically(repo):
    sizes = [r["size"] for r in repo.list_for_product("AJ1")]
    assert sizes == ["8", "9", "10"]


def test_check_availability_reports_shortfalls(repo):
    """Only lines above the available units are reported, with their names."""
    result = repo.check_availability([
        StockLine("AJ1", "8", 3),
        StockLine("AJ1", "9", 5, "Air Jordan 1"),
    ])
    assert result.available is False
    assert [s.to_dict() for s in result.unavailable_items] == [
        {"product_id": "AJ1", "size": "9", "requested": 5, "available": 2, "product_name": "Air Jordan 1"}
    ]
    # no side effects
    assert repo.get_line("AJ1", "8")["reserved"] == 0


def test_reserve_moves_units_from_available_to_reserved(repo):
    assert repo.reserve([StockLine("AJ1", "8", 4)]) == 1
    rec = repo.get_line("AJ1", "8")
    assert (rec["stock_level"], rec["reserved"], rec["available"]) == (10, 4, 6)
    assert _consistent(rec)


def test_reserve_is_all_or_nothing(repo):
    """A short line fails the reservation and leaves every record untouched."""
    with pytest.raises(InsufficientStock) as e:
        repo.reserve([StockLine("AJ1", "8", 1), StockLine("AJ1", "9", 3)])
    assert [(s.size, s.requested, s.available) for s in e.value.shortfalls] == [("9", 3, 2)]
    assert repo.get_line("AJ1", "8")["reserved"] == 0
    assert repo.get_line("AJ1", "9")["reserved"] == 0


def test_reserve_merges_repeated_lines(repo):
    """Two lines for the same size count against the same record."""
    with pytest.raises(InsufficientStock) as e:
        repo.reserve([StockLine("AJ1", "9", 1), StockLine("AJ1", "9", 2)])
    assert e.value.shortfalls[0].requested == 3


def test_reserve_zero_stock_fails(repo):
    with pytest.raises(InsufficientStock):
        repo.reserve([StockLine("AJ1", "10", 1)])


def test_release_is_clamped_at_zero(repo):
    """Releasing more than was reserved never invents stock."""
    repo.reserve([StockLine("AJ1", "8", 2)])
    repo.release([StockLine("AJ1", "8", 5)])
    rec = repo.get_line("AJ1", "8")
    assert (rec["stock_level"], rec["reserved"], rec["available"]) == (10, 0, 10)


def test_commit_after_reserve(repo):
    """Stock 10, reserved 3: committing 3 leaves 7 owned and 7 sellable."""
    repo.reserve([StockLine("AJ1", "8", 3)])
    assert repo.commit([StockLine("AJ1", "8", 3)]) == 1
    rec = repo.get_line("AJ1", "8")
    assert (rec["stock_level"], rec["reserved"], rec["available"]) == (7, 0, 7)
    assert rec["version"] == 2


def test_commit_after_release_keeps_counters_consistent(repo):
    """A late commit for a released reservation still lowers the stock."""
    repo.reserve([StockLine("AJ1", "8", 3)])
    repo.release([StockLine("AJ1", "8", 3)])
    repo.commit([StockLine("AJ1", "8", 3)])
    rec = repo.get_line("AJ1", "8")
    assert (rec["stock_level"], rec["reserved"], rec["available"]) == (7, 0, 7)


def test_commit_more_than_owned_floors_at_zero(repo):
    repo.commit([StockLine("AJ1", "9", 5)])
    rec = repo.get_line("AJ1", "9")
    assert (rec["stock_level"], rec["reserved"], rec["available"]) == (0, 0, 0)


def test_keyed_commit_is_applied_once(repo):
    """Stock 10, reserved 5: a commit of 5 repeated under one key leaves 5 owned."""
    repo.reserve([StockLine("AJ1", "8", 5)], operation_key="order-1-reserve")

    assert repo.commit([StockLine("AJ1", "8", 5)], operation_key="order-1-commit") == 1
    assert repo.commit([StockLine("AJ1", "8", 5)], operation_key="order-1-commit") == 0

    rec = repo.get_line("AJ1", "8")
    assert (rec["stock_level"], rec["reserved"], rec["available"]) == (5, 0, 5)


def test_refused_reservation_leaves_its_key_unused(repo):
    with pytest.raises(InsufficientStock):
        repo.reserve([StockLine("AJ1", "9", 3)], operation_key="order-2-reserve")

    assert repo.reserve([StockLine("AJ1", "9", 2)], operation_key="order-2-reserve") == 1
    assert repo.get_line("AJ1", "9")["reserved"] == 2


def test_key_reused_for_other_lines_conflicts(repo):
    repo.release([StockLine("AJ1", "8", 1)], operation_key="order-3-release")
    with pytest.raises(OperationKeyConflict):
        repo.release([StockLine("AJ1", "8", 2)], operation_key="order-3-release")


def test_operation_hash_ignores_line_order():
    a = [StockLine("AJ1", "8", 1), StockLine("AJ1", "9", 2)]
    assert operation_hash("commit", a) == operation_hash("commit", list(reversed(a)))
    assert operation_hash("commit", a) != operation_hash("release", a)


def test_unknown_lines_are_skipped_when_permissive(repo):
    assert repo.reserve([StockLine("GHOST", "9", 1)]) == 0
    assert repo.check_availability([StockLine("GHOST", "9", 1)]).available is True
    assert repo.release([StockLine("GHOST", "9", 1)]) == 0


def test_unknown_lines_fail_when_strict(repo):
    strict = InventoryRepo(unknown_stock_policy="strict")
    with pytest.raises(InsufficientStock) as e:
        strict.reserve([StockLine("AJ1", "8", 1), StockLine("GHOST", "9", 1)])
    assert e.value.shortfalls[0].to_dict() == {
        "product_id": "GHOST", "size": "9", "requested": 1, "available": 0,
    }
    assert repo.get_line("AJ1", "8")["reserved"] == 0


def test_unknown_policy_name_is_rejected():
    with pytest.raises(ValueError):
        InventoryRepo(unknown_stock_policy="lenient")


def test_merge_lines_rejects_non_positive_quantities():
    with pytest.raises(ValueError):
        merge_lines([StockLine("AJ1", "8", 0)])


def test_concurrent_reservations_never_oversell(repo):
    """Twenty buyers race for the last two pairs; exactly two win."""
    def buy(_):
        try:
            InventoryRepo().reserve([StockLine("AJ1", "9", 1)])
            return True
        except InsufficientStock:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(buy, range(20)))

    assert results.count(True) == 2
    rec = repo.get_line("AJ1", "9")
    assert (rec["stock_level"], rec["reserved"], rec["available"]) == (2, 2, 0)


def test_set_stock_level_recomputes_available(repo):
    repo.reserve([StockLine("AJ1", "8", 4)])
    rec_id = repo.get_line("AJ1", "8")["id"]
    rec = repo.set_stock_level(rec_id, 6)
    assert (rec["stock_level"], rec["reserved"], rec["available"]) == (6, 4, 2)


def test_set_stock_level_below_reserved_is_rejected(repo):
    repo.reserve([StockLine("AJ1", "8", 4)])
    rec_id = repo.get_line("AJ1", "8")["id"]
    with pytest.raises(StockBelowReserved) as e:
        repo.set_stock_level(rec_id, 3)
    assert e.value.reserved == 4
    assert repo.get(rec_id)["stock_level"] == 10


def test_set_stock_level_unknown_record(repo):
    with pytest.raises(RecordNotFound):
        repo.set_stock_level("does-not-exist", 5)


def test_bulk_set_stock_levels_is_atomic(repo):
    """One bad id in the batch leaves every record as it was."""
    rec_id = repo.get_line("AJ1", "8")["id"]
    with pytest.raises(RecordNotFound):
        repo.bulk_set_stock_levels([(rec_id, 30), ("missing", 1)])
    assert repo.get(rec_id)["stock_level"] == 10

    updated = repo.bulk_set_stock_levels([(rec_id, 30)])
    assert updated[0]["available"] == 30
