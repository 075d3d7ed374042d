"""Tests for the history archive and draft slot."""

import datetime as dt

import pytest

from reimbursement_pipeline.core import database as db
from reimbursement_pipeline.core.models import LineItem
from reimbursement_pipeline.core.utils import fallback_hash


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "nested" / "history.db"
    db.init_history_db(path)
    return path


def _items():
    return [
        LineItem(file_hash="aaa", description="Taxi", amount="30.00", subtotal="28.00", tax="2.00",
                 total_with_tax="30.00"),
        LineItem(file_hash="bbb", description="Hotel", amount="200.50", subtotal="200.50",
                 total_with_tax="200.50"),
    ]


INFO = {"reimburser": "Alice", "project": "Expo", "reimbursement_date": "2024-06-30"}


def test_archive_builds_title_and_totals(db_path):
    history_id = db.archive_to_history(db_path, _items(), INFO, ["date", "amount"])
    [record] = db.get_history_records(db_path)
    assert record["id"] == history_id
    assert record["title"] == "Expo_Alice_230.50_2024-06-30"
    assert record["total"] == pytest.approx(230.5)
    assert record["count"] == 2
    assert record["snapshot"]["columns"] == ["date", "amount"]
    assert record["snapshot"]["info"] == INFO
    assert record["snapshot"]["items"][1]["description"] == "Hotel"


def test_find_record_by_hash_returns_newest_with_index(db_path):
    old = db.archive_to_history(db_path, _items(), INFO, timestamp=1000)
    new = db.archive_to_history(db_path, list(reversed(_items())), INFO, timestamp=2000)
    record = db.find_record_by_hash(db_path, "aaa")
    assert record["id"] == new != old
    assert record["item_index"] == 1
    assert db.find_record_by_hash(db_path, "zzz") is None


def test_fallback_hashes_are_not_indexed(db_path):
    h = fallback_hash("timeout")
    db.archive_to_history(db_path, [LineItem(file_hash=h), LineItem(file_hash=None)])
    assert db.find_record_by_hash(db_path, h) is None
    assert db.get_history_records(db_path)[0]["count"] == 2


def test_history_store_returns_line_item(db_path):
    store = db.HistoryStore(db_path)
    store.append(_items(), INFO)
    item = store.find_item_by_fingerprint("bbb")
    assert isinstance(item, LineItem)
    assert item.description == "Hotel"
    assert store.find_item_by_fingerprint("nope") is None


def test_legacy_snapshot_keys_are_read(db_path):
    db.archive_to_history(db_path, [{"fileHash": "ccc", "sellerName": "Cafe", "amount": "9.00"}])
    item = db.HistoryStore(db_path).find_item_by_fingerprint("ccc")
    assert item.seller_name == "Cafe"
    assert item.file_hash == "ccc"
    assert (item.subtotal, item.amount, item.total_with_tax) == ("9.00", "9.00", "9.00")


def test_numeric_snapshot_amounts_come_back_balanced(db_path):
    db.archive_to_history(db_path, [{"fileHash": "ddd", "amount": 106, "tax": 6}])
    item = db.HistoryStore(db_path).find_item_by_fingerprint("ddd")
    assert (item.subtotal, item.tax, item.amount, item.total_with_tax) == \
        ("100.00", "6.00", "106.00", "106.00")
    assert all(isinstance(getattr(item, f), str) for f in ("subtotal", "tax", "amount"))


def test_records_listed_newest_first(db_path):
    first = db.archive_to_history(db_path, _items(), timestamp=1000)
    second = db.archive_to_history(db_path, _items(), timestamp=3000)
    assert [r["id"] for r in db.get_history_records(db_path)] == [second, first]


def test_delete_and_clear(db_path):
    first = db.archive_to_history(db_path, _items())
    db.archive_to_history(db_path, _items())
    assert db.delete_history_item(db_path, first)
    assert not db.delete_history_item(db_path, first)
    assert len(db.get_history_records(db_path)) == 1
    assert db.clear_all_history(db_path) == 1
    assert db.get_history_records(db_path) == []
    assert db.find_record_by_hash(db_path, "aaa") is None


def test_auto_cleanup_removes_old_records(db_path):
    now = dt.datetime(2024, 7, 1, 12, 0)
    stale = int((now - dt.timedelta(days=31)).timestamp() * 1000)
    recent = int((now - dt.timedelta(days=2)).timestamp() * 1000)
    db.archive_to_history(db_path, [LineItem(file_hash="old")], timestamp=stale)
    kept = db.archive_to_history(db_path, [LineItem(file_hash="new")], timestamp=recent)

    assert db.auto_cleanup(db_path, days=30, now=now) == 1
    assert [r["id"] for r in db.get_history_records(db_path)] == [kept]
    assert db.find_record_by_hash(db_path, "old") is None


def test_draft_round_trip(db_path):
    assert db.get_latest_draft(db_path) is None
    items = _items()
    db.save_current_draft(db_path, items, INFO)
    db.save_current_draft(db_path, items[:1], INFO)

    draft = db.get_latest_draft(db_path)
    assert draft["info"] == INFO
    assert [i.to_dict() for i in draft["items"]] == [items[0].to_dict()]

    db.delete_draft(db_path)
    assert db.get_latest_draft(db_path) is None
