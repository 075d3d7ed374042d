"""
Database operations for reimbursement history and drafts.

History records are append-only snapshots of an exported ledger. Their file
hashes are indexed so the ingestion pipeline can reuse earlier OCR results.
"""

import json
import sqlite3
import time
import datetime as dt
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .models import LineItem
from .utils import HISTORY_RETENTION_DAYS, is_fallback_hash, today

DRAFT_ID = 1


def _now_ms() -> int:
    return int(time.time() * 1000)


def _item_dicts(items: Iterable[LineItem]) -> List[Dict[str, Any]]:
    return [(item if isinstance(item, LineItem) else LineItem.from_dict(item)).to_dict()
            for item in items]


def init_history_db(db_path: Path):
    """Initialize SQLite database for history and drafts."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path.as_posix()) as conn:
        cur = conn.cursor()
        cur.execute("""
        CREATE TABLE IF NOT EXISTS history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp INTEGER,
            title TEXT,
            total REAL,
            count INTEGER,
            project TEXT,
            reimburser TEXT,
            snapshot TEXT
        )
        """)
        cur.execute("""
        CREATE TABLE IF NOT EXISTS history_hashes (
            file_hash TEXT,
            history_id INTEGER,
            item_index INTEGER,
            UNIQUE(file_hash, history_id)
        )
        """)
        # Add index for faster cache lookups
        cur.execute("""
        CREATE INDEX IF NOT EXISTS idx_history_file_hash
        ON history_hashes(file_hash)
        """)
        cur.execute("""
        CREATE TABLE IF NOT EXISTS drafts (
            id INTEGER PRIMARY KEY,
            timestamp INTEGER,
            items TEXT,
            info TEXT
        )
        """)
        conn.commit()


def _row_to_record(row) -> Dict[str, Any]:
    snapshot = json.loads(row[7]) if row[7] else {}
    return {
        "id": row[0],
        "timestamp": row[1],
        "title": row[2],
        "total": row[3],
        "count": row[4],
        "project": row[5],
        "reimburser": row[6],
        "snapshot": snapshot,
    }


def archive_to_history(db_path: Path, items: List[LineItem], info: Optional[Dict] = None,
                       columns: Optional[List[str]] = None,
                       timestamp: Optional[int] = None) -> int:
    """
    Append an exported ledger to the history.

    Args:
        db_path: Path to the history database
        items: Ledger rows (transient file handles are dropped)
        info: Form header (reimburser, project, reimbursement_date)
        columns: Visible column ids at export time
        timestamp: Epoch milliseconds (defaults to now)

    Returns:
        Id of the new history record
    """
    info = info or {}
    rows = _item_dicts(items)
    total = sum(float(r.get("amount") or 0) for r in rows)

    title = "_".join([
        info.get("project") or "No project",
        info.get("reimburser") or "No reimburser",
        f"{total:.2f}",
        info.get("reimbursement_date") or today(),
    ])
    snapshot = {"items": rows, "info": info, "columns": columns or []}

    with sqlite3.connect(db_path.as_posix()) as conn:
        cur = conn.cursor()
        cur.execute("""
            INSERT INTO history (timestamp, title, total, count, project, reimburser, snapshot)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (timestamp or _now_ms(), title, total, len(rows),
              info.get("project"), info.get("reimburser"),
              json.dumps(snapshot, ensure_ascii=False)))
        history_id = cur.lastrowid

        data = [(r["file_hash"], history_id, i) for i, r in enumerate(rows)
                if not is_fallback_hash(r.get("file_hash"))]
        cur.executemany("""
            INSERT OR IGNORE INTO history_hashes (file_hash, history_id, item_index)
            VALUES (?, ?, ?)
        """, data)
        conn.commit()

    return history_id


def find_record_by_hash(db_path: Path, file_hash: str) -> Optional[Dict[str, Any]]:
    """
    Newest history record containing an item with this file hash.

    The returned record carries ``item_index``, the position of the matching
    item inside ``snapshot["items"]``.
    """
    try:
        with sqlite3.connect(db_path.as_posix()) as conn:
            cur = conn.cursor()
            cur.execute("""
                SELECT h.id, h.timestamp, h.title, h.total, h.count, h.project,
                       h.reimburser, h.snapshot, x.item_index
                FROM history_hashes x JOIN history h ON h.id = x.history_id
                WHERE x.file_hash = ?
                ORDER BY h.timestamp DESC, h.id DESC
                LIMIT 1
            """, (file_hash,))
            row = cur.fetchone()
            if not row:
                return None
            record = _row_to_record(row)
            record["item_index"] = row[8]
            return record
    except Exception as e:
        print(f"[WARN] Could not read from history: {e}")
        return None


def get_history_records(db_path: Path) -> List[Dict[str, Any]]:
    """All history records, newest first."""
    try:
        with sqlite3.connect(db_path.as_posix()) as conn:
            cur = conn.cursor()
            cur.execute("""
                SELECT id, timestamp, title, total, count, project, reimburser, snapshot
                FROM history
                ORDER BY timestamp DESC, id DESC
            """)
            return [_row_to_record(row) for row in cur.fetchall()]
    except Exception as e:
        print(f"[WARN] Failed to fetch history: {e}")
        return []


def delete_history_item(db_path: Path, history_id: int) -> bool:
    with sqlite3.connect(db_path.as_posix()) as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM history_hashes WHERE history_id = ?", (history_id,))
        cur.execute("DELETE FROM history WHERE id = ?", (history_id,))
        deleted = cur.rowcount > 0
        conn.commit()
    return deleted


def clear_all_history(db_path: Path) -> int:
    with sqlite3.connect(db_path.as_posix()) as conn:
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM history")
        count = cur.fetchone()[0]
        cur.execute("DELETE FROM history_hashes")
        cur.execute("DELETE FROM history")
        conn.commit()
    return count


def auto_cleanup(db_path: Path, days: int = HISTORY_RETENTION_DAYS,
                 now: Optional[dt.datetime] = None) -> int:
    """
    Remove history records older than ``days``.

    Returns:
        Number of records removed
    """
    now = now or dt.datetime.now()
    cutoff = int((now - dt.timedelta(days=days)).timestamp() * 1000)
    with sqlite3.connect(db_path.as_posix()) as conn:
        cur = conn.cursor()
        cur.execute("""
            DELETE FROM history_hashes WHERE history_id IN
            (SELECT id FROM history WHERE timestamp < ?)
        """, (cutoff,))
        cur.execute("DELETE FROM history WHERE timestamp < ?", (cutoff,))
        removed = cur.rowcount
        conn.commit()
    return removed


def save_current_draft(db_path: Path, items: List[LineItem], info: Optional[Dict] = None):
    """Overwrite the single draft slot with the current ledger."""
    try:
        with sqlite3.connect(db_path.as_posix()) as conn:
            cur = conn.cursor()
            cur.execute("""
                INSERT OR REPLACE INTO drafts (id, timestamp, items, info)
                VALUES (?, ?, ?, ?)
            """, (DRAFT_ID, _now_ms(),
                  json.dumps(_item_dicts(items), ensure_ascii=False),
                  json.dumps(info or {}, ensure_ascii=False)))
            conn.commit()
    except sqlite3.Error as e:
        print(f"[WARN] Failed to save draft: {e}")


def get_latest_draft(db_path: Path) -> Optional[Dict[str, Any]]:
    try:
        with sqlite3.connect(db_path.as_posix()) as conn:
            cur = conn.cursor()
            cur.execute("SELECT timestamp, items, info FROM drafts WHERE id = ?", (DRAFT_ID,))
            row = cur.fetchone()
    except sqlite3.Error as e:
        print(f"[WARN] Could not read draft: {e}")
        return None
    if not row:
        return None
    return {
        "timestamp": row[0],
        "items": [LineItem.from_dict(d) for d in json.loads(row[1])],
        "info": json.loads(row[2]),
    }


def delete_draft(db_path: Path):
    with sqlite3.connect(db_path.as_posix()) as conn:
        conn.execute("DELETE FROM drafts WHERE id = ?", (DRAFT_ID,))
        conn.commit()


class HistoryStore:
    """The persisted cache/history store seen by the ingestion pipeline."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        init_history_db(self.db_path)

    def find_by_fingerprint(self, file_hash: str) -> Optional[Dict[str, Any]]:
        return find_record_by_hash(self.db_path, file_hash)

    def find_item_by_fingerprint(self, file_hash: str) -> Optional[LineItem]:
        """The archived line item recognized from this content, if any."""
        record = self.find_by_fingerprint(file_hash)
        if not record:
            return None
        items = record["snapshot"].get("items") or []
        index = record.get("item_index") or 0
        if index >= len(items):
            return None
        return LineItem.from_dict(items[index])

    def append(self, items: List[LineItem], info: Optional[Dict] = None,
               columns: Optional[List[str]] = None) -> int:
        return archive_to_history(self.db_path, items, info, columns)
