"""
Utility functions and constants for invoice ingestion.
"""

import base64
import hashlib
import re
import threading
import time
import uuid
import datetime as dt
from pathlib import Path
from typing import Optional, Tuple

# File type constants
IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp"}
PDF_EXTS = {".pdf"}

# Single stream: every image is stored, shown and sent to OCR at this size/quality
MAX_DIMENSION = 1500
JPEG_QUALITY = 70
PDF_TARGET_DIMENSION = 1800

# Stage timeouts (seconds)
HASH_TIMEOUT = 20.0
NORMALIZE_TIMEOUT = 40.0
PDF_TIMEOUT = 20.0
CACHE_TIMEOUT = 10.0
OCR_TIMEOUT = 60.0

MAX_CONCURRENT_OCR = 2
MAX_ATTACHMENTS = 5
HISTORY_RETENTION_DAYS = 30

_NUMBER_RE = re.compile(r"^\s*([-+]?(?:\d+\.?\d*|\.\d+))")

_last_id = 0
_id_lock = threading.Lock()


def new_item_id() -> int:
    """Return a unique, increasing line item id (microsecond clock based)."""
    global _last_id
    with _id_lock:
        _last_id = max(time.time_ns() // 1000, _last_id + 1)
        return _last_id


def today() -> str:
    """Today's date as YYYY-MM-DD."""
    return dt.date.today().isoformat()


def to_number(value) -> float:
    """
    Lenient numeric coercion.

    Empty strings, None and unparsable input become 0. A leading number is
    accepted even with trailing text ("12.5 CNY" -> 12.5), thousands
    separators are ignored.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        m = _NUMBER_RE.match(str(value).replace(",", ""))
        if not m:
            return 0.0
        number = float(m.group(1))
    if number != number or number in (float("inf"), float("-inf")):
        return 0.0
    return number


def sha1_bytes(data: bytes) -> str:
    """Calculate SHA1 hash of in-memory content."""
    h = hashlib.sha1()
    view = memoryview(data)
    for start in range(0, len(view), 65536):
        h.update(view[start:start + 65536])
    return h.hexdigest()


def sha1_file(path: Path) -> str:
    """Calculate SHA1 hash of file."""
    h = hashlib.sha1()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def fallback_hash(reason: str) -> str:
    """Unique, non content-addressed fingerprint used when hashing fails."""
    return f"{reason}-hash-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def is_fallback_hash(file_hash: Optional[str]) -> bool:
    return not file_hash or "-hash-" in file_hash


def to_data_url(data: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(url: str) -> Tuple[str, bytes]:
    """Split a base64 data URL into (content_type, raw bytes)."""
    if not url.startswith("data:") or "," not in url:
        raise ValueError("Not a data URL")
    header, payload = url[5:].split(",", 1)
    parts = header.split(";")
    content_type = parts[0] or "application/octet-stream"
    if "base64" in parts[1:]:
        return content_type, base64.b64decode(payload)
    return content_type, payload.encode("utf-8")


def money_fmt(v: Optional[float]) -> str:
    """Format amount as currency."""
    return f"{v:,.2f}" if v is not None else ""
