"""
Data models for the reimbursement ledger and the ingestion queue.
"""

import mimetypes
import threading
from dataclasses import dataclass, field, fields, asdict, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .cancellation import CancellationToken
from .utils import PDF_EXTS, new_item_id, to_data_url, decode_data_url

ImageSlot = Union[None, str, List[str]]

FINANCIAL_FIELDS = ("subtotal", "tax", "amount", "total_with_tax")
IMAGE_SLOTS = ("preview_url", "order_image", "payment_proof", "attachments")

# Keys written by older records and by the OCR service
LEGACY_FIELD_NAMES = {
    "fileHash": "file_hash",
    "itemName": "item_name",
    "invoiceNumber": "invoice_number",
    "buyerName": "buyer_name",
    "sellerName": "seller_name",
    "unitPrice": "unit_price",
    "totalWithTax": "total_with_tax",
    "taxRate": "tax_rate",
    "previewUrl": "preview_url",
    "orderImage": "order_image",
    "paymentProof": "payment_proof",
    "isPDF": "is_pdf",
    "isCached": "is_cached",
}


class UploadedFile:
    """
    An uploaded invoice: in-memory bytes, a file on disk, or a reference URL
    (``data:`` or ``http(s)://``) that is dereferenced on first read.
    """

    def __init__(self, name: str, data: Optional[bytes] = None,
                 path: Optional[Path] = None, url: Optional[str] = None,
                 content_type: Optional[str] = None,
                 precomputed: Optional[str] = None):
        if data is None and path is None and url is None:
            raise ValueError(f"UploadedFile {name!r} needs data, path or url")
        self.name = name
        self.data = data
        self.path = Path(path) if path is not None else None
        self.url = url
        self.content_type = content_type or mimetypes.guess_type(name)[0] or "application/octet-stream"
        # Compressed data URL attached by the PDF path
        self.precomputed = precomputed
        self._fetch_lock = threading.Lock()

    @classmethod
    def from_path(cls, path: Path) -> "UploadedFile":
        path = Path(path)
        return cls(path.name, path=path)

    @property
    def is_pdf(self) -> bool:
        return self.content_type == "application/pdf" or Path(self.name).suffix.lower() in PDF_EXTS

    def read_bytes(self) -> bytes:
        """Content of the upload. Referenced content is fetched once and kept."""
        if self.data is not None:
            return self.data
        if self.path is not None:
            return self.path.read_bytes()
        with self._fetch_lock:
            if self.data is None:
                self.data = self._dereference()
        return self.data

    def _dereference(self) -> bytes:
        if self.url.startswith("data:"):
            return decode_data_url(self.url)[1]
        import httpx
        response = httpx.get(self.url, timeout=30.0)
        response.raise_for_status()
        return response.content

    def preview_reference(self) -> Optional[str]:
        """Best-effort reference the UI can display for this upload."""
        if self.url is not None:
            return self.url
        if self.path is not None:
            return self.path.as_posix()
        if self.data is not None:
            return to_data_url(self.data, self.content_type)
        return None

    def __repr__(self):
        return f"UploadedFile({self.name!r}, content_type={self.content_type!r})"


@dataclass
class LineItem:
    """One row of the reimbursement ledger."""
    id: int = field(default_factory=new_item_id)
    file_hash: Optional[str] = None
    date: str = ""
    category: str = ""
    description: str = ""
    item_name: str = ""
    specification: str = ""
    unit: str = ""
    quantity: float = 0
    unit_price: float = 0
    subtotal: str = "0.00"
    tax: str = "0.00"
    amount: str = "0.00"
    total_with_tax: str = "0.00"
    tax_rate: str = ""
    invoice_number: str = ""
    buyer_name: str = ""
    seller_name: str = ""
    remarks: str = ""
    reimburser: str = ""
    project: str = ""
    preview_url: ImageSlot = None
    order_image: ImageSlot = None
    payment_proof: ImageSlot = None
    attachments: List[str] = field(default_factory=list)
    is_pdf: bool = False
    is_cached: bool = False
    file: Optional[UploadedFile] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a persistable dictionary (the transient file handle is dropped)."""
        data = asdict(replace(self, file=None))
        data.pop("file", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LineItem":
        known = {f.name for f in fields(cls)} - {"file"}
        kwargs = {}
        for key, value in data.items():
            name = LEGACY_FIELD_NAMES.get(key, key)
            if name in known:
                kwargs[name] = value
        if kwargs.get("attachments") is None:
            kwargs.pop("attachments", None)

        # Older records store money as numbers and may omit derived fields
        from .finance import normalize_financials
        kwargs.update(normalize_financials(**{k: kwargs.get(k) for k in FINANCIAL_FIELDS}))
        return cls(**kwargs)


class QueueStatus(str, Enum):
    """Lifecycle of one upload in a batch."""
    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED)


@dataclass
class ProcessingQueueEntry:
    """Tracks one in-flight upload of a batch."""
    name: str
    status: QueueStatus = QueueStatus.WAITING
    progress: int = 0
    result: Optional[LineItem] = None
    token: CancellationToken = field(default_factory=CancellationToken, repr=False, compare=False)


@dataclass
class NormalizedImage:
    file_hash: str
    compressed: Optional[str]
    source: UploadedFile
