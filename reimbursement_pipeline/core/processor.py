"""
Invoice ingestion orchestration.

Each upload runs PDF rasterize -> (hash || normalize) -> cache gate -> OCR ->
mapper. A batch admits a bounded number of uploads at a time, every entry
owns its own cancellation token, and every entry ends in a terminal status.
"""

import asyncio
import dataclasses
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Awaitable, Callable, Dict, List, Optional

from .cancellation import CancellationToken, OperationCancelled
from .database import HistoryStore
from .imaging import ImageProcessingError, hash_file, normalize, convert_pdf_to_image
from .models import LineItem, UploadedFile, ProcessingQueueEntry, QueueStatus, NormalizedImage
from .ocr import OCRClient
from .parsers import map_ocr_fields, create_failed_item
from .utils import (MAX_DIMENSION, JPEG_QUALITY, MAX_CONCURRENT_OCR,
                    HASH_TIMEOUT, NORMALIZE_TIMEOUT, PDF_TIMEOUT, CACHE_TIMEOUT,
                    is_fallback_hash, new_item_id)

ProgressCallback = Callable[[int, QueueStatus, int, Optional[LineItem]], None]


class _Flight:
    def __init__(self, task: asyncio.Future):
        self.task = task
        self.waiters = 0


class InflightRequests:
    """
    De-duplicates concurrent OCR calls for the same content.

    Owned by one processor; entries with the same fingerprint share one
    request. The request is cancelled once its last waiter has left.
    """

    def __init__(self):
        self._flights: Dict[str, _Flight] = {}

    def __len__(self):
        return len(self._flights)

    def _forget(self, key: str, flight: _Flight):
        if self._flights.get(key) is flight:
            del self._flights[key]

    async def run(self, key: str, factory: Callable[[], Awaitable[Dict]],
                  token: CancellationToken) -> Dict:
        flight = self._flights.get(key)
        if flight is None:
            flight = _Flight(asyncio.ensure_future(factory()))
            self._flights[key] = flight
            flight.task.add_done_callback(lambda _t, k=key, f=flight: self._forget(k, f))

        flight.waiters += 1
        try:
            return await token.guard(asyncio.shield(flight.task))
        finally:
            flight.waiters -= 1
            if flight.waiters == 0 and not flight.task.done():
                self._forget(key, flight)
                flight.task.cancel()


def clone_cached_item(cached: LineItem, source: UploadedFile, is_pdf: bool,
                      preview_url: Optional[str]) -> LineItem:
    """
    New line item carrying the recognized fields of an archived one.

    Identity and image references always come from the current upload.
    """
    return dataclasses.replace(
        cached,
        id=new_item_id(),
        file=source,
        is_pdf=is_pdf,
        preview_url=preview_url,
        order_image=None,
        payment_proof=None,
        attachments=[],
        is_cached=True,
    )


class InvoiceProcessor:
    """Runs uploaded invoices through the ingestion pipeline."""

    def __init__(self, ocr_client: OCRClient,
                 store: Optional[HistoryStore] = None,
                 concurrency: int = MAX_CONCURRENT_OCR,
                 executor: Optional[Executor] = None,
                 verbose: bool = False,
                 max_dimension: int = MAX_DIMENSION,
                 quality: int = JPEG_QUALITY,
                 hash_timeout: float = HASH_TIMEOUT,
                 normalize_timeout: float = NORMALIZE_TIMEOUT,
                 pdf_timeout: float = PDF_TIMEOUT,
                 cache_timeout: float = CACHE_TIMEOUT):
        """
        Initialize invoice processor.

        Args:
            ocr_client: Client for the OCR service
            store: History store used as the OCR cache (None disables the cache)
            concurrency: Maximum number of uploads processed at once
            executor: Worker pool for hashing/resizing (a private one is created if omitted)
            verbose: Whether to show verbose debugging output
            max_dimension, quality: Pipeline-wide image constants
            *_timeout: Per-stage ceilings, in seconds
        """
        self.ocr_client = ocr_client
        self.store = store
        self.concurrency = max(1, concurrency)
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="image-worker")
        self._owns_executor = executor is None
        self.verbose = verbose
        self.max_dimension = max_dimension
        self.quality = quality
        self.hash_timeout = hash_timeout
        self.normalize_timeout = normalize_timeout
        self.pdf_timeout = pdf_timeout
        self.cache_timeout = cache_timeout

        self.inflight = InflightRequests()
        self.queue: List[ProcessingQueueEntry] = []

    def close(self):
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    def _debug(self, message: str):
        if self.verbose:
            print(f"  [DEBUG] {message}")

    async def prepare_image(self, source: UploadedFile) -> NormalizedImage:
        """Hash and compress an upload concurrently."""
        file_hash, compressed = await asyncio.gather(
            hash_file(source, self.executor, self.hash_timeout),
            normalize(source, self.max_dimension, self.quality, self.executor, self.normalize_timeout),
        )
        return NormalizedImage(file_hash=file_hash, compressed=compressed, source=source)

    async def lookup_cached_item(self, file_hash: str) -> Optional[LineItem]:
        """Cache gate: archived item for this fingerprint, or None (also on timeout/error)."""
        if self.store is None or is_fallback_hash(file_hash):
            return None
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, self.store.find_item_by_fingerprint, file_hash),
                self.cache_timeout)
        except asyncio.TimeoutError:
            print(f"[WARN] Cache lookup timed out for {file_hash[:8]}")
            return None
        except Exception as e:
            print(f"[WARN] Cache lookup failed: {e}")
            return None

    async def analyze_invoice(self, source: UploadedFile, info: Optional[Dict[str, str]] = None,
                              token: Optional[CancellationToken] = None) -> LineItem:
        """
        Process a single upload into a line item.

        Raises:
            OperationCancelled: the token fired before or during a stage
            ImageProcessingError: the PDF or image could not be prepared
            OCRError: the OCR call failed
        """
        token = token or CancellationToken()
        is_pdf = source.is_pdf
        process_file = source
        preview_url = None

        token.raise_if_cancelled()

        if is_pdf:
            process_file = await token.guard(
                convert_pdf_to_image(source, self.executor, self.pdf_timeout))
            if process_file is None:
                raise ImageProcessingError("PDF conversion failed")
            preview_url = process_file.precomputed

        token.raise_if_cancelled()

        image = await token.guard(self.prepare_image(process_file))
        if not image.compressed:
            raise ImageProcessingError("Image compression failed (timeout or unreadable image)")
        preview_url = preview_url or source.preview_reference()
        self._debug(f"{source.name}: hash {image.file_hash[:8]}")

        token.raise_if_cancelled()

        cached = await self.lookup_cached_item(image.file_hash)
        if cached is not None:
            print(f"[INFO] Cache hit for {source.name}")
            return clone_cached_item(cached, source, is_pdf, preview_url)

        token.raise_if_cancelled()

        raw = await self.inflight.run(
            image.file_hash, lambda: self.ocr_client.recognize(image.compressed), token)
        self._debug(f"{source.name}: OCR fields {sorted(raw)}")

        token.raise_if_cancelled()
        return map_ocr_fields(raw, source, is_pdf, preview_url, info, image.file_hash)

    def _settle(self, index: int, status: QueueStatus, progress: int,
                result: Optional[LineItem], on_progress: Optional[ProgressCallback]):
        entry = self.queue[index]
        if entry.status.is_terminal:
            return
        entry.status = status
        entry.progress = progress
        entry.result = result
        if on_progress is not None:
            try:
                on_progress(index, status, progress, result)
            except Exception as e:
                print(f"[WARN] Progress callback failed: {e}")

    async def _run_entry(self, index: int, source: UploadedFile, info: Optional[Dict[str, str]],
                         semaphore: asyncio.Semaphore,
                         on_progress: Optional[ProgressCallback]) -> Optional[LineItem]:
        entry = self.queue[index]
        token = entry.token

        if token.cancelled:
            self._settle(index, QueueStatus.CANCELLED, 0, None, on_progress)
            return None

        async with semaphore:
            if token.cancelled:
                self._settle(index, QueueStatus.CANCELLED, 0, None, on_progress)
                return None

            self._settle(index, QueueStatus.PROCESSING, 10, None, on_progress)
            try:
                item = await self.analyze_invoice(source, info, token)
            except OperationCancelled:
                print(f"[WARN] {source.name} cancelled")
                self._settle(index, QueueStatus.CANCELLED, 0, None, on_progress)
                return None
            except Exception as e:
                print(f"[ERROR] Failed {source.name}: {e}")
                failed = create_failed_item(source, source.is_pdf, e, info)
                self._settle(index, QueueStatus.FAILED, 100, failed, on_progress)
                return failed

            self._settle(index, QueueStatus.COMPLETED, 100, item, on_progress)
            return item

    async def process_batch(self, files: List[UploadedFile], info: Optional[Dict[str, str]] = None,
                            on_progress: Optional[ProgressCallback] = None) -> List[Optional[LineItem]]:
        """
        Process a batch of uploads.

        Returns:
            One entry per upload, in submission order: the line item for
            completed uploads, a failure placeholder for failed ones and
            None for cancelled ones.
        """
        print(f"[INFO] Batch processing {len(files)} file(s) "
              f"({self.concurrency} concurrent, {self.max_dimension}px)")
        self.queue = [ProcessingQueueEntry(name=f.name) for f in files]
        semaphore = asyncio.Semaphore(self.concurrency)

        return list(await asyncio.gather(*[
            self._run_entry(i, f, info, semaphore, on_progress) for i, f in enumerate(files)
        ]))

    def cancel(self, index: int):
        """Cancel one entry; its siblings are unaffected."""
        entry = self.queue[index]
        if not entry.status.is_terminal:
            entry.token.cancel()

    def cancel_all(self):
        for index in range(len(self.queue)):
            self.cancel(index)
