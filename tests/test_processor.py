"""Tests for the ingestion pipeline and batch scheduler."""

import asyncio
import dataclasses

import httpx
import pytest

from reimbursement_pipeline.core.cancellation import CancellationToken, OperationCancelled
from reimbursement_pipeline.core.database import HistoryStore
from reimbursement_pipeline.core.models import QueueStatus, UploadedFile
from reimbursement_pipeline.core.ocr import OCRClient
from reimbursement_pipeline.core.processor import InvoiceProcessor, InflightRequests
from reimbursement_pipeline.core.utils import sha1_bytes

from conftest import make_upload, make_pdf_bytes, request_image_width

ENDPOINT = "http://ocr.test/api/ocr"
INFO = {"reimburser": "Alice", "project": "Expo"}


@pytest.fixture
def make_processor():
    created = []

    def factory(transport, timeout=5.0, **kwargs):
        client = OCRClient(ENDPOINT, timeout=timeout, transport=transport)
        processor = InvoiceProcessor(client, **kwargs)
        created.append(processor)
        return processor

    yield factory
    for processor in created:
        processor.close()


def _recorder():
    events = []

    def on_progress(index, status, progress, result):
        events.append((index, status, progress, result))

    return events, on_progress


def test_single_upload_is_recognized(make_processor, json_transport):
    processor = make_processor(json_transport)
    item = asyncio.run(processor.analyze_invoice(make_upload("dinner.png"), INFO))
    assert item.amount == "106.00"
    assert item.reimburser == "Alice"
    assert item.file_hash and not item.is_cached
    assert len(json_transport.calls) == 1


def test_batch_isolates_failures_and_cancellation(make_processor, ocr_fields):
    async def scenario():
        started = asyncio.Event()

        async def handler(request):
            width = request_image_width(request)
            if width == 120:
                await asyncio.sleep(2)
            elif width == 140:
                started.set()
                await asyncio.sleep(5)
            return httpx.Response(200, json=ocr_fields)

        processor = make_processor(httpx.MockTransport(handler), timeout=0.2, concurrency=3)
        events, on_progress = _recorder()
        files = [make_upload("a.png", 100), make_upload("b.png", 120), make_upload("c.png", 140)]

        batch = asyncio.ensure_future(processor.process_batch(files, INFO, on_progress))
        await started.wait()
        processor.cancel(2)
        results = await batch
        return processor, events, results

    processor, events, results = asyncio.run(scenario())

    assert [e.name for e in processor.queue] == ["a.png", "b.png", "c.png"]
    assert [e.status for e in processor.queue] == \
        [QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED]
    assert [e.progress for e in processor.queue] == [100, 100, 0]

    assert results[0].amount == "106.00"
    assert "b.png" in results[1].description and "timed out" in results[1].description
    assert results[1].amount == "0.00"
    assert results[2] is None

    for index in range(3):
        terminal = [e for e in events if e[0] == index and e[1].is_terminal]
        assert len(terminal) == 1
    assert all(e[2] == 10 for e in events if e[1] == QueueStatus.PROCESSING)


def test_cancelling_waiting_entry_skips_ocr(make_processor):
    calls = []

    async def handler(request):
        calls.append(request)
        await asyncio.sleep(0.2)
        return httpx.Response(200, json={"t": 10})

    processor = make_processor(httpx.MockTransport(handler), concurrency=1)
    events, record = _recorder()

    def on_progress(index, status, progress, result):
        record(index, status, progress, result)
        if index == 0 and status == QueueStatus.PROCESSING:
            processor.cancel(1)

    files = [make_upload("first.png", 100), make_upload("second.png", 110)]
    results = asyncio.run(processor.process_batch(files, on_progress=on_progress))

    assert results[0].amount == "10.00"
    assert results[1] is None
    assert processor.queue[1].status == QueueStatus.CANCELLED
    assert len(calls) == 1
    assert not any(e[0] == 1 and e[1] == QueueStatus.PROCESSING for e in events)


def test_cancel_all(make_processor, json_transport):
    processor = make_processor(json_transport, concurrency=1)

    def on_progress(index, status, progress, result):
        if status == QueueStatus.PROCESSING:
            processor.cancel_all()

    files = [make_upload("x.png", 100), make_upload("y.png", 110)]
    results = asyncio.run(processor.process_batch(files, on_progress=on_progress))
    assert results == [None, None]
    assert all(e.status == QueueStatus.CANCELLED for e in processor.queue)
    assert json_transport.calls == []


def test_cancel_after_completion_is_ignored(make_processor, json_transport):
    processor = make_processor(json_transport)
    asyncio.run(processor.process_batch([make_upload("done.png")]))
    processor.cancel(0)
    assert processor.queue[0].status == QueueStatus.COMPLETED


def test_ocr_error_produces_placeholder(make_processor):
    processor = make_processor(httpx.MockTransport(lambda request: httpx.Response(500)))
    events, on_progress = _recorder()
    results = asyncio.run(processor.process_batch([make_upload("bad.png")], INFO, on_progress))

    assert processor.queue[0].status == QueueStatus.FAILED
    assert "API Error: 500" in results[0].description
    assert results[0].reimburser == "Alice"
    assert events[-1][1] == QueueStatus.FAILED


def test_unreadable_image_fails_without_ocr(make_processor, json_transport):
    processor = make_processor(json_transport)
    results = asyncio.run(processor.process_batch([UploadedFile("junk.png", data=b"not an image")]))
    assert processor.queue[0].status == QueueStatus.FAILED
    assert "junk.png" in results[0].description
    assert json_transport.calls == []


def test_progress_callback_errors_do_not_break_batch(make_processor, json_transport):
    processor = make_processor(json_transport)

    def on_progress(*args):
        raise RuntimeError("ui went away")

    results = asyncio.run(processor.process_batch([make_upload("ok.png")], on_progress=on_progress))
    assert results[0].amount == "106.00"
    assert processor.queue[0].status == QueueStatus.COMPLETED


def test_cache_hit_skips_ocr_and_issues_new_id(make_processor, json_transport, tmp_path):
    store = HistoryStore(tmp_path / "history.db")
    processor = make_processor(json_transport, store=store)
    upload = make_upload("receipt.png", 300, 200)

    first = asyncio.run(processor.analyze_invoice(upload, INFO))
    first = dataclasses.replace(first, description="Edited before export")
    store.append([first], INFO)

    second = asyncio.run(processor.analyze_invoice(make_upload("again.png", 300, 200), INFO))

    assert len(json_transport.calls) == 1
    assert second.is_cached
    assert second.id != first.id
    assert second.description == "Edited before export"
    assert second.file_hash == first.file_hash
    assert (second.amount, second.tax, second.subtotal) == (first.amount, first.tax, first.subtotal)
    assert second.file.name == "again.png"


def test_cache_hit_uses_matching_item_of_record(make_processor, json_transport, tmp_path):
    store = HistoryStore(tmp_path / "history.db")
    processor = make_processor(json_transport, store=store)

    items = [asyncio.run(processor.analyze_invoice(make_upload(f"r{w}.png", w, 80)))
             for w in (90, 95)]
    items[1] = dataclasses.replace(items[1], description="second")
    store.append(items)

    hit = asyncio.run(processor.analyze_invoice(make_upload("again.png", 95, 80)))
    assert hit.description == "second"
    assert len(json_transport.calls) == 2


def test_cache_hit_on_numeric_legacy_record_is_balanced(make_processor, json_transport, tmp_path):
    store = HistoryStore(tmp_path / "history.db")
    upload = make_upload("legacy.png", 150, 90)
    store.append([{"fileHash": sha1_bytes(upload.data), "amount": 106, "tax": 6}])

    item = asyncio.run(make_processor(json_transport, store=store).analyze_invoice(upload))
    assert item.is_cached
    assert json_transport.calls == []
    assert (item.subtotal, item.tax, item.amount, item.total_with_tax) == \
        ("100.00", "6.00", "106.00", "106.00")


def test_identical_uploads_share_one_request(make_processor, ocr_fields):
    calls = []

    async def handler(request):
        calls.append(request)
        await asyncio.sleep(0.3)
        return httpx.Response(200, json=ocr_fields)

    processor = make_processor(httpx.MockTransport(handler), concurrency=2)
    files = [make_upload("one.png", 200, 100), make_upload("two.png", 200, 100)]
    results = asyncio.run(processor.process_batch(files))

    assert len(calls) == 1
    assert results[0].id != results[1].id
    assert results[0].amount == results[1].amount == "106.00"
    assert len(processor.inflight) == 0


def test_cancelling_one_sharer_keeps_request_for_the_other():
    async def scenario():
        calls = []

        async def request():
            calls.append(1)
            await asyncio.sleep(0.2)
            return {"t": 5}

        inflight = InflightRequests()
        keep, drop = CancellationToken(), CancellationToken()
        first = asyncio.ensure_future(inflight.run("h", request, keep))
        second = asyncio.ensure_future(inflight.run("h", request, drop))
        await asyncio.sleep(0.05)
        drop.cancel()
        with pytest.raises(OperationCancelled):
            await second
        return await first, calls

    result, calls = asyncio.run(scenario())
    assert result == {"t": 5}
    assert len(calls) == 1


def test_pdf_upload_is_rasterized_before_ocr(make_processor, json_transport):
    processor = make_processor(json_transport)
    upload = UploadedFile("invoice.pdf", data=make_pdf_bytes(200, 100), content_type="application/pdf")
    results = asyncio.run(processor.process_batch([upload], INFO))

    item = results[0]
    assert processor.queue[0].status == QueueStatus.COMPLETED
    assert item.is_pdf
    assert item.preview_url.startswith("data:image/jpeg;base64,")
    assert item.file is upload
    assert abs(request_image_width(json_transport.calls[0]) - 1800) <= 1


def test_broken_pdf_fails(make_processor, json_transport):
    processor = make_processor(json_transport)
    upload = UploadedFile("broken.pdf", data=b"%PDF-1.4 nonsense")
    results = asyncio.run(processor.process_batch([upload]))
    assert processor.queue[0].status == QueueStatus.FAILED
    assert results[0].is_pdf
    assert json_transport.calls == []
