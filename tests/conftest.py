"""Shared fixtures: in-memory images, PDFs and a fake OCR service."""

import io
import json

import httpx
import pytest
from PIL import Image

from reimbursement_pipeline.core.models import UploadedFile
from reimbursement_pipeline.core.utils import decode_data_url


def make_image_bytes(width, height, color=(200, 120, 40), fmt="PNG"):
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


def make_upload(name, width=100, height=50, color=(200, 120, 40)):
    return UploadedFile(name, data=make_image_bytes(width, height, color), content_type="image/png")


def make_pdf_bytes(width=200, height=100):
    import fitz
    doc = fitz.open()
    page = doc.new_page(width=width, height=height)
    page.insert_text((10, 30), "INVOICE 42")
    data = doc.tobytes()
    doc.close()
    return data


def data_url_size(url):
    _, raw = decode_data_url(url)
    with Image.open(io.BytesIO(raw)) as img:
        return img.size


def request_image_width(request):
    """Width of the image posted to the OCR endpoint."""
    return data_url_size(json.loads(request.content)["image"])[0]


@pytest.fixture
def ocr_fields():
    return {
        "date": "2024-03-01",
        "category": "Meals",
        "description": "Team dinner",
        "amount": 106.0,
        "tax": 6.0,
        "subtotal": 100.0,
        "invoiceNumber": "No.12345",
        "sellerName": "Harbor Restaurant",
        "quantity": 1,
        "unitPrice": 100,
        "taxRate": "6%",
    }


@pytest.fixture
def json_transport(ocr_fields):
    """MockTransport answering every OCR request with ``ocr_fields``, recording calls."""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=ocr_fields)

    transport = httpx.MockTransport(handler)
    transport.calls = calls
    return transport
