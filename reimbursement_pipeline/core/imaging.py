"""
Image hashing, resizing and PDF rasterization for uploaded invoices.

The synchronous helpers do the CPU-bound work; the async wrappers run them
in an executor behind a hard timeout and resolve to a fallback value
instead of raising.
"""

import asyncio
import io
from concurrent.futures import Executor
from pathlib import Path
from typing import Optional, Tuple

from .models import UploadedFile
from .utils import (MAX_DIMENSION, JPEG_QUALITY, PDF_TARGET_DIMENSION,
                    HASH_TIMEOUT, NORMALIZE_TIMEOUT, PDF_TIMEOUT,
                    sha1_bytes, sha1_file, fallback_hash, to_data_url)


class ImageProcessingError(RuntimeError):
    """An upload could not be decoded, rasterized or compressed."""


def compute_target_size(width: int, height: int, max_dim: int) -> Tuple[int, int]:
    """Clamp the long side to ``max_dim`` keeping aspect ratio. Never upscales."""
    if width > height and width > max_dim:
        return max_dim, max(1, round(height * (max_dim / width)))
    if height >= width and height > max_dim:
        return max(1, round(width * (max_dim / height))), max_dim
    return width, height


def _encode_jpeg(img, quality: int) -> bytes:
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


def compress_image(source: UploadedFile, max_dimension: int = MAX_DIMENSION,
                   quality: int = JPEG_QUALITY) -> str:
    """
    Decode, downsize and re-encode an image as a JPEG data URL.

    Uses the representation pre-attached by the PDF path when present.
    """
    if source.precomputed:
        return source.precomputed

    from PIL import Image, ImageOps

    with Image.open(io.BytesIO(source.read_bytes())) as opened:
        img = ImageOps.exif_transpose(opened)
        size = compute_target_size(img.width, img.height, max_dimension)
        if size != img.size:
            img = img.resize(size, Image.LANCZOS)
        return to_data_url(_encode_jpeg(img, quality), "image/jpeg")


def render_pdf_first_page(data: bytes, target_dimension: int = PDF_TARGET_DIMENSION,
                          quality: int = JPEG_QUALITY) -> bytes:
    """
    Rasterize page 1 of a PDF to JPEG bytes with its long side at
    ``target_dimension``. Small pages are upscaled for legibility.
    """
    import fitz  # pymupdf
    from PIL import Image

    doc = fitz.open(stream=data, filetype="pdf")
    try:
        if doc.page_count == 0:
            raise ImageProcessingError("PDF has no pages")
        page = doc[0]
        rect = page.rect
        scale = target_dimension / max(rect.width, rect.height)
        pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        png_bytes = pix.tobytes("png")
    finally:
        doc.close()

    with Image.open(io.BytesIO(png_bytes)) as img:
        return _encode_jpeg(img, quality)


def _hash_source(source: UploadedFile) -> str:
    if source.data is None and source.path is not None:
        return sha1_file(source.path)
    return sha1_bytes(source.read_bytes())


async def hash_file(source: UploadedFile, executor: Optional[Executor] = None,
                    timeout: float = HASH_TIMEOUT) -> str:
    """
    Content fingerprint of an upload.

    Always returns: on timeout or read error a unique fallback fingerprint is
    produced instead (it will simply never hit the cache).
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(loop.run_in_executor(executor, _hash_source, source), timeout)
    except asyncio.TimeoutError:
        print(f"[WARN] Hashing {source.name} timed out after {timeout:g}s")
        return fallback_hash("timeout")
    except Exception as e:
        print(f"[WARN] Hash calculation failed for {source.name}: {e}")
        return fallback_hash("error")


async def normalize(source: UploadedFile, max_dimension: int = MAX_DIMENSION,
                    quality: int = JPEG_QUALITY, executor: Optional[Executor] = None,
                    timeout: float = NORMALIZE_TIMEOUT) -> Optional[str]:
    """Compressed representation of an upload, or None if it could not be produced in time."""
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(executor, compress_image, source, max_dimension, quality),
            timeout)
    except asyncio.TimeoutError:
        print(f"[ERROR] Resizing {source.name} timed out after {timeout:g}s")
        return None
    except Exception as e:
        print(f"[ERROR] Failed to process {source.name}: {e}")
        return None


async def convert_pdf_to_image(source: UploadedFile, executor: Optional[Executor] = None,
                               timeout: float = PDF_TIMEOUT,
                               target_dimension: int = PDF_TARGET_DIMENSION,
                               quality: int = JPEG_QUALITY) -> Optional[UploadedFile]:
    """
    Rasterize the first page of an uploaded PDF into a JPEG upload.

    The compressed data URL is pre-attached so it is not re-encoded
    downstream. Returns None on timeout or decode error.
    """
    loop = asyncio.get_running_loop()

    def _convert() -> bytes:
        return render_pdf_first_page(source.read_bytes(), target_dimension, quality)

    try:
        jpeg = await asyncio.wait_for(loop.run_in_executor(executor, _convert), timeout)
    except asyncio.TimeoutError:
        print(f"[ERROR] PDF processing timeout for {source.name}")
        return None
    except Exception as e:
        print(f"[ERROR] PDF conversion error for {source.name}: {e}")
        return None

    name = Path(source.name).with_suffix(".jpg").name
    return UploadedFile(name, data=jpeg, content_type="image/jpeg",
                        precomputed=to_data_url(jpeg, "image/jpeg"))
