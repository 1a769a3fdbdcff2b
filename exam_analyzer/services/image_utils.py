"""
Image preparation for vision model calls.

Uploaded exam papers arrive as photos (JPEG/PNG/WebP/HEIC...) or PDFs; both are
turned into base64 PNG pages small enough to send to a VLM.
"""
import asyncio
import base64
import io
import logging
from typing import List

from pdf2image import convert_from_bytes
from PIL import Image

from ..config import settings
from ..utils.file_types import is_pdf

logger = logging.getLogger(__name__)


def pdf_to_images(pdf_bytes: bytes, dpi: int = 150) -> List[Image.Image]:
    """
    Convert PDF bytes to a list of PIL Images.

    Args:
        pdf_bytes: PDF file as bytes
        dpi: Resolution for rendering

    Returns:
        List of PIL Image objects, one per page
    """
    try:
        images = convert_from_bytes(pdf_bytes, dpi=dpi, fmt="PNG")
        logger.info(f"Converted PDF to {len(images)} images at {dpi} DPI")
        return images
    except Exception as e:
        logger.error(f"Error converting PDF to images: {e}")
        raise


def image_to_base64(image: Image.Image, max_size: int = 1500) -> str:
    """
    Convert PIL Image to base64 PNG, resizing so the longest side is <= max_size.
    """
    if max(image.size) > max_size:
        ratio = max_size / max(image.size)
        new_size = (int(image.size[0] * ratio), int(image.size[1] * ratio))
        image = image.resize(new_size, Image.Resampling.LANCZOS)
        logger.debug(f"Resized image to {new_size}")

    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")

    buffer = io.BytesIO()
    image.save(buffer, format="PNG", optimize=True)
    buffer.seek(0)

    return base64.standard_b64encode(buffer.read()).decode("utf-8")


def file_to_base64_pages(data: bytes, mime_type: str) -> List[str]:
    """Rasterize an uploaded file into base64 PNG pages."""
    max_size = settings.vision_max_image_size
    if is_pdf(mime_type, data):
        return [image_to_base64(img, max_size=max_size) for img in pdf_to_images(data, dpi=settings.vision_dpi)]

    with Image.open(io.BytesIO(data)) as img:
        img.load()
        return [image_to_base64(img, max_size=max_size)]


async def file_to_base64_pages_async(data: bytes, mime_type: str) -> List[str]:
    """Run rasterization off the event loop."""
    return await asyncio.to_thread(file_to_base64_pages, data, mime_type)
