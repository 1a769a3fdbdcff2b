"""
Client-side file handling: the selected file, its local preview, and
optional downsizing of photos before upload.
"""
import io
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image

from ..utils.file_types import is_pdf

logger = logging.getLogger(__name__)


@dataclass
class LocalFile:
    """A file the user picked."""
    name: str
    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)


class LocalPreview:
    """
    Temporary on-disk copy of the selected file for local display.

    Owned by one engine session; release() deletes it and is idempotent.
    """

    def __init__(self, path: Path):
        self.path = path
        self.released = False

    @classmethod
    def create(cls, file: LocalFile) -> "LocalPreview":
        suffix = Path(file.name).suffix
        fd, name = tempfile.mkstemp(prefix="exam_preview_", suffix=suffix)
        with os.fdopen(fd, "wb") as f:
            f.write(file.data)
        return cls(Path(name))

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def downsize_image(
    data: bytes,
    max_dimension: int = 1920,
    quality: int = 80,
) -> Optional[bytes]:
    """
    Re-encode an image as JPEG with its longest side at most max_dimension.

    Returns None when the image is already small enough that re-encoding
    would not shrink it.
    """
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        resized = max(img.size) > max_dimension
        if resized:
            ratio = max_dimension / max(img.size)
            img = img.resize(
                (max(1, int(img.size[0] * ratio)), max(1, int(img.size[1] * ratio))),
                Image.Resampling.LANCZOS,
            )
        if img.mode != "RGB":
            img = img.convert("RGB")

        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=quality, optimize=True)

    encoded = buffer.getvalue()
    if not resized and len(encoded) >= len(data):
        return None
    return encoded


def prepare_for_upload(
    file: LocalFile,
    max_dimension: int = 1920,
    quality: int = 80,
) -> Tuple[str, bytes, str]:
    """
    (filename, bytes, mime type) to upload.

    Photos are downsized when that shrinks them; PDFs and anything Pillow
    cannot handle go up unchanged.
    """
    if is_pdf(file.mime_type, file.data) or not file.mime_type.lower().startswith("image/"):
        return file.name, file.data, file.mime_type

    try:
        encoded = downsize_image(file.data, max_dimension=max_dimension, quality=quality)
    except Exception as e:
        logger.warning(f"Image downsizing failed for {file.name}, uploading original: {e}")
        return file.name, file.data, file.mime_type

    if encoded is None:
        return file.name, file.data, file.mime_type

    name = f"{Path(file.name).stem}.jpg"
    logger.info(f"Downsized {file.name}: {file.size} -> {len(encoded)} bytes")
    return name, encoded, "image/jpeg"
