"""
Accepted upload types, shared by the API and the client.
"""
from typing import Optional

PDF_MIME_TYPES = {"application/pdf", "application/x-pdf", "application/acrobat"}


def is_pdf(mime_type: Optional[str], data: bytes = b"") -> bool:
    """PDF by declared MIME type or by magic bytes."""
    return (mime_type or "").lower() in PDF_MIME_TYPES or data[:5] == b"%PDF-"


def is_accepted_file(mime_type: Optional[str], filename: Optional[str]) -> bool:
    """True iff the MIME type is an image or PDF type, or the name ends in .pdf."""
    mime = (mime_type or "").lower()
    if mime.startswith("image/") or mime in PDF_MIME_TYPES:
        return True
    return (filename or "").lower().endswith(".pdf")
