"""
Exam paper pipeline service.

Upload validation and storage, record status transitions, and the
count / OCR / analyze stages run against a RecordStore and an
ExternalAnalysisProvider. The API layer is a thin shell over these functions.
"""
import json
import logging
import mimetypes
import os
import uuid
from pathlib import Path
from typing import List, Optional

import aiofiles

from ..config import settings
from ..schemas.exam import AnalysisResult, QuestionCountResult, RecordStatus
from .analysis_provider import ExternalAnalysisProvider
from .errors import FileValidationError, InvalidStatusTransitionError, RecordNotFoundError
from ..utils.file_types import is_accepted_file, is_pdf
from .question_counter import count_questions
from .record_store import ExamRecord, RecordStore

logger = logging.getLogger(__name__)

UPLOADS_URL_PREFIX = "/api/v0/uploads"

MSG_NO_FILE = "请上传试卷图片"
MSG_EMPTY_FILE = "上传的文件为空"
MSG_INVALID_TYPE = "只支持图片或PDF格式的试卷"
MSG_FILE_MISSING = "上传的文件未找到"

# Forward order of the pipeline; error sits outside it
_STATUS_RANK = {
    RecordStatus.uploaded: 0,
    RecordStatus.analyzing: 1,
    RecordStatus.ocr_completed: 2,
    RecordStatus.completed: 3,
}


# =============================================================================
# Upload validation and storage
# =============================================================================

def validate_upload(data: bytes, mime_type: Optional[str], filename: Optional[str]) -> None:
    """
    Reject an upload before it is stored.

    Raises:
        FileValidationError: 400 for missing/empty/unsupported files,
            413 when over the configured size limit
    """
    if not filename:
        raise FileValidationError(MSG_NO_FILE)
    if not is_accepted_file(mime_type, filename):
        raise FileValidationError(MSG_INVALID_TYPE)
    if not data:
        raise FileValidationError(MSG_EMPTY_FILE)
    if len(data) > settings.max_upload_size_bytes:
        size_mb = len(data) / (1024 * 1024)
        raise FileValidationError(
            f"文件过大 ({size_mb:.1f}MB)，最大支持 {settings.max_upload_size_mb}MB",
            status_code=413,
        )


def _stored_name(filename: str, mime_type: Optional[str]) -> str:
    suffix = Path(filename).suffix.lower()
    if not suffix and mime_type:
        suffix = mimetypes.guess_extension(mime_type) or ""
    return f"{uuid.uuid4().hex}{suffix}"


def resolve_upload_path(name: str) -> Optional[Path]:
    """Path of a stored upload by its public name, or None if it does not exist."""
    if not name or Path(name).name != name:
        return None
    path = Path(settings.upload_dir) / name
    return path if path.is_file() else None


async def save_upload(
    store: RecordStore,
    data: bytes,
    filename: str,
    mime_type: Optional[str],
    user_id: Optional[str] = None,
) -> ExamRecord:
    """
    Validate, write the file to the upload directory and create its record.

    Returns:
        The created record, status "uploaded"
    """
    validate_upload(data, mime_type, filename)

    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    name = _stored_name(filename, mime_type)
    path = upload_dir / name

    async with aiofiles.open(path, "wb") as f:
        await f.write(data)
    logger.info(f"Stored upload {filename} as {path} ({len(data)} bytes)")

    record = ExamRecord(
        filename=filename,
        file_path=str(path),
        image_url=f"{UPLOADS_URL_PREFIX}/{name}",
        mime_type=mime_type,
        user_id=user_id,
    )
    return await store.create(record)


async def _read_stored_file(record: ExamRecord) -> bytes:
    if not record.file_path or not os.path.exists(record.file_path):
        raise FileNotFoundError(MSG_FILE_MISSING)
    async with aiofiles.open(record.file_path, "rb") as f:
        return await f.read()


def _discard_stored_file(record: ExamRecord) -> None:
    if not record.file_path:
        return
    try:
        os.remove(record.file_path)
        logger.info(f"Deleted upload of record {record.id}")
    except OSError as e:
        logger.warning(f"Could not delete upload {record.file_path}: {e}")


# =============================================================================
# Records and status transitions
# =============================================================================

async def get_record(store: RecordStore, record_id: str) -> ExamRecord:
    record = await store.get(record_id)
    if record is None:
        raise RecordNotFoundError(record_id)
    return record


async def list_records(store: RecordStore) -> List[ExamRecord]:
    return await store.list()


def can_transition(current: RecordStatus, requested: RecordStatus) -> bool:
    """
    Forward moves only, plus reset to error from anywhere and retry
    (error -> analyzing).
    """
    if requested == RecordStatus.error:
        return True
    if current == RecordStatus.error:
        return requested == RecordStatus.analyzing
    return _STATUS_RANK[requested] > _STATUS_RANK[current]


async def transition_status(store: RecordStore, record: ExamRecord, requested: RecordStatus, **changes) -> ExamRecord:
    """Move a record to a new status, writing any extra field changes with it."""
    if not can_transition(record.status, requested):
        raise InvalidStatusTransitionError(record.id, record.status.value, requested.value)
    updated = await store.update(record.id, status=requested, **changes)
    if updated is None:
        raise RecordNotFoundError(record.id)
    logger.debug(f"Record {record.id}: {record.status.value} -> {requested.value}")
    return updated


async def _mark_error(store: RecordStore, record_id: str) -> None:
    await store.update(record_id, status=RecordStatus.error)


def parse_stored_result(record: ExamRecord) -> Optional[AnalysisResult]:
    """The record's stored AnalysisResult, or None if absent or unreadable."""
    if not record.analysis_result:
        return None
    try:
        return AnalysisResult.model_validate(json.loads(record.analysis_result))
    except ValueError as e:
        logger.error(f"Stored analysis result of record {record.id} is invalid: {e}")
        return None


# =============================================================================
# Pipeline stages
# =============================================================================

async def count_record_questions(
    store: RecordStore,
    provider: ExternalAnalysisProvider,
    record_id: str,
) -> QuestionCountResult:
    """Estimate the number of questions; never changes the record's status."""
    record = await get_record(store, record_id)
    data = await _read_stored_file(record)
    return await count_questions(
        provider,
        data,
        record.mime_type or "",
        ocr_text=record.original_text,
    )


async def extract_record_text(
    store: RecordStore,
    provider: ExternalAnalysisProvider,
    record_id: str,
) -> str:
    """
    Run OCR only and store the transcript (status ocr_completed).

    A record that already has a transcript returns it without a provider call.
    """
    record = await get_record(store, record_id)
    if record.original_text:
        return record.original_text

    if record.status != RecordStatus.error and not can_transition(record.status, RecordStatus.ocr_completed):
        raise InvalidStatusTransitionError(record.id, record.status.value, RecordStatus.ocr_completed.value)

    data = await _read_stored_file(record)
    try:
        if record.status in (RecordStatus.uploaded, RecordStatus.error):
            record = await transition_status(store, record, RecordStatus.analyzing)
        text = await provider.extract_text(data, record.mime_type or "")
        await transition_status(store, record, RecordStatus.ocr_completed, original_text=text)
    except InvalidStatusTransitionError:
        raise
    except Exception:
        await _mark_error(store, record.id)
        raise

    logger.info(f"OCR completed for record {record.id}: {len(text)} chars")
    return text


async def analyze_record(
    store: RecordStore,
    provider: ExternalAnalysisProvider,
    record_id: str,
) -> AnalysisResult:
    """
    Grade an uploaded exam paper and persist the result.

    PDFs go OCR then text analysis (reusing a stored transcript); images go
    through a single vision call. Any failure leaves the record in "error"
    and re-raises.

    Raises:
        RecordNotFoundError: Unknown record id
        InvalidStatusTransitionError: Record already completed
        ProviderError: Provider failure, including malformed output
    """
    record = await get_record(store, record_id)
    if record.status == RecordStatus.completed:
        raise InvalidStatusTransitionError(record.id, record.status.value, RecordStatus.analyzing.value)

    data = await _read_stored_file(record)
    mime_type = record.mime_type or ""

    try:
        if record.status in (RecordStatus.uploaded, RecordStatus.error):
            record = await transition_status(store, record, RecordStatus.analyzing)

        if is_pdf(mime_type, data) or record.filename.lower().endswith(".pdf"):
            text = record.original_text
            if not text:
                text = await provider.extract_text(data, mime_type)
                record = await transition_status(store, record, RecordStatus.ocr_completed, original_text=text)
            result = await provider.analyze_text(text)
        else:
            result = await provider.analyze_image(data, mime_type)

        record = await transition_status(
            store,
            record,
            RecordStatus.completed,
            analysis_result=result.model_dump_json(by_alias=True),
            score=result.overall_score,
        )
    except Exception as e:
        logger.error(f"Analysis of record {record.id} failed: {e}")
        await _mark_error(store, record.id)
        raise

    logger.info(
        f"Record {record.id} graded: score={result.overall_score}, grade={result.grade}, "
        f"questions={len(result.question_analysis)}, wrong={result.wrong_count}"
    )

    if settings.delete_upload_after_analysis:
        _discard_stored_file(record)

    return result
