"""
Tests for upload validation, status transitions and the analysis stages of
the exam service.
"""
import os

import pytest

from conftest import FakeProvider, make_jpeg
from exam_analyzer.config import settings
from exam_analyzer.schemas.exam import RecordStatus
from exam_analyzer.services import exam_service
from exam_analyzer.services.errors import (
    FileValidationError,
    InvalidStatusTransitionError,
    ProviderRateLimitError,
    RecordNotFoundError,
)
from exam_analyzer.services.record_store import InMemoryRecordStore
from exam_analyzer.utils.file_types import is_accepted_file


class TestAcceptPredicate:

    @pytest.mark.parametrize("mime_type, filename, expected", [
        ("image/jpeg", "exam.jpg", True),
        ("image/png", "exam.png", True),
        ("image/heic", "IMG_0001.HEIC", True),
        ("application/pdf", "exam.pdf", True),
        ("application/x-pdf", "exam", True),
        ("application/acrobat", "exam.bin", True),
        ("application/octet-stream", "Exam.PDF", True),
        ("", "scan.pdf", True),
        (None, "scan.pdf", True),
        ("text/plain", "exam.txt", False),
        ("application/octet-stream", "exam.jpg", False),
        ("application/zip", "exam.pdf.zip", False),
        (None, None, False),
    ])
    def test_mime_or_pdf_extension(self, mime_type, filename, expected):
        assert is_accepted_file(mime_type, filename) is expected


class TestValidateUpload:

    def test_size_limit(self, monkeypatch):
        monkeypatch.setattr(settings, "max_upload_size_mb", 1)

        exam_service.validate_upload(b"x" * (1024 * 1024), "image/jpeg", "ok.jpg")
        with pytest.raises(FileValidationError) as exc_info:
            exam_service.validate_upload(b"x" * (1024 * 1024 + 1), "image/jpeg", "big.jpg")

        assert exc_info.value.status_code == 413

    @pytest.mark.parametrize("data, mime_type, filename", [
        (b"data", "image/jpeg", None),
        (b"data", "text/plain", "a.txt"),
        (b"", "image/jpeg", "a.jpg"),
    ])
    def test_rejected_with_400(self, data, mime_type, filename):
        with pytest.raises(FileValidationError) as exc_info:
            exam_service.validate_upload(data, mime_type, filename)
        assert exc_info.value.status_code == 400


class TestStatusTransitions:

    @pytest.mark.parametrize("current, requested, allowed", [
        (RecordStatus.uploaded, RecordStatus.analyzing, True),
        (RecordStatus.analyzing, RecordStatus.ocr_completed, True),
        (RecordStatus.ocr_completed, RecordStatus.completed, True),
        (RecordStatus.uploaded, RecordStatus.completed, True),
        (RecordStatus.completed, RecordStatus.analyzing, False),
        (RecordStatus.ocr_completed, RecordStatus.analyzing, False),
        (RecordStatus.analyzing, RecordStatus.uploaded, False),
        (RecordStatus.uploaded, RecordStatus.uploaded, False),
        (RecordStatus.completed, RecordStatus.error, True),
        (RecordStatus.analyzing, RecordStatus.error, True),
        (RecordStatus.error, RecordStatus.analyzing, True),
        (RecordStatus.error, RecordStatus.completed, False),
    ])
    def test_can_transition(self, current, requested, allowed):
        assert exam_service.can_transition(current, requested) is allowed

    async def test_invalid_transition_raises(self, upload_dir):
        store = InMemoryRecordStore()
        record = await exam_service.save_upload(store, make_jpeg(), "exam.jpg", "image/jpeg")
        record = await store.update(record.id, status=RecordStatus.completed)

        with pytest.raises(InvalidStatusTransitionError):
            await exam_service.transition_status(store, record, RecordStatus.analyzing)


class TestAnalyzeRecord:

    async def test_result_and_score_written_only_on_completion(self, upload_dir):
        store = InMemoryRecordStore()
        provider = FakeProvider(error=ProviderRateLimitError("slow"))
        record = await exam_service.save_upload(store, make_jpeg(), "exam.jpg", "image/jpeg")

        with pytest.raises(ProviderRateLimitError):
            await exam_service.analyze_record(store, provider, record.id)

        failed = await store.get(record.id)
        assert failed.status == RecordStatus.error
        assert failed.analysis_result is None
        assert failed.score is None

        provider.error = None
        result = await exam_service.analyze_record(store, provider, record.id)

        done = await store.get(record.id)
        assert done.status == RecordStatus.completed
        assert done.score == result.overall_score

    async def test_upload_kept_by_default(self, upload_dir):
        store = InMemoryRecordStore()
        record = await exam_service.save_upload(store, make_jpeg(), "exam.jpg", "image/jpeg")

        await exam_service.analyze_record(store, FakeProvider(), record.id)

        assert os.path.exists(record.file_path)

    async def test_upload_deleted_when_configured(self, upload_dir, monkeypatch):
        monkeypatch.setattr(settings, "delete_upload_after_analysis", True)
        store = InMemoryRecordStore()
        record = await exam_service.save_upload(store, make_jpeg(), "exam.jpg", "image/jpeg")

        await exam_service.analyze_record(store, FakeProvider(), record.id)

        assert not os.path.exists(record.file_path)
        assert (await store.get(record.id)).status == RecordStatus.completed

    async def test_missing_file(self, upload_dir):
        store = InMemoryRecordStore()
        record = await exam_service.save_upload(store, make_jpeg(), "exam.jpg", "image/jpeg")
        os.remove(record.file_path)

        with pytest.raises(FileNotFoundError):
            await exam_service.analyze_record(store, FakeProvider(), record.id)

    async def test_unknown_record(self):
        with pytest.raises(RecordNotFoundError):
            await exam_service.analyze_record(InMemoryRecordStore(), FakeProvider(), "missing")

    async def test_pdf_reuses_stored_transcript(self, upload_dir):
        store = InMemoryRecordStore()
        provider = FakeProvider()
        record = await exam_service.save_upload(store, b"%PDF-1.4 test", "exam.pdf", "application/pdf")

        await exam_service.extract_record_text(store, provider, record.id)
        await exam_service.analyze_record(store, provider, record.id)

        assert provider.calls["extract_text"] == 1
        assert provider.calls["analyze_text"] == 1
        assert (await store.get(record.id)).status == RecordStatus.completed


class TestResolveUploadPath:

    async def test_rejects_path_traversal(self, upload_dir):
        store = InMemoryRecordStore()
        await exam_service.save_upload(store, make_jpeg(), "exam.jpg", "image/jpeg")

        assert exam_service.resolve_upload_path("../secret.txt") is None
        assert exam_service.resolve_upload_path("") is None
