"""
API tests for the exam paper endpoints, run in-process through ASGITransport
with a fake analysis provider.
"""
import pytest

from exam_analyzer.config import settings
from exam_analyzer.schemas.exam import RETRYABLE_HEADER, RecordStatus
from exam_analyzer.services.errors import (
    MSG_ANALYSIS_FAILED,
    MSG_PROVIDER_MALFORMED,
    MSG_PROVIDER_OVERLOADED,
    MSG_PROVIDER_RATE_LIMITED,
    MSG_PROVIDER_UNAUTHORIZED,
    MalformedProviderResponseError,
    ProviderOverloadedError,
    ProviderRateLimitError,
    ProviderUnauthorizedError,
)
from exam_analyzer.utils.rate_limiter import InMemoryRateLimiter


class TestHealth:

    async def test_root_and_health(self, client):
        root = await client.get("/")
        assert root.status_code == 200
        assert root.json()["status"] == "running"

        health = await client.get("/health")
        assert health.json() == {"status": "healthy"}


class TestUpload:
    """POST /api/v0/upload"""

    async def test_upload_image_creates_record(self, client, store, jpeg_bytes):
        response = await client.post(
            "/api/v0/upload",
            files={"examPaper": ("exam.jpg", jpeg_bytes, "image/jpeg")},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["imageUrl"].startswith("/api/v0/uploads/")

        record = await store.get(body["recordId"])
        assert record.status == RecordStatus.uploaded
        assert record.filename == "exam.jpg"
        assert record.analysis_result is None
        assert record.score is None

    async def test_uploaded_file_is_served(self, client, jpeg_bytes):
        response = await client.post(
            "/api/v0/upload",
            files={"examPaper": ("exam.jpg", jpeg_bytes, "image/jpeg")},
        )
        served = await client.get(response.json()["imageUrl"])

        assert served.status_code == 200
        assert served.content == jpeg_bytes

    async def test_unknown_upload_name_is_404(self, client):
        response = await client.get("/api/v0/uploads/does-not-exist.jpg")
        assert response.status_code == 404

    async def test_missing_file_is_400(self, client):
        response = await client.post(
            "/api/v0/upload",
            files={"somethingElse": ("exam.jpg", b"data", "image/jpeg")},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "请上传试卷图片"

    async def test_unsupported_type_is_400(self, client):
        response = await client.post(
            "/api/v0/upload",
            files={"examPaper": ("notes.txt", b"hello", "text/plain")},
        )
        assert response.status_code == 400

    async def test_empty_file_is_400(self, client):
        response = await client.post(
            "/api/v0/upload",
            files={"examPaper": ("exam.jpg", b"", "image/jpeg")},
        )
        assert response.status_code == 400

    async def test_pdf_accepted_by_extension(self, client):
        response = await client.post(
            "/api/v0/upload",
            files={"examPaper": ("exam.pdf", b"%PDF-1.4 test", "application/octet-stream")},
        )
        assert response.status_code == 200

    async def test_oversized_file_is_413(self, client, monkeypatch):
        monkeypatch.setattr(settings, "max_upload_size_mb", 1)
        data = b"\xff" * (1024 * 1024 + 1)

        response = await client.post(
            "/api/v0/upload",
            files={"examPaper": ("big.jpg", data, "image/jpeg")},
        )
        assert response.status_code == 413


class TestCountQuestions:
    """POST /api/v0/records/{id}/count-questions"""

    async def test_count_from_model(self, client, uploaded_record_id):
        response = await client.post(f"/api/v0/records/{uploaded_record_id}/count-questions")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["questionCount"] == 5
        assert body["method"] == "llm"
        assert body["confidence"] == "high"

    async def test_count_falls_back_to_ocr(self, client, fake_provider, uploaded_record_id):
        fake_provider.count_reply = "无法判断"
        fake_provider.ocr_text = "一、选择题\n二、填空题\n三、解答题"

        response = await client.post(f"/api/v0/records/{uploaded_record_id}/count-questions")

        body = response.json()
        assert response.status_code == 200
        assert body["questionCount"] == 3
        assert body["method"] == "ocr_regex"
        assert body["warning"]

    async def test_unobtainable_count_is_422(self, client, fake_provider, uploaded_record_id):
        fake_provider.count_reply = "不知道"
        fake_provider.ocr_text = ""

        response = await client.post(f"/api/v0/records/{uploaded_record_id}/count-questions")

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["warning"]

    @pytest.mark.parametrize("error, status, message", [
        (ProviderUnauthorizedError("bad key"), 401, MSG_PROVIDER_UNAUTHORIZED),
        (ProviderRateLimitError("slow down"), 429, MSG_PROVIDER_RATE_LIMITED),
        (ProviderOverloadedError("overloaded"), 503, MSG_PROVIDER_OVERLOADED),
    ])
    async def test_auth_and_capacity_failures_are_not_hidden(
        self, client, store, fake_provider, uploaded_record_id, error, status, message
    ):
        async def failing(data, mime_type):
            raise error

        fake_provider.count_questions = failing
        fake_provider.extract_text = failing

        response = await client.post(f"/api/v0/records/{uploaded_record_id}/count-questions")

        assert response.status_code == status
        assert response.json()["detail"] == message
        assert (await store.get(uploaded_record_id)).status == RecordStatus.uploaded

    async def test_count_does_not_change_status(self, client, store, uploaded_record_id):
        await client.post(f"/api/v0/records/{uploaded_record_id}/count-questions")
        record = await store.get(uploaded_record_id)
        assert record.status == RecordStatus.uploaded

    async def test_unknown_record_is_404(self, client):
        response = await client.post("/api/v0/records/missing/count-questions")
        assert response.status_code == 404


class TestAnalyze:
    """POST /api/v0/records/{id}/analyze"""

    async def test_analyze_image_persists_result(self, client, store, fake_provider, uploaded_record_id):
        response = await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["overallScore"] == 78
        assert result["grade"] == "B+"
        assert len(result["questionAnalysis"]) == 5
        assert fake_provider.calls["analyze_image"] == 1
        assert fake_provider.calls["analyze_text"] == 0

        record = await store.get(uploaded_record_id)
        assert record.status == RecordStatus.completed
        assert record.score == 78
        assert record.analysis_result is not None

    async def test_analyze_pdf_goes_through_ocr(self, client, store, fake_provider):
        upload = await client.post(
            "/api/v0/upload",
            files={"examPaper": ("exam.pdf", b"%PDF-1.4 test", "application/pdf")},
        )
        record_id = upload.json()["recordId"]

        response = await client.post(f"/api/v0/records/{record_id}/analyze")

        assert response.status_code == 200
        assert fake_provider.calls["extract_text"] == 1
        assert fake_provider.calls["analyze_text"] == 1
        assert fake_provider.calls["analyze_image"] == 0
        record = await store.get(record_id)
        assert record.original_text == fake_provider.ocr_text

    async def test_completed_record_cannot_be_reanalyzed(self, client, uploaded_record_id):
        await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")
        again = await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")
        assert again.status_code == 409

    @pytest.mark.parametrize("error, status, message", [
        (ProviderUnauthorizedError("bad key"), 401, MSG_PROVIDER_UNAUTHORIZED),
        (ProviderRateLimitError("slow down"), 429, MSG_PROVIDER_RATE_LIMITED),
        (ProviderOverloadedError("overloaded"), 503, MSG_PROVIDER_OVERLOADED),
        (MalformedProviderResponseError("not json"), 502, MSG_PROVIDER_MALFORMED),
        (RuntimeError("boom"), 500, MSG_ANALYSIS_FAILED),
    ])
    async def test_provider_failures_map_to_stable_messages(
        self, client, store, fake_provider, uploaded_record_id, error, status, message
    ):
        fake_provider.error = error

        response = await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")

        assert response.status_code == status
        assert response.json()["detail"] == message
        record = await store.get(uploaded_record_id)
        assert record.status == RecordStatus.error
        assert record.analysis_result is None

    async def test_malformed_output_is_marked_final(self, client, fake_provider, uploaded_record_id):
        fake_provider.error = MalformedProviderResponseError("not json")
        response = await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")

        assert response.status_code == 502
        assert response.headers[RETRYABLE_HEADER] == "false"

    async def test_overload_stays_retryable(self, client, fake_provider, uploaded_record_id):
        fake_provider.error = ProviderOverloadedError("overloaded")
        response = await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")

        assert response.status_code == 503
        assert RETRYABLE_HEADER not in response.headers

    async def test_error_record_can_be_retried(self, client, store, fake_provider, uploaded_record_id):
        fake_provider.error = ProviderOverloadedError("overloaded")
        await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")

        fake_provider.error = None
        response = await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")

        assert response.status_code == 200
        assert (await store.get(uploaded_record_id)).status == RecordStatus.completed

    async def test_unknown_record_is_404(self, client):
        response = await client.post("/api/v0/records/missing/analyze")
        assert response.status_code == 404

    async def test_rate_limited(self, app, client, uploaded_record_id):
        app.state.ai_rate_limiter = InMemoryRateLimiter(max_requests=1, window_seconds=60)

        first = await client.post(f"/api/v0/records/{uploaded_record_id}/count-questions")
        second = await client.post(f"/api/v0/records/{uploaded_record_id}/count-questions")

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.headers["Retry-After"] == "60"


class TestOcr:
    """POST /api/v0/records/{id}/ocr"""

    async def test_ocr_stores_text(self, client, store, fake_provider, uploaded_record_id):
        response = await client.post(f"/api/v0/records/{uploaded_record_id}/ocr")

        assert response.status_code == 200
        assert response.json()["extractedText"] == fake_provider.ocr_text
        record = await store.get(uploaded_record_id)
        assert record.status == RecordStatus.ocr_completed
        assert record.original_text == fake_provider.ocr_text

    async def test_second_ocr_reuses_text(self, client, fake_provider, uploaded_record_id):
        await client.post(f"/api/v0/records/{uploaded_record_id}/ocr")
        await client.post(f"/api/v0/records/{uploaded_record_id}/ocr")
        assert fake_provider.calls["extract_text"] == 1


class TestRecords:
    """GET /api/v0/records and /api/v0/records/{id}"""

    async def test_get_record_parses_analysis(self, client, uploaded_record_id):
        await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")

        response = await client.get(f"/api/v0/records/{uploaded_record_id}")

        assert response.status_code == 200
        record = response.json()["record"]
        assert record["status"] == "completed"
        assert record["score"] == 78
        assert record["analysisResult"]["grade"] == "B+"

    async def test_get_unknown_record_is_404(self, client):
        response = await client.get("/api/v0/records/missing")
        assert response.status_code == 404
        assert response.json()["detail"] == "试卷不存在"

    async def test_list_records(self, client, uploaded_record_id):
        await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")

        response = await client.get("/api/v0/records")

        records = response.json()["records"]
        assert len(records) == 1
        assert records[0]["id"] == uploaded_record_id
        assert records[0]["grade"] == "B+"


class TestWrongQuestions:
    """GET /api/v0/wrong-questions[/classified]"""

    async def test_wrong_questions_carry_record_id(self, client, uploaded_record_id):
        await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")

        response = await client.get("/api/v0/wrong-questions")

        wrong = response.json()
        assert [q["questionNumber"] for q in wrong] == [2, 4]
        assert all(q["examId"] == uploaded_record_id for q in wrong)

    async def test_wrong_questions_scoped_by_user(self, client, jpeg_bytes):
        for user in ("alice", "bob"):
            upload = await client.post(
                "/api/v0/upload",
                files={"examPaper": ("exam.jpg", jpeg_bytes, "image/jpeg")},
                headers={"X-User-Id": user},
            )
            await client.post(f"/api/v0/records/{upload.json()['recordId']}/analyze")

        everyone = await client.get("/api/v0/wrong-questions")
        alice = await client.get("/api/v0/wrong-questions", params={"userId": "alice"})

        assert len(everyone.json()) == 4
        assert len(alice.json()) == 2
        assert all(q["userId"] == "alice" for q in alice.json())

    async def test_classified(self, client, uploaded_record_id):
        await client.post(f"/api/v0/records/{uploaded_record_id}/analyze")

        response = await client.get("/api/v0/wrong-questions/classified")

        body = response.json()
        assert body["summary"]["totalQuestions"] == 2
        assert sum(len(v) for v in body["byKnowledgePoint"].values()) == 2
        assert sum(len(v) for v in body["byErrorType"].values()) == 2
        assert sum(len(v) for v in body["byDifficulty"].values()) == 2

    async def test_empty_notebook(self, client):
        response = await client.get("/api/v0/wrong-questions")
        assert response.json() == []


async def test_app_without_provider_resolves_lazily(store, upload_dir, jpeg_bytes):
    """Creating the app and uploading needs no provider configuration."""
    import httpx
    from exam_analyzer.main import create_app

    app = create_app(store=store)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        response = await c.post(
            "/api/v0/upload",
            files={"examPaper": ("exam.jpg", jpeg_bytes, "image/jpeg")},
        )
    assert response.status_code == 200
    assert app.state.analysis_provider is None
