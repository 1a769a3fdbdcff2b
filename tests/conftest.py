"""
Test configuration and fixtures for the Exam Analyzer test suite.
"""
import asyncio
import io
import os
from typing import Dict, Iterable, Optional

import httpx
import pytest
from PIL import Image

from exam_analyzer.config import settings
from exam_analyzer.main import create_app
from exam_analyzer.schemas.exam import AnalysisResult
from exam_analyzer.services.analysis_provider import ExternalAnalysisProvider
from exam_analyzer.services.record_store import InMemoryRecordStore
from exam_analyzer.services.result_normalizer import normalize_analysis_result


def make_question(number: int, correct: bool, max_score: float = 20) -> Dict:
    return {
        "questionNumber": number,
        "score": max_score if correct else max_score / 4,
        "maxScore": max_score,
        "feedback": "解答正确" if correct else "计算错误，注意符号",
        "questionText": f"第{number}题：解方程 x + {number} = {number * 2}",
        "userAnswer": f"x = {number}" if correct else f"x = {number + 1}",
        "correctAnswer": f"x = {number}",
        "explanation": "移项后直接求解",
        "isCorrect": correct,
    }


def make_payload(total: int = 5, wrong: Iterable[int] = (2, 4), score: float = 78.4, grade: str = "B+") -> Dict:
    """Raw provider-shaped grading payload."""
    wrong = set(wrong)
    return {
        "overallScore": score,
        "maxScore": 100,
        "grade": grade,
        "feedback": {
            "strengths": ["基础扎实"],
            "improvements": ["计算需要更仔细"],
            "detailedFeedback": "整体表现良好。",
        },
        "questionAnalysis": [make_question(n, n not in wrong) for n in range(1, total + 1)],
    }


def result_json(payload: Optional[Dict] = None) -> Dict:
    """The payload as the API returns it inside AnalyzeResponse.result."""
    return normalize_analysis_result(payload or make_payload()).model_dump(mode="json", by_alias=True)


class FakeProvider(ExternalAnalysisProvider):
    """
    In-process provider. `gate` blocks grading until set; `error` is raised
    from grading calls; `count_reply` is what the model answers to counting.
    """

    def __init__(
        self,
        payload: Optional[Dict] = None,
        count_reply: str = "5",
        ocr_text: str = "1. 计算\n2. 方程\n3. 几何\n4. 概率\n5. 应用",
        error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ):
        self.payload = payload or make_payload()
        self.count_reply = count_reply
        self.ocr_text = ocr_text
        self.error = error
        self.gate = gate
        self.calls: Dict[str, int] = {"extract_text": 0, "analyze_image": 0, "analyze_text": 0, "count_questions": 0}

    @property
    def name(self) -> str:
        return "fake"

    async def extract_text(self, data: bytes, mime_type: str) -> str:
        self.calls["extract_text"] += 1
        return self.ocr_text

    async def _grade(self) -> AnalysisResult:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return normalize_analysis_result(self.payload)

    async def analyze_image(self, data: bytes, mime_type: str) -> AnalysisResult:
        self.calls["analyze_image"] += 1
        return await self._grade()

    async def analyze_text(self, text: str) -> AnalysisResult:
        self.calls["analyze_text"] += 1
        return await self._grade()

    async def count_questions(self, data: bytes, mime_type: str) -> str:
        self.calls["count_questions"] += 1
        return self.count_reply


def make_jpeg(size=(800, 600), noise: bool = False) -> bytes:
    if noise:
        img = Image.frombytes("RGB", size, os.urandom(size[0] * size[1] * 3))
    else:
        img = Image.new("RGB", size, (250, 250, 250))
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    """Point uploads at a temporary directory."""
    path = tmp_path / "uploads"
    monkeypatch.setattr(settings, "upload_dir", str(path))
    return path


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def app(store, fake_provider, upload_dir):
    return create_app(store=store, provider=fake_provider)


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def jpeg_bytes():
    return make_jpeg()


@pytest.fixture
async def uploaded_record_id(client, jpeg_bytes):
    """Id of a freshly uploaded JPEG record."""
    response = await client.post(
        "/api/v0/upload",
        files={"examPaper": ("exam.jpg", jpeg_bytes, "image/jpeg")},
    )
    assert response.status_code == 200
    return response.json()["recordId"]
