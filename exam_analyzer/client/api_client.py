"""
HTTP client for the exam analyzer API.

Every call goes through the RetryPolicy; responses are validated into the
same pydantic models the server emits.
"""
import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from ..schemas.exam import (
    AnalysisResult,
    AnalyzeResponse,
    CountQuestionsResponse,
    RecordListResponse,
    RecordResponse,
    RecordSummary,
    ExamRecordResponse,
    UploadResponse,
    WrongQuestion,
    WrongQuestionClassification,
)
from .resilient import MSG_MALFORMED_RESPONSE, ApiError, RetryCallback, RetryPolicy

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v0"
UPLOAD_FIELD = "examPaper"


class ExamApiClient:
    """
    Thin async wrapper over the REST endpoints.

    Args:
        base_url: Server root, e.g. http://localhost:8080
        retry_policy: Backoff policy applied to every request
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (ASGITransport / MockTransport in tests)
        user_id: Sent as X-User-Id when set
    """

    def __init__(
        self,
        base_url: str,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 180.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        user_id: Optional[str] = None,
    ):
        headers = {"X-User-Id": user_id} if user_id else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers=headers,
        )
        self.retry_policy = retry_policy or RetryPolicy()

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        on_retry: Optional[RetryCallback] = None,
        **kwargs,
    ) -> httpx.Response:
        url = f"{API_PREFIX}{path}"
        return await self.retry_policy.run(
            lambda: self._client.request(method, url, **kwargs),
            on_retry=on_retry,
            description=f"{method} {url}",
        )

    @staticmethod
    def _parse(response: httpx.Response, model: type) -> BaseModel:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"Malformed {model.__name__} from {response.request.url}: {e}")
            raise ApiError(MSG_MALFORMED_RESPONSE, status_code=response.status_code)

    async def upload(
        self,
        filename: str,
        data: bytes,
        mime_type: str,
        on_retry: Optional[RetryCallback] = None,
    ) -> UploadResponse:
        response = await self._request(
            "POST",
            "/upload",
            on_retry=on_retry,
            files={UPLOAD_FIELD: (filename, data, mime_type)},
        )
        return self._parse(response, UploadResponse)

    async def count_questions(
        self,
        record_id: str,
        on_retry: Optional[RetryCallback] = None,
    ) -> CountQuestionsResponse:
        """Raises ApiError with status 422 when the count is unobtainable."""
        response = await self._request("POST", f"/records/{record_id}/count-questions", on_retry=on_retry)
        return self._parse(response, CountQuestionsResponse)

    async def analyze(
        self,
        record_id: str,
        on_retry: Optional[RetryCallback] = None,
    ) -> AnalysisResult:
        response = await self._request("POST", f"/records/{record_id}/analyze", on_retry=on_retry)
        return self._parse(response, AnalyzeResponse).result

    async def get_record(self, record_id: str) -> ExamRecordResponse:
        response = await self._request("GET", f"/records/{record_id}")
        return self._parse(response, RecordResponse).record

    async def list_records(self) -> List[RecordSummary]:
        response = await self._request("GET", "/records")
        return self._parse(response, RecordListResponse).records

    async def get_wrong_questions(self, user_id: Optional[str] = None) -> List[WrongQuestion]:
        params = {"userId": user_id} if user_id else None
        response = await self._request("GET", "/wrong-questions", params=params)
        try:
            return [WrongQuestion.model_validate(item) for item in response.json()]
        except (ValueError, TypeError, ValidationError) as e:
            logger.error(f"Malformed wrong-question list: {e}")
            raise ApiError(MSG_MALFORMED_RESPONSE, status_code=response.status_code)

    async def get_classified_wrong_questions(self, user_id: Optional[str] = None) -> WrongQuestionClassification:
        params = {"userId": user_id} if user_id else None
        response = await self._request("GET", "/wrong-questions/classified", params=params)
        return self._parse(response, WrongQuestionClassification)
