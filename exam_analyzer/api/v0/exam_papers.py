"""
Exam paper API endpoints.

- Upload an exam paper (image or PDF)
- Count questions, OCR, analyze
- Fetch / list records
- Serve stored uploads
- Wrong-question notebook (flat and classified)
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from ...schemas.exam import (
    RETRYABLE_HEADER,
    AnalyzeResponse,
    CountQuestionsResponse,
    ExamRecordResponse,
    OcrResponse,
    RecordListResponse,
    RecordResponse,
    RecordSummary,
    UploadResponse,
    WrongQuestion,
    WrongQuestionClassification,
)
from ...services import exam_service
from ...services.analysis_provider import ExternalAnalysisProvider, get_analysis_provider
from ...services.errors import (
    MSG_ANALYSIS_FAILED,
    MSG_OCR_FAILED,
    FileValidationError,
    InvalidStatusTransitionError,
    ProviderError,
    RecordNotFoundError,
)
from ...services.mistake_notebook import classify_wrong_questions
from ...services.record_store import ExamRecord, RecordStore
from ...utils.rate_limiter import check_ai_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v0", tags=["exam_papers"])

MSG_RECORD_NOT_FOUND = "试卷不存在"
MSG_ALREADY_COMPLETED = "该试卷已完成分析"
MSG_UPLOAD_FAILED = "文件上传失败"
MSG_GET_RECORD_FAILED = "获取试卷失败"
MSG_GET_WRONG_FAILED = "获取错题失败"
MSG_COUNT_FAILED = "题目计数失败"


# =============================================================================
# Dependencies
# =============================================================================

def get_record_store(request: Request) -> RecordStore:
    return request.app.state.record_store


def get_provider(request: Request) -> ExternalAnalysisProvider:
    """The app's injected provider, else the configured singleton."""
    provider = getattr(request.app.state, "analysis_provider", None)
    if provider is None:
        provider = get_analysis_provider()
        request.app.state.analysis_provider = provider
    return provider


def _provider_http_error(e: ProviderError, fallback_message: str) -> HTTPException:
    headers = None if e.retryable else {RETRYABLE_HEADER: "false"}
    if type(e) is ProviderError:
        return HTTPException(status_code=500, detail=fallback_message, headers=headers)
    return HTTPException(status_code=e.status_code, detail=e.user_message, headers=headers)


def _to_response(record: ExamRecord) -> ExamRecordResponse:
    return ExamRecordResponse(
        id=record.id,
        filename=record.filename,
        image_url=record.image_url,
        mime_type=record.mime_type,
        original_text=record.original_text,
        analysis_result=exam_service.parse_stored_result(record),
        score=record.score,
        status=record.status,
        uploaded_at=record.uploaded_at,
        user_id=record.user_id,
    )


def _to_summary(record: ExamRecord) -> RecordSummary:
    result = exam_service.parse_stored_result(record)
    return RecordSummary(
        id=record.id,
        filename=record.filename,
        status=record.status,
        score=record.score,
        grade=result.grade if result else None,
        image_url=record.image_url,
        uploaded_at=record.uploaded_at,
    )


# =============================================================================
# Upload
# =============================================================================

@router.post(
    "/upload",
    response_model=UploadResponse,
    summary="Upload an exam paper",
    description="Store an exam-paper image or PDF (multipart field `examPaper`) and create its record.",
)
async def upload_exam_paper(
    exam_paper: Optional[UploadFile] = File(None, alias="examPaper"),
    x_user_id: Optional[str] = Header(None),
    store: RecordStore = Depends(get_record_store),
):
    try:
        if exam_paper is None or not exam_paper.filename:
            raise HTTPException(status_code=400, detail=exam_service.MSG_NO_FILE)

        data = await exam_paper.read()
        record = await exam_service.save_upload(
            store,
            data,
            exam_paper.filename,
            exam_paper.content_type,
            user_id=x_user_id,
        )

        return UploadResponse(
            record_id=record.id,
            image_url=record.image_url,
            message="试卷上传成功",
        )

    except FileValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Upload failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=MSG_UPLOAD_FAILED)


@router.get("/uploads/{name}", summary="Download a stored exam paper")
async def get_upload(name: str):
    path = exam_service.resolve_upload_path(name)
    if path is None:
        raise HTTPException(status_code=404, detail=exam_service.MSG_FILE_MISSING)
    return FileResponse(path)


# =============================================================================
# AI endpoints
# =============================================================================

@router.post(
    "/records/{record_id}/count-questions",
    response_model=CountQuestionsResponse,
    responses={422: {"description": "Question count could not be determined"}},
    dependencies=[Depends(check_ai_rate_limit)],
)
async def count_record_questions(
    record_id: str,
    store: RecordStore = Depends(get_record_store),
    provider: ExternalAnalysisProvider = Depends(get_provider),
):
    try:
        result = await exam_service.count_record_questions(store, provider, record_id)

        if result.count is None:
            return JSONResponse(status_code=422, content={"success": False, "warning": result.warning})

        return CountQuestionsResponse(
            success=True,
            question_count=result.count,
            method=result.method,
            confidence=result.confidence,
            warning=result.warning,
        )

    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=MSG_RECORD_NOT_FOUND)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail=exam_service.MSG_FILE_MISSING)
    except ProviderError as e:
        logger.error(f"Question count for {record_id} failed via {e.provider}: {e}")
        raise _provider_http_error(e, MSG_COUNT_FAILED)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Question count for {record_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=MSG_COUNT_FAILED)


@router.post(
    "/records/{record_id}/ocr",
    response_model=OcrResponse,
    dependencies=[Depends(check_ai_rate_limit)],
)
async def ocr_record(
    record_id: str,
    store: RecordStore = Depends(get_record_store),
    provider: ExternalAnalysisProvider = Depends(get_provider),
):
    try:
        text = await exam_service.extract_record_text(store, provider, record_id)
        return OcrResponse(message="OCR识别完成", extracted_text=text)

    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=MSG_RECORD_NOT_FOUND)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail=exam_service.MSG_FILE_MISSING)
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ProviderError as e:
        logger.error(f"OCR for {record_id} failed via {e.provider}: {e}")
        raise _provider_http_error(e, MSG_OCR_FAILED)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"OCR for {record_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=MSG_OCR_FAILED)


@router.post(
    "/records/{record_id}/analyze",
    response_model=AnalyzeResponse,
    dependencies=[Depends(check_ai_rate_limit)],
)
async def analyze_record(
    record_id: str,
    store: RecordStore = Depends(get_record_store),
    provider: ExternalAnalysisProvider = Depends(get_provider),
):
    """
    OCR and grade an uploaded exam paper, persisting the result.

    Provider failures map to 401 / 429 / 503 with stable messages; malformed
    provider output maps to 502.
    """
    try:
        result = await exam_service.analyze_record(store, provider, record_id)
        return AnalyzeResponse(message="试卷分析完成", result=result)

    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=MSG_RECORD_NOT_FOUND)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail=exam_service.MSG_FILE_MISSING)
    except InvalidStatusTransitionError:
        raise HTTPException(status_code=409, detail=MSG_ALREADY_COMPLETED)
    except ProviderError as e:
        logger.error(f"Analysis of {record_id} failed via {e.provider}: {e}")
        raise _provider_http_error(e, MSG_ANALYSIS_FAILED)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Analysis of {record_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=MSG_ANALYSIS_FAILED)


# =============================================================================
# Records
# =============================================================================

@router.get("/records", response_model=RecordListResponse)
async def list_records(store: RecordStore = Depends(get_record_store)):
    try:
        records = await exam_service.list_records(store)
        return RecordListResponse(records=[_to_summary(r) for r in records])
    except Exception as e:
        logger.error(f"Listing records failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=MSG_GET_RECORD_FAILED)


@router.get("/records/{record_id}", response_model=RecordResponse)
async def get_record(record_id: str, store: RecordStore = Depends(get_record_store)):
    try:
        record = await exam_service.get_record(store, record_id)
        return RecordResponse(record=_to_response(record))
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail=MSG_RECORD_NOT_FOUND)
    except Exception as e:
        logger.error(f"Fetching record {record_id} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=MSG_GET_RECORD_FAILED)


# =============================================================================
# Wrong questions
# =============================================================================

@router.get("/wrong-questions", response_model=List[WrongQuestion])
async def get_wrong_questions(
    user_id: Optional[str] = Query(None, alias="userId"),
    store: RecordStore = Depends(get_record_store),
):
    try:
        return await store.get_wrong_questions(user_id=user_id)
    except Exception as e:
        logger.error(f"Fetching wrong questions failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=MSG_GET_WRONG_FAILED)


@router.get("/wrong-questions/classified", response_model=WrongQuestionClassification)
async def get_classified_wrong_questions(
    user_id: Optional[str] = Query(None, alias="userId"),
    store: RecordStore = Depends(get_record_store),
):
    try:
        wrong = await store.get_wrong_questions(user_id=user_id)
        return classify_wrong_questions(wrong)
    except Exception as e:
        logger.error(f"Classifying wrong questions failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=MSG_GET_WRONG_FAILED)
