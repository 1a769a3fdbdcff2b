"""
Pydantic schemas for exam-paper API request/response validation.

Wire format is camelCase (overallScore, questionAnalysis, recordId...) while
Python attributes stay snake_case. Every model accepts either form on input.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


VALID_GRADES = ("A+", "A", "A-", "B+", "B", "B-", "C+", "C", "C-", "D+", "D", "D-", "F")
Grade = Literal["A+", "A", "A-", "B+", "B", "B-", "C+", "C", "C-", "D+", "D", "D-", "F"]

MAX_SCORE = 100

# Response header set to "false" on server errors the client must not retry
RETRYABLE_HEADER = "X-Retryable"


class CamelModel(BaseModel):
    """Base model serializing to camelCase JSON."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecordStatus(str, Enum):
    """Server-side lifecycle of an exam record."""
    uploaded = "uploaded"
    analyzing = "analyzing"
    ocr_completed = "ocr_completed"
    completed = "completed"
    error = "error"


# =============================================================================
# Analysis Result Schemas
# =============================================================================

class QuestionResult(CamelModel):
    """Grading of a single question."""
    question_number: int = Field(..., ge=1, description="1-based question number in source order")
    score: float = 0
    max_score: float = 0
    feedback: str = ""
    question_text: str = ""
    user_answer: str = ""
    correct_answer: str = ""
    explanation: str = ""
    # Provider-asserted; independent of score (partial credit is a separate signal)
    is_correct: bool


class AnalysisFeedback(CamelModel):
    """Overall feedback block."""
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    detailed_feedback: str = ""


class AnalysisResult(CamelModel):
    """Validated grading result for a whole exam paper."""
    overall_score: int = Field(..., ge=0, le=MAX_SCORE)
    max_score: int = MAX_SCORE
    grade: Grade
    feedback: AnalysisFeedback
    question_analysis: List[QuestionResult] = Field(default_factory=list)

    @property
    def wrong_count(self) -> int:
        return sum(1 for q in self.question_analysis if not q.is_correct)


class QuestionCountResult(CamelModel):
    """Question count plus metadata describing how it was derived."""
    count: Optional[int] = None
    method: Literal["llm", "ocr_regex", "unknown"] = "unknown"
    confidence: Literal["high", "medium", "low"] = "low"
    warning: Optional[str] = None


# =============================================================================
# Endpoint Response Schemas
# =============================================================================

class UploadResponse(CamelModel):
    """Response from the upload endpoint."""
    success: bool = True
    record_id: str
    image_url: Optional[str] = None
    message: str


class CountQuestionsResponse(CamelModel):
    """Response from the count-questions endpoint."""
    success: bool
    question_count: Optional[int] = None
    method: str = "unknown"
    confidence: str = "low"
    warning: Optional[str] = None


class OcrResponse(CamelModel):
    """Response from the OCR-only endpoint."""
    success: bool = True
    message: str
    extracted_text: str


class AnalyzeResponse(CamelModel):
    """Response from the analyze endpoint."""
    success: bool = True
    message: str
    result: AnalysisResult


class ExamRecordResponse(CamelModel):
    """A full exam record with its analysis result parsed."""
    id: str
    filename: str
    image_url: Optional[str] = None
    mime_type: Optional[str] = None
    original_text: Optional[str] = None
    analysis_result: Optional[AnalysisResult] = None
    score: Optional[int] = None
    status: RecordStatus
    uploaded_at: datetime
    user_id: Optional[str] = None


class RecordResponse(CamelModel):
    success: bool = True
    record: ExamRecordResponse


class RecordSummary(CamelModel):
    """Lightweight record listing entry."""
    id: str
    filename: str
    status: RecordStatus
    score: Optional[int] = None
    grade: Optional[str] = None
    image_url: Optional[str] = None
    uploaded_at: datetime


class RecordListResponse(CamelModel):
    success: bool = True
    records: List[RecordSummary] = Field(default_factory=list)


# =============================================================================
# Wrong Question (Mistake Notebook) Schemas
# =============================================================================

class WrongQuestion(CamelModel):
    """A question the provider flagged incorrect, with its exam context."""
    question_number: int
    question_text: str = ""
    user_answer: str = ""
    correct_answer: str = ""
    explanation: str = ""
    feedback: str = ""
    score: float = 0
    max_score: float = 0
    exam_id: str
    exam_date: str
    user_id: Optional[str] = None


class ClassificationSummary(CamelModel):
    total_questions: int = 0
    knowledge_points: List[str] = Field(default_factory=list)
    error_types: List[str] = Field(default_factory=list)
    difficulty_levels: List[str] = Field(default_factory=list)


class WrongQuestionClassification(CamelModel):
    """Three independent partitions of the wrong-question set."""
    by_knowledge_point: Dict[str, List[WrongQuestion]] = Field(default_factory=dict)
    by_error_type: Dict[str, List[WrongQuestion]] = Field(default_factory=dict)
    by_difficulty: Dict[str, List[WrongQuestion]] = Field(default_factory=dict)
    summary: ClassificationSummary = Field(default_factory=ClassificationSummary)


class ErrorResponse(BaseModel):
    """Error body as produced by HTTPException."""
    detail: str
