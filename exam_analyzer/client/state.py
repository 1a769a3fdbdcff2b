"""
Client workflow state.

ClientWorkflowState is what the presentation layer renders. Only the
persistable subset (see PERSISTED_FIELDS) survives a reload; the local
preview handle is process-local and never serialized.
"""
from enum import Enum
from typing import Any, Optional

from pydantic import ConfigDict, Field

from ..schemas.exam import AnalysisResult, CamelModel


class AppState(str, Enum):
    idle = "idle"
    uploading = "uploading"
    processing = "processing"
    completed = "completed"
    error = "error"


class ProcessingStep(str, Enum):
    upload = "upload"
    ocr = "ocr"
    analysis = "analysis"
    generating = "generating"
    results = "results"


class UploadProgress(CamelModel):
    """Progress shown to the user; question fields only during analysis."""
    step: ProcessingStep = ProcessingStep.upload
    progress: int = Field(0, ge=0, le=100)
    message: str = "准备上传..."
    current_question: Optional[int] = None
    total_questions: Optional[int] = None
    question_progress: Optional[str] = None


class ClientWorkflowState(CamelModel):
    """Everything the engine exposes to listeners."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    app_state: AppState = AppState.idle
    current_step: ProcessingStep = ProcessingStep.upload
    progress: UploadProgress = Field(default_factory=UploadProgress)
    exam_paper_id: Optional[str] = None
    results: Optional[AnalysisResult] = None
    server_image_url: Optional[str] = None
    error_message: Optional[str] = None

    # Ephemeral, never persisted
    local_preview: Optional[Any] = Field(None, exclude=True)
    is_processing: bool = False
    notice: Optional[str] = None
    warning: Optional[str] = None
    can_retry: bool = False
    reconnect_prompt: Optional[str] = None


PERSISTED_FIELDS = {
    "app_state",
    "current_step",
    "progress",
    "exam_paper_id",
    "results",
    "server_image_url",
    "error_message",
}
