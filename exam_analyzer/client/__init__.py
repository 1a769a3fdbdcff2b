# Client workflow package
from .api_client import ExamApiClient
from .config import ClientSettings
from .engine import WorkflowEngine
from .image_prep import LocalFile, LocalPreview
from .resilient import ApiError, RetryPolicy
from .session import FileSessionStore, InMemorySessionStore, SessionCodec
from .state import AppState, ClientWorkflowState, ProcessingStep, UploadProgress

__all__ = [
    "ApiError",
    "AppState",
    "ClientSettings",
    "ClientWorkflowState",
    "ExamApiClient",
    "FileSessionStore",
    "InMemorySessionStore",
    "LocalFile",
    "LocalPreview",
    "ProcessingStep",
    "RetryPolicy",
    "SessionCodec",
    "UploadProgress",
    "WorkflowEngine",
]
