"""
Error types raised by the analysis pipeline.

Provider SDK exceptions are translated into ProviderError subclasses at the
provider boundary so the API layer maps a fixed set of failure modes to
stable client-facing messages.
"""
from typing import Optional


# Stable client-facing messages
MSG_PROVIDER_UNAUTHORIZED = "API密钥无效，请检查配置"
MSG_PROVIDER_RATE_LIMITED = "请求过于频繁，请稍后重试"
MSG_PROVIDER_OVERLOADED = "服务暂时过载，请稍后重试"
MSG_PROVIDER_MALFORMED = "AI返回的结果格式不正确，请重试"
MSG_ANALYSIS_FAILED = "AI分析失败"
MSG_OCR_FAILED = "OCR识别失败"


class ProviderError(Exception):
    """Base class for failures of the external OCR/LLM provider."""
    status_code: int = 500
    user_message: str = MSG_ANALYSIS_FAILED
    retryable: bool = True

    def __init__(self, message: str = "", *, provider: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.provider = provider


class ProviderUnauthorizedError(ProviderError):
    status_code = 401
    user_message = MSG_PROVIDER_UNAUTHORIZED


class ProviderRateLimitError(ProviderError):
    status_code = 429
    user_message = MSG_PROVIDER_RATE_LIMITED


class ProviderOverloadedError(ProviderError):
    status_code = 503
    user_message = MSG_PROVIDER_OVERLOADED


class MalformedProviderResponseError(ProviderError):
    """Provider answered, but the payload is unparseable or misses required fields."""
    status_code = 502
    user_message = MSG_PROVIDER_MALFORMED
    retryable = False


class RecordNotFoundError(Exception):
    def __init__(self, record_id: str):
        super().__init__(f"Exam record {record_id} not found")
        self.record_id = record_id


class InvalidStatusTransitionError(Exception):
    def __init__(self, record_id: str, current: str, requested: str):
        super().__init__(f"Record {record_id}: cannot move from '{current}' to '{requested}'")
        self.record_id = record_id
        self.current = current
        self.requested = requested


class FileValidationError(ValueError):
    """Uploaded file rejected before storage."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def translate_provider_error(exc: Exception, provider: Optional[str] = None) -> ProviderError:
    """
    Map an SDK exception (openai / anthropic / httpx) to a ProviderError.

    Both SDKs expose `status_code` on their status errors; transport failures
    and timeouts are treated as overload.
    """
    if isinstance(exc, ProviderError):
        return exc

    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)

    text = str(exc)
    if status == 401 or status == 403 or "Unauthorized" in text:
        return ProviderUnauthorizedError(text, provider=provider)
    if status == 429 or "rate limit" in text.lower():
        return ProviderRateLimitError(text, provider=provider)
    # 529 is Anthropic's "overloaded"
    if status in (502, 503, 504, 529) or "overloaded" in text.lower():
        return ProviderOverloadedError(text, provider=provider)

    name = type(exc).__name__
    if name in ("APIConnectionError", "APITimeoutError", "ConnectError", "ReadTimeout", "TimeoutError"):
        return ProviderOverloadedError(text, provider=provider)

    return ProviderError(text, provider=provider)
