"""
Resilient request policy shared by every client call.

Exponential backoff: attempt 1 runs immediately, retry n waits
base_delay * 2**(n-1). Server errors (5xx) and transport failures are retried;
any 4xx, or a 5xx marked non-retryable by the server, is terminal and
raised at once.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from ..schemas.exam import RETRYABLE_HEADER

logger = logging.getLogger(__name__)

MSG_NETWORK_FAILED = "网络连接失败，请检查网络后重试"
MSG_SERVER_FAILED = "服务器错误，请稍后重试"
MSG_REQUEST_FAILED = "请求失败"
MSG_MALFORMED_RESPONSE = "服务器返回的数据格式不正确"

# Status-specific messages take precedence over the response body
STATUS_MESSAGES = {
    413: "图片文件过大，请选择较小的图片",
    401: "API密钥无效，请检查配置",
    429: "API调用频率过高，请稍后重试",
}

RetryCallback = Callable[[int, int], Awaitable[None]]


class ApiError(Exception):
    """A failed client request, after any retries."""

    def __init__(self, message: str, status_code: Optional[int] = None, transient: bool = False):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.transient = transient


def error_message_from_response(response: httpx.Response, default: str = MSG_REQUEST_FAILED) -> str:
    """User-facing message for a non-2xx response."""
    if response.status_code in STATUS_MESSAGES:
        return STATUS_MESSAGES[response.status_code]

    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for key in ("detail", "error", "message", "warning"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value

    if response.status_code >= 500:
        return MSG_SERVER_FAILED
    return default


def is_retryable(response: httpx.Response) -> bool:
    """5xx responses are retried unless the server marked them as final."""
    if response.status_code < 500:
        return False
    return response.headers.get(RETRYABLE_HEADER, "").lower() != "false"


def retry_message(attempt: int, max_retries: int) -> str:
    return f"正在重新连接，第 {attempt}/{max_retries} 次尝试..."


class RetryPolicy:
    """
    Runs one HTTP operation with exponential backoff.

    Args:
        max_retries: Retries after the first attempt (attempts = max_retries + 1)
        base_delay: Delay before the first retry, doubled for each further retry
        sleep: Awaitable sleep, replaceable in tests
    """

    def __init__(
        self,
        max_retries: int = 4,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, retry_number: int) -> float:
        return self.base_delay * (2 ** (retry_number - 1))

    async def run(
        self,
        operation: Callable[[], Awaitable[httpx.Response]],
        on_retry: Optional[RetryCallback] = None,
        description: str = "request",
    ) -> httpx.Response:
        """
        Returns:
            The first 2xx/3xx response

        Raises:
            ApiError: terminal response, or retries exhausted (transient=True)
        """
        last_error: Optional[ApiError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await operation()
            except httpx.TransportError as e:
                logger.warning(f"{description} attempt {attempt}/{self.max_attempts} transport error: {e}")
                last_error = ApiError(MSG_NETWORK_FAILED, transient=True)
            else:
                if response.status_code < 400:
                    return response

                message = error_message_from_response(response)
                if not is_retryable(response):
                    logger.info(f"{description} rejected with {response.status_code}: {message}")
                    raise ApiError(message, status_code=response.status_code)

                logger.warning(
                    f"{description} attempt {attempt}/{self.max_attempts} failed with {response.status_code}"
                )
                last_error = ApiError(message, status_code=response.status_code, transient=True)

            if attempt < self.max_attempts:
                if on_retry is not None:
                    await on_retry(attempt, self.max_retries)
                await self._sleep(self.delay_for(attempt))

        logger.error(f"{description} failed after {self.max_attempts} attempts: {last_error}")
        raise ApiError(
            f"{last_error.message}（已重试 {self.max_retries} 次）",
            status_code=last_error.status_code,
            transient=True,
        )
