"""
Tests for the client retry policy and error message extraction.
"""
import httpx
import pytest

from exam_analyzer.client.resilient import (
    MSG_NETWORK_FAILED,
    MSG_SERVER_FAILED,
    ApiError,
    RetryPolicy,
    error_message_from_response,
    is_retryable,
    retry_message,
)
from exam_analyzer.schemas.exam import RETRYABLE_HEADER


class RecordingSleep:

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def scripted_client(statuses):
    """AsyncClient answering with the given status codes in order; None raises a connect error."""
    remaining = list(statuses)
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        status = remaining.pop(0)
        if status is None:
            raise httpx.ConnectError("connection refused", request=request)
        if status >= 400:
            return httpx.Response(status, json={"detail": f"status {status}"})
        return httpx.Response(status, json={"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test"), seen


class TestRetryPolicy:

    def test_delays_double(self):
        policy = RetryPolicy(max_retries=4, base_delay=1.0)
        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]
        assert policy.max_attempts == 5

    async def test_succeeds_after_server_errors(self):
        sleep = RecordingSleep()
        retries = []

        async def on_retry(attempt, max_retries):
            retries.append(retry_message(attempt, max_retries))

        client, seen = scripted_client([500, 503, 200])
        async with client:
            response = await RetryPolicy(sleep=sleep).run(lambda: client.get("/x"), on_retry=on_retry)

        assert response.status_code == 200
        assert len(seen) == 3
        assert sleep.delays == [1.0, 2.0]
        assert retries == ["正在重新连接，第 1/4 次尝试...", "正在重新连接，第 2/4 次尝试..."]

    async def test_transport_errors_are_retried(self):
        sleep = RecordingSleep()
        client, seen = scripted_client([None, 200])
        async with client:
            response = await RetryPolicy(sleep=sleep).run(lambda: client.get("/x"))

        assert response.status_code == 200
        assert sleep.delays == [1.0]

    @pytest.mark.parametrize("status", [400, 404, 409, 413, 422])
    async def test_client_errors_are_terminal(self, status):
        sleep = RecordingSleep()
        client, seen = scripted_client([status, 200])
        async with client:
            with pytest.raises(ApiError) as exc_info:
                await RetryPolicy(sleep=sleep).run(lambda: client.get("/x"))

        assert len(seen) == 1
        assert sleep.delays == []
        assert exc_info.value.status_code == status
        assert exc_info.value.transient is False

    async def test_server_marked_final_is_not_retried(self):
        sleep = RecordingSleep()
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502, headers={RETRYABLE_HEADER: "false"}, json={"detail": "AI返回的结果格式不正确，请重试"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test") as client:
            with pytest.raises(ApiError) as exc_info:
                await RetryPolicy(sleep=sleep).run(lambda: client.post("/analyze"))

        assert len(calls) == 1
        assert sleep.delays == []
        assert exc_info.value.status_code == 502
        assert exc_info.value.transient is False
        assert exc_info.value.message == "AI返回的结果格式不正确，请重试"

    @pytest.mark.parametrize("headers, expected", [
        ({}, True),
        ({RETRYABLE_HEADER: "true"}, True),
        ({RETRYABLE_HEADER: "False"}, False),
    ])
    def test_is_retryable(self, headers, expected):
        assert is_retryable(httpx.Response(502, headers=headers)) is expected
        assert is_retryable(httpx.Response(404, headers=headers)) is False

    async def test_exhausted_retries(self):
        sleep = RecordingSleep()
        client, seen = scripted_client([500] * 5)
        async with client:
            with pytest.raises(ApiError) as exc_info:
                await RetryPolicy(sleep=sleep).run(lambda: client.get("/x"))

        assert len(seen) == 5
        assert sleep.delays == [1.0, 2.0, 4.0, 8.0]
        assert exc_info.value.transient is True
        assert "已重试 4 次" in exc_info.value.message

    async def test_exhausted_network_failures(self):
        client, _ = scripted_client([None, None])
        async with client:
            with pytest.raises(ApiError) as exc_info:
                await RetryPolicy(max_retries=1, sleep=RecordingSleep()).run(lambda: client.get("/x"))

        assert exc_info.value.message.startswith(MSG_NETWORK_FAILED)
        assert exc_info.value.status_code is None


class TestErrorMessages:

    @pytest.mark.parametrize("status, body, expected", [
        (413, {"detail": "too big"}, "图片文件过大，请选择较小的图片"),
        (401, {}, "API密钥无效，请检查配置"),
        (429, {"detail": "slow down"}, "API调用频率过高，请稍后重试"),
        (404, {"detail": "试卷不存在"}, "试卷不存在"),
        (422, {"success": False, "warning": "无法确定试卷题目数量"}, "无法确定试卷题目数量"),
        (500, {}, MSG_SERVER_FAILED),
        (400, {"detail": ""}, "请求失败"),
    ])
    def test_from_response(self, status, body, expected):
        assert error_message_from_response(httpx.Response(status, json=body)) == expected

    def test_non_json_body(self):
        response = httpx.Response(502, text="<html>Bad Gateway</html>")
        assert error_message_from_response(response) == MSG_SERVER_FAILED
