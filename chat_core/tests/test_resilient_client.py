import asyncio

import httpx
import pytest

from chat_core.domain.exceptions import ApiError, ContractViolationError, NetworkError, RateLimitError
from chat_core.domain.models import ChatRequest, RequestMessage
from chat_core.infrastructure.logging.logger import EventLogger
from chat_core.providers.resilient_client import ResilientClient, RetryPolicy

URL = "https://proxy.test/api/chat"

OK_BODY = {
    "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
}


def resp(status, body=None, text=None, headers=None):
    request = httpx.Request("POST", URL)
    if text is not None:
        return httpx.Response(status, text=text, headers=headers, request=request)
    return httpx.Response(status, json=body if body is not None else {}, headers=headers, request=request)


class FakeHttpClient:
    def __init__(self, outcomes):
        self._outcomes = list(outcomes)
        self.calls = []

    async def post(self, url, json=None, headers=None, **kw):
        self.calls.append({"url": url, "json": json, "headers": headers})
        item = self._outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def make_client(outcomes, policy=None, logger=None, **kw):
    http = FakeHttpClient(outcomes)
    sleeper = SleepRecorder()
    client = ResilientClient(
        URL,
        api_key="test-key-123456",
        retry_policy=policy or RetryPolicy(),
        logger=logger or EventLogger(),
        http_client=http,
        sleep=sleeper,
        **kw,
    )
    return client, http, sleeper


def make_request(**kw):
    return ChatRequest(messages=[RequestMessage(role="user", content="hi")], model="m-1", **kw)


def test_send_success_first_attempt():
    client, http, sleeper = make_client([resp(200, OK_BODY)])
    result = asyncio.run(client.send(make_request()))

    assert result.content == "ok"
    assert result.choices[0].finish_reason == "stop"
    assert result.usage.total_tokens == 2
    assert result.attempts == 1
    assert len(http.calls) == 1
    assert sleeper.delays == []
    headers = http.calls[0]["headers"]
    assert headers["X-Request-ID"] == result.correlation_id
    assert headers["Authorization"] == "Bearer test-key-123456"

    m = client.get_metrics()
    assert (m.request_count, m.error_count, m.retry_count) == (1, 0, 0)


def test_fails_twice_then_succeeds():
    client, http, sleeper = make_client(
        [resp(500, {"error": "boom"}), httpx.ConnectError("refused"), resp(200, OK_BODY)],
        policy=RetryPolicy(max_retries=2),
    )
    result = asyncio.run(client.send(make_request()))

    assert result.content == "ok"
    assert result.attempts == 3
    assert len(http.calls) == 3
    assert sleeper.delays == [1.0, 2.0]
    assert client.get_metrics().retry_count == 2
    assert client.get_metrics().error_count == 0
    ids = {c["headers"]["X-Request-ID"] for c in http.calls}
    assert ids == {result.correlation_id}


def test_backoff_delays_are_capped():
    policy = RetryPolicy(max_retries=5, initial_delay=1.0, max_delay=5.0, backoff_factor=2.0)
    client, http, sleeper = make_client([resp(503, {}) for _ in range(6)], policy=policy)

    with pytest.raises(ApiError) as ei:
        asyncio.run(client.send(make_request()))

    assert ei.value.http_status == 503
    assert ei.value.extra["attempts"] == 6
    assert sleeper.delays == [1.0, 2.0, 4.0, 5.0, 5.0]
    assert len(http.calls) == 6
    m = client.get_metrics()
    assert (m.request_count, m.error_count, m.retry_count) == (1, 1, 5)


def test_client_error_is_fatal():
    client, http, sleeper = make_client([resp(400, {"error": {"message": "bad model"}})])
    with pytest.raises(ApiError) as ei:
        asyncio.run(client.send(make_request()))

    assert ei.value.message == "bad model"
    assert ei.value.retryable is False
    assert len(http.calls) == 1
    assert sleeper.delays == []


def test_error_body_defaults_to_status_text():
    client, _, _ = make_client([resp(404, text="<html>nope</html>")])
    with pytest.raises(ApiError) as ei:
        asyncio.run(client.send(make_request()))
    assert ei.value.message == "API error: Not Found"


def test_rate_limit_exhausted_raises_rate_limit_error():
    client, http, _ = make_client(
        [resp(429, {"error": "slow down"}, headers={"Retry-After": "3"}) for _ in range(2)],
        policy=RetryPolicy(max_retries=1),
    )
    with pytest.raises(RateLimitError) as ei:
        asyncio.run(client.send(make_request()))
    assert ei.value.http_status == 429
    assert ei.value.extra["retry_after"] == "3"
    assert len(http.calls) == 2


def test_network_error_exhausted():
    client, http, _ = make_client(
        [httpx.ReadTimeout("timed out") for _ in range(3)],
        policy=RetryPolicy(max_retries=2),
    )
    with pytest.raises(NetworkError):
        asyncio.run(client.send(make_request()))
    assert len(http.calls) == 3


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"choices": []},
        {"choices": [{"message": {"role": "assistant", "content": None}}]},
        {"choices": [{"message": {"role": 1, "content": "x"}}]},
        {"choices": [{"text": "legacy"}]},
        ["not", "an", "object"],
    ],
)
def test_malformed_response_is_fatal(body):
    client, http, sleeper = make_client([resp(200, body), resp(200, OK_BODY)])
    with pytest.raises(ContractViolationError):
        asyncio.run(client.send(make_request()))
    assert len(http.calls) == 1
    assert sleeper.delays == []
    assert client.get_metrics().error_count == 1


def test_contract_violation_logs_diagnostics():
    logger = EventLogger()
    client, _, _ = make_client([resp(200, text="not json")], logger=logger)
    with pytest.raises(ContractViolationError):
        asyncio.run(client.send(make_request()))

    entry = next(e for e in logger.get_logs(level="error") if e.message == "Response failed contract validation")
    assert entry.data["status"] == 200
    assert entry.data["body"] == "not json"
    assert "content-type" in entry.data["headers"]
    assert entry.correlation_id


def test_payload_carries_image_and_sampling_params():
    client, http, _ = make_client([resp(200, OK_BODY)])
    req = ChatRequest(
        messages=[
            RequestMessage(role="system", content="sys"),
            RequestMessage(role="user", content="look"),
        ],
        model="m-1",
        image="data:image/png;base64,AAAA",
        max_tokens=77,
        temperature=0.1,
    )
    asyncio.run(client.send(req))

    payload = http.calls[0]["json"]
    assert payload["model"] == "m-1"
    assert payload["image"] == "data:image/png;base64,AAAA"
    assert payload["max_tokens"] == 77
    assert payload["temperature"] == 0.1
    assert set(payload) >= {"top_p", "frequency_penalty", "presence_penalty"}
    assert payload["messages"][0] == {"role": "system", "content": "sys"}
    assert payload["messages"][1]["content"] == [
        {"type": "text", "text": "look"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
    ]


def test_sources_are_parsed():
    body = dict(OK_BODY, sources=[{"title": "Doc", "url": "https://example.com"}])
    client, _, _ = make_client([resp(200, body)])
    result = asyncio.run(client.send(make_request()))
    assert result.sources[0].title == "Doc"


def test_error_rate_threshold_warns():
    logger = EventLogger()
    client, _, _ = make_client([resp(401, {"error": "no key"})], logger=logger, error_rate_threshold=0.5)
    with pytest.raises(ApiError):
        asyncio.run(client.send(make_request()))
    assert any(e.message == "API error rate above threshold" for e in logger.get_logs(level="warn"))


def test_metrics_snapshot_and_reset():
    client, _, _ = make_client([resp(200, OK_BODY)])
    asyncio.run(client.send(make_request()))
    snap = client.get_metrics()
    snap.request_count = 99
    assert client.get_metrics().request_count == 1
    assert client.get_metrics().average_response_time_ms >= 0

    client.reset_metrics()
    m = client.get_metrics()
    assert (m.request_count, m.error_count, m.retry_count, m.total_response_time_ms) == (0, 0, 0, 0.0)


def test_send_without_injected_client(monkeypatch):
    captured = {}

    class Client:
        def __init__(self, *a, **kw):
            captured["kw"] = kw

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, headers=None, **_):
            captured["url"] = url
            return resp(200, OK_BODY)

    monkeypatch.setattr("httpx.AsyncClient", Client)
    client = ResilientClient(URL, http_timeout=5.0)
    result = asyncio.run(client.send(make_request()))
    assert result.content == "ok"
    assert captured["url"] == URL
    assert captured["kw"]["timeout"] == 5.0


def test_ping():
    class PingClient:
        def __init__(self, outcome):
            self.outcome = outcome
            self.calls = []

        async def request(self, method, url, **kw):
            self.calls.append((method, url))
            if isinstance(self.outcome, Exception):
                raise self.outcome
            return self.outcome

    up = PingClient(httpx.Response(200, request=httpx.Request("GET", URL)))
    client = ResilientClient(URL, http_client=up, ping_url="https://proxy.test/api/ping")
    assert asyncio.run(client.ping()) is True
    assert up.calls == [("GET", "https://proxy.test/api/ping")]

    down = PingClient(httpx.ConnectError("refused"))
    client = ResilientClient(URL, http_client=down)
    assert asyncio.run(client.ping()) is False
    assert down.calls == [("HEAD", URL)]


def test_worst_case_seconds_covers_every_attempt_and_wait():
    assert RetryPolicy().worst_case_seconds(30.0) == 4 * 30.0 + 1.0 + 2.0 + 4.0
    assert RetryPolicy(max_retries=0).worst_case_seconds(10.0) == 10.0
    capped = RetryPolicy(max_retries=4, initial_delay=1.0, max_delay=3.0)
    assert capped.worst_case_seconds(5.0) == 5 * 5.0 + 1.0 + 2.0 + 3.0 + 3.0
