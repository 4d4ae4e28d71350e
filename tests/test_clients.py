import asyncio
import json

import httpx
import pytest

from job_monitor.clients.ashby import JobBoardClient, JobBoardError
from job_monitor.clients.mistral import MistralClient, ScoringError
from job_monitor.clients.slack import SlackClient, SlackDeliveryError


def _run_with(client, call):
    async def scenario():
        try:
            return await call(client)
        finally:
            await client.aclose()

    return asyncio.run(scenario())


def test_job_board_fetch_returns_raw_body() -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, text='{"jobs": []}', headers={"Content-Type": "application/json"})

    client = JobBoardClient("https://board.test/api/", transport=httpx.MockTransport(handler))
    body = _run_with(client, lambda c: c.fetch_snapshot("acme"))

    assert body == '{"jobs": []}'
    assert requested == ["https://board.test/api/acme"]


def test_job_board_fetch_retries_transient_errors() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls < 3:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, text='{"jobs": []}')

    client = JobBoardClient(
        "https://board.test/api",
        retry_wait_seconds=0,
        transport=httpx.MockTransport(handler),
    )

    assert _run_with(client, lambda c: c.fetch_snapshot("acme")) == '{"jobs": []}'
    assert calls == 3


def test_job_board_fetch_gives_up_with_typed_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    client = JobBoardClient(
        "https://board.test/api",
        retry_attempts=2,
        retry_wait_seconds=0,
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(JobBoardError):
        _run_with(client, lambda c: c.fetch_snapshot("acme"))


def test_job_board_empty_body_is_an_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="")

    client = JobBoardClient(
        "https://board.test/api",
        retry_attempts=1,
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(JobBoardError, match="empty"):
        _run_with(client, lambda c: c.fetch_snapshot("acme"))


def test_scoring_request_asks_for_json_object() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, text='{"choices": []}')

    client = MistralClient("secret", model="mistral-small-latest", transport=httpx.MockTransport(handler))
    raw = _run_with(client, lambda c: c.complete("score these"))

    assert raw == '{"choices": []}'
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["model"] == "mistral-small-latest"
    assert seen["body"]["response_format"] == {"type": "json_object"}
    assert seen["body"]["messages"] == [{"role": "user", "content": "score these"}]


def test_scoring_http_error_is_typed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="rate limited")

    client = MistralClient("secret", transport=httpx.MockTransport(handler))

    with pytest.raises(ScoringError, match="429"):
        _run_with(client, lambda c: c.complete("score these"))


def test_slack_bot_message_returns_timestamp() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "ts": "1700000000.000100"})

    client = SlackClient(bot_token="xoxb-1", channel="#jobs", transport=httpx.MockTransport(handler))

    assert _run_with(client, lambda c: c.send("hello")) == "1700000000.000100"
    assert seen["auth"] == "Bearer xoxb-1"
    assert seen["body"] == {"channel": "#jobs", "text": "hello"}


def test_slack_api_rejection_is_typed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": False, "error": "channel_not_found"})

    client = SlackClient(bot_token="xoxb-1", channel="#jobs", transport=httpx.MockTransport(handler))

    with pytest.raises(SlackDeliveryError, match="channel_not_found"):
        _run_with(client, lambda c: c.send("hello"))


def test_slack_webhook_delivery() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host != "hooks.slack.test":
            return httpx.Response(404)
        bodies.append(json.loads(request.content))
        return httpx.Response(200, text="ok")

    client = SlackClient(
        webhook_url="https://hooks.slack.test/services/mock",
        transport=httpx.MockTransport(handler),
    )

    message_id = _run_with(client, lambda c: c.send("hello"))
    assert message_id is not None
    assert message_id.startswith("webhook-")
    assert bodies == [{"text": "hello"}]


def test_slack_webhook_failure_is_typed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="oops")

    client = SlackClient(
        webhook_url="https://hooks.slack.test/services/mock",
        transport=httpx.MockTransport(handler),
    )

    with pytest.raises(SlackDeliveryError):
        _run_with(client, lambda c: c.send("hello"))


def test_slack_client_needs_a_target() -> None:
    with pytest.raises(ValueError):
        SlackClient(bot_token="xoxb-1")
