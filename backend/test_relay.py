"""Tests for the upstream stream opener and the relay pipeline."""

from __future__ import annotations

import asyncio
import json
import unittest
from typing import Any

import httpx

from backend.config import Settings
from backend.errors import UpstreamHTTPError, UpstreamUnavailable
from backend.llm_stream import (
    MISSING_CREDENTIAL_MESSAGE,
    UNREACHABLE_MESSAGE,
    build_completion_payload,
    open_upstream_stream,
)
from backend.prompts import SYSTEM_PROMPT
from backend.relay import relay_analysis

API_URL = "https://completion.test/v1/chat/completions"
DONE_FRAME = "data: [DONE]\n\n"


class TrackingStream(httpx.AsyncByteStream):
    """Response body that records how many chunks were pulled and how often it was closed."""

    def __init__(self, chunks: list[bytes | str]):
        self._chunks = [c.encode("utf-8") if isinstance(c, str) else c for c in chunks]
        self.pulls = 0
        self.close_count = 0

    async def __aiter__(self):
        for chunk in self._chunks:
            self.pulls += 1
            yield chunk

    async def aclose(self) -> None:
        self.close_count += 1


class FakeCompletionAPI:
    """httpx.MockTransport handler standing in for the completion API."""

    def __init__(self, chunks: list[bytes | str] | None = None, status_code: int = 200, error: Exception | None = None):
        self.stream = TrackingStream(chunks or [])
        self.status_code = status_code
        self.error = error
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": {"message": "denied"}})
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=self.stream)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def _settings(api_key: str = "test-key") -> Settings:
    return Settings(api_key=api_key, api_url=API_URL, model="deepseek-chat")


def _delta_frame(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}, ensure_ascii=False) + "\n\n"


def _frame_content(frame: str) -> str:
    payload: dict[str, Any] = json.loads(frame[len("data:"):].strip())
    return payload["choices"][0]["delta"]["content"]


async def _collect(agen) -> list[str]:
    return [frame async for frame in agen]


class TestOpenUpstreamStream(unittest.TestCase):
    def test_payload_requests_streaming_with_persona(self) -> None:
        payload = build_completion_payload(model="deepseek-chat", prompt="分析")
        self.assertTrue(payload["stream"])
        self.assertEqual(payload["model"], "deepseek-chat")
        self.assertEqual(payload["messages"][0], {"role": "system", "content": SYSTEM_PROMPT})
        self.assertEqual(payload["messages"][1], {"role": "user", "content": "分析"})

    def test_missing_credential_short_circuits(self) -> None:
        api = FakeCompletionAPI(["data: [DONE]\n\n"])

        async def run() -> None:
            async with open_upstream_stream("p", "  ", api_url=API_URL, model="m", transport=api.transport):
                pass

        with self.assertRaises(UpstreamUnavailable):
            asyncio.run(run())
        self.assertEqual(api.requests, [])

    def test_sends_bearer_request_and_yields_bytes(self) -> None:
        api = FakeCompletionAPI(["data: a\n\n", "data: [DONE]\n\n"])

        async def run() -> list[bytes]:
            async with open_upstream_stream("提示", "secret", api_url=API_URL, model="deepseek-chat", transport=api.transport) as source:
                return [chunk async for chunk in source]

        chunks = asyncio.run(run())
        self.assertEqual(b"".join(chunks), b"data: a\n\ndata: [DONE]\n\n")
        self.assertEqual(len(api.requests), 1)
        request = api.requests[0]
        self.assertEqual(request.method, "POST")
        self.assertEqual(str(request.url), API_URL)
        self.assertEqual(request.headers["authorization"], "Bearer secret")
        body = json.loads(request.content)
        self.assertTrue(body["stream"])
        self.assertEqual(body["messages"][1]["content"], "提示")
        self.assertEqual(api.stream.close_count, 1)

    def test_non_success_status_raises_http_error(self) -> None:
        api = FakeCompletionAPI(status_code=401)

        async def run() -> None:
            async with open_upstream_stream("p", "bad", api_url=API_URL, model="m", transport=api.transport):
                self.fail("body must not run on HTTP error")

        with self.assertRaises(UpstreamHTTPError) as ctx:
            asyncio.run(run())
        self.assertEqual(ctx.exception.status, 401)
        self.assertEqual(ctx.exception.status_text, "Unauthorized")
        self.assertIn("denied", ctx.exception.body)

    def test_transport_failure_raises_unavailable(self) -> None:
        api = FakeCompletionAPI(error=httpx.ConnectError("connection refused"))

        async def run() -> None:
            async with open_upstream_stream("p", "k", api_url=API_URL, model="m", transport=api.transport):
                pass

        with self.assertRaises(UpstreamUnavailable):
            asyncio.run(run())
        self.assertEqual(len(api.requests), 1)


class TestRelayAnalysis(unittest.TestCase):
    def test_forwards_events_in_order_and_ends_with_single_sentinel(self) -> None:
        api = FakeCompletionAPI([_delta_frame("你") + ": ping\n\n", _delta_frame("好"), DONE_FRAME, _delta_frame("late")])
        frames = asyncio.run(_collect(relay_analysis("p", _settings(), transport=api.transport, request_id="r1")))
        self.assertEqual([_frame_content(f) for f in frames[:-1]], ["你", "好"])
        self.assertEqual(frames[-1], DONE_FRAME)
        self.assertEqual(frames.count(DONE_FRAME), 1)
        self.assertEqual(api.stream.pulls, 3)
        self.assertEqual(api.stream.close_count, 1)

    def test_missing_credential_yields_diagnostic_then_sentinel(self) -> None:
        api = FakeCompletionAPI([_delta_frame("never")])
        frames = asyncio.run(_collect(relay_analysis("p", _settings(api_key=""), transport=api.transport)))
        self.assertEqual(len(frames), 2)
        self.assertEqual(_frame_content(frames[0]), MISSING_CREDENTIAL_MESSAGE)
        self.assertEqual(frames[1], DONE_FRAME)
        self.assertEqual(api.requests, [])

    def test_http_error_degrades_to_diagnostic_stream(self) -> None:
        api = FakeCompletionAPI(status_code=503)
        frames = asyncio.run(_collect(relay_analysis("p", _settings(), transport=api.transport)))
        self.assertEqual(len(frames), 2)
        self.assertIn("503", _frame_content(frames[0]))
        self.assertEqual(frames[1], DONE_FRAME)
        self.assertEqual(len(api.requests), 1)

    def test_transport_failure_degrades_to_diagnostic_stream(self) -> None:
        api = FakeCompletionAPI(error=httpx.ConnectError("connection refused"))
        frames = asyncio.run(_collect(relay_analysis("p", _settings(), transport=api.transport)))
        self.assertEqual([_frame_content(frames[0]), frames[1]], [UNREACHABLE_MESSAGE, DONE_FRAME])

    def test_natural_end_appends_sentinel(self) -> None:
        api = FakeCompletionAPI([_delta_frame("a"), _delta_frame("b")])
        frames = asyncio.run(_collect(relay_analysis("p", _settings(), transport=api.transport)))
        self.assertEqual(len(frames), 3)
        self.assertEqual(frames[-1], DONE_FRAME)

    def test_decode_error_truncates_and_closes_stream(self) -> None:
        api = FakeCompletionAPI([_delta_frame("ok"), b"data: \xff\n\n", _delta_frame("never")])
        frames = asyncio.run(_collect(relay_analysis("p", _settings(), transport=api.transport)))
        self.assertEqual(len(frames), 2)
        self.assertEqual(_frame_content(frames[0]), "ok")
        self.assertEqual(frames[1], DONE_FRAME)
        self.assertEqual(api.stream.close_count, 1)

    def test_consumer_disconnect_releases_upstream_once(self) -> None:
        api = FakeCompletionAPI([_delta_frame(str(i)) for i in range(10)] + [DONE_FRAME])

        async def run() -> str:
            frames = relay_analysis("p", _settings(), transport=api.transport, request_id="gone")
            first = await frames.__anext__()
            await frames.aclose()
            return first

        with self.assertLogs("relay_audit", level="INFO") as logs:
            first = asyncio.run(run())
        self.assertEqual(_frame_content(first), "0")
        self.assertEqual(api.stream.close_count, 1)
        self.assertLess(api.stream.pulls, 11)
        audit = json.loads(logs.records[-1].getMessage())
        self.assertEqual(audit["outcome"], "client_disconnected")
        self.assertEqual(audit["request_id"], "gone")

    def test_audit_event_records_outcome(self) -> None:
        api = FakeCompletionAPI([_delta_frame("a"), DONE_FRAME])
        with self.assertLogs("relay_audit", level="INFO") as logs:
            asyncio.run(_collect(relay_analysis("prompt", _settings(), transport=api.transport, request_id="r2")))
        audit = json.loads(logs.records[-1].getMessage())
        self.assertEqual(audit["outcome"], "completed")
        self.assertEqual(audit["event_count"], 1)
        self.assertEqual(audit["model"], "deepseek-chat")
        self.assertEqual(len(audit["prompt_hash"]), 64)


if __name__ == "__main__":
    unittest.main()
