"""Streaming client for the OpenAI-compatible chat completion API (DeepSeek)."""

from __future__ import annotations

import json
import logging
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Optional

import httpx

from backend.errors import UpstreamHTTPError, UpstreamUnavailable
from backend.prompts import SYSTEM_PROMPT

logger = logging.getLogger("career_relay")

MISSING_CREDENTIAL_MESSAGE = "AI 分析服务尚未配置（缺少 DEEPSEEK_API_KEY），暂时无法生成详细分析。"
UNREACHABLE_MESSAGE = "AI 分析服务暂时无法连接，请稍后重试。"
ERROR_BODY_MAX_CHARS = 500


def build_completion_payload(*, model: str, prompt: str, system_message: str = SYSTEM_PROMPT) -> dict[str, Any]:
    return {
        "model": model,
        "stream": True,
        "messages": [
            {"role": "system", "content": system_message},
            {"role": "user", "content": prompt},
        ],
    }


def diagnostic_frames(message: str) -> bytes:
    """One completion-chunk event carrying ``message`` followed by the sentinel."""
    chunk = {
        "id": "diagnostic",
        "object": "chat.completion.chunk",
        "model": "local-diagnostic",
        "choices": [
            {
                "index": 0,
                "delta": {"role": "assistant", "content": message},
                "finish_reason": "stop",
            }
        ],
    }
    return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\ndata: [DONE]\n\n".encode("utf-8")


async def synthetic_stream(message: str) -> AsyncIterator[bytes]:
    yield diagnostic_frames(message)


async def _read_error_body(response: httpx.Response) -> str:
    try:
        await response.aread()
        return response.text[:ERROR_BODY_MAX_CHARS]
    except httpx.HTTPError as exc:
        logger.warning("Failed to read upstream error body: %s", exc)
        return ""


async def _iter_upstream_bytes(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async with aclosing(response.aiter_bytes()) as chunks:
            async for chunk in chunks:
                yield chunk
    except httpx.TransportError as exc:
        raise UpstreamUnavailable(f"Upstream stream interrupted: {type(exc).__name__}: {exc}") from exc


@asynccontextmanager
async def open_upstream_stream(
    prompt: str,
    credential: str,
    *,
    api_url: str,
    model: str,
    connect_timeout_sec: float = 10.0,
    proxy_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[AsyncIterator[bytes]]:
    """Open one streaming completion request and yield its raw byte chunks.

    Raises UpstreamUnavailable without touching the network when ``credential``
    is blank, and on transport failures. Raises UpstreamHTTPError on a non-2xx
    status. Read timeout is disabled so slow generation is never cut off here.
    """
    if not isinstance(credential, str) or not credential.strip():
        raise UpstreamUnavailable("Completion API credential is not configured")

    headers = {
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
        "Authorization": f"Bearer {credential.strip()}",
    }
    payload = build_completion_payload(model=model, prompt=prompt)
    timeout = httpx.Timeout(connect=connect_timeout_sec, read=None, write=connect_timeout_sec, pool=connect_timeout_sec)
    client_kwargs: dict[str, Any] = {"timeout": timeout, "trust_env": True}
    if transport is not None:
        client_kwargs["transport"] = transport
    elif proxy_url:
        client_kwargs["proxy"] = proxy_url

    try:
        async with httpx.AsyncClient(**client_kwargs) as client:
            async with client.stream("POST", api_url, json=payload, headers=headers) as response:
                if not response.is_success:
                    body = await _read_error_body(response)
                    raise UpstreamHTTPError(response.status_code, response.reason_phrase, body)
                logger.info("Upstream stream opened status=%s model=%s", response.status_code, model)
                yield _iter_upstream_bytes(response)
    except httpx.TransportError as exc:
        raise UpstreamUnavailable(f"Completion API unreachable: {type(exc).__name__}: {exc}") from exc
