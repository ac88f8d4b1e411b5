"""Relay pipeline: upstream completion stream -> re-framed event stream."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from contextlib import aclosing
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import httpx

from backend.config import Settings
from backend.errors import StreamDecodeError, UpstreamHTTPError, UpstreamUnavailable
from backend.llm_stream import (
    MISSING_CREDENTIAL_MESSAGE,
    UNREACHABLE_MESSAGE,
    open_upstream_stream,
    synthetic_stream,
)
from backend.sse_reframer import SENTINEL_EVENT, reframe

logger = logging.getLogger("career_relay")
relay_audit_logger = logging.getLogger("relay_audit")


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _canonical_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def prompt_hash(prompt: str) -> str:
    return hashlib.sha256(prompt.encode("utf-8")).hexdigest()


def _emit_relay_audit_event(
    *,
    request_id: str,
    prompt_sha256: str,
    model: str,
    outcome: str,
    event_count: int,
    elapsed_ms: float,
) -> dict[str, Any]:
    event = {
        "request_id": request_id,
        "prompt_hash": prompt_sha256,
        "model": model,
        "outcome": outcome,
        "event_count": event_count,
        "elapsed_ms": round(elapsed_ms, 1),
        "timestamp_utc": _utc_iso_now(),
    }
    relay_audit_logger.info(_canonical_json(event))
    return event


def http_error_message(exc: UpstreamHTTPError) -> str:
    status = f"{exc.status} {exc.status_text}".strip()
    return f"AI 分析服务返回错误（{status}），暂时无法生成详细分析。"


async def _diagnostic_events(message: str) -> AsyncIterator[str]:
    async with aclosing(reframe(synthetic_stream(message))) as events:
        async for event in events:
            if not event.is_sentinel:
                yield event.encode()


async def relay_analysis(
    prompt: str,
    settings: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    request_id: str = "",
) -> AsyncIterator[str]:
    """Yield wire-format events for ``prompt``, always ending with one ``data: [DONE]``.

    Missing credentials, unreachable upstream and non-2xx upstream statuses all
    degrade to a single diagnostic event. A decode failure truncates the stream.
    If the consumer closes this generator, the upstream response is released by
    the enclosing ``async with`` scopes and nothing further is emitted.
    """
    started = time.perf_counter()
    prompt_sha256 = prompt_hash(prompt)
    outcome = "completed"
    forwarded = 0
    diagnostic: Optional[str] = None

    try:
        try:
            saw_sentinel = False
            async with open_upstream_stream(
                prompt,
                settings.api_key,
                api_url=settings.api_url,
                model=settings.model,
                connect_timeout_sec=settings.connect_timeout_sec,
                proxy_url=settings.proxy_url,
                transport=transport,
            ) as source:
                async with aclosing(reframe(source)) as events:
                    async for event in events:
                        if event.is_sentinel:
                            saw_sentinel = True
                            continue
                        forwarded += 1
                        yield event.encode()
            if not saw_sentinel:
                outcome = "ended_without_sentinel"
        except UpstreamUnavailable as exc:
            outcome = "upstream_unavailable"
            diagnostic = MISSING_CREDENTIAL_MESSAGE if not settings.upstream_configured else UNREACHABLE_MESSAGE
            logger.warning("Upstream unavailable request_id=%s error=%s", request_id, exc)
        except UpstreamHTTPError as exc:
            outcome = f"upstream_http_{exc.status}"
            diagnostic = http_error_message(exc)
            logger.warning(
                "Upstream HTTP error request_id=%s status=%s status_text=%s body=%s",
                request_id,
                exc.status,
                exc.status_text,
                exc.body,
            )
        except StreamDecodeError as exc:
            outcome = "decode_error"
            logger.warning("Upstream stream decode failed request_id=%s error=%s", request_id, exc)

        if diagnostic is not None:
            async for frame in _diagnostic_events(diagnostic):
                yield frame
        yield SENTINEL_EVENT.encode()
    except (GeneratorExit, asyncio.CancelledError):
        outcome = "client_disconnected"
        raise
    finally:
        _emit_relay_audit_event(
            request_id=request_id,
            prompt_sha256=prompt_sha256,
            model=settings.model,
            outcome=outcome,
            event_count=forwarded,
            elapsed_ms=(time.perf_counter() - started) * 1000.0,
        )
