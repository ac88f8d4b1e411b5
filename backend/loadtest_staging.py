#!/usr/bin/env python3
"""Staging load test runner for the combined analysis stream."""

from __future__ import annotations

import argparse
import asyncio
import json
import math
import time
from dataclasses import dataclass
from typing import Any

import httpx

DEFAULT_PAYLOAD: dict[str, Any] = {
    "name": "测试用户",
    "gender": "male",
    "birthYear": 2005,
    "birthMonth": 8,
    "birthDay": 15,
    "birthHour": 14,
    "birthMinute": 30,
    "location": "北京",
    "hollandAnswers": [4, 3, 4, 2, 5, 5, 4, 4, 2, 3, 1, 2, 3, 3, 4, 2, 1, 2, 3, 2, 4, 4, 3, 5],
}

SENTINEL_FRAME = "data: [DONE]"


@dataclass
class StreamSample:
    ok: bool
    first_event_ms: float
    total_ms: float
    event_count: int
    saw_sentinel: bool


@dataclass
class RoundResult:
    endpoint: str
    concurrency: int
    total_requests: int
    ok_count: int
    error_count: int
    missing_sentinel_count: int
    avg_events: float
    p50_first_event_ms: float
    p95_first_event_ms: float
    p50_total_ms: float
    p95_total_ms: float
    total_s: float


def percentile(values: list[float], p: float) -> float:
    if not values:
        return math.nan
    arr = sorted(values)
    k = (len(arr) - 1) * p
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return arr[int(k)]
    d0 = arr[f] * (c - k)
    d1 = arr[c] * (k - f)
    return d0 + d1


async def consume_stream(client: httpx.AsyncClient, url: str, payload: dict[str, Any]) -> StreamSample:
    started = time.perf_counter()
    first_event_ms = math.nan
    event_count = 0
    saw_sentinel = False
    async with client.stream("POST", url, json=payload) as resp:
        if resp.status_code != 200:
            await resp.aread()
            return StreamSample(False, math.nan, (time.perf_counter() - started) * 1000.0, 0, False)
        async for line in resp.aiter_lines():
            if not line.startswith("data:"):
                continue
            if math.isnan(first_event_ms):
                first_event_ms = (time.perf_counter() - started) * 1000.0
            if line.strip() == SENTINEL_FRAME:
                saw_sentinel = True
                break
            event_count += 1
    total_ms = (time.perf_counter() - started) * 1000.0
    return StreamSample(True, first_event_ms, total_ms, event_count, saw_sentinel)


async def run_round(
    *,
    base_url: str,
    endpoint: str,
    payload: dict[str, Any],
    concurrency: int,
    total_requests: int,
    connect_timeout_s: float,
) -> RoundResult:
    url = f"{base_url.rstrip('/')}{endpoint}"
    queue: asyncio.Queue[int] = asyncio.Queue()
    samples: list[StreamSample] = []
    error_count = 0
    lock = asyncio.Lock()

    for i in range(total_requests):
        queue.put_nowait(i)

    # Streams stay open while the model generates; only bound the connect phase.
    timeout = httpx.Timeout(connect=connect_timeout_s, read=None, write=connect_timeout_s, pool=None)
    limits = httpx.Limits(max_connections=concurrency, max_keepalive_connections=concurrency)

    async def worker(client: httpx.AsyncClient) -> None:
        nonlocal error_count
        while True:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                sample = await consume_stream(client, url, payload)
                async with lock:
                    samples.append(sample)
                    if not sample.ok:
                        error_count += 1
            except httpx.HTTPError:
                async with lock:
                    error_count += 1
            finally:
                queue.task_done()

    start = time.perf_counter()
    async with httpx.AsyncClient(timeout=timeout, limits=limits) as client:
        workers = [asyncio.create_task(worker(client)) for _ in range(concurrency)]
        await queue.join()
        await asyncio.gather(*workers)
    total_s = time.perf_counter() - start

    ok_samples = [s for s in samples if s.ok]
    first_event = [s.first_event_ms for s in ok_samples if not math.isnan(s.first_event_ms)]
    totals = [s.total_ms for s in ok_samples]
    return RoundResult(
        endpoint=endpoint,
        concurrency=concurrency,
        total_requests=total_requests,
        ok_count=len(ok_samples),
        error_count=error_count,
        missing_sentinel_count=sum(1 for s in ok_samples if not s.saw_sentinel),
        avg_events=(sum(s.event_count for s in ok_samples) / len(ok_samples)) if ok_samples else math.nan,
        p50_first_event_ms=percentile(first_event, 0.50),
        p95_first_event_ms=percentile(first_event, 0.95),
        p50_total_ms=percentile(totals, 0.50),
        p95_total_ms=percentile(totals, 0.95),
        total_s=total_s,
    )


def print_table(results: list[RoundResult]) -> None:
    print(
        "endpoint,concurrency,total,ok,error,no_sentinel,avg_events,total_s,"
        "p50_first_ms,p95_first_ms,p50_total_ms,p95_total_ms"
    )
    for row in results:
        print(
            f"{row.endpoint},{row.concurrency},{row.total_requests},{row.ok_count},{row.error_count},"
            f"{row.missing_sentinel_count},{row.avg_events:.1f},{row.total_s:.3f},"
            f"{row.p50_first_event_ms:.2f},{row.p95_first_event_ms:.2f},"
            f"{row.p50_total_ms:.2f},{row.p95_total_ms:.2f}"
        )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Staging load test for the combined analysis stream.")
    parser.add_argument("--base-url", required=True, help="Target base URL, e.g. https://staging.example.com")
    parser.add_argument("--endpoint", default="/api/combined-analysis", help="Streaming endpoint path.")
    parser.add_argument("--concurrency", default="1,2,4", help="Comma-separated concurrency levels.")
    parser.add_argument("--requests-per-round", type=int, default=8, help="Total requests per concurrency round.")
    parser.add_argument("--connect-timeout-s", type=float, default=10.0, help="Connect timeout seconds.")
    parser.add_argument("--payload-json", default="", help="Optional JSON file with the request body.")
    parser.add_argument("--output-json", default="", help="Optional file path to write JSON summary.")
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    levels = [int(x.strip()) for x in args.concurrency.split(",") if x.strip()]
    if not levels:
        raise SystemExit("No concurrency levels given.")

    payload = DEFAULT_PAYLOAD
    if args.payload_json:
        with open(args.payload_json, "r", encoding="utf-8") as f:
            payload = json.load(f)

    print(f"base_url={args.base_url.rstrip('/')}")
    print(f"endpoint={args.endpoint}")
    print(f"concurrency_levels={levels}")
    print(f"requests_per_round={args.requests_per_round}")

    results: list[RoundResult] = []
    for level in levels:
        print(f"running endpoint={args.endpoint} concurrency={level}...")
        results.append(
            await run_round(
                base_url=args.base_url,
                endpoint=args.endpoint,
                payload=payload,
                concurrency=level,
                total_requests=args.requests_per_round,
                connect_timeout_s=args.connect_timeout_s,
            )
        )

    print_table(results)

    if args.output_json:
        with open(args.output_json, "w", encoding="utf-8") as f:
            json.dump([r.__dict__ for r in results], f, ensure_ascii=False, indent=2)
        print(f"saved_json={args.output_json}")


if __name__ == "__main__":
    asyncio.run(main())
