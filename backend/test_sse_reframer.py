"""Tests for the upstream SSE re-framing engine."""

from __future__ import annotations

import asyncio
import unittest

from backend.errors import StreamDecodeError
from backend.sse_reframer import MAX_LINE_CHARS, SENTINEL, StreamEvent, parse_data_line, reframe


class _ChunkSource:
    """Async byte source that records pulls and closes."""

    def __init__(self, chunks: list[bytes | str]):
        self._chunks = [c.encode("utf-8") if isinstance(c, str) else c for c in chunks]
        self.pulls = 0
        self.close_count = 0

    def __aiter__(self) -> "_ChunkSource":
        return self

    async def __anext__(self) -> bytes:
        if self.pulls >= len(self._chunks):
            raise StopAsyncIteration
        chunk = self._chunks[self.pulls]
        self.pulls += 1
        return chunk

    async def aclose(self) -> None:
        self.close_count += 1


async def _collect(source: _ChunkSource) -> list[StreamEvent]:
    return [event async for event in reframe(source)]


def _payloads(events: list[StreamEvent]) -> list[str]:
    return [event.payload for event in events]


class TestReframe(unittest.TestCase):
    def test_sentinel_terminates_without_further_pulls(self) -> None:
        source = _ChunkSource(['data: {"a":1}\n\n', "data: [DONE]\n\n", 'data: {"never":true}\n\n'])
        events = asyncio.run(_collect(source))
        self.assertEqual(len(events), 2)
        self.assertEqual(events[0].payload, '{"a":1}')
        self.assertTrue(events[1].is_sentinel)
        self.assertEqual(events[1].encode(), "data: [DONE]\n\n")
        self.assertEqual(source.pulls, 2)
        self.assertEqual(source.close_count, 1)

    def test_drops_lines_without_data_prefix(self) -> None:
        source = _ChunkSource(["comment\ndata: X\n\n"])
        events = asyncio.run(_collect(source))
        self.assertEqual(_payloads(events), ["X"])

    def test_drops_heartbeats_and_event_fields(self) -> None:
        source = _ChunkSource([": keep-alive\n\nevent: message\ndata: one\nid: 3\n\ndata:   \n\n"])
        self.assertEqual(_payloads(asyncio.run(_collect(source))), ["one"])

    def test_multiple_events_in_one_chunk_keep_order(self) -> None:
        source = _ChunkSource(["data: 1\n\ndata: 2\n\ndata: 3\n\n"])
        self.assertEqual(_payloads(asyncio.run(_collect(source))), ["1", "2", "3"])

    def test_sentinel_mid_chunk_discards_rest(self) -> None:
        source = _ChunkSource(["data: a\n\ndata: [DONE]\n\ndata: b\n\n"])
        events = asyncio.run(_collect(source))
        self.assertEqual(_payloads(events), ["a", SENTINEL])

    def test_line_split_across_chunks_is_joined(self) -> None:
        source = _ChunkSource(['data: {"a"', ':1}\n', "\ndata: [DONE]\n\n"])
        self.assertEqual(_payloads(asyncio.run(_collect(source))), ['{"a":1}', SENTINEL])

    def test_multibyte_character_split_across_chunks(self) -> None:
        raw = "data: 你好\n\n".encode("utf-8")
        cut = raw.index("你".encode("utf-8")) + 1
        source = _ChunkSource([raw[:cut], raw[cut:]])
        self.assertEqual(_payloads(asyncio.run(_collect(source))), ["你好"])

    def test_crlf_line_endings(self) -> None:
        source = _ChunkSource(["data: a\r\n\r", "\ndata: b\r\n\r\n"])
        self.assertEqual(_payloads(asyncio.run(_collect(source))), ["a", "b"])

    def test_natural_end_without_sentinel(self) -> None:
        source = _ChunkSource(["data: a\n\n", "data: tail"])
        events = asyncio.run(_collect(source))
        self.assertEqual(_payloads(events), ["a", "tail"])
        self.assertFalse(any(event.is_sentinel for event in events))
        self.assertEqual(source.close_count, 1)

    def test_empty_chunks_are_skipped(self) -> None:
        source = _ChunkSource([b"", "data: a\n\n", b""])
        self.assertEqual(_payloads(asyncio.run(_collect(source))), ["a"])

    def test_invalid_bytes_raise_decode_error(self) -> None:
        source = _ChunkSource(["data: ok\n\n", b"data: \xff\xfe\n\n"])

        async def run() -> list[str]:
            seen = []
            with self.assertRaises(StreamDecodeError):
                async for event in reframe(source):
                    seen.append(event.payload)
            return seen

        self.assertEqual(asyncio.run(run()), ["ok"])
        self.assertEqual(source.close_count, 1)

    def test_truncated_multibyte_at_end_raises_decode_error(self) -> None:
        source = _ChunkSource([b"data: \xe4\xbd"])
        with self.assertRaises(StreamDecodeError):
            asyncio.run(_collect(source))

    def test_pulls_are_driven_by_consumer(self) -> None:
        source = _ChunkSource(["data: 1\n\n", "data: 2\n\n", "data: 3\n\n"])

        async def run() -> tuple[int, int]:
            events = reframe(source)
            await events.__anext__()
            pulls_after_first = source.pulls
            await events.__anext__()
            pulls_after_second = source.pulls
            await events.aclose()
            return pulls_after_first, pulls_after_second

        self.assertEqual(asyncio.run(run()), (1, 2))
        self.assertEqual(source.close_count, 1)


class TestOversizedLines(unittest.TestCase):
    def test_unterminated_flood_is_dropped_and_stream_recovers(self) -> None:
        filler = "x" * (MAX_LINE_CHARS // 2)
        source = _ChunkSource(["data: " + filler, filler, filler, filler + "\n", "data: ok\n\n", "data: [DONE]\n\n"])
        with self.assertLogs("career_relay", level="WARNING") as logs:
            events = asyncio.run(_collect(source))
        self.assertEqual(_payloads(events), ["ok", SENTINEL])
        self.assertEqual(len(logs.records), 1)

    def test_oversized_tail_without_line_break_is_dropped(self) -> None:
        source = _ChunkSource(["data: a\n", "data: " + "y" * (MAX_LINE_CHARS + 10)])
        with self.assertLogs("career_relay", level="WARNING"):
            events = asyncio.run(_collect(source))
        self.assertEqual(_payloads(events), ["a"])

    def test_long_line_within_one_chunk_is_kept(self) -> None:
        payload = "z" * (MAX_LINE_CHARS + 1)
        events = asyncio.run(_collect(_ChunkSource(["data: " + payload + "\n\n"])))
        self.assertEqual(_payloads(events), [payload])


class TestEventFraming(unittest.TestCase):
    def test_parse_data_line(self) -> None:
        self.assertEqual(parse_data_line('data: {"x": 1}  '), StreamEvent('{"x": 1}'))
        self.assertEqual(parse_data_line("data:[DONE]"), StreamEvent(SENTINEL))
        self.assertIsNone(parse_data_line("event: ping"))
        self.assertIsNone(parse_data_line(" data: leading space"))
        self.assertIsNone(parse_data_line("data:"))

    def test_encode(self) -> None:
        self.assertEqual(StreamEvent("a").encode(), "data: a\n\n")
        self.assertEqual(StreamEvent(SENTINEL).encode(), "data: [DONE]\n\n")


if __name__ == "__main__":
    unittest.main()
