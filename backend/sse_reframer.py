"""Re-framing of an upstream server-sent-events byte stream.

``reframe`` pulls raw byte chunks from the completion API and yields one
``StreamEvent`` per ``data:`` line, in arrival order:

    data: {"choices": [...]}\\n\\n
    ...
    data: [DONE]\\n\\n

Lines that do not start with ``data:`` (comments, heartbeats, ``event:``
fields, blank separators) are dropped. The sentinel ends the sequence without
pulling further chunks. Only the current chunk and one unterminated trailing
line are held in memory.
"""

from __future__ import annotations

import codecs
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator

from backend.errors import StreamDecodeError

logger = logging.getLogger("career_relay")

DATA_PREFIX = "data:"
SENTINEL = "[DONE]"
STREAM_ENCODING = "utf-8"
MAX_LINE_CHARS = 64 * 1024

_LINE_BREAK_RE = re.compile(r"\r\n|\n|\r")


@dataclass(frozen=True)
class StreamEvent:
    payload: str

    @property
    def is_sentinel(self) -> bool:
        return self.payload == SENTINEL

    def encode(self) -> str:
        return f"{DATA_PREFIX} {self.payload}\n\n"


SENTINEL_EVENT = StreamEvent(SENTINEL)


def parse_data_line(line: str) -> StreamEvent | None:
    """Return the event carried by one protocol line, or None for anything else."""
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):].strip()
    if not payload:
        return None
    return StreamEvent(payload)


def _split_complete_lines(buffer: str) -> tuple[list[str], str]:
    parts = _LINE_BREAK_RE.split(buffer)
    # The last part has no line break yet; keep it until the next chunk.
    pending = parts.pop()
    return parts, pending


async def reframe(source: AsyncIterable[bytes], *, encoding: str = STREAM_ENCODING) -> AsyncIterator[StreamEvent]:
    """Lazily re-frame ``source`` into StreamEvents.

    Raises StreamDecodeError on bytes that are not valid ``encoding``. The source
    is closed on every exit path when it exposes ``aclose``. A line still
    unterminated after MAX_LINE_CHARS is dropped like any other malformed line.
    """
    decoder = codecs.getincrementaldecoder(encoding)(errors="strict")
    pending = ""
    # Set while the rest of an oversized line is still arriving.
    skipping = False
    iterator = source.__aiter__()
    try:
        async for chunk in iterator:
            if not chunk:
                continue
            try:
                text = decoder.decode(chunk)
            except UnicodeDecodeError as exc:
                raise StreamDecodeError(f"Upstream stream is not valid {encoding}: {exc}") from exc
            lines, pending = _split_complete_lines(pending + text)
            if skipping and lines:
                lines = lines[1:]
                skipping = False
            if len(pending) > MAX_LINE_CHARS:
                if not skipping:
                    logger.warning("Dropping upstream line longer than %s characters", MAX_LINE_CHARS)
                pending = ""
                skipping = True
            for line in lines:
                event = parse_data_line(line)
                if event is None:
                    continue
                yield event
                if event.is_sentinel:
                    return

        try:
            tail = pending + decoder.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            raise StreamDecodeError(f"Upstream stream ended inside a {encoding} sequence: {exc}") from exc
        tail_lines = _LINE_BREAK_RE.split(tail)
        if skipping:
            tail_lines = tail_lines[1:]
        for line in tail_lines:
            event = parse_data_line(line)
            if event is None:
                continue
            yield event
            if event.is_sentinel:
                return
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
