from __future__ import annotations

import codecs
import json
from collections import deque
from typing import Protocol, runtime_checkable

from loguru import logger

from chat_stream.errors import DecoderError
from chat_stream.frames import Frame, frame_from_payload

RECORD_DELIMITER = "\n\n"
DATA_PREFIX = "data:"

DEFAULT_MAX_BUFFER_CHARS = 1024 * 1024
DEFAULT_MAX_RECORD_CHARS = 100 * 1024


@runtime_checkable
class ChunkReader(Protocol):
    async def read(self) -> bytes:
        """Return the next chunk, or ``b""`` once the stream has ended."""
        ...

    async def release(self) -> None: ...


class FrameDecoder:
    """Incremental decoder for ``data: <json>`` records separated by blank lines.

    ``feed`` accepts chunks split at arbitrary byte offsets (including in the
    middle of a multi-byte character) and returns every frame completed by that
    chunk. Whatever follows the last delimiter stays buffered.
    """

    def __init__(
        self,
        *,
        max_buffer_chars: int = DEFAULT_MAX_BUFFER_CHARS,
        max_record_chars: int = DEFAULT_MAX_RECORD_CHARS,
    ):
        self._max_buffer_chars = max(1, max_buffer_chars)
        self._max_record_chars = max(1, max_record_chars)
        self._text_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes) -> list[Frame]:
        self._buffer += self._text_decoder.decode(chunk)
        records = self._buffer.split(RECORD_DELIMITER)
        self._buffer = records.pop()

        if len(self._buffer) > self._max_buffer_chars:
            size = len(self._buffer)
            self.reset()
            raise DecoderError(f"Stream buffer overflow ({size:,} chars without a record delimiter)")

        return self._parse_records(records)

    def finish(self) -> list[Frame]:
        """Flush the decoder at end-of-stream, parsing a trailing undelimited record."""
        self._buffer += self._text_decoder.decode(b"", final=True)
        remainder = self._buffer
        self.reset()
        if not remainder.strip():
            return []
        return self._parse_records([remainder])

    def reset(self) -> None:
        self._buffer = ""
        self._text_decoder.reset()

    def stream(self, reader: ChunkReader) -> FrameStream:
        return FrameStream(self, reader)

    def _parse_records(self, records: list[str]) -> list[Frame]:
        frames: list[Frame] = []
        for record in records:
            frame = self._parse_record(record)
            if frame is not None:
                frames.append(frame)
        return frames

    def _parse_record(self, record: str) -> Frame | None:
        if len(record) > self._max_record_chars:
            logger.warning(f"Skipping oversized record ({len(record):,} chars): {record[:100]!r}")
            return None

        data_lines: list[str] = []
        for line in record.split("\n"):
            line = line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue
            value = line[len(DATA_PREFIX):]
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)

        if not data_lines:
            return None
        raw = "\n".join(data_lines)
        if not raw.strip():
            return None

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as ex:
            logger.warning(f"Failed to parse frame: {ex}; record={record[:100]!r}")
            return None
        return frame_from_payload(payload)


class FrameStream:
    """Lazy, ordered frames read from a ChunkReader.

    The reader is released exactly once: at end-of-stream, when reading or
    decoding raises, or when the consumer calls ``aclose`` early.
    """

    def __init__(self, decoder: FrameDecoder, reader: ChunkReader):
        self._decoder = decoder
        self._reader = reader
        self._pending: deque[Frame] = deque()
        self._exhausted = False
        self._released = False

    def __aiter__(self) -> FrameStream:
        return self

    async def __anext__(self) -> Frame:
        while not self._pending:
            if self._exhausted or self._released:
                raise StopAsyncIteration
            try:
                chunk = await self._reader.read()
                if chunk:
                    self._pending.extend(self._decoder.feed(chunk))
                else:
                    self._exhausted = True
                    self._pending.extend(self._decoder.finish())
            except BaseException:
                await self.aclose()
                raise
            if self._exhausted:
                await self.aclose()
        return self._pending.popleft()

    async def aclose(self) -> None:
        if self._released:
            return
        self._released = True
        self._decoder.reset()
        await self._reader.release()

    async def __aenter__(self) -> FrameStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.aclose()
        return False
