"""Server-Sent Events framing for the streaming endpoints."""
import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Callable

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"
DATA_PREFIX = "data: "

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(payload: BaseModel | dict) -> str:
    """Frame one event as a single `data: <json>` SSE message."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False)}{FRAME_DELIMITER}"


class SSEDecoder:
    """Incremental decoder turning raw stream bytes into parsed event payloads.

    Incomplete trailing frames stay buffered until the next ``feed``. Frames
    that fail to parse are logged and dropped without interrupting the stream.
    """

    def __init__(self, parse: Callable[[Any], Any] | None = None):
        self._parse = parse
        self._text = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list:
        """Decode a chunk and return the events completed by it."""
        if isinstance(chunk, bytes):
            chunk = self._text.decode(chunk)
        self._buffer += chunk

        *frames, self._buffer = self._buffer.split(FRAME_DELIMITER)
        events = []
        for frame in frames:
            event = self._decode_frame(frame)
            if event is not None:
                events.append(event)
        return events

    @property
    def pending(self) -> str:
        """Buffered text not yet terminated by a blank line."""
        return self._buffer

    def _decode_frame(self, frame: str):
        if not frame.startswith(DATA_PREFIX):
            return None
        try:
            payload = json.loads(frame[len(DATA_PREFIX):])
            return self._parse(payload) if self._parse else payload
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error("Error processing stream data: %s", e)
            return None


async def iter_events(
    chunks: AsyncIterable[bytes],
    parse: Callable[[Any], Any] | None = None,
) -> AsyncIterator:
    """Decode an async byte stream into events in arrival order."""
    decoder = SSEDecoder(parse)
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
