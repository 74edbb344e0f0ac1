# relay/stream.py
"""
Incremental parser for the `data: {json}` event stream returned by
chat-completion endpoints.

Bytes arrive in chunks of any size. A chunk may end in the middle of a UTF-8
character, in the middle of the `data:` marker or between the two newlines
that separate records, so decoding is incremental and undelimited text is
carried over to the next chunk.
"""
from __future__ import annotations
import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, List, Optional

logger = logging.getLogger(__name__)

RECORD_SEPARATOR = "\n\n"
DATA_MARKER = "data:"
DONE_SENTINEL = "[DONE]"


def parse_lenient(text: Optional[str]) -> Optional[Any]:
    """Decode JSON text, returning None for blank or malformed input."""
    text = (text or "").strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


def extract_delta(record: Any) -> Optional[str]:
    """Return choices[0].delta.content when it is a non-empty string."""
    if not isinstance(record, dict):
        return None
    choices = record.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    delta = first.get("delta") if isinstance(first, dict) else None
    content = delta.get("content") if isinstance(delta, dict) else None
    if isinstance(content, str) and content:
        return content
    return None


class StreamParser:
    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        """Consume one chunk and return the tokens of every record it completed."""
        self._buffer += self._decoder.decode(chunk)
        parts = self._buffer.split(RECORD_SEPARATOR)
        self._buffer = parts.pop()
        tokens: List[str] = []
        for part in parts:
            token = self._process_record(part)
            if token:
                tokens.append(token)
        return tokens

    @property
    def pending(self) -> str:
        """Undelimited text waiting for the next separator."""
        return self._buffer

    def _process_record(self, record: str) -> Optional[str]:
        if not record.startswith(DATA_MARKER):
            return None
        payload = record[len(DATA_MARKER):].strip()
        if not payload or payload == DONE_SENTINEL:
            return None
        parsed = parse_lenient(payload)
        if parsed is None:
            logger.debug("Skipping malformed stream record (%d chars)", len(payload))
            return None
        return extract_delta(parsed)


async def iter_tokens(chunks: AsyncIterable[bytes], encoding: str = "utf-8") -> AsyncIterator[str]:
    """Lazily turn a byte-chunk stream into content tokens; trailing partial records are dropped."""
    parser = StreamParser(encoding)
    async for chunk in chunks:
        for token in parser.feed(chunk):
            yield token
