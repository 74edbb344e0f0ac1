# relay/nodes/llm.py
from __future__ import annotations
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, Optional
from uuid import uuid4

import httpx

from relay.errors import ConfigurationError, StreamingUnsupportedError, TransportError
from relay.models import EndpointConfig
from relay.stream import iter_tokens

logger = logging.getLogger(__name__)

MISSING_CREDENTIALS = "Configure the LLM base URL and API key first."


def require_endpoint(endpoint: Optional[EndpointConfig]) -> EndpointConfig:
    if endpoint is None or not endpoint.is_complete:
        raise ConfigurationError(MISSING_CREDENTIALS)
    return endpoint


def completions_url(endpoint: EndpointConfig) -> str:
    return f"{endpoint.base_url.rstrip('/')}/chat/completions"


def response_chunks(response: httpx.Response) -> AsyncIterator[bytes]:
    """Async byte iterator over the body; fails when the body only supports blocking reads."""
    if not isinstance(response.stream, httpx.AsyncByteStream):
        raise StreamingUnsupportedError("Streaming not supported by this HTTP transport.")
    return response.aiter_bytes()


async def stream_chat_completion(
    endpoint: Optional[EndpointConfig],
    body: Dict[str, Any],
    on_token: Callable[[str], None],
    client: Optional[httpx.AsyncClient] = None,
    timeout: Optional[float] = None,
) -> None:
    """
    POST one streaming chat completion and call `on_token` for every content
    fragment, in arrival order. Returns once the body is drained.

    A non-2xx answer raises TransportError before any token is delivered.
    Nothing is retried; a failure mid-stream propagates and tokens already
    delivered stay delivered.
    """
    endpoint = require_endpoint(endpoint)
    payload = {**body, "stream": True}
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {endpoint.api_key}",
    }
    if client is None:
        async with httpx.AsyncClient(timeout=timeout) as own_client:
            await _stream(own_client, completions_url(endpoint), headers, payload, on_token)
    else:
        await _stream(client, completions_url(endpoint), headers, payload, on_token)


async def _stream(client: httpx.AsyncClient, url: str, headers: Dict[str, str],
                  payload: Dict[str, Any], on_token: Callable[[str], None]) -> None:
    req_id = uuid4().hex[:8]
    started = time.monotonic()
    status = "EXC"
    tokens = 0
    logger.info("LLM start req=%s model=%s", req_id, payload.get("model"))
    try:
        async with client.stream("POST", url, headers=headers, json=payload) as response:
            status = str(response.status_code)
            if not response.is_success:
                text = (await response.aread()).decode(response.encoding or "utf-8", errors="replace")
                raise TransportError(response.status_code, response.reason_phrase, text)
            async for token in iter_tokens(response_chunks(response), response.encoding or "utf-8"):
                tokens += 1
                on_token(token)
    finally:
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("LLM end req=%s status=%s tokens=%d duration_ms=%d", req_id, status, tokens, duration_ms)
