from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx
from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from chat_stream.errors import HttpStatusError, TransportError

_USER_AGENT = "chat-stream/0.1"
_RETRYABLE_HTTPX_ERRORS = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
)


@dataclass
class StreamRequest:
    message: str
    conversation_history: list[dict] = field(default_factory=list)
    conversation_id: str | None = None
    file_ids: list[str] = field(default_factory=list)


def build_request_payload(request: StreamRequest) -> dict:
    """Serialize a request for the backend.

    History goes out under both ``conversationHistory`` and
    ``conversation_history`` because deployed backends read one or the other.
    """
    message = request.message.strip()
    if not message:
        raise ValueError("Message cannot be empty")

    history = [
        {"role": str(entry.get("role", "")), "content": entry.get("content", "")}
        for entry in request.conversation_history
        if entry.get("role") != "system"
    ]
    if not history and request.conversation_id:
        logger.warning(f"Sending empty history for existing conversation {request.conversation_id}")

    return {
        "message": message,
        "conversationHistory": history,
        "conversation_history": history,
        "conversationId": request.conversation_id,
        "conversation_id": request.conversation_id,
        "files": list(request.file_ids),
        "timestamp": datetime.now(UTC).isoformat(timespec="milliseconds"),
        "stream": True,
    }


class HttpxChunkReader:
    """ChunkReader over a streaming httpx response."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._chunks = response.aiter_bytes()
        self._released = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    async def read(self) -> bytes:
        try:
            while True:
                chunk = await self._chunks.__anext__()
                if chunk:
                    return chunk
        except StopAsyncIteration:
            return b""
        except httpx.HTTPError as ex:
            raise TransportError(f"Stream read failed: {type(ex).__name__}: {ex}") from ex

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._response.aclose()


def _is_retryable(ex: BaseException) -> bool:
    if isinstance(ex, HttpStatusError):
        return ex.retryable
    return isinstance(ex, _RETRYABLE_HTTPX_ERRORS)


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = str(exc) if isinstance(exc, HttpStatusError) else type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying stream open in {wait:.1f}s (attempt {attempt})...")


class StreamClient:
    def __init__(
        self,
        base_url: str,
        *,
        stream_path: str = "/api/pelican_stream",
        api_key: str | None = None,
        connect_timeout_seconds: float = 60.0,
        open_retries: int = 2,
        retry_wait=None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._stream_url = base_url.rstrip("/") + "/" + stream_path.lstrip("/")
        self._api_key = api_key
        self._open_retries = max(0, open_retries)
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=10)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=connect_timeout_seconds),
            headers={"User-Agent": _USER_AGENT},
        )

    @property
    def stream_url(self) -> str:
        return self._stream_url

    async def open(self, request: StreamRequest) -> HttpxChunkReader:
        """Open the event stream, retrying connection failures, 429 and 5xx responses."""
        payload = build_request_payload(request)
        logger.info(
            f"Opening stream: url={self._stream_url}, message_len={len(payload['message'])}, "
            f"history={len(payload['conversationHistory'])}, conversation_id={request.conversation_id}"
        )
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_retryable),
                wait=self._retry_wait,
                stop=stop_after_attempt(self._open_retries + 1),
                before_sleep=_on_retry,
                reraise=True,
            ):
                with attempt:
                    return await self._open_once(payload)
        except httpx.HTTPError as ex:
            raise TransportError(f"Could not open stream: {type(ex).__name__}: {ex}") from ex
        raise TransportError("Could not open stream")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _open_once(self, payload: dict) -> HttpxChunkReader:
        headers = {"Accept": "text/event-stream"}
        if self._api_key:
            headers["X-API-Key"] = self._api_key
        http_request = self._client.build_request("POST", self._stream_url, json=payload, headers=headers)
        response = await self._client.send(http_request, stream=True)
        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            logger.error(f"Stream request failed: status={response.status_code}, body={body[:200]!r}")
            raise HttpStatusError(response.status_code, body)
        return HttpxChunkReader(response)
