import asyncio
import json
import unittest

import httpx
from tenacity import wait_none

from chat_stream.client import HttpxChunkReader, StreamClient, StreamRequest, build_request_payload
from chat_stream.errors import HttpStatusError, TransportError
from chat_stream.session import Completed, SessionStatus
from chat_stream.stream_engine import StreamEngine

_SSE_BODY = (
    b'data: {"type": "content", "delta": "Hel"}\n\n'
    b'data: {"type": "content", "delta": "lo"}\n\n'
    b'data: {"type": "done", "full_response": "Hello", "latency_ms": 120}\n\n'
)
_SSE = (200, _SSE_BODY)


class _Backend:
    """Scripted transport: replays queued (status, body) pairs in order, repeating the last one."""

    def __init__(self, responses: list) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        scripted = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(scripted, Exception):
            raise scripted
        status, body = scripted
        headers = {"Content-Type": "text/event-stream"} if status == 200 else {}
        return httpx.Response(status, content=body, headers=headers)


def _client(backend: _Backend, **kwargs) -> StreamClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    return StreamClient("http://backend.test/", retry_wait=wait_none(), http_client=http_client, **kwargs)


class BuildRequestPayloadTests(unittest.TestCase):
    def test_history_and_conversation_id_are_sent_under_both_names(self) -> None:
        history = [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]
        payload = build_request_payload(StreamRequest("  next  ", history, "conv-9", ["f-1"]))

        self.assertEqual("next", payload["message"])
        self.assertEqual(["user", "assistant"], [h["role"] for h in payload["conversationHistory"]])
        self.assertEqual(payload["conversationHistory"], payload["conversation_history"])
        self.assertEqual("conv-9", payload["conversationId"])
        self.assertEqual("conv-9", payload["conversation_id"])
        self.assertEqual(["f-1"], payload["files"])
        self.assertTrue(payload["stream"])

    def test_empty_message_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            build_request_payload(StreamRequest(" \n "))


class StreamClientTests(unittest.TestCase):
    def test_open_posts_payload_with_headers(self) -> None:
        backend = _Backend([_SSE])
        client = _client(backend, api_key="secret", stream_path="/api/chat_stream")

        async def scenario() -> bytes:
            reader = await client.open(StreamRequest("hi"))
            body = b""
            while chunk := await reader.read():
                body += chunk
            await reader.release()
            await client.aclose()
            return body

        body = asyncio.run(scenario())

        self.assertEqual(_SSE_BODY, body)
        request = backend.requests[0]
        self.assertEqual("POST", request.method)
        self.assertEqual("http://backend.test/api/chat_stream", str(request.url))
        self.assertEqual("text/event-stream", request.headers["accept"])
        self.assertEqual("secret", request.headers["x-api-key"])
        self.assertEqual("hi", json.loads(request.content)["message"])

    def test_client_error_is_not_retried(self) -> None:
        backend = _Backend([(400, b"bad request")])
        client = _client(backend)

        with self.assertRaises(HttpStatusError) as ctx:
            asyncio.run(client.open(StreamRequest("hi")))

        self.assertEqual(400, ctx.exception.status_code)
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(1, len(backend.requests))

    def test_server_error_is_retried_then_succeeds(self) -> None:
        backend = _Backend([(503, b"busy"), _SSE])
        client = _client(backend)

        async def scenario() -> int:
            reader = await client.open(StreamRequest("hi"))
            await reader.release()
            return reader.status_code

        self.assertEqual(200, asyncio.run(scenario()))
        self.assertEqual(2, len(backend.requests))

    def test_retries_stop_after_configured_attempts(self) -> None:
        backend = _Backend([(429, b"slow down")])
        client = _client(backend, open_retries=2)

        with self.assertRaises(HttpStatusError):
            asyncio.run(client.open(StreamRequest("hi")))

        self.assertEqual(3, len(backend.requests))

    def test_connect_errors_become_transport_errors(self) -> None:
        backend = _Backend([httpx.ConnectError("connection refused")])
        client = _client(backend, open_retries=1)

        with self.assertRaises(TransportError):
            asyncio.run(client.open(StreamRequest("hi")))

        self.assertEqual(2, len(backend.requests))


class HttpxChunkReaderTests(unittest.TestCase):
    def test_release_closes_response_once(self) -> None:
        async def scenario() -> HttpxChunkReader:
            async with httpx.AsyncClient(transport=httpx.MockTransport(_Backend([_SSE]))) as http_client:
                response = await http_client.send(http_client.build_request("POST", "http://x/"), stream=True)
                reader = HttpxChunkReader(response)
                await reader.read()
                await reader.release()
                await reader.release()
                self.assertTrue(response.is_closed)
                return reader

        asyncio.run(scenario())


class StreamClientEngineTests(unittest.TestCase):
    def test_engine_streams_through_http_client(self) -> None:
        client = _client(_Backend([_SSE]))
        turn = StreamEngine(opener=client).open_turn(StreamRequest("hi"), admission_key="user:1")

        async def scenario() -> list:
            notifications = [n async for n in turn]
            await client.aclose()
            return notifications

        notifications = asyncio.run(scenario())

        self.assertEqual(Completed("Hello", 120), notifications[-1])
        self.assertEqual(SessionStatus.COMPLETED, turn.session.status)


if __name__ == "__main__":
    unittest.main()
