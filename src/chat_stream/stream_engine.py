from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol

import httpx

from chat_stream.client import StreamRequest
from chat_stream.errors import AdmissionDeniedError, ErrorKind, StreamError
from chat_stream.frames import Frame
from chat_stream.logging_config import session_logger
from chat_stream.persistence.persister import CheckpointPersister
from chat_stream.rate_limit import AdmissionBackend
from chat_stream.session import Notification, SessionSnapshot, StreamSession
from chat_stream.sse_decoder import ChunkReader, FrameDecoder, FrameStream

_READY = "ready"
_CANCELLED = "cancelled"
_TIMED_OUT = "timed_out"


class StreamOpener(Protocol):
    async def open(self, request: StreamRequest) -> ChunkReader: ...


async def _next_frame(frames: FrameStream) -> Frame | None:
    try:
        return await frames.__anext__()
    except StopAsyncIteration:
        return None


class StreamTurn:
    """One streamed assistant turn: iterate it to receive notifications in frame order.

    ``cancel()`` may be called at any time, from the consuming task or another
    one; the turn then ends ``aborted`` with the text received so far. Closing
    the iterator early or cancelling the consuming task also aborts it. The
    connection is released once on every path. Cancelling a turn that was
    never iterated aborts its session straight away.
    """

    def __init__(
        self,
        *,
        session: StreamSession,
        request: StreamRequest,
        opener: StreamOpener,
        decoder_factory: Callable[[], FrameDecoder],
        idle_timeout_seconds: float | None,
        on_finished: Callable[[], None] | None = None,
    ):
        self._session = session
        self._request = request
        self._opener = opener
        self._decoder_factory = decoder_factory
        self._idle_timeout_seconds = idle_timeout_seconds
        self._on_finished = on_finished
        self._cancelled = asyncio.Event()
        self._iterated = False
        self._log = session_logger(session.session_id)

    @property
    def session(self) -> StreamSession:
        return self._session

    def cancel(self) -> None:
        self._cancelled.set()
        if not self._iterated:
            self._iterated = True
            self._session.abort()
            self._finish()

    def __aiter__(self) -> AsyncIterator[Notification]:
        if self._iterated:
            raise RuntimeError("A StreamTurn can only be iterated once")
        self._iterated = True
        return self._run()

    async def run_to_end(self) -> SessionSnapshot:
        async for _ in self:
            pass
        return self._session.snapshot()

    async def _run(self) -> AsyncIterator[Notification]:
        session = self._session
        reader: ChunkReader | None = None
        frames: FrameStream | None = None
        try:
            outcome, reader = await self._wait(self._opener.open(self._request), timeout=self._idle_timeout_seconds)
            if outcome == _CANCELLED:
                for notification in session.abort():
                    yield notification
                return
            if outcome == _TIMED_OUT:
                for notification in session.fail(
                    ErrorKind.TIMEOUT,
                    f"Stream timeout - no response within {self._idle_timeout_seconds:g}s",
                ):
                    yield notification
                return

            frames = self._decoder_factory().stream(reader)
            while not session.is_terminal:
                outcome, frame = await self._wait(_next_frame(frames), timeout=self._idle_timeout_seconds)
                if outcome == _CANCELLED:
                    notifications = session.abort()
                elif outcome == _TIMED_OUT:
                    notifications = session.fail(
                        ErrorKind.TIMEOUT,
                        f"Stream timeout - no data received for {self._idle_timeout_seconds:g}s",
                    )
                elif frame is None:
                    notifications = session.fail(ErrorKind.TRANSPORT, "Connection closed before the stream completed")
                else:
                    notifications = session.apply(frame)
                for notification in notifications:
                    yield notification
        except StreamError as ex:
            for notification in session.fail(ex.kind, str(ex)):
                yield notification
        except (httpx.HTTPError, OSError) as ex:
            for notification in session.fail(ErrorKind.TRANSPORT, f"{type(ex).__name__}: {ex}"):
                yield notification
        except Exception as ex:
            self._log.exception("Unexpected failure while streaming")
            for notification in session.fail(ErrorKind.TRANSPORT, f"Streaming failed: {ex}"):
                yield notification
        finally:
            if frames is not None:
                await frames.aclose()
            elif reader is not None:
                await reader.release()
            if not session.is_terminal:
                session.abort()
            self._finish()

    def _finish(self) -> None:
        callback, self._on_finished = self._on_finished, None
        if callback is not None:
            callback()

    async def _wait(self, awaitable: Awaitable[Any], *, timeout: float | None) -> tuple[str, Any]:
        if self._cancelled.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            return _CANCELLED, None

        task = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait({task, cancel_wait}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if task in done:
            return _READY, task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as ex:
            self._log.debug(f"Abandoned stream operation failed: {ex}")
        return (_CANCELLED if cancel_wait in done else _TIMED_OUT), None


class StreamEngine:
    def __init__(
        self,
        *,
        opener: StreamOpener,
        limiter: AdmissionBackend | None = None,
        persister: CheckpointPersister | None = None,
        decoder_factory: Callable[[], FrameDecoder] = FrameDecoder,
        idle_timeout_seconds: float | None = 30.0,
        rate_limit: int = 10,
        rate_limit_window_ms: int = 60_000,
    ) -> None:
        self._opener = opener
        self._limiter = limiter
        self._persister = persister
        self._decoder_factory = decoder_factory
        self._idle_timeout_seconds = idle_timeout_seconds
        self._rate_limit = rate_limit
        self._rate_limit_window_ms = rate_limit_window_ms

    def open_turn(
        self,
        request: StreamRequest,
        *,
        admission_key: str,
        session_id: str | None = None,
    ) -> StreamTurn:
        if not request.message.strip():
            raise ValueError("Message cannot be empty")

        if self._limiter is not None:
            decision = self._limiter.check(admission_key, self._rate_limit, self._rate_limit_window_ms)
            if not decision.allowed:
                raise AdmissionDeniedError(admission_key, decision)

        session = StreamSession(session_id)
        detach = self._persister.attach(session) if self._persister is not None else None
        session_logger(session.session_id).debug(f"Opened turn for {admission_key}")
        return StreamTurn(
            session=session,
            request=request,
            opener=self._opener,
            decoder_factory=self._decoder_factory,
            idle_timeout_seconds=self._idle_timeout_seconds,
            on_finished=detach,
        )
