from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union
from uuid import uuid4

from loguru import logger

from chat_stream import frames as fk
from chat_stream.errors import ErrorKind
from chat_stream.frames import Frame


class SessionStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.ERRORED, SessionStatus.ABORTED})


@dataclass(frozen=True)
class Started:
    pass


@dataclass(frozen=True)
class StatusChanged:
    message: str


@dataclass(frozen=True)
class Delta:
    text_so_far: str
    fragment: str


@dataclass(frozen=True)
class AttachmentAdded:
    payload: Any


@dataclass(frozen=True)
class ConversationAssigned:
    conversation_id: str


@dataclass(frozen=True)
class Completed:
    final_text: str
    latency_ms: float | None = None
    full_response_mismatch: bool = False


@dataclass(frozen=True)
class Errored:
    error_kind: ErrorKind
    message: str


@dataclass(frozen=True)
class Aborted:
    partial_text: str


Notification = Union[
    Started,
    StatusChanged,
    Delta,
    AttachmentAdded,
    ConversationAssigned,
    Completed,
    Errored,
    Aborted,
]


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    revision: int
    status: SessionStatus
    text: str
    attachments: tuple[Any, ...] = field(default_factory=tuple)
    activity: str = ""
    conversation_id: str | None = None
    started_at: datetime | None = None
    last_event_at: datetime | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None


SessionListener = Callable[[SessionSnapshot, Notification], None]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class StreamSession:
    """Accumulator for one streamed assistant turn.

    Frames are applied strictly in the order they are handed in. Every state
    transition or mutation bumps ``revision`` and produces exactly one
    notification, which is returned to the caller and passed to each
    subscribed listener. Once terminal, the session ignores everything.
    """

    def __init__(self, session_id: str | None = None, *, clock: Callable[[], datetime] | None = None):
        self._session_id = session_id or str(uuid4())
        self._clock = clock or _utc_now
        self._status = SessionStatus.PENDING
        self._text = ""
        self._attachments: list[Any] = []
        self._activity = ""
        self._conversation_id: str | None = None
        self._revision = 0
        self._created_at = self._clock()
        self._started_at: datetime | None = None
        self._last_event_at: datetime | None = None
        self._error_kind: ErrorKind | None = None
        self._error_message: str | None = None
        self._listeners: list[SessionListener] = []

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status.is_terminal

    @property
    def accumulated_text(self) -> str:
        return self._text

    @property
    def attachments(self) -> tuple[Any, ...]:
        return tuple(self._attachments)

    @property
    def activity(self) -> str:
        return self._activity

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def revision(self) -> int:
        return self._revision

    @property
    def created_at(self) -> datetime:
        return self._created_at

    @property
    def started_at(self) -> datetime | None:
        return self._started_at

    @property
    def last_event_at(self) -> datetime | None:
        return self._last_event_at

    @property
    def error_kind(self) -> ErrorKind | None:
        return self._error_kind

    @property
    def error_message(self) -> str | None:
        return self._error_message

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self._session_id,
            revision=self._revision,
            status=self._status,
            text=self._text,
            attachments=tuple(self._attachments),
            activity=self._activity,
            conversation_id=self._conversation_id,
            started_at=self._started_at,
            last_event_at=self._last_event_at,
            error_kind=self._error_kind,
            error_message=self._error_message,
        )

    def apply(self, frame: Frame) -> list[Notification]:
        if self.is_terminal:
            logger.debug(f"Session {self._session_id} is {self._status.value}; ignoring {frame.kind} frame")
            return []

        out: list[Notification] = []
        self._last_event_at = self._clock()
        if self._status is SessionStatus.PENDING:
            self._status = SessionStatus.STREAMING
            self._started_at = self._last_event_at
            self._notify(Started(), out)

        if frame.kind == fk.CONTENT:
            if frame.delta:
                self._text += frame.delta
                self._notify(Delta(text_so_far=self._text, fragment=frame.delta), out)
        elif frame.kind == fk.STATUS:
            self._activity = frame.message or ""
            self._notify(StatusChanged(self._activity), out)
        elif frame.kind == fk.ATTACHMENTS:
            self._attachments.append(frame.attachment_payload)
            self._notify(AttachmentAdded(frame.attachment_payload), out)
        elif frame.kind == fk.CONVERSATION_ID:
            self._assign_conversation(frame.conversation_id, out)
        elif frame.kind == fk.DONE:
            self._assign_conversation(frame.conversation_id, out)
            self._complete(frame, out)
        elif frame.kind == fk.ERROR:
            self._terminate_errored(ErrorKind.PROTOCOL, frame.message or "Stream error", out)
        return out

    def fail(self, kind: ErrorKind, message: str) -> list[Notification]:
        """Move to ``errored`` after a failure outside the frame stream."""
        if self.is_terminal:
            return []
        out: list[Notification] = []
        self._terminate_errored(kind, message, out)
        return out

    def abort(self) -> list[Notification]:
        if self.is_terminal:
            return []
        out: list[Notification] = []
        self._status = SessionStatus.ABORTED
        self._activity = ""
        logger.info(f"Session {self._session_id} aborted with {len(self._text)} chars accumulated")
        self._notify(Aborted(partial_text=self._text), out)
        return out

    def _assign_conversation(self, conversation_id: str | None, out: list[Notification]) -> None:
        if not conversation_id or conversation_id == self._conversation_id:
            return
        self._conversation_id = conversation_id
        self._notify(ConversationAssigned(conversation_id), out)

    def _complete(self, frame: Frame, out: list[Notification]) -> None:
        mismatch = frame.full_response is not None and frame.full_response != self._text
        if mismatch:
            # Accumulated deltas stay authoritative.
            logger.warning(
                f"Session {self._session_id}: full_response differs from accumulated deltas "
                f"(accumulated={len(self._text)} chars, full_response={len(frame.full_response)} chars)"
            )
        self._status = SessionStatus.COMPLETED
        self._activity = ""
        logger.info(f"Session {self._session_id} completed ({len(self._text)} chars, latency_ms={frame.latency_ms})")
        self._notify(
            Completed(final_text=self._text, latency_ms=frame.latency_ms, full_response_mismatch=mismatch),
            out,
        )

    def _terminate_errored(self, kind: ErrorKind, message: str, out: list[Notification]) -> None:
        self._status = SessionStatus.ERRORED
        self._activity = ""
        self._error_kind = kind
        self._error_message = message
        logger.warning(f"Session {self._session_id} errored ({kind.value}): {message}")
        self._notify(Errored(error_kind=kind, message=message), out)

    def _notify(self, notification: Notification, out: list[Notification]) -> None:
        self._revision += 1
        out.append(notification)
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot, notification)
            except Exception as ex:
                logger.warning(f"Session listener failed for {self._session_id}: {ex}")
