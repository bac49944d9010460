from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from chat_stream.persistence.checkpoints import CheckpointStore
from chat_stream.session import (
    AttachmentAdded,
    ConversationAssigned,
    Delta,
    Notification,
    SessionSnapshot,
    Started,
    StreamSession,
)


@dataclass(frozen=True)
class CheckpointPolicy:
    min_interval_seconds: float = 1.0
    every_deltas: int = 20


@dataclass
class _Cadence:
    last_write_at: float
    pending_changes: int = 0


class CheckpointPersister:
    """Session listener that keeps the durable checkpoint close behind the stream.

    The start of a session and its terminal transition are always written.
    In between, text and attachment changes are written at most once per
    ``min_interval_seconds`` unless ``every_deltas`` changes have piled up.
    Write failures are logged and dropped.
    """

    def __init__(
        self,
        store: CheckpointStore,
        *,
        policy: CheckpointPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._policy = policy or CheckpointPolicy()
        self._clock = clock
        self._cadence: dict[str, _Cadence] = {}
        self._lock = threading.Lock()

    def attach(self, session: StreamSession) -> Callable[[], None]:
        return session.subscribe(self.on_session_event)

    def on_session_event(self, snapshot: SessionSnapshot, notification: Notification) -> None:
        if snapshot.status.is_terminal:
            with self._lock:
                self._cadence.pop(snapshot.session_id, None)
            self._write(snapshot)
            return

        if isinstance(notification, Started):
            if self._write(snapshot):
                with self._lock:
                    self._cadence[snapshot.session_id] = _Cadence(last_write_at=self._clock())
            return

        if not isinstance(notification, (Delta, AttachmentAdded, ConversationAssigned)):
            return

        now = self._clock()
        with self._lock:
            cadence = self._cadence.setdefault(snapshot.session_id, _Cadence(last_write_at=float("-inf")))
            cadence.pending_changes += 1
            due = (
                cadence.pending_changes >= max(1, self._policy.every_deltas)
                or now - cadence.last_write_at >= self._policy.min_interval_seconds
            )
        if not due:
            return
        if self._write(snapshot):
            with self._lock:
                cadence.last_write_at = now
                cadence.pending_changes = 0

    def _write(self, snapshot: SessionSnapshot) -> bool:
        try:
            written = self._store.checkpoint(
                snapshot.session_id,
                snapshot.revision,
                snapshot.text,
                snapshot.status.value,
                attachments=snapshot.attachments,
            )
        except Exception as ex:
            logger.warning(f"Checkpoint write failed for {snapshot.session_id} (revision {snapshot.revision}): {ex}")
            return False
        if not written:
            logger.debug(f"Checkpoint for {snapshot.session_id} revision {snapshot.revision} was stale; skipped")
        return True
