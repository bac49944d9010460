from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from chat_stream.persistence.store import CheckpointDatabase

TERMINAL_STATUSES = ("completed", "errored", "aborted")
INTERRUPTED_STATUSES = ("pending", "streaming")


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class CheckpointRecord:
    session_id: str
    revision: int
    text: str
    status: str
    attachments: list[Any]
    created_at: str
    updated_at: str

    @property
    def is_final(self) -> bool:
        return self.status in TERMINAL_STATUSES


def _to_record(row) -> CheckpointRecord:
    return CheckpointRecord(
        session_id=str(row["session_id"]),
        revision=int(row["revision"]),
        text=str(row["text"]),
        status=str(row["status"]),
        attachments=json.loads(row["attachments_json"] or "[]"),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


class CheckpointStore:
    def __init__(self, db: CheckpointDatabase):
        self._db = db

    def checkpoint(
        self,
        session_id: str,
        revision: int,
        text: str,
        status: str,
        *,
        attachments: list[Any] | tuple[Any, ...] = (),
    ) -> bool:
        """Upsert the latest checkpoint for a session.

        Returns False when the write was ignored: the stored revision is the
        same or newer, or the stored row is already final.
        """
        now = utc_now()
        with self._db.transaction():
            cursor = self._db.execute(
                f"""
                INSERT INTO checkpoints (session_id, revision, text, status, attachments_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    revision = excluded.revision,
                    text = excluded.text,
                    status = excluded.status,
                    attachments_json = excluded.attachments_json,
                    updated_at = excluded.updated_at
                WHERE excluded.revision > checkpoints.revision
                  AND checkpoints.status NOT IN ({", ".join("?" for _ in TERMINAL_STATUSES)})
                """,
                (
                    session_id,
                    revision,
                    text,
                    status,
                    json.dumps(list(attachments), ensure_ascii=True, default=str),
                    now,
                    now,
                    *TERMINAL_STATUSES,
                ),
            )
            return cursor.rowcount > 0

    def get(self, session_id: str) -> CheckpointRecord | None:
        with self._db.transaction():
            row = self._db.execute(
                "SELECT * FROM checkpoints WHERE session_id = ? LIMIT 1",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        return _to_record(row)

    def list_interrupted(self, *, limit: int = 50) -> list[CheckpointRecord]:
        """Checkpoints whose stream never reached a terminal state, newest first."""
        with self._db.transaction():
            rows = self._db.execute(
                """
                SELECT *
                FROM checkpoints
                WHERE status IN (?, ?)
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (*INTERRUPTED_STATUSES, max(1, limit)),
            ).fetchall()
        return [_to_record(row) for row in rows]
