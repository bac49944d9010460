from __future__ import annotations

from datetime import UTC, datetime, timedelta

from loguru import logger

from chat_stream.persistence.store import CheckpointDatabase


def prune_checkpoints(
    db: CheckpointDatabase,
    *,
    retention_days: int,
    max_rows: int,
) -> int:
    """Delete checkpoints older than the retention window, then cap the row count.

    Returns the number of deleted rows.
    """
    now = datetime.now(UTC)
    cutoff = (now - timedelta(days=max(1, retention_days))).isoformat(timespec="milliseconds")
    deleted = 0

    with db.transaction():
        deleted += db.execute(
            "DELETE FROM checkpoints WHERE updated_at < ?",
            (cutoff,),
        ).rowcount

        if max_rows > 0:
            overflow = db.execute(
                """
                SELECT session_id
                FROM checkpoints
                ORDER BY updated_at DESC
                LIMIT -1 OFFSET ?
                """,
                (max_rows,),
            ).fetchall()
            if overflow:
                db.executemany(
                    "DELETE FROM checkpoints WHERE session_id = ?",
                    [(str(row["session_id"]),) for row in overflow],
                )
                deleted += len(overflow)

    if deleted:
        logger.info(f"Pruned {deleted} checkpoint(s)")
    return deleted
