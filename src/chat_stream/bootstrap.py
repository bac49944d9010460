from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from pathlib import Path

from chat_stream.app_config import AppConfig, RuntimeEnv
from chat_stream.client import StreamClient
from chat_stream.logging_config import setup_logging
from chat_stream.persistence import (
    CheckpointDatabase,
    CheckpointPersister,
    CheckpointPolicy,
    CheckpointStore,
    prune_checkpoints,
)
from chat_stream.rate_limit import AdmissionLimiter
from chat_stream.sse_decoder import FrameDecoder
from chat_stream.stream_engine import StreamEngine


@dataclass
class AppRuntime:
    engine: StreamEngine
    client: StreamClient
    limiter: AdmissionLimiter
    checkpoint_db: CheckpointDatabase | None
    checkpoint_store: CheckpointStore | None
    log_descriptions: list[str]

    async def close(self) -> None:
        await self.limiter.close()
        await self.client.aclose()
        if self.checkpoint_db is not None:
            self.checkpoint_db.close()


async def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    checkpoint_db: CheckpointDatabase | None = None
    checkpoint_store: CheckpointStore | None = None
    persister: CheckpointPersister | None = None
    if app.checkpointing_enabled:
        db_path = Path(app.checkpoint_db_path)
        if not db_path.is_absolute():
            db_path = Path.cwd() / db_path
        checkpoint_db = CheckpointDatabase(str(db_path))
        prune_checkpoints(
            checkpoint_db,
            retention_days=app.checkpoint_retention_days,
            max_rows=app.checkpoint_max_rows,
        )
        checkpoint_store = CheckpointStore(checkpoint_db)
        persister = CheckpointPersister(
            checkpoint_store,
            policy=CheckpointPolicy(
                min_interval_seconds=app.checkpoint_min_interval_seconds,
                every_deltas=app.checkpoint_every_deltas,
            ),
        )

    limiter = AdmissionLimiter(sweep_interval_seconds=app.rate_limit_sweep_seconds)
    await limiter.start()

    client = StreamClient(
        app.backend_url,
        stream_path=app.stream_path,
        api_key=env.api_key,
        connect_timeout_seconds=app.connect_timeout_seconds,
        open_retries=app.open_retries,
    )

    engine = StreamEngine(
        opener=client,
        limiter=limiter,
        persister=persister,
        decoder_factory=partial(
            FrameDecoder,
            max_buffer_chars=app.max_buffer_chars,
            max_record_chars=app.max_record_chars,
        ),
        idle_timeout_seconds=app.idle_timeout_seconds,
        rate_limit=app.rate_limit,
        rate_limit_window_ms=app.rate_limit_window_ms,
    )

    return AppRuntime(
        engine=engine,
        client=client,
        limiter=limiter,
        checkpoint_db=checkpoint_db,
        checkpoint_store=checkpoint_store,
        log_descriptions=log_descriptions,
    )
