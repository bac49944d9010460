from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from loguru import logger


@dataclass(frozen=True)
class AdmissionDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch milliseconds


@runtime_checkable
class AdmissionBackend(Protocol):
    def check(self, key: str, limit: int, window_ms: int) -> AdmissionDecision: ...


@dataclass
class _AdmissionRecord:
    count: int
    reset_at: int


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class AdmissionLimiter:
    """Fixed-window request counter per key, held in process memory.

    Counts are not shared between processes; swap in another AdmissionBackend
    when several instances must agree.
    """

    def __init__(self, *, clock: Callable[[], int] = _epoch_ms, sweep_interval_seconds: float = 300.0):
        self._clock = clock
        self._sweep_interval_seconds = max(1.0, sweep_interval_seconds)
        self._records: dict[str, _AdmissionRecord] = {}
        self._lock = threading.Lock()
        self._sweep_task: asyncio.Task | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def check(self, key: str, limit: int = 10, window_ms: int = 60_000) -> AdmissionDecision:
        if limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        if window_ms <= 0:
            raise ValueError(f"window_ms must be > 0, got {window_ms}")

        now = self._clock()
        with self._lock:
            record = self._records.get(key)
            if record is None or now >= record.reset_at:
                record = _AdmissionRecord(count=1, reset_at=now + window_ms)
                self._records[key] = record
            else:
                record.count += 1
            count, reset_at = record.count, record.reset_at

        allowed = count <= limit
        if not allowed:
            logger.info(f"Admission denied for {key} ({count} requests, limit {limit})")
        return AdmissionDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
        )

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._records.items() if now >= record.reset_at]
            for key in expired:
                del self._records[key]
        if expired:
            logger.debug(f"Swept {len(expired)} expired admission record(s)")
        return len(expired)

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._run_sweeper())

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        with self._lock:
            self._records.clear()

    async def _run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_seconds)
            self.sweep()


def client_identifier(headers: Mapping[str, str]) -> str:
    """Admission key for a request: the authenticated user id, else the client address."""
    lowered = {k.lower(): v for k, v in headers.items()}
    user_id = (lowered.get("x-user-id") or "").strip()
    if user_id:
        return f"user:{user_id}"
    forwarded = lowered.get("x-forwarded-for") or ""
    ip = forwarded.split(",")[0].strip() or "unknown"
    return f"guest:{ip}"
