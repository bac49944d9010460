from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loguru import logger

STATUS = "status"
CONTENT = "content"
ATTACHMENTS = "attachments"
DONE = "done"
ERROR = "error"
CONVERSATION_ID = "conversation_id"

FRAME_KINDS = frozenset({STATUS, CONTENT, ATTACHMENTS, DONE, ERROR, CONVERSATION_ID})

# Wire "type" values that map onto a canonical frame kind.
_TYPE_ALIASES = {
    "conversationId": CONVERSATION_ID,
    "conversation_id": CONVERSATION_ID,
}


@dataclass(frozen=True)
class Frame:
    kind: str
    message: str | None = None
    delta: str | None = None
    attachment_payload: Any = None
    full_response: str | None = None
    latency_ms: float | None = None
    conversation_id: str | None = None


def _first_str(payload: dict, *keys: str) -> str | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str):
            return value
    return None


def _to_latency(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    try:
        return float(str(value))
    except ValueError:
        return None


def frame_from_payload(payload: object) -> Frame | None:
    """Build a Frame from one decoded ``data:`` JSON payload.

    Backends send a few fields under two names (``delta``/``content``,
    ``message``/``error``, ``conversationId``/``conversation_id``). They are
    folded into one canonical field here so nothing downstream has to care.
    Returns None for payloads that are not recognizable frames.
    """
    if not isinstance(payload, dict):
        logger.debug(f"Ignoring non-object frame payload: {type(payload).__name__}")
        return None

    raw_type = payload.get("type")
    if not isinstance(raw_type, str):
        logger.debug("Ignoring frame payload without a type")
        return None
    kind = _TYPE_ALIASES.get(raw_type, raw_type)
    if kind not in FRAME_KINDS:
        logger.debug(f"Ignoring unknown frame type: {raw_type!r}")
        return None

    if kind == CONTENT:
        return Frame(kind=kind, delta=_first_str(payload, "delta", "content"))
    if kind == STATUS:
        return Frame(kind=kind, message=_first_str(payload, "message"))
    if kind == ATTACHMENTS:
        if payload.get("data") is None:
            logger.debug("Ignoring attachments frame without data")
            return None
        return Frame(kind=kind, attachment_payload=payload["data"])
    if kind == DONE:
        return Frame(
            kind=kind,
            full_response=_first_str(payload, "full_response", "fullResponse"),
            latency_ms=_to_latency(payload.get("latency_ms", payload.get("latencyMs"))),
            conversation_id=_first_str(payload, "conversation_id", "conversationId"),
        )
    if kind == ERROR:
        return Frame(kind=kind, message=_first_str(payload, "message", "error"))
    return Frame(kind=kind, conversation_id=_first_str(payload, "conversationId", "conversation_id"))
