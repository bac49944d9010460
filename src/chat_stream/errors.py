from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chat_stream.rate_limit import AdmissionDecision


class ErrorKind(str, Enum):
    PROTOCOL = "protocol"
    TRANSPORT = "transport"
    TIMEOUT = "timeout"
    DECODER = "decoder"


class StreamError(Exception):
    kind: ErrorKind = ErrorKind.TRANSPORT


class DecoderError(StreamError):
    kind = ErrorKind.DECODER


class TransportError(StreamError):
    kind = ErrorKind.TRANSPORT


class HttpStatusError(TransportError):
    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        detail = f": {body[:200]}" if body else ""
        super().__init__(f"HTTP {status_code}{detail}")

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or 500 <= self.status_code < 600


class AdmissionDeniedError(Exception):
    """Raised when the admission limiter rejects a new stream.

    Not a stream failure: no session is created. ``decision.reset_at`` tells
    the caller when to try again.
    """

    def __init__(self, key: str, decision: AdmissionDecision):
        self.key = key
        self.decision = decision
        super().__init__(
            f"Rate limit exceeded for {key!r} "
            f"(limit={decision.limit}, reset_at={decision.reset_at})"
        )
