from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    MALFORMED_MESSAGE = "MalformedMessage"
    NONCE_MISMATCH = "NonceMismatch"
    DOMAIN_MISMATCH = "DomainMismatch"
    EXPIRED = "Expired"
    NOT_YET_VALID = "NotYetValid"
    INVALID_SIGNATURE = "InvalidSignature"
    TIMEOUT = "Timeout"
    # never surfaced through a login result, only logged and counted
    IDENTITY_RESOLUTION_FAILED = "IdentityResolutionFailed"
    SINK_UNAVAILABLE = "SinkUnavailable"


class SiweError(Exception):
    """Sign-in failure with the value that was expected and the one received."""

    def __init__(self, type: ErrorKind, expected: Any = None, received: Any = None) -> None:
        self.type = type
        self.expected = expected
        self.received = received
        super().__init__(f"{type.value}: expected={expected!r} received={received!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "expected": None if self.expected is None else str(self.expected),
            "received": None if self.received is None else str(self.received),
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SiweError):
            return NotImplemented
        return (self.type, self.expected, self.received) == (other.type, other.expected, other.received)

    def __hash__(self) -> int:
        return hash((self.type, str(self.expected), str(self.received)))
