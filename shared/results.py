"""
Tagged results exchanged at service boundaries.

Downstream HTTP responses are decoded into ``Ok`` or ``Err`` at the router
boundary, and message handlers report their outcome the same way, so callers
branch on an explicit tag instead of probing untyped JSON.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


class ErrorKind(Enum):
    """Why a call did not produce a usable payload."""
    UNAVAILABLE = "unavailable"    # breaker open, discovery failure, transport fault, 5xx
    REJECTED = "rejected"          # downstream answered with a 4xx
    BAD_RESPONSE = "bad_response"  # 2xx that is not a success envelope
    INVALID = "invalid"            # input could not be processed
    FAILED = "failed"              # processing raised


@dataclass(frozen=True)
class Ok:
    value: Any = None
    status_code: int = 200

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str
    service: Optional[str] = None
    status_code: Optional[int] = None
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok, Err]


def decode_envelope(service: str, status_code: int, body: Any) -> Result:
    """Decode a ``{success, message?, data?}`` envelope into a tagged result."""
    if status_code >= 500:
        return Err(ErrorKind.UNAVAILABLE, f"{service} answered {status_code}",
                   service=service, status_code=status_code)

    if not isinstance(body, dict):
        return Err(ErrorKind.BAD_RESPONSE, "response is not a JSON object",
                   service=service, status_code=status_code)

    if status_code >= 400 or body.get("success") is False:
        return Err(ErrorKind.REJECTED, str(body.get("message", f"HTTP {status_code}")),
                   service=service, status_code=status_code, body=body)

    if "success" not in body:
        return Err(ErrorKind.BAD_RESPONSE, "missing success flag",
                   service=service, status_code=status_code, body=body)

    return Ok(body.get("data"), status_code=status_code)
