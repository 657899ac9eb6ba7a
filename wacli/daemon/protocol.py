"""Newline-delimited JSON-RPC protocol for daemon IPC.

Every request and response is exactly one JSON object followed by ``\\n``.

Request format:
    {
        "id": str,              # Echoed verbatim in the response
        "method": str,          # One of METHODS
        "params": dict | None,  # Method arguments
        "token": str,           # Shared secret from the descriptor file
    }

Response format:
    {"id": str, "result": Any}  # Success
    {"id": str, "error": str}   # Failure

A line that cannot be decoded gets an error response with id ``"?"``.
"""

import dataclasses
import hmac
import json
import secrets
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from wacli.core.errors import ProtocolError

TOKEN_BYTES = 32

UNKNOWN_ID = "?"

METHODS = (
    "ping",
    "getStatus",
    "getThreads",
    "searchThreads",
    "findChatByName",
    "getMessages",
    "sendMessage",
    "sendFile",
    "replyToMessage",
    "stop",
)

# Calls that may block on upstream pagination or large transfers.
SLOW_METHODS = frozenset({"getThreads", "getMessages", "sendFile"})


def generate_token() -> str:
    """Fresh 32-byte secret, hex-encoded (64 characters)."""
    return secrets.token_hex(TOKEN_BYTES)


def tokens_match(candidate: Any, secret: str) -> bool:
    """
    Constant-time token comparison.

    Runs in time independent of how many leading bytes match. A missing or
    non-string candidate never matches.
    """
    if not isinstance(candidate, str) or not candidate:
        return False
    # JSON strings may hold lone surrogates.
    return hmac.compare_digest(
        candidate.encode("utf-8", errors="surrogatepass"),
        secret.encode("utf-8", errors="surrogatepass"),
    )


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _encode(payload: Dict[str, Any]) -> bytes:
    return (json.dumps(payload, default=_json_default) + "\n").encode("utf-8")


def serialize_request(
    request_id: str,
    method: str,
    token: str,
    params: Optional[Dict[str, Any]] = None,
) -> bytes:
    """
    Serialize a request to one newline-terminated line.

    Args:
        request_id: Caller-chosen id, echoed back by the daemon
        method: RPC method name
        token: Shared secret
        params: Method arguments (omitted when None)

    Returns:
        UTF-8 encoded JSON line
    """
    request: Dict[str, Any] = {"id": request_id, "method": method, "token": token}
    if params is not None:
        request["params"] = params
    return _encode(request)


def deserialize_request(line: bytes) -> Dict[str, Any]:
    """
    Decode one request line.

    Raises:
        ProtocolError: If the line is not a JSON object
    """
    try:
        request = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ProtocolError("Invalid JSON") from None
    if not isinstance(request, dict):
        raise ProtocolError("Invalid JSON")
    return request


def serialize_response(
    request_id: Any,
    result: Any = None,
    error: Optional[str] = None,
) -> bytes:
    """
    Serialize a response line. Exactly one of result/error ends up on the wire.
    """
    if error is not None:
        return _encode({"id": request_id, "error": error})
    return _encode({"id": request_id, "result": result})


def deserialize_response(line: bytes) -> Dict[str, Any]:
    """
    Decode one response line.

    Raises:
        ProtocolError: If the line is not a JSON object
    """
    try:
        response = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise ProtocolError("Invalid JSON response") from None
    if not isinstance(response, dict):
        raise ProtocolError("Invalid JSON response")
    return response


class LineBuffer:
    """
    Reassembles newline-delimited frames from arbitrary stream chunks.

    Partial lines are kept until their newline arrives; several complete
    lines in one chunk are returned in order. Blank lines are dropped.

    With ``max_line`` set, a line longer than that many bytes is discarded
    and ``overflowed`` becomes True; the caller decides what to do next.
    """

    def __init__(self, max_line: Optional[int] = None) -> None:
        self._buf = b""
        self.max_line = max_line
        self.overflowed = False

    def feed(self, chunk: bytes) -> List[bytes]:
        self._buf += chunk
        *lines, self._buf = self._buf.split(b"\n")

        if self.max_line is not None:
            if len(self._buf) > self.max_line:
                self._buf = b""
                self.overflowed = True
            if any(len(line) > self.max_line for line in lines):
                self.overflowed = True
                lines = [line for line in lines if len(line) <= self.max_line]

        return [line for line in lines if line.strip()]

    @property
    def pending(self) -> bytes:
        return self._buf
