"""Daemon architecture for wacli.

This module provides a long-running background process that keeps one
WhatsApp browser session alive, so CLI invocations don't pay the 15-30 s
browser startup on every call.

Architecture:
- StateStore: Descriptor file (pid, port, token) with owner-only permissions
- DaemonServer: Async loopback TCP server dispatching JSON-RPC to the session
- IpcClient: Per-call-connection proxy used by CLI commands
"""

from wacli.daemon.state import DaemonDescriptor, StateStore
from wacli.daemon.client import IpcClient, try_connect_daemon
from wacli.daemon.protocol import (
    serialize_request,
    deserialize_request,
    serialize_response,
    deserialize_response,
)

__all__ = [
    "DaemonDescriptor",
    "StateStore",
    "IpcClient",
    "try_connect_daemon",
    "serialize_request",
    "deserialize_request",
    "serialize_response",
    "deserialize_response",
]
