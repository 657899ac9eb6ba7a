"""Daemon descriptor persisted on disk.

The descriptor tells short-lived CLI invocations where the daemon listens
and which secret to present:

    ~/.whatsapp-cli/daemon.json
    {"pid": 1234, "port": 50123, "startedAt": "2026-01-01T12:00:00+00:00", "token": "<64 hex>"}

Only the daemon writes this file. Readers never see a partial write because
the file is written to a temporary sibling and renamed into place.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

STATE_FILE_MODE = 0o600


@dataclass(frozen=True)
class DaemonDescriptor:
    """Where a running daemon can be reached, and with which token."""
    pid: int
    port: int
    started_at: str
    token: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "port": self.port,
            "startedAt": self.started_at,
            "token": self.token,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DaemonDescriptor":
        """
        Build a descriptor from its JSON form.

        Raises:
            ValueError: If a field is missing or has the wrong type/range
        """
        if not isinstance(data, dict):
            raise ValueError("Descriptor must be a JSON object")

        pid = data.get("pid")
        port = data.get("port")
        started_at = data.get("startedAt", "")
        token = data.get("token")

        if not isinstance(pid, int) or isinstance(pid, bool):
            raise ValueError("Descriptor 'pid' must be an integer")
        if not isinstance(port, int) or isinstance(port, bool) or not 0 < port <= 65535:
            raise ValueError("Descriptor 'port' must be in (0, 65535]")
        if not isinstance(token, str) or not token:
            raise ValueError("Descriptor 'token' must be a non-empty string")
        if not isinstance(started_at, str):
            raise ValueError("Descriptor 'startedAt' must be a string")

        return cls(pid=pid, port=port, started_at=started_at, token=token)


class StateStore:
    """
    Reads and writes the daemon descriptor at a fixed path.

    No locking happens here: the daemon is the only writer.
    """

    def __init__(self, path: Path):
        self.path = path

    def write(self, descriptor: DaemonDescriptor) -> None:
        """
        Atomically persist the descriptor with owner-only permissions.

        Raises:
            OSError: If the directory cannot be created or the write fails
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            os.fchmod(fd, STATE_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(descriptor.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

        logger.debug(f"Wrote daemon state to {self.path}")

    def read(self) -> Optional[DaemonDescriptor]:
        """
        Return the stored descriptor.

        Returns None if the file is missing, unreadable or malformed;
        a corrupt file is indistinguishable from an absent one.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
            return DaemonDescriptor.from_dict(json.loads(raw))
        except (OSError, ValueError, UnicodeDecodeError):
            return None

    def remove(self) -> None:
        """Delete the descriptor if present. Failures are ignored."""
        try:
            self.path.unlink()
        except OSError:
            pass

    def exists(self) -> bool:
        return self.path.exists()


class DaemonLock:
    """
    Advisory singleton lock held by the daemon for its whole lifetime.

    Two ``daemon start`` invocations can both pass the liveness check before
    either daemon is up; whichever takes this lock first keeps running and
    the other exits before touching the descriptor.
    """

    def __init__(self, path: Path):
        self.path = path
        self._fd = None

    def acquire(self) -> bool:
        """Take the lock without blocking. Returns False if it is held elsewhere."""
        try:
            import fcntl
        except ImportError:
            # No flock on this platform; run unguarded.
            return True

        self.path.parent.mkdir(parents=True, exist_ok=True)
        # "a+" so every opener shares one inode (flock is per-inode)
        fd = open(self.path, "a+")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.close()
            return False

        fd.seek(0)
        fd.truncate()
        fd.write(str(os.getpid()))
        fd.flush()
        self._fd = fd
        return True

    def release(self) -> None:
        # Don't unlink: later openers must see the same inode.
        if self._fd is not None:
            self._fd.close()
            self._fd = None
