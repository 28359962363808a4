"""Session registry for agent-browser.

Every session is described by a handful of small files in one shared runtime
directory (``<tempdir>/agent-browser`` unless configured otherwise):

    agent-browser/
      default.pid          # Daemon PID
      default.sock         # Unix domain socket (POSIX)
      default.port         # TCP port (platforms without Unix sockets)
      default.backend      # Saved backend name
      default.headed       # Saved headed flag, "true" / "false"
      default.userdatadir  # Saved browser user-data directory
      default.log          # Daemon log

Files are read and written through a ``SessionStore`` so tests can swap the
filesystem for an in-memory store.  A missing or malformed file always means
"not running" or "use the default", never an error.
"""

from __future__ import annotations

import hashlib
import logging
import os
import socket
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable

from agent_browser.config import DEFAULT_BACKEND

logger = logging.getLogger("agent_browser.session")

_ENV_SESSION_VAR = "AGENT_BROWSER_SESSION"
_DEFAULT_SESSION = "default"

PID_SUFFIX = ".pid"
SOCKET_SUFFIX = ".sock"
PORT_SUFFIX = ".port"
BACKEND_SUFFIX = ".backend"
HEADED_SUFFIX = ".headed"
USER_DATA_DIR_SUFFIX = ".userdatadir"
LOG_SUFFIX = ".log"

LAUNCH_ACTIONS = frozenset({"open", "launch"})

_PORT_RANGE_START = 49152
_PORT_RANGE_END = 65535


# ---------------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------------


class SessionStore(ABC):
    """Flat key/value storage for session artifacts, keyed by file name."""

    @abstractmethod
    def path(self, name: str) -> Path:
        """Return the filesystem path an artifact lives (or would live) at."""

    @abstractmethod
    def read_text(self, name: str) -> str | None:
        """Return the artifact's content, or ``None`` if it does not exist."""

    @abstractmethod
    def write_text(self, name: str, content: str) -> None: ...

    @abstractmethod
    def remove(self, name: str) -> None:
        """Remove an artifact; a missing artifact is not an error."""

    @abstractmethod
    def exists(self, name: str) -> bool: ...

    @abstractmethod
    def names(self) -> list[str]:
        """Return the names of all stored artifacts."""


class FileSessionStore(SessionStore):
    """Stores artifacts as files in *base_dir*, created on demand."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def _ensure_dir(self) -> Path:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        return self.base_dir

    def path(self, name: str) -> Path:
        return self._ensure_dir() / name

    def read_text(self, name: str) -> str | None:
        try:
            return (self.base_dir / name).read_text(encoding="utf-8")
        except (FileNotFoundError, NotADirectoryError):
            return None

    def write_text(self, name: str, content: str) -> None:
        # Write-then-rename so readers never observe a half-written file.
        target = self.path(name)
        tmp = target.with_name(f".{target.name}.{os.getpid()}.tmp")
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, target)

    def remove(self, name: str) -> None:
        try:
            (self.base_dir / name).unlink()
        except FileNotFoundError:
            pass

    def exists(self, name: str) -> bool:
        return (self.base_dir / name).exists()

    def names(self) -> list[str]:
        if not self.base_dir.is_dir():
            return []
        return sorted(entry.name for entry in self.base_dir.iterdir())


class MemorySessionStore(SessionStore):
    """In-memory store; paths point into a directory that is never created."""

    def __init__(self, root: str | Path = "/nonexistent/agent-browser") -> None:
        self.root = Path(root)
        self.files: dict[str, str] = {}

    def path(self, name: str) -> Path:
        return self.root / name

    def read_text(self, name: str) -> str | None:
        return self.files.get(name)

    def write_text(self, name: str, content: str) -> None:
        self.files[name] = content

    def remove(self, name: str) -> None:
        self.files.pop(name, None)

    def exists(self, name: str) -> bool:
        return name in self.files

    def names(self) -> list[str]:
        return sorted(self.files)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def supports_unix_sockets() -> bool:
    """Return ``True`` when the platform can serve on filesystem sockets."""
    return hasattr(socket, "AF_UNIX") and sys.platform != "win32"


def port_for_session(session: str) -> int:
    """Derive a stable loopback port for *session* in the dynamic port range."""
    digest = hashlib.md5(session.encode("utf-8"), usedforsecurity=False).digest()
    value = int.from_bytes(digest[:2], "big")
    return _PORT_RANGE_START + value % (_PORT_RANGE_END - _PORT_RANGE_START)


def pid_alive(pid: int) -> bool:
    """Return ``True`` if a process with *pid* exists.

    Uses ``os.kill(pid, 0)`` which checks for existence without delivering a
    signal.
    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else.
        return True
    except OSError:
        return False
    return True


def resolve_session_name(cli_arg: str | None) -> str:
    """Determine which session name to use.

    Priority (highest to lowest):

    1. Explicit *cli_arg* (if not ``None`` and not empty).
    2. The ``AGENT_BROWSER_SESSION`` environment variable.
    3. ``"default"``.
    """
    if cli_arg:
        return cli_arg
    env_value = os.environ.get(_ENV_SESSION_VAR, "").strip()
    if env_value:
        return env_value
    return _DEFAULT_SESSION


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class SessionRegistry:
    """Computes per-session artifact locations and answers liveness queries."""

    def __init__(
        self,
        store: SessionStore,
        is_process_alive: Callable[[int], bool] = pid_alive,
        use_unix_socket: bool | None = None,
    ) -> None:
        self.store = store
        self.is_process_alive = is_process_alive
        self.use_unix_socket = (
            supports_unix_sockets() if use_unix_socket is None else use_unix_socket
        )

    @classmethod
    def from_directory(cls, runtime_dir: str | Path) -> SessionRegistry:
        return cls(FileSessionStore(runtime_dir))

    # -- Paths ---------------------------------------------------------------

    def socket_path(self, session: str) -> Path:
        return self.store.path(session + SOCKET_SUFFIX)

    def pid_path(self, session: str) -> Path:
        return self.store.path(session + PID_SUFFIX)

    def port_path(self, session: str) -> Path:
        return self.store.path(session + PORT_SUFFIX)

    def log_path(self, session: str) -> Path:
        return self.store.path(session + LOG_SUFFIX)

    @property
    def _address_suffix(self) -> str:
        return SOCKET_SUFFIX if self.use_unix_socket else PORT_SUFFIX

    # -- PID -----------------------------------------------------------------

    def write_pid(self, session: str, pid: int) -> None:
        self.store.write_text(session + PID_SUFFIX, str(pid))

    def read_pid(self, session: str) -> int | None:
        text = self.store.read_text(session + PID_SUFFIX)
        if text is None:
            return None
        try:
            return int(text.strip())
        except ValueError:
            return None

    # -- Listen address ------------------------------------------------------

    def write_port(self, session: str, port: int) -> None:
        self.store.write_text(session + PORT_SUFFIX, str(port))

    def read_port(self, session: str) -> int | None:
        text = self.store.read_text(session + PORT_SUFFIX)
        if text is None:
            return None
        try:
            return int(text.strip())
        except ValueError:
            return None

    # -- Saved preferences ---------------------------------------------------

    def save_backend(self, session: str, backend: str) -> None:
        self.store.write_text(session + BACKEND_SUFFIX, backend)

    def get_backend(self, session: str) -> str:
        value = (self.store.read_text(session + BACKEND_SUFFIX) or "").strip()
        return value or DEFAULT_BACKEND

    def save_headed(self, session: str, headed: bool) -> None:
        self.store.write_text(session + HEADED_SUFFIX, "true" if headed else "false")

    def get_headed(self, session: str) -> bool:
        return (self.store.read_text(session + HEADED_SUFFIX) or "").strip() == "true"

    def save_user_data_dir(self, session: str, user_data_dir: str) -> None:
        self.store.write_text(session + USER_DATA_DIR_SUFFIX, user_data_dir)

    def get_user_data_dir(self, session: str) -> str:
        return (self.store.read_text(session + USER_DATA_DIR_SUFFIX) or "").strip()

    def save_preferences(
        self, session: str, backend: str, headed: bool, user_data_dir: str
    ) -> None:
        """Persist the configuration a new daemon is about to be started with."""
        self.save_backend(session, backend)
        self.save_headed(session, headed)
        self.save_user_data_dir(session, user_data_dir)

    # -- Liveness ------------------------------------------------------------

    def is_running(self, session: str) -> bool:
        """Return ``True`` only if the daemon for *session* is fully up.

        Requires a parseable PID file, a live process behind it, and the
        listen-address artifact.  Any partial state removes the stale PID
        file as a side effect.
        """
        pid = self.read_pid(session)
        if pid is None:
            return False
        if not self.is_process_alive(pid):
            logger.debug("Removing stale PID file for %r (pid %d gone)", session, pid)
            self.store.remove(session + PID_SUFFIX)
            return False
        if not self.store.exists(session + self._address_suffix):
            logger.debug("Removing PID file for %r: no listen address", session)
            self.store.remove(session + PID_SUFFIX)
            return False
        return True

    def list_running(self) -> list[str]:
        """Return the names of all sessions with a live daemon."""
        suffix = self._address_suffix
        sessions: list[str] = []
        for name in self.store.names():
            if not name.endswith(suffix):
                continue
            session = name[: -len(suffix)]
            if session and self.is_running(session):
                sessions.append(session)
        return sessions

    def needs_restart(
        self,
        session: str,
        *,
        backend: str,
        backend_specified: bool,
        user_data_dir: str,
        headed: bool,
        action: str,
    ) -> bool:
        """Return ``True`` if a running daemon's configuration differs from the request.

        The headed flag only matters for launch-type actions; other commands
        reuse whatever window mode the daemon already has.
        """
        if backend_specified and self.get_backend(session) != backend:
            return True
        if user_data_dir and self.get_user_data_dir(session) != user_data_dir:
            return True
        if action in LAUNCH_ACTIONS and self.get_headed(session) != headed:
            return True
        return False

    # -- Cleanup -------------------------------------------------------------

    def remove_address(self, session: str) -> None:
        """Remove a leftover socket or port file before binding again."""
        self.store.remove(session + SOCKET_SUFFIX)
        self.store.remove(session + PORT_SUFFIX)

    def cleanup(self, session: str) -> None:
        """Remove the transient runtime artifacts (PID, socket, port).

        Saved preferences and the log are left in place for the next launch.
        """
        for suffix in (PID_SUFFIX, SOCKET_SUFFIX, PORT_SUFFIX):
            self.store.remove(session + suffix)
