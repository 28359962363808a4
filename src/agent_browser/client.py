"""Synchronous client for agent-browser daemons.

Connects to a session's daemon over its Unix domain socket (or loopback TCP
port), sends newline-delimited JSON commands and reads one response line per
command.  Also provides the lifecycle helpers the CLI uses: starting a
detached daemon, stopping one or all daemons, and restarting a daemon whose
saved configuration no longer matches the request.
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import sys
import time
from dataclasses import dataclass

from agent_browser.daemon import DaemonStartError
from agent_browser.protocol import (
    BaseCommand,
    CloseCommand,
    Response,
    parse_response,
    serialize_command,
)
from agent_browser.session import SessionRegistry, port_for_session

logger = logging.getLogger("agent_browser.client")

DEFAULT_TIMEOUT = 120.0
START_TIMEOUT = 15.0
STOP_POLL_ATTEMPTS = 50
STOP_POLL_INTERVAL = 0.1
RESTART_DELAY = 0.5


class DaemonConnectionError(ConnectionError):
    """The daemon could not be reached, or hung up mid-exchange."""


class DaemonNotRunningError(RuntimeError):
    """A stop was requested for a session without a live daemon."""


def _receive_line(sock: socket.socket, buffer_size: int = 65536) -> bytes:
    """Read from *sock* until a full newline-terminated frame has arrived.

    Snapshots and screenshots can span many ``recv`` calls.
    """
    data = b""
    while b"\n" not in data:
        chunk = sock.recv(buffer_size)
        if not chunk:
            break
        data += chunk
    line, _, _ = data.partition(b"\n")
    if not line.strip():
        raise DaemonConnectionError("daemon closed the connection without responding")
    return line


class DaemonClient:
    """One connection to a session's daemon; usable as a context manager."""

    def __init__(
        self,
        session: str,
        registry: SessionRegistry,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.session = session
        self.registry = registry
        self.timeout = timeout
        self._sock: socket.socket | None = None

    def connect(self) -> socket.socket:
        try:
            if self.registry.use_unix_socket:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
                try:
                    sock.settimeout(self.timeout)
                    sock.connect(str(self.registry.socket_path(self.session)))
                except OSError:
                    sock.close()
                    raise
            else:
                port = self.registry.read_port(self.session)
                if port is None:
                    port = port_for_session(self.session)
                sock = socket.create_connection(("127.0.0.1", port), timeout=self.timeout)
        except OSError as exc:
            raise DaemonConnectionError(f"failed to connect to daemon: {exc}") from exc
        self._sock = sock
        return sock

    def send(self, command: BaseCommand) -> Response:
        """Send *command* and wait for its response."""
        return self.send_raw(serialize_command(command))

    def send_raw(self, frame: str | bytes) -> Response:
        """Send one already-encoded frame body and parse the reply."""
        sock = self._sock if self._sock is not None else self.connect()
        if isinstance(frame, str):
            frame = frame.encode("utf-8")
        try:
            sock.sendall(frame.rstrip(b"\n") + b"\n")
            line = _receive_line(sock)
        except DaemonConnectionError:
            raise
        except socket.timeout as exc:
            raise DaemonConnectionError(
                f"timed out after {self.timeout}s waiting for daemon"
            ) from exc
        except OSError as exc:
            raise DaemonConnectionError(f"connection to daemon lost: {exc}") from exc
        return parse_response(line)

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> DaemonClient:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------


def daemon_command(
    session: str,
    backend: str,
    user_data_dir: str = "",
    locale: str = "",
    config_path: str | None = None,
) -> list[str]:
    """Build the argv of a detached daemon; the child re-parses it itself."""
    argv = [sys.executable, "-m", "agent_browser", "--session", session, "--backend", backend]
    if user_data_dir:
        argv += ["--user-data-dir", user_data_dir]
    if locale:
        argv += ["--locale", locale]
    if config_path:
        argv += ["--config", config_path]
    argv.append("daemon")
    return argv


def start_daemon(
    session: str,
    registry: SessionRegistry,
    backend: str,
    user_data_dir: str = "",
    locale: str = "",
    config_path: str | None = None,
    timeout: float = START_TIMEOUT,
) -> None:
    """Start the daemon for *session* as a detached subprocess.

    Waits up to *timeout* seconds for the daemon to report itself running
    (PID file plus listen address).  Does nothing if one is already running.

    Raises
    ------
    DaemonStartError
        If the child exits early or does not come up in time.
    """
    if registry.is_running(session):
        return
    registry.cleanup(session)

    # The daemon configures logging to <session>.log itself.
    proc = subprocess.Popen(
        daemon_command(session, backend, user_data_dir, locale, config_path),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    logger.debug("Spawned daemon for %r (pid %d)", session, proc.pid)

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if registry.is_running(session):
            return
        returncode = proc.poll()
        if returncode is not None:
            raise DaemonStartError(
                f"daemon exited with status {returncode}; "
                f"see {registry.log_path(session)}"
            )
        time.sleep(0.1)
    raise DaemonStartError(
        f"daemon did not start within {timeout}s; see {registry.log_path(session)}"
    )


def _terminate(pid: int) -> None:
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pass


def stop_daemon(session: str, registry: SessionRegistry) -> None:
    """Ask the daemon for *session* to close, killing it if it will not listen.

    Raises
    ------
    DaemonNotRunningError
        If no live daemon exists for *session*.
    """
    pid = registry.read_pid(session)
    if pid is None or not registry.is_running(session):
        raise DaemonNotRunningError(f"daemon not running for session: {session}")

    try:
        with DaemonClient(session, registry, timeout=STOP_POLL_ATTEMPTS * STOP_POLL_INTERVAL) as client:
            client.send(CloseCommand(id="stop"))
    except DaemonConnectionError as exc:
        logger.warning("Could not reach daemon for %r (%s), killing pid %d", session, exc, pid)
        _terminate(pid)

    for _ in range(STOP_POLL_ATTEMPTS):
        if not registry.is_process_alive(pid):
            break
        time.sleep(STOP_POLL_INTERVAL)
    else:
        logger.warning("Daemon for %r did not exit, sending SIGTERM", session)
        _terminate(pid)

    registry.cleanup(session)


@dataclass
class StopResult:
    session: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def stop_all_daemons(registry: SessionRegistry) -> list[StopResult]:
    """Stop every running daemon; one failure does not stop the rest."""
    results: list[StopResult] = []
    for session in registry.list_running():
        try:
            stop_daemon(session, registry)
            results.append(StopResult(session))
        except (DaemonNotRunningError, OSError) as exc:
            results.append(StopResult(session, str(exc)))
    return results


def ensure_daemon(
    session: str,
    registry: SessionRegistry,
    *,
    backend: str,
    backend_specified: bool,
    headed: bool,
    user_data_dir: str = "",
    locale: str = "",
    action: str = "",
    config_path: str | None = None,
    timeout: float = START_TIMEOUT,
) -> None:
    """Make sure a daemon with the requested configuration serves *session*.

    A running daemon whose saved backend, user-data directory or (for
    launch-type actions) headed flag differs from the request is stopped
    first.  Preferences are saved before a new daemon starts so that later
    calls can compare against them.
    """
    if registry.is_running(session) and registry.needs_restart(
        session,
        backend=backend,
        backend_specified=backend_specified,
        user_data_dir=user_data_dir,
        headed=headed,
        action=action,
    ):
        logger.info("Configuration changed, restarting daemon for %r", session)
        try:
            stop_daemon(session, registry)
        except DaemonNotRunningError:
            pass
        time.sleep(RESTART_DELAY)

    if registry.is_running(session):
        return

    registry.save_preferences(session, backend, headed, user_data_dir)
    start_daemon(
        session,
        registry,
        backend,
        user_data_dir=user_data_dir,
        locale=locale,
        config_path=config_path,
        timeout=timeout,
    )
