"""Per-session daemon process.

The daemon owns one browser engine and serves newline-delimited JSON frames
on the session's local address: a Unix domain socket where the platform has
them, otherwise a loopback TCP port recorded in ``<session>.port``.

Each connection is handled on its own task and may send any number of
frames; each frame gets exactly one response frame.  A ``close`` command
closes the browser and then shuts the whole daemon down.

The daemon is started as a detached child process by
``agent_browser.client.start_daemon`` and enters through ``run_daemon``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
import sys

from agent_browser.actions import ActionDispatcher
from agent_browser.config import AgentBrowserSettings, BackendName, load_config
from agent_browser.engine import BrowserEngine, LaunchOptions, create_engine
from agent_browser.protocol import (
    ACTION_TYPES,
    NO_AUTO_LAUNCH_ACTIONS,
    CommandParseError,
    Response,
    error_response,
    parse_command,
    serialize_response,
)
from agent_browser.session import SessionRegistry, port_for_session

logger = logging.getLogger("agent_browser.daemon")

# Let the close response reach the client before tearing down.
CLOSE_FLUSH_DELAY = 0.1
SHUTDOWN_GRACE_PERIOD = 5.0
# setcontent and evaluate frames can carry whole documents.
FRAME_LIMIT = 16 * 1024 * 1024


class DaemonStartError(RuntimeError):
    """The daemon could not bind its address or record its PID."""


class Daemon:
    """Serves one session's commands against a single shared engine.

    Parameters
    ----------
    session:
        Session name; determines the socket, port and PID file locations.
    registry:
        Registry used for artifact paths, saved preferences and cleanup.
    engine:
        The browser engine every command runs against.
    dispatcher:
        Routes parsed commands to handlers; built from *engine* by default.
    user_data_dir, locale:
        Used when the engine is launched implicitly by a non-launch command.
    port:
        TCP port override for platforms without Unix sockets; ``0`` picks a
        free port.  Defaults to ``port_for_session(session)``.
    """

    def __init__(
        self,
        session: str,
        registry: SessionRegistry,
        engine: BrowserEngine,
        dispatcher: ActionDispatcher | None = None,
        user_data_dir: str = "",
        locale: str = "",
        port: int | None = None,
        settings: AgentBrowserSettings | None = None,
        handle_signals: bool = True,
        grace_period: float = SHUTDOWN_GRACE_PERIOD,
    ) -> None:
        self.session = session
        self.registry = registry
        self.engine = engine
        self.settings = settings or AgentBrowserSettings()
        self.dispatcher = dispatcher or ActionDispatcher(engine, self.settings)
        self.user_data_dir = user_data_dir
        self.locale = locale
        self.port = port
        self.handle_signals = handle_signals
        self.grace_period = grace_period

        self.bound_port: int | None = None
        self._server: asyncio.AbstractServer | None = None
        self._connections: set[asyncio.Task] = set()
        self._stopping = False
        self._stopped = asyncio.Event()
        self._stop_task: asyncio.Task | None = None
        self._signals_installed: list[signal.Signals] = []

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Bind the session address, write the PID file and start accepting."""
        registry = self.registry
        registry.remove_address(self.session)

        try:
            if registry.use_unix_socket:
                address = str(registry.socket_path(self.session))
                self._server = await asyncio.start_unix_server(
                    self._on_connection, path=address, limit=FRAME_LIMIT
                )
            else:
                port = port_for_session(self.session) if self.port is None else self.port
                self._server = await asyncio.start_server(
                    self._on_connection, "127.0.0.1", port, limit=FRAME_LIMIT
                )
                self.bound_port = self._server.sockets[0].getsockname()[1]
                address = f"127.0.0.1:{self.bound_port}"
                registry.write_port(self.session, self.bound_port)
        except OSError as exc:
            raise DaemonStartError(f"failed to listen: {exc}") from exc

        try:
            registry.write_pid(self.session, os.getpid())
        except OSError as exc:
            self._server.close()
            await self._server.wait_closed()
            registry.remove_address(self.session)
            raise DaemonStartError(f"failed to write PID file: {exc}") from exc

        if self.handle_signals:
            self._install_signal_handlers()
        logger.info("Daemon for session %r listening on %s", self.session, address)

    async def wait(self) -> None:
        """Block until the daemon has fully stopped."""
        await self._stopped.wait()

    def request_stop(self) -> None:
        """Schedule ``stop()``; safe to call from signal handlers and handlers."""
        if self._stop_task is None and not self._stopping:
            self._stop_task = asyncio.ensure_future(self.stop())

    async def stop(self) -> None:
        """Shut down; a second call while already stopping does nothing."""
        if self._stopping:
            return
        self._stopping = True
        logger.info("Stopping daemon for session %r", self.session)

        if self._server is not None:
            self._server.close()

        current = asyncio.current_task()
        pending = [task for task in self._connections if task is not current]
        if pending:
            _, stragglers = await asyncio.wait(pending, timeout=self.grace_period)
            for task in stragglers:
                task.cancel()
            if stragglers:
                logger.debug("Cancelled %d idle connection(s)", len(stragglers))
                await asyncio.gather(*stragglers, return_exceptions=True)

        if self._server is not None:
            await self._server.wait_closed()

        try:
            await self.engine.close()
        except Exception:
            logger.warning("Error while closing engine", exc_info=True)

        self.registry.cleanup(self.session)
        self._remove_signal_handlers()
        logger.info("Daemon for session %r stopped", self.session)
        self._stopped.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # No loop signal support (Windows, or not the main thread).
                logger.debug("Cannot install handler for %s", sig.name)
                continue
            self._signals_installed.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    # -- Connections ---------------------------------------------------------

    async def _on_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        try:
            await self.handle_connection(reader, writer)
        finally:
            if task is not None:
                self._connections.discard(task)

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Serve frames from one client until it disconnects or closes the daemon."""
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue

                response, close_requested = await self._process_frame(line)
                writer.write(self._encode(response))
                await writer.drain()

                if close_requested:
                    logger.info("Close command received, shutting down")
                    await asyncio.sleep(CLOSE_FLUSH_DELAY)
                    self.request_stop()
                    break
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            logger.debug("Client went away: %s", exc)
        except ValueError as exc:
            # StreamReader.readline: frame longer than FRAME_LIMIT.
            logger.warning("Dropping connection: %s", exc)
            writer.write(self._encode(error_response("", f"frame too large: {exc}")))
            with contextlib.suppress(ConnectionError):
                await writer.drain()
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()

    async def _process_frame(self, line: bytes) -> tuple[Response, bool]:
        try:
            command = parse_command(line)
        except CommandParseError as exc:
            logger.warning("Rejected frame: %s", exc)
            return error_response("", str(exc)), False

        logger.debug("Received %s command (id=%s)", command.action, command.id)
        if (
            command.action in ACTION_TYPES
            and command.action not in NO_AUTO_LAUNCH_ACTIONS
            and not self.engine.is_launched()
        ):
            await self._auto_launch()

        response = await self.dispatcher.dispatch(command)
        if not response.success:
            logger.warning("Command %r failed: %s", command.action, response.error)
        return response, command.action == "close"

    async def _auto_launch(self) -> None:
        options = LaunchOptions(
            headless=not self.registry.get_headed(self.session),
            viewport=self.settings.viewport,
            browser=self.settings.browser,
            executable_path=self.settings.executable_path,
            user_data_dir=self.user_data_dir or None,
            locale=self.locale or None,
        )
        try:
            await self.engine.launch(options)
        except Exception:
            # The command itself will report the browser as not launched.
            logger.exception("Auto-launch failed")

    @staticmethod
    def _encode(response: Response) -> bytes:
        try:
            return serialize_response(response)
        except Exception as exc:
            fallback = {
                "id": "",
                "success": False,
                "error": f"failed to serialize response: {exc}",
            }
            return json.dumps(fallback).encode("utf-8") + b"\n"


# ---------------------------------------------------------------------------
# Process entry point
# ---------------------------------------------------------------------------


def _setup_logging(log_path: str | os.PathLike[str]) -> None:
    """Send all logging, stdout and stderr of the daemon process to *log_path*."""
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    # Stray print() calls and unhandled tracebacks land in the same file.
    sys.stdout = open(log_path, "a", encoding="utf-8")  # noqa: SIM115
    sys.stderr = sys.stdout


async def _serve(
    session: str,
    backend: BackendName,
    registry: SessionRegistry,
    settings: AgentBrowserSettings,
    user_data_dir: str,
    locale: str,
) -> None:
    engine = create_engine(backend, settings)
    daemon = Daemon(
        session,
        registry,
        engine,
        user_data_dir=user_data_dir,
        locale=locale,
        settings=settings,
    )
    await daemon.start()
    await daemon.wait()


def run_daemon(
    session: str,
    backend: BackendName,
    user_data_dir: str = "",
    locale: str = "",
    settings: AgentBrowserSettings | None = None,
) -> None:
    """Entry point of the detached daemon process."""
    settings = settings or load_config()
    registry = SessionRegistry.from_directory(settings.runtime_dir)
    _setup_logging(registry.log_path(session))
    logger.info(
        "Daemon starting for session %r (pid=%d, backend=%s)",
        session,
        os.getpid(),
        backend,
    )
    try:
        asyncio.run(_serve(session, backend, registry, settings, user_data_dir, locale))
    except Exception:
        logger.exception("Daemon crashed")
        raise
