"""Argparse-based CLI for agent-browser.

Each invocation resolves the session, makes sure a daemon with the requested
configuration is running, sends one command and prints the response.  The
``session`` and ``daemon`` commands are handled locally; a bare ``daemon``
runs the daemon in the foreground and is how the detached child starts.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Any

from agent_browser.client import (
    DaemonClient,
    DaemonConnectionError,
    DaemonNotRunningError,
    ensure_daemon,
    stop_all_daemons,
    stop_daemon,
)
from agent_browser.config import AgentBrowserSettings, get_version, load_config
from agent_browser.daemon import DaemonStartError, run_daemon
from agent_browser.protocol import (
    BackCommand,
    BaseCommand,
    BoundingBoxCommand,
    CheckCommand,
    ClearCommand,
    ClickCommand,
    CloseCommand,
    ContentCommand,
    Cookie,
    CookiesClearCommand,
    CookiesGetCommand,
    CookiesSetCommand,
    CountCommand,
    DblClickCommand,
    DragCommand,
    EvaluateCommand,
    FillCommand,
    FocusCommand,
    ForwardCommand,
    GetAttributeCommand,
    GetByLabelCommand,
    GetByPlaceholderCommand,
    GetByRoleCommand,
    GetByTestIdCommand,
    GetByTextCommand,
    GetTextCommand,
    HoverCommand,
    InnerHtmlCommand,
    InputValueCommand,
    InsertTextCommand,
    IsCheckedCommand,
    IsEnabledCommand,
    IsVisibleCommand,
    KeyDownCommand,
    KeyUpCommand,
    MouseDownCommand,
    MouseMoveCommand,
    MouseUpCommand,
    NavigateCommand,
    NthCommand,
    PdfCommand,
    PressCommand,
    ReloadCommand,
    Response,
    ScreenshotCommand,
    ScrollCommand,
    ScrollIntoViewCommand,
    SelectCommand,
    SnapshotCommand,
    StorageClearCommand,
    StorageGetCommand,
    StorageSetCommand,
    TabCloseCommand,
    TabListCommand,
    TabNewCommand,
    TabSwitchCommand,
    TitleCommand,
    TypeCommand,
    UncheckCommand,
    UploadCommand,
    UrlCommand,
    ViewportCommand,
    WaitCommand,
    WaitForLoadStateCommand,
    WaitForUrlCommand,
    WheelCommand,
    error_response,
)
from agent_browser.session import SessionRegistry, resolve_session_name

# Keys shown verbatim (first match wins) instead of the whole data object.
_PLAIN_OUTPUT_KEYS = ("snapshot", "text", "html", "value", "url", "title")


# ---------------------------------------------------------------------------
# Subparser registration
# ---------------------------------------------------------------------------


def _add(
    subparsers: argparse._SubParsersAction,
    name: str,
    help: str,
    aliases: tuple[str, ...] = (),
) -> argparse.ArgumentParser:
    """Add a subcommand whose canonical name survives argparse aliasing."""
    p = subparsers.add_parser(name, help=help, aliases=list(aliases))
    p.set_defaults(command=name)
    return p


def _register_subcommands(subparsers: argparse._SubParsersAction) -> None:
    """Register every subcommand on *subparsers*."""

    # ── Navigation ─────────────────────────────────────────────────────

    p = _add(subparsers, "open", "Navigate to a URL", aliases=("goto", "navigate"))
    p.add_argument("url", help="URL to open")
    p.add_argument(
        "--wait-until",
        choices=["load", "domcontentloaded", "networkidle", "commit"],
        default=None,
        help="Load state to wait for (default: load)",
    )

    _add(subparsers, "back", "Go back in history")
    _add(subparsers, "forward", "Go forward in history")
    _add(subparsers, "reload", "Reload the page")
    _add(subparsers, "close", "Close the browser and stop the daemon", aliases=("quit", "exit"))

    p = _add(subparsers, "viewport", "Resize the viewport")
    p.add_argument("width", type=int)
    p.add_argument("height", type=int)

    # ── Interaction ────────────────────────────────────────────────────

    p = _add(subparsers, "click", "Click an element")
    p.add_argument("selector", help="Ref (@e1) or selector")
    p.add_argument("--button", choices=["left", "right", "middle"], default=None)
    p.add_argument("--count", type=int, default=None, help="Click count")

    p = _add(subparsers, "dblclick", "Double-click an element")
    p.add_argument("selector", help="Ref (@e1) or selector")

    p = _add(subparsers, "type", "Type text into an element, key by key")
    p.add_argument("selector", help="Ref (@e1) or selector")
    p.add_argument("text", help="Text to type")
    p.add_argument("--delay", type=int, default=None, help="Delay between keys (ms)")
    p.add_argument("--clear", action="store_true", default=False, help="Clear first")

    p = _add(subparsers, "fill", "Clear an input and fill it")
    p.add_argument("selector", help="Ref (@e1) or selector")
    p.add_argument("value", help="Value to fill")

    p = _add(subparsers, "clear", "Clear an input")
    p.add_argument("selector", help="Ref (@e1) or selector")

    p = _add(subparsers, "press", "Press a key, optionally on an element", aliases=("key",))
    p.add_argument("key", help="Key name, e.g. Enter or Control+a")
    p.add_argument("selector", nargs="?", default=None, help="Ref (@e1) or selector")

    p = _add(subparsers, "keydown", "Hold a key down")
    p.add_argument("key")

    p = _add(subparsers, "keyup", "Release a key")
    p.add_argument("key")

    p = _add(subparsers, "inserttext", "Insert text without key events")
    p.add_argument("text")

    for name, help_text in (
        ("hover", "Hover over an element"),
        ("focus", "Focus an element"),
        ("check", "Check a checkbox"),
        ("uncheck", "Uncheck a checkbox"),
    ):
        p = _add(subparsers, name, help_text)
        p.add_argument("selector", help="Ref (@e1) or selector")

    p = _add(subparsers, "select", "Select option(s) in a dropdown")
    p.add_argument("selector", help="Ref (@e1) or selector")
    p.add_argument("values", nargs="+", help="Option value(s)")

    p = _add(subparsers, "upload", "Set the files of a file input")
    p.add_argument("selector", help="Ref (@e1) or selector")
    p.add_argument("files", nargs="+", help="File path(s)")

    p = _add(subparsers, "drag", "Drag one element onto another")
    p.add_argument("source", help="Source ref or selector")
    p.add_argument("target", help="Target ref or selector")

    p = _add(subparsers, "mouse", "Low-level mouse input")
    p.add_argument("operation", choices=["move", "down", "up", "wheel"])
    p.add_argument("values", nargs="*", help="move: X Y; down/up: [BUTTON]; wheel: DY [DX]")

    # ── Scrolling ──────────────────────────────────────────────────────

    p = _add(subparsers, "scroll", "Scroll the page or an element")
    p.add_argument(
        "direction", nargs="?", default="down", choices=["up", "down", "left", "right"]
    )
    p.add_argument("amount", nargs="?", type=int, default=100, help="Pixels (default: 100)")
    p.add_argument("--selector", default=None, help="Scroll inside this element")

    p = _add(subparsers, "scrollintoview", "Scroll an element into view", aliases=("scrollinto",))
    p.add_argument("selector", help="Ref (@e1) or selector")

    # ── Capture ────────────────────────────────────────────────────────

    p = _add(subparsers, "screenshot", "Take a screenshot")
    p.add_argument("path", nargs="?", default=None, help="Output file (default: base64)")
    p.add_argument("-f", "--full", action="store_true", default=False, help="Full page")
    p.add_argument("--selector", default=None, help="Only this element")
    p.add_argument("--format", choices=["png", "jpeg"], default=None)
    p.add_argument("--quality", type=int, default=None, help="JPEG quality (default: 80)")

    p = _add(subparsers, "pdf", "Save the page as PDF")
    p.add_argument("path", help="Output file")
    p.add_argument("--format", default=None, help="Paper format, e.g. A4 or Letter")

    p = _add(subparsers, "snapshot", "Accessibility snapshot with element refs")
    p.add_argument(
        "-i", "--interactive", action="store_true", default=False,
        help="Only interactive elements",
    )
    p.add_argument(
        "-c", "--compact", action="store_true", default=False,
        help="Drop unnamed structural wrappers",
    )
    p.add_argument("-d", "--depth", type=int, default=0, help="Maximum depth (0 = unlimited)")
    p.add_argument("-s", "--selector", dest="scope", default=None, help="Scope to a selector")

    p = _add(subparsers, "eval", "Evaluate JavaScript in the page")
    p.add_argument("script", help="JavaScript expression or function")

    p = _add(subparsers, "content", "Page HTML, or the outer HTML of an element")
    p.add_argument("selector", nargs="?", default=None)

    # ── Waiting ────────────────────────────────────────────────────────

    p = _add(subparsers, "wait", "Wait for an element, a URL, a load state or a delay")
    p.add_argument("target", nargs="?", default=None, help="Selector, or milliseconds")
    p.add_argument(
        "--state", choices=["attached", "detached", "visible", "hidden"], default=None
    )
    p.add_argument("--timeout", type=int, default=None, help="Timeout in ms")
    p.add_argument("--url", default=None, help="Wait for the URL to match")
    p.add_argument(
        "--load", choices=["load", "domcontentloaded", "networkidle"], default=None,
        help="Wait for a load state",
    )

    # ── Queries ────────────────────────────────────────────────────────

    p = _add(subparsers, "get", "Read information from the page")
    get_sub = p.add_subparsers(dest="what", required=True)
    for what in ("text", "html", "value", "count", "box"):
        gp = get_sub.add_parser(what)
        gp.add_argument("selector", help="Ref (@e1) or selector")
    gp = get_sub.add_parser("attr")
    gp.add_argument("selector", help="Ref (@e1) or selector")
    gp.add_argument("attribute", help="Attribute name")
    get_sub.add_parser("title")
    get_sub.add_parser("url")

    p = _add(subparsers, "is", "Check element state")
    p.add_argument("state", choices=["visible", "enabled", "checked"])
    p.add_argument("selector", help="Ref (@e1) or selector")

    p = _add(subparsers, "find", "Find an element semantically and act on it")
    p.add_argument("by", choices=["role", "text", "label", "placeholder", "testid", "nth"])
    p.add_argument("query", help="Role, text, label, placeholder, test id or selector")
    p.add_argument("rest", nargs="+", help="[INDEX (nth only)] ACTION [VALUE]")
    p.add_argument("--name", default=None, help="Accessible name (role only)")
    p.add_argument("--exact", action="store_true", default=False, help="Exact text match")

    # ── Cookies and storage ────────────────────────────────────────────

    p = _add(subparsers, "cookies", "List, set or clear cookies")
    p.add_argument("operation", nargs="?", default="get", choices=["get", "set", "clear"])
    p.add_argument("name", nargs="?", default=None)
    p.add_argument("value", nargs="?", default=None)
    p.add_argument("--url", default=None)
    p.add_argument("--domain", default=None)
    p.add_argument("--path", default=None)

    p = _add(subparsers, "storage", "Read or modify localStorage / sessionStorage")
    p.add_argument("kind", choices=["local", "session"])
    p.add_argument("args", nargs="*", help="[KEY] | set KEY VALUE | clear")

    # ── Tabs ───────────────────────────────────────────────────────────

    p = _add(subparsers, "tab", "List, open, close or switch tabs")
    p.add_argument("args", nargs="*", help="list | new [URL] | close [N] | N")

    # ── Sessions and daemons ───────────────────────────────────────────

    p = _add(subparsers, "session", "Show the current session or list running ones")
    p.add_argument("operation", nargs="?", default=None, choices=["list"])

    p = _add(subparsers, "daemon", "Run the session daemon, or stop daemons")
    p.add_argument("operation", nargs="?", default=None, choices=["stop"])
    p.add_argument("--all", action="store_true", default=False, help="Stop every daemon")
    p.add_argument("--target", dest="stop_session", default=None, help="Session to stop")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-browser",
        description="Browser automation for AI agents",
    )

    # Global options
    parser.add_argument("-s", "--session", default=None, help="Session name")
    parser.add_argument("--json", action="store_true", default=False, help="Raw JSON output")
    parser.add_argument(
        "--headed", "--head", action="store_true", default=False,
        help="Show the browser window",
    )
    parser.add_argument(
        "-b", "--backend", choices=["patchright", "playwright"], default=None,
        help="Automation backend (default: saved, else patchright)",
    )
    parser.add_argument(
        "--user-data-dir", "--profile", dest="user_data_dir", default=None,
        help="Persistent browser profile directory",
    )
    parser.add_argument("-l", "--locale", default=None, help="Browser locale, e.g. en-US")
    parser.add_argument("--config", default=None, help="Path to a JSON config file")
    parser.add_argument("--verbose", action="store_true", default=False, help="Log to stderr")
    parser.add_argument("-v", "--version", action="store_true", help="Print version")

    subparsers = parser.add_subparsers(dest="command")
    _register_subcommands(subparsers)
    return parser


# ---------------------------------------------------------------------------
# Command building
# ---------------------------------------------------------------------------


def _int(value: str, what: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{what} must be a number, got {value!r}") from None


def _build_find(args: argparse.Namespace, cid: str) -> BaseCommand:
    rest = list(args.rest)
    if args.by == "nth":
        if len(rest) < 2:
            raise ValueError("usage: find nth SELECTOR INDEX ACTION [VALUE]")
        index = _int(rest.pop(0), "index")
        value = rest[1] if len(rest) > 1 else None
        return NthCommand(id=cid, selector=args.query, index=index, subaction=rest[0], value=value)

    subaction = rest[0]
    value = rest[1] if len(rest) > 1 else None
    if args.by == "role":
        return GetByRoleCommand(
            id=cid, role=args.query, name=args.name, subaction=subaction, value=value
        )
    if args.by == "text":
        return GetByTextCommand(id=cid, text=args.query, exact=args.exact, subaction=subaction)
    if args.by == "label":
        return GetByLabelCommand(id=cid, label=args.query, subaction=subaction, value=value)
    if args.by == "placeholder":
        return GetByPlaceholderCommand(
            id=cid, placeholder=args.query, subaction=subaction, value=value
        )
    return GetByTestIdCommand(id=cid, test_id=args.query, subaction=subaction, value=value)


def _build_get(args: argparse.Namespace, cid: str) -> BaseCommand:
    what = args.what
    if what == "text":
        return GetTextCommand(id=cid, selector=args.selector)
    if what == "html":
        return InnerHtmlCommand(id=cid, selector=args.selector)
    if what == "value":
        return InputValueCommand(id=cid, selector=args.selector)
    if what == "attr":
        return GetAttributeCommand(id=cid, selector=args.selector, attribute=args.attribute)
    if what == "count":
        return CountCommand(id=cid, selector=args.selector)
    if what == "box":
        return BoundingBoxCommand(id=cid, selector=args.selector)
    if what == "title":
        return TitleCommand(id=cid)
    return UrlCommand(id=cid)


def _build_wait(args: argparse.Namespace, cid: str) -> BaseCommand:
    if args.url:
        return WaitForUrlCommand(id=cid, url=args.url, timeout=args.timeout)
    if args.load:
        return WaitForLoadStateCommand(id=cid, state=args.load, timeout=args.timeout)
    if args.target is not None and args.target.isdigit():
        return WaitCommand(id=cid, timeout=int(args.target))
    return WaitCommand(id=cid, selector=args.target, timeout=args.timeout, state=args.state)


def _build_mouse(args: argparse.Namespace, cid: str) -> BaseCommand:
    values = args.values
    if args.operation == "move":
        if len(values) != 2:
            raise ValueError("usage: mouse move X Y")
        return MouseMoveCommand(id=cid, x=float(values[0]), y=float(values[1]))
    if args.operation == "wheel":
        if not values:
            raise ValueError("usage: mouse wheel DY [DX]")
        delta_x = float(values[1]) if len(values) > 1 else 0
        return WheelCommand(id=cid, delta_y=float(values[0]), delta_x=delta_x)
    button = values[0] if values else None
    if args.operation == "down":
        return MouseDownCommand(id=cid, button=button)
    return MouseUpCommand(id=cid, button=button)


def _build_cookies(args: argparse.Namespace, cid: str) -> BaseCommand:
    if args.operation == "clear":
        return CookiesClearCommand(id=cid)
    if args.operation == "set":
        if args.name is None or args.value is None:
            raise ValueError("usage: cookies set NAME VALUE [--url URL] [--domain D]")
        cookie = Cookie(
            name=args.name,
            value=args.value,
            url=args.url,
            domain=args.domain,
            path=args.path,
        )
        return CookiesSetCommand(id=cid, cookies=[cookie])
    return CookiesGetCommand(id=cid, urls=[args.url] if args.url else None)


def _build_storage(args: argparse.Namespace, cid: str) -> BaseCommand:
    rest = list(args.args)
    if rest and rest[0] == "set":
        if len(rest) != 3:
            raise ValueError(f"usage: storage {args.kind} set KEY VALUE")
        return StorageSetCommand(id=cid, storage=args.kind, key=rest[1], value=rest[2])
    if rest and rest[0] == "clear":
        return StorageClearCommand(id=cid, storage=args.kind)
    return StorageGetCommand(id=cid, storage=args.kind, key=rest[0] if rest else None)


def _build_tab(args: argparse.Namespace, cid: str) -> BaseCommand:
    rest = list(args.args)
    if not rest or rest[0] == "list":
        return TabListCommand(id=cid)
    if rest[0] == "new":
        return TabNewCommand(id=cid, url=rest[1] if len(rest) > 1 else None)
    if rest[0] == "close":
        index = _int(rest[1], "tab index") if len(rest) > 1 else None
        return TabCloseCommand(id=cid, index=index)
    return TabSwitchCommand(id=cid, index=_int(rest[0], "tab index"))


def build_command(args: argparse.Namespace, cid: str) -> BaseCommand:
    """Translate parsed CLI arguments into one protocol command.

    Raises ``ValueError`` for argument combinations argparse cannot catch.
    """
    name = args.command

    if name == "open":
        return NavigateCommand(id=cid, url=args.url, wait_until=args.wait_until)
    if name == "back":
        return BackCommand(id=cid)
    if name == "forward":
        return ForwardCommand(id=cid)
    if name == "reload":
        return ReloadCommand(id=cid)
    if name == "close":
        return CloseCommand(id=cid)
    if name == "viewport":
        return ViewportCommand(id=cid, width=args.width, height=args.height)

    if name == "click":
        return ClickCommand(
            id=cid, selector=args.selector, button=args.button, click_count=args.count
        )
    if name == "dblclick":
        return DblClickCommand(id=cid, selector=args.selector)
    if name == "type":
        return TypeCommand(
            id=cid, selector=args.selector, text=args.text, delay=args.delay, clear=args.clear
        )
    if name == "fill":
        return FillCommand(id=cid, selector=args.selector, value=args.value)
    if name == "clear":
        return ClearCommand(id=cid, selector=args.selector)
    if name == "press":
        return PressCommand(id=cid, key=args.key, selector=args.selector)
    if name == "keydown":
        return KeyDownCommand(id=cid, key=args.key)
    if name == "keyup":
        return KeyUpCommand(id=cid, key=args.key)
    if name == "inserttext":
        return InsertTextCommand(id=cid, text=args.text)
    if name == "hover":
        return HoverCommand(id=cid, selector=args.selector)
    if name == "focus":
        return FocusCommand(id=cid, selector=args.selector)
    if name == "check":
        return CheckCommand(id=cid, selector=args.selector)
    if name == "uncheck":
        return UncheckCommand(id=cid, selector=args.selector)
    if name == "select":
        return SelectCommand(id=cid, selector=args.selector, values=args.values)
    if name == "upload":
        return UploadCommand(id=cid, selector=args.selector, files=args.files)
    if name == "drag":
        return DragCommand(id=cid, source=args.source, target=args.target)
    if name == "mouse":
        return _build_mouse(args, cid)

    if name == "scroll":
        return ScrollCommand(
            id=cid, direction=args.direction, amount=args.amount, selector=args.selector
        )
    if name == "scrollintoview":
        return ScrollIntoViewCommand(id=cid, selector=args.selector)

    if name == "screenshot":
        return ScreenshotCommand(
            id=cid,
            path=args.path,
            full_page=args.full,
            selector=args.selector,
            format=args.format,
            quality=args.quality,
        )
    if name == "pdf":
        return PdfCommand(id=cid, path=args.path, format=args.format)
    if name == "snapshot":
        return SnapshotCommand(
            id=cid,
            interactive=args.interactive,
            compact=args.compact,
            max_depth=args.depth,
            selector=args.scope,
        )
    if name == "eval":
        return EvaluateCommand(id=cid, script=args.script)
    if name == "content":
        return ContentCommand(id=cid, selector=args.selector)
    if name == "wait":
        return _build_wait(args, cid)

    if name == "get":
        return _build_get(args, cid)
    if name == "is":
        if args.state == "visible":
            return IsVisibleCommand(id=cid, selector=args.selector)
        if args.state == "enabled":
            return IsEnabledCommand(id=cid, selector=args.selector)
        return IsCheckedCommand(id=cid, selector=args.selector)
    if name == "find":
        return _build_find(args, cid)
    if name == "cookies":
        return _build_cookies(args, cid)
    if name == "storage":
        return _build_storage(args, cid)
    if name == "tab":
        return _build_tab(args, cid)

    raise ValueError(f"unknown command: {name}")


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def print_response(response: Response, json_mode: bool = False) -> None:
    if json_mode:
        print(json.dumps(response.to_wire()))
        return
    if not response.success:
        print(f"Error: {response.error}", file=sys.stderr)
        return

    data = response.data
    if not data:
        print("OK")
        return
    if isinstance(data, dict):
        for key in _PLAIN_OUTPUT_KEYS:
            if key in data:
                value = data[key]
                print(value if isinstance(value, str) else json.dumps(value))
                return
    print(json.dumps(data, indent=2))


def _print_error(json_mode: bool, message: str) -> None:
    if json_mode:
        print(json.dumps(error_response("", message).to_wire()))
    else:
        print(f"Error: {message}", file=sys.stderr)


def _setup_verbose_logging() -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root = logging.getLogger("agent_browser")
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)


# ---------------------------------------------------------------------------
# Local commands
# ---------------------------------------------------------------------------


def _handle_session(args: argparse.Namespace, session: str, registry: SessionRegistry) -> None:
    if args.operation != "list":
        print(session)
        return
    sessions = registry.list_running()
    if not sessions:
        print("No active sessions")
        return
    for name in sessions:
        marker = " (current)" if name == session else ""
        print(f"{name}{marker}")


def _handle_daemon(
    args: argparse.Namespace,
    session: str,
    registry: SessionRegistry,
    settings: AgentBrowserSettings,
    backend: str,
    user_data_dir: str,
    locale: str,
) -> None:
    if args.operation is None:
        run_daemon(session, backend, user_data_dir, locale, settings)
        return

    if args.all:
        results = stop_all_daemons(registry)
        if not results:
            print("No running daemons found")
            return
        for result in results:
            if result.ok:
                print(f"Stopped daemon for session: {result.session}")
            else:
                print(
                    f"Failed to stop daemon for session {result.session}: {result.error}",
                    file=sys.stderr,
                )
        return

    target = args.stop_session or session
    try:
        stop_daemon(target, registry)
    except DaemonNotRunningError as exc:
        print(str(exc))
        return
    print(f"Stopped daemon for session: {target}")


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate handler."""
    parser = build_parser()
    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    if args.version:
        print(get_version())
        return
    if args.command is None:
        parser.print_help()
        sys.exit(1)
    if args.verbose:
        _setup_verbose_logging()

    # 1. Resolve session and configuration
    settings = load_config(args.config)
    session = resolve_session_name(args.session)
    registry = SessionRegistry.from_directory(settings.runtime_dir)

    env_backend = "backend" in settings.model_fields_set
    backend_specified = args.backend is not None or env_backend
    if args.backend:
        backend = args.backend
    elif env_backend:
        backend = settings.backend
    else:
        backend = registry.get_backend(session)
    user_data_dir = args.user_data_dir or settings.user_data_dir
    locale = args.locale or settings.locale
    headed = args.headed or settings.headed

    # 2. Local commands
    if args.command == "session":
        _handle_session(args, session, registry)
        return
    if args.command == "daemon":
        _handle_daemon(args, session, registry, settings, backend, user_data_dir, locale)
        return

    # 3. Build the command before touching the daemon
    try:
        command = build_command(args, str(time.time_ns()))
    except ValueError as exc:
        _print_error(args.json, str(exc))
        sys.exit(1)

    # 4. Make sure the right daemon is up, then send
    try:
        ensure_daemon(
            session,
            registry,
            backend=backend,
            backend_specified=backend_specified,
            headed=headed,
            user_data_dir=user_data_dir,
            locale=locale,
            action=args.command,
            config_path=args.config,
        )
    except DaemonStartError as exc:
        _print_error(args.json, f"failed to start daemon: {exc}")
        sys.exit(1)

    try:
        with DaemonClient(session, registry) as client:
            response = client.send(command)
    except DaemonConnectionError as exc:
        _print_error(args.json, str(exc))
        sys.exit(1)

    print_response(response, json_mode=args.json)
    if not response.success:
        sys.exit(1)
