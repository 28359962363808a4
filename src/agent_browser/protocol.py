"""Wire protocol between the agent-browser client and its daemon.

Every request and every response is one UTF-8 JSON document terminated by a
single newline (a *frame*).  Requests carry ``id`` and ``action`` plus the
action's own fields, spelled in camelCase on the wire; responses are
``{"id", "success", "data"?, "error"?}``.

Parsing is two-phase: the envelope (``id`` and ``action``) is checked first,
then the whole frame is validated against the command model registered for
that action in ``ACTION_TYPES``.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from pydantic_core import to_jsonable_python


class CommandParseError(ValueError):
    """A request frame could not be turned into a command."""


# ---------------------------------------------------------------------------
# Command models
# ---------------------------------------------------------------------------


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Viewport(_WireModel):
    width: int
    height: int


class Cookie(_WireModel):
    name: str
    value: str
    url: str | None = None
    domain: str | None = None
    path: str | None = None
    expires: float | None = None
    http_only: bool | None = None
    secure: bool | None = None
    same_site: Literal["Strict", "Lax", "None"] | None = None


class BaseCommand(_WireModel):
    id: str
    action: str


class _SelectorCommand(BaseCommand):
    selector: str


class LaunchCommand(BaseCommand):
    action: Literal["launch"] = "launch"
    headless: bool | None = None
    viewport: Viewport | None = None
    browser: Literal["chromium", "firefox", "webkit"] | None = None
    headers: dict[str, str] | None = None
    executable_path: str | None = None
    cdp_port: int | None = None
    user_data_dir: str | None = None
    locale: str | None = None


class NavigateCommand(BaseCommand):
    action: Literal["navigate"] = "navigate"
    url: str
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] | None = None
    headers: dict[str, str] | None = None


# -- Interaction -------------------------------------------------------------


class ClickCommand(_SelectorCommand):
    action: Literal["click"] = "click"
    button: Literal["left", "right", "middle"] | None = None
    click_count: int | None = None
    delay: int | None = None


class DblClickCommand(_SelectorCommand):
    action: Literal["dblclick"] = "dblclick"


class TypeCommand(_SelectorCommand):
    action: Literal["type"] = "type"
    text: str
    delay: int | None = None
    clear: bool = False


class FillCommand(_SelectorCommand):
    action: Literal["fill"] = "fill"
    value: str


class ClearCommand(_SelectorCommand):
    action: Literal["clear"] = "clear"


class CheckCommand(_SelectorCommand):
    action: Literal["check"] = "check"


class UncheckCommand(_SelectorCommand):
    action: Literal["uncheck"] = "uncheck"


class PressCommand(BaseCommand):
    action: Literal["press"] = "press"
    key: str
    selector: str | None = None


class KeyDownCommand(BaseCommand):
    action: Literal["keydown"] = "keydown"
    key: str


class KeyUpCommand(BaseCommand):
    action: Literal["keyup"] = "keyup"
    key: str


class InsertTextCommand(BaseCommand):
    action: Literal["inserttext"] = "inserttext"
    text: str


class HoverCommand(_SelectorCommand):
    action: Literal["hover"] = "hover"


class FocusCommand(_SelectorCommand):
    action: Literal["focus"] = "focus"


class SelectCommand(_SelectorCommand):
    action: Literal["select"] = "select"
    values: list[str]


class UploadCommand(_SelectorCommand):
    action: Literal["upload"] = "upload"
    files: list[str]


class DragCommand(BaseCommand):
    action: Literal["drag"] = "drag"
    source: str
    target: str


# -- Scrolling and raw input -------------------------------------------------


class ScrollCommand(BaseCommand):
    action: Literal["scroll"] = "scroll"
    selector: str | None = None
    x: int | None = None
    y: int | None = None
    direction: Literal["up", "down", "left", "right"] | None = None
    amount: int | None = None


class ScrollIntoViewCommand(_SelectorCommand):
    action: Literal["scrollintoview"] = "scrollintoview"


class WheelCommand(BaseCommand):
    action: Literal["wheel"] = "wheel"
    delta_x: float = 0
    delta_y: float = 0
    selector: str | None = None


class MouseMoveCommand(BaseCommand):
    action: Literal["mousemove"] = "mousemove"
    x: float
    y: float


class MouseDownCommand(BaseCommand):
    action: Literal["mousedown"] = "mousedown"
    button: Literal["left", "right", "middle"] | None = None


class MouseUpCommand(BaseCommand):
    action: Literal["mouseup"] = "mouseup"
    button: Literal["left", "right", "middle"] | None = None


# -- Capture -----------------------------------------------------------------


class ScreenshotCommand(BaseCommand):
    action: Literal["screenshot"] = "screenshot"
    path: str | None = None
    full_page: bool = False
    selector: str | None = None
    format: Literal["png", "jpeg"] | None = None
    quality: int | None = None


class PdfCommand(BaseCommand):
    action: Literal["pdf"] = "pdf"
    path: str
    format: str | None = None


class SnapshotCommand(BaseCommand):
    action: Literal["snapshot"] = "snapshot"
    interactive: bool = False
    max_depth: int = 0
    compact: bool = False
    selector: str | None = None


class EvaluateCommand(BaseCommand):
    action: Literal["evaluate"] = "evaluate"
    script: str
    args: list[Any] | None = None


class ContentCommand(BaseCommand):
    action: Literal["content"] = "content"
    selector: str | None = None


class SetContentCommand(BaseCommand):
    action: Literal["setcontent"] = "setcontent"
    html: str


# -- Element queries ---------------------------------------------------------


class GetTextCommand(_SelectorCommand):
    action: Literal["gettext"] = "gettext"


class InnerTextCommand(_SelectorCommand):
    action: Literal["innertext"] = "innertext"


class InnerHtmlCommand(_SelectorCommand):
    action: Literal["innerhtml"] = "innerhtml"


class InputValueCommand(_SelectorCommand):
    action: Literal["inputvalue"] = "inputvalue"


class SetValueCommand(_SelectorCommand):
    action: Literal["setvalue"] = "setvalue"
    value: str


class GetAttributeCommand(_SelectorCommand):
    action: Literal["getattribute"] = "getattribute"
    attribute: str


class IsVisibleCommand(_SelectorCommand):
    action: Literal["isvisible"] = "isvisible"


class IsEnabledCommand(_SelectorCommand):
    action: Literal["isenabled"] = "isenabled"


class IsCheckedCommand(_SelectorCommand):
    action: Literal["ischecked"] = "ischecked"


class CountCommand(_SelectorCommand):
    action: Literal["count"] = "count"


class BoundingBoxCommand(_SelectorCommand):
    action: Literal["boundingbox"] = "boundingbox"


# -- Page --------------------------------------------------------------------


class UrlCommand(BaseCommand):
    action: Literal["url"] = "url"


class TitleCommand(BaseCommand):
    action: Literal["title"] = "title"


class BackCommand(BaseCommand):
    action: Literal["back"] = "back"


class ForwardCommand(BaseCommand):
    action: Literal["forward"] = "forward"


class ReloadCommand(BaseCommand):
    action: Literal["reload"] = "reload"


class ViewportCommand(BaseCommand):
    action: Literal["viewport"] = "viewport"
    width: int
    height: int


class WaitCommand(BaseCommand):
    action: Literal["wait"] = "wait"
    selector: str | None = None
    timeout: int | None = None
    state: Literal["attached", "detached", "visible", "hidden"] | None = None


class WaitForUrlCommand(BaseCommand):
    action: Literal["waitforurl"] = "waitforurl"
    url: str
    timeout: int | None = None


class WaitForLoadStateCommand(BaseCommand):
    action: Literal["waitforloadstate"] = "waitforloadstate"
    state: Literal["load", "domcontentloaded", "networkidle"]
    timeout: int | None = None


# -- Semantic locators -------------------------------------------------------

SubAction = Literal["click", "fill", "check", "hover"]


class GetByRoleCommand(BaseCommand):
    action: Literal["getbyrole"] = "getbyrole"
    role: str
    name: str | None = None
    subaction: SubAction
    value: str | None = None


class GetByTextCommand(BaseCommand):
    action: Literal["getbytext"] = "getbytext"
    text: str
    exact: bool = False
    subaction: SubAction


class GetByLabelCommand(BaseCommand):
    action: Literal["getbylabel"] = "getbylabel"
    label: str
    subaction: SubAction
    value: str | None = None


class GetByPlaceholderCommand(BaseCommand):
    action: Literal["getbyplaceholder"] = "getbyplaceholder"
    placeholder: str
    subaction: SubAction
    value: str | None = None


class GetByTestIdCommand(BaseCommand):
    action: Literal["getbytestid"] = "getbytestid"
    test_id: str
    subaction: SubAction
    value: str | None = None


class NthCommand(_SelectorCommand):
    action: Literal["nth"] = "nth"
    index: int
    subaction: SubAction
    value: str | None = None


# -- Cookies and storage -----------------------------------------------------

StorageKind = Literal["local", "session"]


class CookiesGetCommand(BaseCommand):
    action: Literal["cookies_get"] = "cookies_get"
    urls: list[str] | None = None


class CookiesSetCommand(BaseCommand):
    action: Literal["cookies_set"] = "cookies_set"
    cookies: list[Cookie]


class CookiesClearCommand(BaseCommand):
    action: Literal["cookies_clear"] = "cookies_clear"


class StorageGetCommand(BaseCommand):
    action: Literal["storage_get"] = "storage_get"
    key: str | None = None
    storage: StorageKind = Field("local", alias="type")


class StorageSetCommand(BaseCommand):
    action: Literal["storage_set"] = "storage_set"
    key: str
    value: str
    storage: StorageKind = Field("local", alias="type")


class StorageClearCommand(BaseCommand):
    action: Literal["storage_clear"] = "storage_clear"
    storage: StorageKind = Field("local", alias="type")


# -- Tabs and lifecycle ------------------------------------------------------


class TabNewCommand(BaseCommand):
    action: Literal["tab_new"] = "tab_new"
    url: str | None = None


class TabListCommand(BaseCommand):
    action: Literal["tab_list"] = "tab_list"


class TabSwitchCommand(BaseCommand):
    action: Literal["tab_switch"] = "tab_switch"
    index: int


class TabCloseCommand(BaseCommand):
    action: Literal["tab_close"] = "tab_close"
    index: int | None = None


class BringToFrontCommand(BaseCommand):
    action: Literal["bringtofront"] = "bringtofront"


class CloseCommand(BaseCommand):
    action: Literal["close"] = "close"


ACTION_TYPES: dict[str, type[BaseCommand]] = {
    cls.model_fields["action"].default: cls
    for cls in (
        LaunchCommand,
        NavigateCommand,
        ClickCommand,
        DblClickCommand,
        TypeCommand,
        FillCommand,
        ClearCommand,
        CheckCommand,
        UncheckCommand,
        PressCommand,
        KeyDownCommand,
        KeyUpCommand,
        InsertTextCommand,
        HoverCommand,
        FocusCommand,
        SelectCommand,
        UploadCommand,
        DragCommand,
        ScrollCommand,
        ScrollIntoViewCommand,
        WheelCommand,
        MouseMoveCommand,
        MouseDownCommand,
        MouseUpCommand,
        ScreenshotCommand,
        PdfCommand,
        SnapshotCommand,
        EvaluateCommand,
        ContentCommand,
        SetContentCommand,
        GetTextCommand,
        InnerTextCommand,
        InnerHtmlCommand,
        InputValueCommand,
        SetValueCommand,
        GetAttributeCommand,
        IsVisibleCommand,
        IsEnabledCommand,
        IsCheckedCommand,
        CountCommand,
        BoundingBoxCommand,
        UrlCommand,
        TitleCommand,
        BackCommand,
        ForwardCommand,
        ReloadCommand,
        ViewportCommand,
        WaitCommand,
        WaitForUrlCommand,
        WaitForLoadStateCommand,
        GetByRoleCommand,
        GetByTextCommand,
        GetByLabelCommand,
        GetByPlaceholderCommand,
        GetByTestIdCommand,
        NthCommand,
        CookiesGetCommand,
        CookiesSetCommand,
        CookiesClearCommand,
        StorageGetCommand,
        StorageSetCommand,
        StorageClearCommand,
        TabNewCommand,
        TabListCommand,
        TabSwitchCommand,
        TabCloseCommand,
        BringToFrontCommand,
        CloseCommand,
    )
}

# Actions the daemon must not auto-launch the browser for.
NO_AUTO_LAUNCH_ACTIONS = frozenset({"launch", "close"})

# Recognized on the wire but not executable by this daemon; they parse into
# ``UntypedCommand`` and the dispatcher answers ``unsupported action``.
UNSUPPORTED_ACTIONS = frozenset(
    {
        "frame", "mainframe", "getbyalttext", "getbytitle", "dialog", "route",
        "unroute", "requests", "download", "geolocation", "permissions",
        "useragent", "device", "waitforfunction", "multiselect", "window_new",
        "keyboard", "timezone", "locale", "credentials", "offline", "headers",
        "emulatemedia", "tap", "highlight", "selectall", "dispatch",
        "addscript", "addstyle", "addinitscript", "trace_start", "trace_stop",
        "console", "errors", "state_save", "state_load", "pause",
        "screencast_start", "screencast_stop", "input_mouse",
        "input_keyboard", "input_touch", "clipboard",
    }
)


class UntypedCommand(BaseCommand):
    """A recognized action with no model; its fields are kept as extras."""

    model_config = ConfigDict(extra="allow")


# ---------------------------------------------------------------------------
# Parsing and serialization
# ---------------------------------------------------------------------------


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = ""
    action: str = ""


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'frame'}: {err['msg']}"
        for err in exc.errors()
    )


def parse_command(data: str | bytes) -> BaseCommand:
    """Parse one request frame into its concrete command model.

    Raises
    ------
    CommandParseError
        If the frame is not a JSON object, lacks ``id`` or ``action``, names
        an unknown action, or does not fit the action's model.  Actions in
        ``UNSUPPORTED_ACTIONS`` parse into an ``UntypedCommand``.
    """
    try:
        envelope = _Envelope.model_validate_json(data)
    except ValidationError as exc:
        raise CommandParseError(f"failed to parse command: {_describe(exc)}") from exc

    if not envelope.id:
        raise CommandParseError("command missing id")
    if not envelope.action:
        raise CommandParseError("command missing action")

    command_type = ACTION_TYPES.get(envelope.action)
    if command_type is None:
        if envelope.action not in UNSUPPORTED_ACTIONS:
            raise CommandParseError(f"unknown action: {envelope.action}")
        command_type = UntypedCommand

    try:
        return command_type.model_validate_json(data)
    except ValidationError as exc:
        raise CommandParseError(
            f"failed to parse {envelope.action} command: {_describe(exc)}"
        ) from exc


def serialize_command(command: BaseCommand) -> str:
    """Encode *command* as a frame body (without the trailing newline)."""
    payload = command.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(command, EvaluateCommand) and command.args is not None:
        # Script arguments go out verbatim, nulls included.
        payload["args"] = to_jsonable_python(command.args)
    return json.dumps(payload, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class Response(BaseModel):
    id: str
    success: bool
    data: Any = None
    error: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "success": self.success}
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload


def success_response(command_id: str, data: Any = None) -> Response:
    """Build a success response, degrading to an error if *data* cannot be encoded."""
    if data is None:
        return Response(id=command_id, success=True)
    try:
        encoded = to_jsonable_python(data)
    except Exception as exc:
        return error_response(command_id, f"failed to marshal response data: {exc}")
    return Response(id=command_id, success=True, data=encoded)


def error_response(command_id: str, message: str) -> Response:
    return Response(id=command_id, success=False, error=message)


def serialize_response(response: Response) -> bytes:
    """Encode *response* as a complete frame, trailing newline included."""
    return json.dumps(response.to_wire(), ensure_ascii=False).encode("utf-8") + b"\n"


def parse_response(data: str | bytes) -> Response:
    return Response.model_validate_json(data)
