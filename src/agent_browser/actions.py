"""Action dispatch: one ``handle_<action>`` coroutine per protocol action.

Handlers receive the parsed command, call the engine and return the
response data (a dict, or ``None`` for a bare success).  ``dispatch`` turns
that into a ``Response`` and converts any exception into an error response,
so a failing command never escapes to the connection loop.
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from agent_browser.config import AgentBrowserSettings, ViewportConfig
from agent_browser.engine import ENGINE_ERRORS, BrowserEngine, LaunchOptions
from agent_browser.protocol import (
    BackCommand,
    BaseCommand,
    BoundingBoxCommand,
    BringToFrontCommand,
    CheckCommand,
    ClearCommand,
    ClickCommand,
    CloseCommand,
    ContentCommand,
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
    InnerTextCommand,
    InputValueCommand,
    InsertTextCommand,
    IsCheckedCommand,
    IsEnabledCommand,
    IsVisibleCommand,
    KeyDownCommand,
    KeyUpCommand,
    LaunchCommand,
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
    SetContentCommand,
    SetValueCommand,
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
    success_response,
)
from agent_browser.snapshot import SnapshotOptions

logger = logging.getLogger("agent_browser.actions")

DEFAULT_SCREENSHOT_QUALITY = 80
DEFAULT_SCROLL_AMOUNT = 100

Handler = Callable[[Any], Awaitable[dict[str, Any] | None]]


def to_ai_friendly_error(error: BaseException | str, selector: str) -> str:
    """Rewrite an automation error into a hint an agent can act on.

    Recognises timeouts, missing elements, hidden elements and covered
    elements (case-insensitively); any other message is returned unchanged.
    """
    message = str(error)
    lowered = message.lower()
    if "timeout" in lowered:
        return (
            f"Timeout waiting for element: {selector}. "
            "Try using 'snapshot' to see available elements."
        )
    if "not found" in lowered or "no node" in lowered:
        return (
            f"Element not found: {selector}. "
            "Use 'snapshot' to find correct ref or selector."
        )
    if "not visible" in lowered:
        return f"Element not visible: {selector}. It may be hidden or off-screen."
    if "not interactable" in lowered or "not clickable" in lowered:
        return (
            f"Element not interactable: {selector}. "
            "It may be covered by another element."
        )
    return message


def friendly_errors(field: str = "selector") -> Callable[[Handler], Handler]:
    """Mark a handler whose failures are rewritten against ``command.<field>``."""

    def mark(handler: Handler) -> Handler:
        handler.friendly_error_field = field  # type: ignore[attr-defined]
        return handler

    return mark


class ActionDispatcher:
    """Routes commands to ``handle_<action>`` methods against one engine."""

    def __init__(
        self, engine: BrowserEngine, settings: AgentBrowserSettings | None = None
    ) -> None:
        self.engine = engine
        self.settings = settings or AgentBrowserSettings()

    def handler_for(self, action: str) -> Handler | None:
        return getattr(self, f"handle_{action}", None)

    async def dispatch(self, command: BaseCommand) -> Response:
        handler = self.handler_for(command.action)
        if handler is None:
            return error_response(command.id, f"unsupported action: {command.action}")

        try:
            data = await handler(command)
        except ENGINE_ERRORS as exc:
            logger.warning("Action %r failed: %s", command.action, exc)
            return error_response(command.id, self._error_message(handler, command, exc))
        except Exception as exc:
            logger.exception("Action %r raised an unexpected exception", command.action)
            return error_response(command.id, self._error_message(handler, command, exc))
        return success_response(command.id, data)

    @staticmethod
    def _error_message(handler: Handler, command: BaseCommand, exc: Exception) -> str:
        field = getattr(handler, "friendly_error_field", None)
        target = getattr(command, field, None) if field else None
        if target:
            return to_ai_friendly_error(exc, target)
        return str(exc)

    # -----------------------------------------------------------------------
    # Handlers
    # -----------------------------------------------------------------------

    # -- Lifecycle -----------------------------------------------------------

    async def handle_launch(self, cmd: LaunchCommand) -> dict[str, Any]:
        settings = self.settings
        viewport = (
            ViewportConfig(width=cmd.viewport.width, height=cmd.viewport.height)
            if cmd.viewport
            else settings.viewport
        )
        options = LaunchOptions(
            headless=True if cmd.headless is None else cmd.headless,
            viewport=viewport,
            browser=cmd.browser or settings.browser,
            executable_path=cmd.executable_path,
            user_data_dir=cmd.user_data_dir or None,
            cdp_port=cmd.cdp_port,
            headers=cmd.headers,
            locale=cmd.locale or None,
        )
        await self.engine.launch(options)
        return {"launched": True}

    async def handle_close(self, cmd: CloseCommand) -> dict[str, Any]:
        await self.engine.close()
        return {"closed": True}

    # -- Navigation ----------------------------------------------------------

    async def handle_navigate(self, cmd: NavigateCommand) -> dict[str, Any]:
        url, title = await self.engine.navigate(
            cmd.url, cmd.wait_until or "load", cmd.headers
        )
        return {"url": url, "title": title}

    async def handle_back(self, cmd: BackCommand) -> None:
        await self.engine.back()

    async def handle_forward(self, cmd: ForwardCommand) -> None:
        await self.engine.forward()

    async def handle_reload(self, cmd: ReloadCommand) -> None:
        await self.engine.reload()

    async def handle_url(self, cmd: UrlCommand) -> dict[str, Any]:
        return {"url": await self.engine.url()}

    async def handle_title(self, cmd: TitleCommand) -> dict[str, Any]:
        return {"title": await self.engine.title()}

    async def handle_viewport(self, cmd: ViewportCommand) -> None:
        await self.engine.set_viewport(cmd.width, cmd.height)

    # -- Interaction ---------------------------------------------------------

    @friendly_errors()
    async def handle_click(self, cmd: ClickCommand) -> None:
        await self.engine.click(cmd.selector, cmd.button, cmd.click_count, cmd.delay)

    @friendly_errors()
    async def handle_dblclick(self, cmd: DblClickCommand) -> None:
        await self.engine.dblclick(cmd.selector)

    @friendly_errors()
    async def handle_type(self, cmd: TypeCommand) -> None:
        await self.engine.type(cmd.selector, cmd.text, cmd.delay, cmd.clear)

    @friendly_errors()
    async def handle_fill(self, cmd: FillCommand) -> None:
        await self.engine.fill(cmd.selector, cmd.value)

    @friendly_errors()
    async def handle_clear(self, cmd: ClearCommand) -> None:
        await self.engine.clear(cmd.selector)

    @friendly_errors()
    async def handle_check(self, cmd: CheckCommand) -> None:
        await self.engine.check(cmd.selector)

    @friendly_errors()
    async def handle_uncheck(self, cmd: UncheckCommand) -> None:
        await self.engine.uncheck(cmd.selector)

    async def handle_press(self, cmd: PressCommand) -> None:
        await self.engine.press(cmd.key, cmd.selector)

    async def handle_keydown(self, cmd: KeyDownCommand) -> None:
        await self.engine.key_down(cmd.key)

    async def handle_keyup(self, cmd: KeyUpCommand) -> None:
        await self.engine.key_up(cmd.key)

    async def handle_inserttext(self, cmd: InsertTextCommand) -> None:
        await self.engine.insert_text(cmd.text)

    @friendly_errors()
    async def handle_hover(self, cmd: HoverCommand) -> None:
        await self.engine.hover(cmd.selector)

    @friendly_errors()
    async def handle_focus(self, cmd: FocusCommand) -> None:
        await self.engine.focus(cmd.selector)

    @friendly_errors()
    async def handle_select(self, cmd: SelectCommand) -> dict[str, Any]:
        return {"selected": await self.engine.select(cmd.selector, cmd.values)}

    @friendly_errors()
    async def handle_upload(self, cmd: UploadCommand) -> dict[str, Any]:
        await self.engine.upload(cmd.selector, cmd.files)
        return {"uploaded": cmd.files}

    @friendly_errors("source")
    async def handle_drag(self, cmd: DragCommand) -> None:
        await self.engine.drag(cmd.source, cmd.target)

    # -- Scrolling and raw input ---------------------------------------------

    async def handle_scroll(self, cmd: ScrollCommand) -> None:
        amount = cmd.amount if cmd.amount and cmd.amount > 0 else DEFAULT_SCROLL_AMOUNT
        await self.engine.scroll(cmd.direction, amount, cmd.selector, cmd.x, cmd.y)

    @friendly_errors()
    async def handle_scrollintoview(self, cmd: ScrollIntoViewCommand) -> None:
        await self.engine.scroll_into_view(cmd.selector)

    async def handle_wheel(self, cmd: WheelCommand) -> None:
        await self.engine.wheel(cmd.delta_x, cmd.delta_y, cmd.selector)

    async def handle_mousemove(self, cmd: MouseMoveCommand) -> None:
        await self.engine.mouse_move(cmd.x, cmd.y)

    async def handle_mousedown(self, cmd: MouseDownCommand) -> None:
        await self.engine.mouse_down(cmd.button)

    async def handle_mouseup(self, cmd: MouseUpCommand) -> None:
        await self.engine.mouse_up(cmd.button)

    # -- Capture and content -------------------------------------------------

    async def handle_screenshot(self, cmd: ScreenshotCommand) -> dict[str, Any]:
        quality = cmd.quality if cmd.quality and cmd.quality > 0 else DEFAULT_SCREENSHOT_QUALITY
        data = await self.engine.screenshot(
            cmd.full_page, cmd.selector, cmd.format, quality
        )
        if cmd.path:
            try:
                path = Path(cmd.path)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(data)
            except OSError as exc:
                raise OSError(f"failed to save screenshot: {exc}") from exc
            return {"path": cmd.path}
        return {"base64": base64.b64encode(data).decode("ascii")}

    async def handle_pdf(self, cmd: PdfCommand) -> dict[str, Any]:
        await self.engine.pdf(cmd.path, cmd.format)
        return {"path": cmd.path}

    async def handle_snapshot(self, cmd: SnapshotCommand) -> dict[str, Any]:
        options = SnapshotOptions(
            interactive=cmd.interactive,
            max_depth=cmd.max_depth,
            compact=cmd.compact,
            selector=cmd.selector or None,
        )
        snapshot = await self.engine.snapshot(options)
        refs: dict[str, dict[str, str]] = {}
        for ref, data in snapshot.refs.items():
            info = {"role": data.role}
            if data.name:
                info["name"] = data.name
            refs[ref] = info
        return {"snapshot": snapshot.tree, "refs": refs}

    async def handle_evaluate(self, cmd: EvaluateCommand) -> dict[str, Any]:
        return {"result": await self.engine.evaluate(cmd.script, cmd.args)}

    @friendly_errors()
    async def handle_content(self, cmd: ContentCommand) -> dict[str, Any]:
        return {"html": await self.engine.content(cmd.selector or None)}

    async def handle_setcontent(self, cmd: SetContentCommand) -> None:
        await self.engine.set_content(cmd.html)

    # -- Element queries -----------------------------------------------------

    @friendly_errors()
    async def handle_gettext(self, cmd: GetTextCommand) -> dict[str, Any]:
        return {"text": await self.engine.text_content(cmd.selector)}

    @friendly_errors()
    async def handle_innertext(self, cmd: InnerTextCommand) -> dict[str, Any]:
        return {"text": await self.engine.inner_text(cmd.selector)}

    @friendly_errors()
    async def handle_innerhtml(self, cmd: InnerHtmlCommand) -> dict[str, Any]:
        return {"html": await self.engine.inner_html(cmd.selector)}

    @friendly_errors()
    async def handle_inputvalue(self, cmd: InputValueCommand) -> dict[str, Any]:
        return {"value": await self.engine.input_value(cmd.selector)}

    @friendly_errors()
    async def handle_setvalue(self, cmd: SetValueCommand) -> None:
        await self.engine.set_value(cmd.selector, cmd.value)

    @friendly_errors()
    async def handle_getattribute(self, cmd: GetAttributeCommand) -> dict[str, Any]:
        return {"value": await self.engine.get_attribute(cmd.selector, cmd.attribute)}

    @friendly_errors()
    async def handle_isvisible(self, cmd: IsVisibleCommand) -> dict[str, Any]:
        return {"visible": await self.engine.is_visible(cmd.selector)}

    @friendly_errors()
    async def handle_isenabled(self, cmd: IsEnabledCommand) -> dict[str, Any]:
        return {"enabled": await self.engine.is_enabled(cmd.selector)}

    @friendly_errors()
    async def handle_ischecked(self, cmd: IsCheckedCommand) -> dict[str, Any]:
        return {"checked": await self.engine.is_checked(cmd.selector)}

    async def handle_count(self, cmd: CountCommand) -> dict[str, Any]:
        return {"count": await self.engine.count(cmd.selector)}

    @friendly_errors()
    async def handle_boundingbox(self, cmd: BoundingBoxCommand) -> dict[str, Any]:
        box = await self.engine.bounding_box(cmd.selector)
        if box is None:
            raise ValueError(f"element not visible: {cmd.selector}")
        return box

    # -- Waiting -------------------------------------------------------------

    @friendly_errors()
    async def handle_wait(self, cmd: WaitCommand) -> None:
        if cmd.selector:
            await self.engine.wait_for_selector(cmd.selector, cmd.timeout, cmd.state)
        elif cmd.timeout and cmd.timeout > 0:
            await self.engine.wait_for_timeout(cmd.timeout)

    async def handle_waitforurl(self, cmd: WaitForUrlCommand) -> None:
        await self.engine.wait_for_url(cmd.url, cmd.timeout)

    async def handle_waitforloadstate(self, cmd: WaitForLoadStateCommand) -> None:
        await self.engine.wait_for_load_state(cmd.state, cmd.timeout)

    # -- Semantic locators ---------------------------------------------------

    async def handle_getbyrole(self, cmd: GetByRoleCommand) -> None:
        await self.engine.locate_and_act(
            "role", cmd.role, cmd.subaction, cmd.value, name=cmd.name
        )

    async def handle_getbytext(self, cmd: GetByTextCommand) -> None:
        await self.engine.locate_and_act(
            "text", cmd.text, cmd.subaction, exact=cmd.exact
        )

    async def handle_getbylabel(self, cmd: GetByLabelCommand) -> None:
        await self.engine.locate_and_act("label", cmd.label, cmd.subaction, cmd.value)

    async def handle_getbyplaceholder(self, cmd: GetByPlaceholderCommand) -> None:
        await self.engine.locate_and_act(
            "placeholder", cmd.placeholder, cmd.subaction, cmd.value
        )

    async def handle_getbytestid(self, cmd: GetByTestIdCommand) -> None:
        await self.engine.locate_and_act("testid", cmd.test_id, cmd.subaction, cmd.value)

    @friendly_errors()
    async def handle_nth(self, cmd: NthCommand) -> None:
        await self.engine.nth_and_act(cmd.selector, cmd.index, cmd.subaction, cmd.value)

    # -- Cookies and storage -------------------------------------------------

    async def handle_cookies_get(self, cmd: CookiesGetCommand) -> dict[str, Any]:
        return {"cookies": await self.engine.get_cookies(cmd.urls)}

    async def handle_cookies_set(self, cmd: CookiesSetCommand) -> None:
        await self.engine.set_cookies(
            [c.model_dump(by_alias=True, exclude_none=True) for c in cmd.cookies]
        )

    async def handle_cookies_clear(self, cmd: CookiesClearCommand) -> None:
        await self.engine.clear_cookies()

    async def handle_storage_get(self, cmd: StorageGetCommand) -> dict[str, Any]:
        result = await self.engine.storage_get(cmd.storage, cmd.key)
        if cmd.key is not None:
            return {"key": cmd.key, "value": result}
        return {"data": result}

    async def handle_storage_set(self, cmd: StorageSetCommand) -> None:
        await self.engine.storage_set(cmd.storage, cmd.key, cmd.value)

    async def handle_storage_clear(self, cmd: StorageClearCommand) -> None:
        await self.engine.storage_clear(cmd.storage)

    # -- Tabs ----------------------------------------------------------------

    async def _active_tab_index(self) -> int:
        for tab in await self.engine.list_tabs():
            if tab["active"]:
                return tab["index"]
        return 0

    async def handle_tab_new(self, cmd: TabNewCommand) -> dict[str, Any]:
        index = await self.engine.new_tab(cmd.url)
        tabs = await self.engine.list_tabs()
        return {"index": index, "total": len(tabs)}

    async def handle_tab_list(self, cmd: TabListCommand) -> dict[str, Any]:
        tabs = await self.engine.list_tabs()
        active = next((tab["index"] for tab in tabs if tab["active"]), 0)
        return {"tabs": tabs, "active": active}

    async def handle_tab_switch(self, cmd: TabSwitchCommand) -> dict[str, Any]:
        await self.engine.switch_tab(cmd.index)
        return {
            "index": cmd.index,
            "url": await self.engine.url(),
            "title": await self.engine.title(),
        }

    async def handle_tab_close(self, cmd: TabCloseCommand) -> dict[str, Any]:
        index = cmd.index if cmd.index is not None else await self._active_tab_index()
        await self.engine.close_tab(index)
        tabs = await self.engine.list_tabs()
        return {"closed": index, "remaining": len(tabs)}

    async def handle_bringtofront(self, cmd: BringToFrontCommand) -> None:
        await self.engine.bring_to_front()
