"""Browser automation engines.

The daemon talks to the browser only through ``BrowserEngine``.  The shipped
implementation, ``PlaywrightEngine``, drives the Playwright async API from
either patchright (default, stealth fork) or upstream playwright; both expose
the same ``async_playwright`` entry point so one class serves both backends.

``PlaywrightEngine`` owns the session's ``RefTable``: snapshots replace it and
every selector-taking method resolves refs against it first.  Automation
calls are serialized with an ``asyncio.Lock`` because several client
connections can share one engine.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Literal, TypeVar

from patchright.async_api import Error as PatchrightError
from patchright.async_api import async_playwright as patchright_async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright as playwright_async_playwright
from pydantic import BaseModel, Field

from agent_browser.config import AgentBrowserSettings, BackendName, ViewportConfig
from agent_browser.snapshot import (
    EnhancedSnapshot,
    RefData,
    RefTable,
    SnapshotOptions,
    build_snapshot,
    process_aria_tree,
)

logger = logging.getLogger("agent_browser.engine")

_T = TypeVar("_T")

BACKENDS: dict[str, Callable[[], Any]] = {
    "patchright": patchright_async_playwright,
    "playwright": playwright_async_playwright,
}


class EngineNotLaunchedError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("browser not launched")


# Failures an automation call is expected to produce; anything else is a bug.
ENGINE_ERRORS: tuple[type[Exception], ...] = (
    PatchrightError,
    PlaywrightError,
    EngineNotLaunchedError,
    IndexError,
    ValueError,
    OSError,
)


class LaunchOptions(BaseModel):
    headless: bool = True
    viewport: ViewportConfig = Field(default_factory=ViewportConfig)
    browser: Literal["chromium", "firefox", "webkit"] = "chromium"
    executable_path: str | None = None
    user_data_dir: str | None = None
    cdp_port: int | None = None
    headers: dict[str, str] | None = None
    locale: str | None = None


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------


class BrowserEngine(ABC):
    """Everything the action dispatcher needs from a browser."""

    refs: RefTable

    @abstractmethod
    def is_launched(self) -> bool: ...

    @abstractmethod
    async def launch(self, options: LaunchOptions) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    def get_ref_map(self) -> dict[str, RefData]:
        """Return a copy of the current ref table."""
        return self.refs.snapshot()

    # -- Navigation ----------------------------------------------------------

    @abstractmethod
    async def navigate(
        self, url: str, wait_until: str = "load", headers: dict[str, str] | None = None
    ) -> tuple[str, str]:
        """Navigate the active page and return its final ``(url, title)``."""

    @abstractmethod
    async def back(self) -> None: ...

    @abstractmethod
    async def forward(self) -> None: ...

    @abstractmethod
    async def reload(self) -> None: ...

    @abstractmethod
    async def url(self) -> str: ...

    @abstractmethod
    async def title(self) -> str: ...

    @abstractmethod
    async def set_viewport(self, width: int, height: int) -> None: ...

    # -- Interaction ---------------------------------------------------------

    @abstractmethod
    async def click(
        self,
        selector: str,
        button: str | None = None,
        click_count: int | None = None,
        delay: int | None = None,
    ) -> None: ...

    @abstractmethod
    async def dblclick(self, selector: str) -> None: ...

    @abstractmethod
    async def type(
        self, selector: str, text: str, delay: int | None = None, clear: bool = False
    ) -> None: ...

    @abstractmethod
    async def fill(self, selector: str, value: str) -> None: ...

    @abstractmethod
    async def clear(self, selector: str) -> None: ...

    @abstractmethod
    async def check(self, selector: str) -> None: ...

    @abstractmethod
    async def uncheck(self, selector: str) -> None: ...

    @abstractmethod
    async def press(self, key: str, selector: str | None = None) -> None: ...

    @abstractmethod
    async def key_down(self, key: str) -> None: ...

    @abstractmethod
    async def key_up(self, key: str) -> None: ...

    @abstractmethod
    async def insert_text(self, text: str) -> None: ...

    @abstractmethod
    async def hover(self, selector: str) -> None: ...

    @abstractmethod
    async def focus(self, selector: str) -> None: ...

    @abstractmethod
    async def select(self, selector: str, values: list[str]) -> list[str]: ...

    @abstractmethod
    async def upload(self, selector: str, files: list[str]) -> None: ...

    @abstractmethod
    async def drag(self, source: str, target: str) -> None: ...

    @abstractmethod
    async def scroll(
        self,
        direction: str | None = None,
        amount: int = 100,
        selector: str | None = None,
        x: int | None = None,
        y: int | None = None,
    ) -> None: ...

    @abstractmethod
    async def scroll_into_view(self, selector: str) -> None: ...

    @abstractmethod
    async def wheel(
        self, delta_x: float, delta_y: float, selector: str | None = None
    ) -> None: ...

    @abstractmethod
    async def mouse_move(self, x: float, y: float) -> None: ...

    @abstractmethod
    async def mouse_down(self, button: str | None = None) -> None: ...

    @abstractmethod
    async def mouse_up(self, button: str | None = None) -> None: ...

    @abstractmethod
    async def locate_and_act(
        self,
        by: str,
        query: str,
        subaction: str,
        value: str | None = None,
        *,
        name: str | None = None,
        exact: bool = False,
    ) -> None:
        """Find an element semantically (role, text, label, ...) and act on it."""

    @abstractmethod
    async def nth_and_act(
        self, selector: str, index: int, subaction: str, value: str | None = None
    ) -> None: ...

    # -- Capture and content -------------------------------------------------

    @abstractmethod
    async def screenshot(
        self,
        full_page: bool = False,
        selector: str | None = None,
        image_format: str | None = None,
        quality: int = 80,
    ) -> bytes: ...

    @abstractmethod
    async def pdf(self, path: str, paper_format: str | None = None) -> None: ...

    @abstractmethod
    async def snapshot(self, options: SnapshotOptions) -> EnhancedSnapshot:
        """Take a snapshot and make its refs the current ref table."""

    @abstractmethod
    async def evaluate(self, script: str, args: list[Any] | None = None) -> Any: ...

    @abstractmethod
    async def content(self, selector: str | None = None) -> str:
        """Return the page HTML, or the outer HTML of *selector*."""

    @abstractmethod
    async def set_content(self, html: str) -> None: ...

    # -- Element queries -----------------------------------------------------

    @abstractmethod
    async def text_content(self, selector: str) -> str: ...

    @abstractmethod
    async def inner_text(self, selector: str) -> str: ...

    @abstractmethod
    async def inner_html(self, selector: str) -> str: ...

    @abstractmethod
    async def input_value(self, selector: str) -> str: ...

    @abstractmethod
    async def set_value(self, selector: str, value: str) -> None: ...

    @abstractmethod
    async def get_attribute(self, selector: str, attribute: str) -> str | None: ...

    @abstractmethod
    async def is_visible(self, selector: str) -> bool: ...

    @abstractmethod
    async def is_enabled(self, selector: str) -> bool: ...

    @abstractmethod
    async def is_checked(self, selector: str) -> bool: ...

    @abstractmethod
    async def count(self, selector: str) -> int: ...

    @abstractmethod
    async def bounding_box(self, selector: str) -> dict[str, float] | None: ...

    # -- Waiting -------------------------------------------------------------

    @abstractmethod
    async def wait_for_selector(
        self, selector: str, timeout: int | None = None, state: str | None = None
    ) -> None: ...

    @abstractmethod
    async def wait_for_timeout(self, ms: int) -> None: ...

    @abstractmethod
    async def wait_for_url(self, url: str, timeout: int | None = None) -> None: ...

    @abstractmethod
    async def wait_for_load_state(
        self, state: str, timeout: int | None = None
    ) -> None: ...

    # -- Cookies and storage -------------------------------------------------

    @abstractmethod
    async def get_cookies(self, urls: list[str] | None = None) -> list[dict]: ...

    @abstractmethod
    async def set_cookies(self, cookies: list[dict]) -> None: ...

    @abstractmethod
    async def clear_cookies(self) -> None: ...

    @abstractmethod
    async def storage_get(self, kind: str, key: str | None = None) -> Any: ...

    @abstractmethod
    async def storage_set(self, kind: str, key: str, value: str) -> None: ...

    @abstractmethod
    async def storage_clear(self, kind: str) -> None: ...

    # -- Tabs ----------------------------------------------------------------

    @abstractmethod
    async def new_tab(self, url: str | None = None) -> int:
        """Open a tab, make it active and return its index."""

    @abstractmethod
    async def list_tabs(self) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def switch_tab(self, index: int) -> None: ...

    @abstractmethod
    async def close_tab(self, index: int) -> None: ...

    @abstractmethod
    async def bring_to_front(self) -> None: ...


# ---------------------------------------------------------------------------
# Playwright implementation
# ---------------------------------------------------------------------------

# Collects {role, name, properties?, children} for the element tree rooted at
# the given element (or <body>).  Hidden subtrees and nodes deeper than 10
# levels are skipped.
_TREE_SCRIPT = """
(root) => {
  const TAG_ROLES = {A: 'link', BUTTON: 'button', SELECT: 'combobox', TEXTAREA: 'textbox'};
  const INPUT_ROLES = {text: 'textbox', search: 'searchbox', email: 'textbox',
                       password: 'textbox', checkbox: 'checkbox', radio: 'radio'};

  function getRole(el) {
    const explicit = el.getAttribute('role');
    if (explicit) return explicit;
    if (el.tagName === 'INPUT') return INPUT_ROLES[el.type] || 'textbox';
    if (/^H[1-6]$/.test(el.tagName)) return 'heading';
    return TAG_ROLES[el.tagName] || el.tagName.toLowerCase();
  }

  function getName(el) {
    return (el.getAttribute('aria-label') ||
            el.getAttribute('title') ||
            (el.tagName === 'IMG' ? el.alt : '') ||
            (el.innerText || '').slice(0, 50) || '').trim();
  }

  function build(el, depth) {
    if (!el || el.nodeType !== 1 || depth > 10) return null;
    if (window.getComputedStyle(el).display === 'none') return null;
    const node = {role: getRole(el), name: getName(el), children: []};
    if (/^H[1-6]$/.test(el.tagName)) {
      node.properties = {level: Number(el.tagName[1])};
    }
    for (const child of el.children) {
      const built = build(child, depth + 1);
      if (built) node.children.push(built);
    }
    return node;
  }

  return build(root || document.body, 0);
}
"""

# Chromium switches that advertise automation.
_STEALTH_IGNORED_ARGS = [
    "--enable-automation",
    "--disable-popup-blocking",
    "--disable-component-update",
    "--disable-default-apps",
    "--disable-extensions",
]

_SCROLL_VECTORS = {
    "up": (0, -1),
    "down": (0, 1),
    "left": (-1, 0),
    "right": (1, 0),
}

_STORAGE_OBJECTS = {"local": "localStorage", "session": "sessionStorage"}


def _serialized(
    method: Callable[..., Awaitable[_T]],
) -> Callable[..., Awaitable[_T]]:
    """Run *method* while holding the engine lock."""

    @functools.wraps(method)
    async def wrapper(self: PlaywrightEngine, *args: Any, **kwargs: Any) -> _T:
        async with self._lock:
            return await method(self, *args, **kwargs)

    return wrapper


class PlaywrightEngine(BrowserEngine):
    """``BrowserEngine`` on top of the Playwright async API."""

    def __init__(
        self,
        backend: BackendName = "patchright",
        settings: AgentBrowserSettings | None = None,
        playwright_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.backend = backend
        self.settings = settings or AgentBrowserSettings()
        self._factory = playwright_factory or BACKENDS[backend]
        self.refs = RefTable()
        self._lock = asyncio.Lock()

        # Playwright objects
        self.playwright: Any = None
        self.browser: Any = None
        self.context: Any = None
        self.pages: list[Any] = []
        self.active_page_index: int = 0
        self._headless: bool | None = None

    # -- Lifecycle -----------------------------------------------------------

    def is_launched(self) -> bool:
        return self.context is not None

    @_serialized
    async def launch(self, options: LaunchOptions) -> None:
        """Start the browser, or restart it if the window mode changed."""
        if self.is_launched():
            if self._headless == options.headless:
                return
            logger.info("Headless mode changed, relaunching browser")
            await self._shutdown()

        logger.info(
            "Launching %s via %s (headless=%s)",
            options.browser,
            self.backend,
            options.headless,
        )
        self.playwright = await self._factory().start()
        browser_type = getattr(self.playwright, options.browser)

        launch_opts = self._launch_options(options)
        context_opts: dict[str, Any] = {
            "viewport": {
                "width": options.viewport.width,
                "height": options.viewport.height,
            }
        }
        if options.locale:
            context_opts["locale"] = options.locale
        if options.headers:
            context_opts["extra_http_headers"] = options.headers

        if options.cdp_port:
            self.browser = await browser_type.connect_over_cdp(
                f"http://localhost:{options.cdp_port}"
            )
            contexts = self.browser.contexts
            if contexts:
                self.context = contexts[0]
            else:
                self.context = await self.browser.new_context(**context_opts)
        elif options.user_data_dir:
            self.context = await browser_type.launch_persistent_context(
                options.user_data_dir, **launch_opts, **context_opts
            )
            # Persistent context IS the browser
            self.browser = self.context
        else:
            self.browser = await browser_type.launch(**launch_opts)
            self.context = await self.browser.new_context(**context_opts)

        self.context.on("page", self._on_new_page)
        self.context.set_default_timeout(self.settings.timeouts.action)
        self.context.set_default_navigation_timeout(self.settings.timeouts.navigation)

        if self.context.pages:
            page = self.context.pages[0]
        else:
            page = await self.context.new_page()
        self._on_new_page(page)
        self.active_page_index = self.pages.index(page)
        self._headless = options.headless

    def _launch_options(self, options: LaunchOptions) -> dict[str, Any]:
        launch_opts: dict[str, Any] = {"headless": options.headless}
        executable = options.executable_path or self.settings.executable_path
        if executable:
            launch_opts["executable_path"] = executable

        if options.browser == "chromium":
            args = ["--disable-blink-features=AutomationControlled"]
            if self.settings.no_sandbox:
                args.append("--no-sandbox")
            if self.settings.disable_shm:
                args.append("--disable-dev-shm-usage")
            launch_opts["args"] = args
            launch_opts["ignore_default_args"] = list(_STEALTH_IGNORED_ARGS)

            # The driver's env replaces the process environment entirely.
            env = dict(os.environ)
            env.setdefault("GOOGLE_API_KEY", "no")
            env.setdefault("GOOGLE_DEFAULT_CLIENT_ID", "no")
            launch_opts["env"] = env
        return launch_opts

    def _on_new_page(self, page: Any) -> None:
        """Track pages opened by the site itself (popups, target=_blank)."""
        if page not in self.pages:
            self.pages.append(page)
            page.on("close", self._on_page_closed)

    def _on_page_closed(self, page: Any) -> None:
        if page in self.pages:
            index = self.pages.index(page)
            self.pages.pop(index)
            if self.active_page_index > index or self.active_page_index >= len(
                self.pages
            ):
                self.active_page_index = max(0, self.active_page_index - 1)

    @_serialized
    async def close(self) -> None:
        await self._shutdown()

    async def _shutdown(self) -> None:
        try:
            if self.context is not None and self.context is not self.browser:
                await self.context.close()
            if self.browser is not None:
                await self.browser.close()
        except Exception:
            logger.warning("Error while closing browser", exc_info=True)
        finally:
            if self.playwright is not None:
                try:
                    await self.playwright.stop()
                except Exception:
                    logger.warning("Error while stopping playwright", exc_info=True)
            self.playwright = None
            self.browser = None
            self.context = None
            self.pages = []
            self.active_page_index = 0
            self._headless = None
            self.refs.clear()

    # -- Helpers -------------------------------------------------------------

    @property
    def page(self) -> Any:
        """The active page; raises if the browser is not running."""
        if not self.pages:
            raise EngineNotLaunchedError()
        index = max(0, min(self.active_page_index, len(self.pages) - 1))
        return self.pages[index]

    def _locator(self, selector: str) -> Any:
        """Return a locator for *selector*, resolving refs to their k-th match."""
        data = self.refs.lookup(selector)
        if data is not None:
            return self.page.locator(data.selector).nth(data.nth)
        return self.page.locator(selector)

    @staticmethod
    async def _perform(locator: Any, subaction: str, value: str | None) -> None:
        if subaction == "click":
            await locator.click()
        elif subaction == "fill":
            await locator.fill(value or "")
        elif subaction == "check":
            await locator.check()
        elif subaction == "hover":
            await locator.hover()
        else:
            raise ValueError(f"unsupported subaction: {subaction}")

    # -- Navigation ----------------------------------------------------------

    @_serialized
    async def navigate(
        self, url: str, wait_until: str = "load", headers: dict[str, str] | None = None
    ) -> tuple[str, str]:
        page = self.page
        if headers:
            await page.set_extra_http_headers(headers)
        await page.goto(url, wait_until=wait_until)
        return page.url, await page.title()

    @_serialized
    async def back(self) -> None:
        await self.page.go_back()

    @_serialized
    async def forward(self) -> None:
        await self.page.go_forward()

    @_serialized
    async def reload(self) -> None:
        await self.page.reload()

    @_serialized
    async def url(self) -> str:
        return self.page.url

    @_serialized
    async def title(self) -> str:
        return await self.page.title()

    @_serialized
    async def set_viewport(self, width: int, height: int) -> None:
        await self.page.set_viewport_size({"width": width, "height": height})

    # -- Interaction ---------------------------------------------------------

    @_serialized
    async def click(
        self,
        selector: str,
        button: str | None = None,
        click_count: int | None = None,
        delay: int | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {}
        if button:
            kwargs["button"] = button
        if click_count:
            kwargs["click_count"] = click_count
        if delay:
            kwargs["delay"] = delay
        await self._locator(selector).click(**kwargs)

    @_serialized
    async def dblclick(self, selector: str) -> None:
        await self._locator(selector).dblclick()

    @_serialized
    async def type(
        self, selector: str, text: str, delay: int | None = None, clear: bool = False
    ) -> None:
        locator = self._locator(selector)
        if clear:
            await locator.clear()
        await locator.press_sequentially(text, delay=delay or 0)

    @_serialized
    async def fill(self, selector: str, value: str) -> None:
        await self._locator(selector).fill(value)

    @_serialized
    async def clear(self, selector: str) -> None:
        await self._locator(selector).clear()

    @_serialized
    async def check(self, selector: str) -> None:
        await self._locator(selector).check()

    @_serialized
    async def uncheck(self, selector: str) -> None:
        await self._locator(selector).uncheck()

    @_serialized
    async def press(self, key: str, selector: str | None = None) -> None:
        if selector:
            await self._locator(selector).press(key)
        else:
            await self.page.keyboard.press(key)

    @_serialized
    async def key_down(self, key: str) -> None:
        await self.page.keyboard.down(key)

    @_serialized
    async def key_up(self, key: str) -> None:
        await self.page.keyboard.up(key)

    @_serialized
    async def insert_text(self, text: str) -> None:
        await self.page.keyboard.insert_text(text)

    @_serialized
    async def hover(self, selector: str) -> None:
        await self._locator(selector).hover()

    @_serialized
    async def focus(self, selector: str) -> None:
        await self._locator(selector).focus()

    @_serialized
    async def select(self, selector: str, values: list[str]) -> list[str]:
        return await self._locator(selector).select_option(values)

    @_serialized
    async def upload(self, selector: str, files: list[str]) -> None:
        await self._locator(selector).set_input_files(files)

    @_serialized
    async def drag(self, source: str, target: str) -> None:
        await self._locator(source).drag_to(self._locator(target))

    @_serialized
    async def scroll(
        self,
        direction: str | None = None,
        amount: int = 100,
        selector: str | None = None,
        x: int | None = None,
        y: int | None = None,
    ) -> None:
        if x is not None or y is not None:
            dx, dy = x or 0, y or 0
        else:
            vx, vy = _SCROLL_VECTORS.get(direction or "down", (0, 1))
            dx, dy = vx * amount, vy * amount
        if selector:
            await self._locator(selector).evaluate(
                "(el, [dx, dy]) => el.scrollBy(dx, dy)", [dx, dy]
            )
        else:
            await self.page.evaluate("([dx, dy]) => window.scrollBy(dx, dy)", [dx, dy])

    @_serialized
    async def scroll_into_view(self, selector: str) -> None:
        await self._locator(selector).scroll_into_view_if_needed()

    @_serialized
    async def wheel(
        self, delta_x: float, delta_y: float, selector: str | None = None
    ) -> None:
        if selector:
            await self._locator(selector).hover()
        await self.page.mouse.wheel(delta_x, delta_y)

    @_serialized
    async def mouse_move(self, x: float, y: float) -> None:
        await self.page.mouse.move(x, y)

    @_serialized
    async def mouse_down(self, button: str | None = None) -> None:
        await self.page.mouse.down(button=button or "left")

    @_serialized
    async def mouse_up(self, button: str | None = None) -> None:
        await self.page.mouse.up(button=button or "left")

    @_serialized
    async def locate_and_act(
        self,
        by: str,
        query: str,
        subaction: str,
        value: str | None = None,
        *,
        name: str | None = None,
        exact: bool = False,
    ) -> None:
        page = self.page
        if by == "role":
            locator = page.get_by_role(query, name=name) if name else page.get_by_role(query)
        elif by == "text":
            locator = page.get_by_text(query, exact=exact)
        elif by == "label":
            locator = page.get_by_label(query)
        elif by == "placeholder":
            locator = page.get_by_placeholder(query)
        elif by == "testid":
            locator = page.get_by_test_id(query)
        else:
            raise ValueError(f"unsupported locator kind: {by}")
        await self._perform(locator, subaction, value)

    @_serialized
    async def nth_and_act(
        self, selector: str, index: int, subaction: str, value: str | None = None
    ) -> None:
        matches = self.page.locator(self.refs.resolve(selector))
        locator = matches.last if index == -1 else matches.nth(index)
        await self._perform(locator, subaction, value)

    # -- Capture and content -------------------------------------------------

    @_serialized
    async def screenshot(
        self,
        full_page: bool = False,
        selector: str | None = None,
        image_format: str | None = None,
        quality: int = 80,
    ) -> bytes:
        kwargs: dict[str, Any] = {"type": image_format or "png"}
        if kwargs["type"] == "jpeg":
            kwargs["quality"] = quality
        if selector:
            return await self._locator(selector).screenshot(**kwargs)
        return await self.page.screenshot(full_page=full_page, **kwargs)

    @_serialized
    async def pdf(self, path: str, paper_format: str | None = None) -> None:
        kwargs: dict[str, Any] = {"path": path}
        if paper_format:
            kwargs["format"] = paper_format
        await self.page.pdf(**kwargs)

    @_serialized
    async def snapshot(self, options: SnapshotOptions) -> EnhancedSnapshot:
        page = self.page
        # Scope may be a ref from the previous snapshot; resolve it before
        # the table is replaced.
        scope = self._locator(options.selector).first if options.selector else None
        if self.settings.snapshot_source == "aria":
            outline = await (scope or page.locator("body")).aria_snapshot()
            result = process_aria_tree(outline, options)
        else:
            if scope is not None:
                root = await scope.evaluate(_TREE_SCRIPT)
            else:
                root = await page.evaluate(_TREE_SCRIPT)
            result = build_snapshot(root, options)
        self.refs.replace(result.refs)
        logger.debug("Snapshot produced %d refs", len(result.refs))
        return result

    @_serialized
    async def evaluate(self, script: str, args: list[Any] | None = None) -> Any:
        if args:
            return await self.page.evaluate(script, args)
        return await self.page.evaluate(script)

    @_serialized
    async def content(self, selector: str | None = None) -> str:
        if selector:
            return await self._locator(selector).evaluate("el => el.outerHTML")
        return await self.page.content()

    @_serialized
    async def set_content(self, html: str) -> None:
        await self.page.set_content(html)

    # -- Element queries -----------------------------------------------------

    @_serialized
    async def text_content(self, selector: str) -> str:
        return await self._locator(selector).text_content() or ""

    @_serialized
    async def inner_text(self, selector: str) -> str:
        return await self._locator(selector).inner_text()

    @_serialized
    async def inner_html(self, selector: str) -> str:
        return await self._locator(selector).inner_html()

    @_serialized
    async def input_value(self, selector: str) -> str:
        return await self._locator(selector).input_value()

    @_serialized
    async def set_value(self, selector: str, value: str) -> None:
        await self._locator(selector).evaluate(
            "(el, value) => {"
            " el.value = value;"
            " el.dispatchEvent(new Event('input', {bubbles: true}));"
            " el.dispatchEvent(new Event('change', {bubbles: true}));"
            "}",
            value,
        )

    @_serialized
    async def get_attribute(self, selector: str, attribute: str) -> str | None:
        return await self._locator(selector).get_attribute(attribute)

    @_serialized
    async def is_visible(self, selector: str) -> bool:
        return await self._locator(selector).is_visible()

    @_serialized
    async def is_enabled(self, selector: str) -> bool:
        return await self._locator(selector).is_enabled()

    @_serialized
    async def is_checked(self, selector: str) -> bool:
        return await self._locator(selector).is_checked()

    @_serialized
    async def count(self, selector: str) -> int:
        return await self.page.locator(self.refs.resolve(selector)).count()

    @_serialized
    async def bounding_box(self, selector: str) -> dict[str, float] | None:
        return await self._locator(selector).bounding_box()

    # -- Waiting -------------------------------------------------------------

    @_serialized
    async def wait_for_selector(
        self, selector: str, timeout: int | None = None, state: str | None = None
    ) -> None:
        kwargs: dict[str, Any] = {"state": state or "visible"}
        if timeout:
            kwargs["timeout"] = timeout
        await self._locator(selector).wait_for(**kwargs)

    async def wait_for_timeout(self, ms: int) -> None:
        # A plain sleep, so other connections keep using the engine meanwhile.
        await asyncio.sleep(ms / 1000)

    @_serialized
    async def wait_for_url(self, url: str, timeout: int | None = None) -> None:
        kwargs: dict[str, Any] = {}
        if timeout:
            kwargs["timeout"] = timeout
        await self.page.wait_for_url(url, **kwargs)

    @_serialized
    async def wait_for_load_state(self, state: str, timeout: int | None = None) -> None:
        kwargs: dict[str, Any] = {}
        if timeout:
            kwargs["timeout"] = timeout
        await self.page.wait_for_load_state(state, **kwargs)

    # -- Cookies and storage -------------------------------------------------

    def _require_context(self) -> Any:
        if self.context is None:
            raise EngineNotLaunchedError()
        return self.context

    @_serialized
    async def get_cookies(self, urls: list[str] | None = None) -> list[dict]:
        context = self._require_context()
        if urls:
            return await context.cookies(urls)
        return await context.cookies()

    @_serialized
    async def set_cookies(self, cookies: list[dict]) -> None:
        context = self._require_context()
        page_url = self.page.url
        prepared = []
        for cookie in cookies:
            # Playwright needs either a url or a domain/path pair.
            if not cookie.get("url") and not cookie.get("domain"):
                cookie = {**cookie, "url": page_url}
            prepared.append(cookie)
        await context.add_cookies(prepared)

    @_serialized
    async def clear_cookies(self) -> None:
        await self._require_context().clear_cookies()

    @_serialized
    async def storage_get(self, kind: str, key: str | None = None) -> Any:
        store = _STORAGE_OBJECTS[kind]
        if key is not None:
            return await self.page.evaluate(f"key => {store}.getItem(key)", key)
        return await self.page.evaluate(f"() => Object.fromEntries(Object.entries({store}))")

    @_serialized
    async def storage_set(self, kind: str, key: str, value: str) -> None:
        store = _STORAGE_OBJECTS[kind]
        await self.page.evaluate(
            f"([key, value]) => {store}.setItem(key, value)", [key, value]
        )

    @_serialized
    async def storage_clear(self, kind: str) -> None:
        await self.page.evaluate(f"() => {_STORAGE_OBJECTS[kind]}.clear()")

    # -- Tabs ----------------------------------------------------------------

    def _check_tab_index(self, index: int) -> None:
        if index < 0 or index >= len(self.pages):
            raise IndexError(f"invalid tab index: {index}")

    @_serialized
    async def new_tab(self, url: str | None = None) -> int:
        page = await self._require_context().new_page()
        # The context "page" event has usually added it already.
        if page not in self.pages:
            self.pages.append(page)
        self.active_page_index = self.pages.index(page)
        if url:
            await page.goto(url)
        return self.active_page_index

    @_serialized
    async def list_tabs(self) -> list[dict[str, Any]]:
        tabs = []
        for i, page in enumerate(self.pages):
            try:
                title = await page.title()
            except Exception:
                title = ""
            tabs.append(
                {
                    "index": i,
                    "url": page.url,
                    "title": title,
                    "active": i == self.active_page_index,
                }
            )
        return tabs

    @_serialized
    async def switch_tab(self, index: int) -> None:
        self._check_tab_index(index)
        self.active_page_index = index
        await self.pages[index].bring_to_front()

    @_serialized
    async def close_tab(self, index: int) -> None:
        self._check_tab_index(index)
        page = self.pages.pop(index)
        if self.active_page_index >= len(self.pages):
            self.active_page_index = max(0, len(self.pages) - 1)
        elif self.active_page_index > index:
            self.active_page_index -= 1
        await page.close()

    @_serialized
    async def bring_to_front(self) -> None:
        await self.page.bring_to_front()


def create_engine(
    backend: BackendName = "patchright",
    settings: AgentBrowserSettings | None = None,
) -> BrowserEngine:
    """Return an engine for *backend*; raises ``ValueError`` for unknown names."""
    if backend not in BACKENDS:
        raise ValueError(
            f"unknown backend: {backend} (expected one of {', '.join(BACKENDS)})"
        )
    return PlaywrightEngine(backend=backend, settings=settings)
