"""Shared fixtures for agent-browser tests."""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_browser.config import AgentBrowserSettings
from agent_browser.engine import BrowserEngine, PlaywrightEngine
from agent_browser.session import MemorySessionStore, SessionRegistry
from agent_browser.snapshot import EnhancedSnapshot, RefTable


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep developer AGENT_BROWSER_* variables out of the tests."""
    for key in list(os.environ):
        if key.startswith("AGENT_BROWSER_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings():
    """Default settings, isolated from the environment."""
    return AgentBrowserSettings()


@pytest.fixture
def memory_store():
    return MemorySessionStore()


@pytest.fixture
def live_pids():
    """PIDs the registry under test should consider alive."""
    return set()


@pytest.fixture
def registry(memory_store, live_pids):
    """A SessionRegistry backed by memory, with controllable liveness."""
    return SessionRegistry(
        memory_store,
        is_process_alive=lambda pid: pid in live_pids,
        use_unix_socket=True,
    )


@pytest.fixture
def short_tmp():
    """A short temp dir; AF_UNIX paths are limited to ~104 bytes."""
    path = Path(tempfile.mkdtemp(prefix="ab-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def mock_engine():
    """A BrowserEngine whose every coroutine is an AsyncMock."""
    engine = MagicMock(spec=BrowserEngine)
    for name in dir(BrowserEngine):
        if name.startswith("_") or name in ("is_launched", "get_ref_map"):
            continue
        setattr(engine, name, AsyncMock(return_value=None))
    engine.refs = RefTable()
    engine.is_launched = MagicMock(return_value=True)
    engine.navigate.return_value = ("https://example.com/", "Example Domain")
    engine.snapshot.return_value = EnhancedSnapshot(tree="(empty)")
    engine.list_tabs.return_value = [
        {"index": 0, "url": "https://example.com/", "title": "Example", "active": True}
    ]
    engine.url.return_value = "https://example.com/"
    engine.title.return_value = "Example"
    return engine


@pytest.fixture
def mock_locator():
    locator = MagicMock()
    for name in (
        "click",
        "dblclick",
        "fill",
        "clear",
        "check",
        "uncheck",
        "press",
        "press_sequentially",
        "hover",
        "focus",
        "select_option",
        "set_input_files",
        "drag_to",
        "scroll_into_view_if_needed",
        "screenshot",
        "evaluate",
        "text_content",
        "inner_text",
        "inner_html",
        "input_value",
        "get_attribute",
        "is_visible",
        "is_enabled",
        "is_checked",
        "count",
        "bounding_box",
        "wait_for",
        "aria_snapshot",
    ):
        setattr(locator, name, AsyncMock())
    locator.nth = MagicMock(return_value=locator)
    locator.first = locator
    return locator


@pytest.fixture
def mock_page(mock_locator):
    """A MagicMock standing in for a Playwright Page."""
    page = MagicMock()
    page.url = "https://example.com/"
    page.title = AsyncMock(return_value="Example Domain")
    page.goto = AsyncMock()
    page.evaluate = AsyncMock(return_value=None)
    page.screenshot = AsyncMock(return_value=b"\x89PNG")
    page.pdf = AsyncMock()
    page.reload = AsyncMock()
    page.go_back = AsyncMock()
    page.go_forward = AsyncMock()
    page.close = AsyncMock()
    page.content = AsyncMock(return_value="<html></html>")
    page.set_content = AsyncMock()
    page.bring_to_front = AsyncMock()
    page.set_viewport_size = AsyncMock()
    page.set_extra_http_headers = AsyncMock()
    page.wait_for_url = AsyncMock()
    page.wait_for_load_state = AsyncMock()

    # Keyboard
    page.keyboard = MagicMock()
    page.keyboard.press = AsyncMock()
    page.keyboard.down = AsyncMock()
    page.keyboard.up = AsyncMock()
    page.keyboard.insert_text = AsyncMock()

    # Mouse
    page.mouse = MagicMock()
    page.mouse.move = AsyncMock()
    page.mouse.down = AsyncMock()
    page.mouse.up = AsyncMock()
    page.mouse.wheel = AsyncMock()

    # Locators
    page.locator = MagicMock(return_value=mock_locator)
    page.get_by_role = MagicMock(return_value=mock_locator)
    page.get_by_text = MagicMock(return_value=mock_locator)
    page.get_by_label = MagicMock(return_value=mock_locator)
    page.get_by_placeholder = MagicMock(return_value=mock_locator)
    page.get_by_test_id = MagicMock(return_value=mock_locator)
    return page


@pytest.fixture
def mock_context(mock_page):
    """A MagicMock standing in for a Playwright BrowserContext."""
    ctx = MagicMock()
    ctx.pages = [mock_page]
    ctx.new_page = AsyncMock(return_value=mock_page)
    ctx.cookies = AsyncMock(return_value=[])
    ctx.add_cookies = AsyncMock()
    ctx.clear_cookies = AsyncMock()
    ctx.close = AsyncMock()
    ctx.set_default_timeout = MagicMock()
    ctx.set_default_navigation_timeout = MagicMock()
    ctx.on = MagicMock()
    return ctx


@pytest.fixture
def mock_browser(mock_context):
    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=mock_context)
    browser.close = AsyncMock()
    browser.contexts = [mock_context]
    return browser


@pytest.fixture
def mock_playwright(mock_browser, mock_context):
    """The object ``async_playwright().start()`` resolves to."""
    pw = MagicMock()
    pw.stop = AsyncMock()
    for name in ("chromium", "firefox", "webkit"):
        browser_type = MagicMock()
        browser_type.launch = AsyncMock(return_value=mock_browser)
        browser_type.launch_persistent_context = AsyncMock(return_value=mock_context)
        browser_type.connect_over_cdp = AsyncMock(return_value=mock_browser)
        setattr(pw, name, browser_type)
    return pw


@pytest.fixture
def playwright_factory(mock_playwright):
    """Stands in for ``async_playwright``."""
    manager = MagicMock()
    manager.start = AsyncMock(return_value=mock_playwright)
    return MagicMock(return_value=manager)


@pytest.fixture
def engine(settings, playwright_factory):
    """A PlaywrightEngine driving mocked Playwright objects."""
    return PlaywrightEngine("patchright", settings, playwright_factory=playwright_factory)


@pytest.fixture
def launched_engine(engine, mock_browser, mock_context, mock_page, mock_playwright):
    """A PlaywrightEngine that looks already launched."""
    engine.playwright = mock_playwright
    engine.browser = mock_browser
    engine.context = mock_context
    engine.pages = [mock_page]
    engine.active_page_index = 0
    engine._headless = True
    return engine
