"""Shared fixtures for agent-browser integration tests.

These launch a real headless Chromium through the selected backend.  Run
with ``pytest -m integration``.
"""

from __future__ import annotations

import urllib.parse

import pytest

from agent_browser.config import AgentBrowserSettings
from agent_browser.engine import LaunchOptions, PlaywrightEngine

# ---------------------------------------------------------------------------
# Test HTML page served via data: URL (no external HTTP server needed).
# Explicit role and aria-label attributes keep ref selectors resolvable.
# ---------------------------------------------------------------------------

TEST_HTML = "data:text/html," + urllib.parse.quote(
    """<html><head><title>Test Page</title></head><body>
<h1>Test Page</h1>
<p>Some text</p>
<a href="https://example.com" id="link1" role="link" aria-label="Example Link">Example Link</a>
<form>
  <input type="text" name="username" role="textbox" aria-label="Username">
  <input type="checkbox" name="agree" id="agree-cb" role="checkbox" aria-label="Agree">
  <button type="button" id="save-1" role="button" aria-label="Save">Save</button>
  <button type="button" id="save-2" role="button" aria-label="Save">Save</button>
</form>
</body></html>"""
)


@pytest.fixture
def integration_settings() -> AgentBrowserSettings:
    return AgentBrowserSettings(no_sandbox=True, disable_shm=True)


@pytest.fixture(params=["patchright", "playwright"])
async def browser_engine(request, integration_settings):
    """A launched engine for each backend."""
    engine = PlaywrightEngine(request.param, integration_settings)
    await engine.launch(LaunchOptions(headless=True))
    yield engine
    await engine.close()


@pytest.fixture
def test_page_url() -> str:
    return TEST_HTML
