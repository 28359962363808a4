"""agent-browser: headless browser automation for AI agents.

A per-session daemon owns the browser; the ``agent-browser`` CLI talks to it
over a local socket with newline-delimited JSON.
"""

from agent_browser.config import AgentBrowserSettings, get_version
from agent_browser.protocol import ACTION_TYPES, Response, parse_command
from agent_browser.snapshot import EnhancedSnapshot, RefData, SnapshotOptions

__all__ = [
    "ACTION_TYPES",
    "AgentBrowserSettings",
    "EnhancedSnapshot",
    "RefData",
    "Response",
    "SnapshotOptions",
    "get_version",
    "parse_command",
]
