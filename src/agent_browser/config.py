from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BackendName = Literal["patchright", "playwright"]

DEFAULT_BACKEND: BackendName = "patchright"
_RUNTIME_DIR_NAME = "agent-browser"


class ViewportConfig(BaseModel):
    width: int = 1280
    height: int = 720


class TimeoutsConfig(BaseModel):
    action: int = 5000
    navigation: int = 60000


def _default_runtime_dir() -> str:
    return str(Path(tempfile.gettempdir()) / _RUNTIME_DIR_NAME)


class AgentBrowserSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="AGENT_BROWSER_",
        env_nested_delimiter="__",
    )

    session: str = "default"
    backend: BackendName = DEFAULT_BACKEND
    user_data_dir: str = ""
    locale: str = ""
    headed: bool = False
    runtime_dir: str = Field(default_factory=_default_runtime_dir)

    browser: Literal["chromium", "firefox", "webkit"] = "chromium"
    executable_path: str | None = None
    no_sandbox: bool = False
    disable_shm: bool = False
    viewport: ViewportConfig = Field(default_factory=ViewportConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    snapshot_source: Literal["tree", "aria"] = "tree"

    @field_validator("viewport", mode="before")
    @classmethod
    def parse_viewport(
        cls, v: str | dict | ViewportConfig
    ) -> dict | ViewportConfig:
        if isinstance(v, str):
            parts = v.lower().split("x")
            if len(parts) != 2:
                raise ValueError(
                    f"AGENT_BROWSER_VIEWPORT must be in 'WxH' format, got '{v}'"
                )
            return {"width": int(parts[0]), "height": int(parts[1])}
        return v


def get_version() -> str:
    """Return the installed package version."""
    try:
        from importlib.metadata import version

        return version("agent-browser")
    except Exception:
        return "0.1.0"


def load_config(config_path: str | None = None) -> AgentBrowserSettings:
    """Load settings from an optional JSON file, then apply environment overrides.

    Environment variables (``AGENT_BROWSER_*``) win over file values, which
    win over the built-in defaults.
    """
    file_values: dict = {}
    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            file_values = json.loads(path.read_text(encoding="utf-8"))

    # pydantic-settings gives init kwargs priority over the environment, so
    # read the environment first and only fill the gaps from the file.
    from_env = AgentBrowserSettings()
    env_set = from_env.model_fields_set
    merged = {k: v for k, v in file_values.items() if k not in env_set}
    if not merged:
        return from_env
    return AgentBrowserSettings(**{**from_env.model_dump(include=env_set), **merged})
