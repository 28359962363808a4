"""Tests for agent_browser.session module."""

from __future__ import annotations

import os

import pytest

from agent_browser.session import (
    FileSessionStore,
    MemorySessionStore,
    SessionRegistry,
    pid_alive,
    port_for_session,
    resolve_session_name,
)


# ---------------------------------------------------------------------------
# 1. resolve_session_name
# ---------------------------------------------------------------------------


class TestResolveSessionName:
    def test_cli_arg_wins(self, monkeypatch):
        monkeypatch.setenv("AGENT_BROWSER_SESSION", "from-env")
        assert resolve_session_name("explicit") == "explicit"

    def test_env_var(self, monkeypatch):
        monkeypatch.setenv("AGENT_BROWSER_SESSION", "from-env")
        assert resolve_session_name(None) == "from-env"

    def test_default(self):
        assert resolve_session_name(None) == "default"
        assert resolve_session_name("") == "default"


# ---------------------------------------------------------------------------
# 2. Helpers
# ---------------------------------------------------------------------------


class TestPortForSession:
    def test_stable_and_in_dynamic_range(self):
        port = port_for_session("work")
        assert port == port_for_session("work")
        assert 49152 <= port < 65535

    def test_differs_between_sessions(self):
        assert port_for_session("a") != port_for_session("b")


class TestPidAlive:
    def test_own_pid(self):
        assert pid_alive(os.getpid()) is True

    def test_missing_pid(self):
        # PIDs above pid_max never exist.
        assert pid_alive(2**22 + 12345) is False


# ---------------------------------------------------------------------------
# 3. Stores
# ---------------------------------------------------------------------------


class TestFileSessionStore:
    def test_round_trip(self, tmp_path):
        store = FileSessionStore(tmp_path / "runtime")
        store.write_text("default.pid", "123")
        assert store.read_text("default.pid") == "123"
        assert store.exists("default.pid")
        assert store.names() == ["default.pid"]

    def test_missing_reads_as_none(self, tmp_path):
        store = FileSessionStore(tmp_path / "runtime")
        assert store.read_text("nope.pid") is None
        assert store.names() == []

    def test_remove_missing_is_noop(self, tmp_path):
        FileSessionStore(tmp_path).remove("nope.pid")

    def test_no_temp_files_left_behind(self, tmp_path):
        store = FileSessionStore(tmp_path)
        store.write_text("a.backend", "playwright")
        store.write_text("a.backend", "patchright")
        assert store.names() == ["a.backend"]
        assert store.read_text("a.backend") == "patchright"


class TestMemorySessionStore:
    def test_paths_are_not_created(self):
        store = MemorySessionStore()
        path = store.path("default.sock")
        assert path.name == "default.sock"
        assert not path.parent.exists()


# ---------------------------------------------------------------------------
# 4. Registry
# ---------------------------------------------------------------------------


class TestSessionRegistryPaths:
    def test_artifact_names(self, registry):
        assert registry.socket_path("work").name == "work.sock"
        assert registry.pid_path("work").name == "work.pid"
        assert registry.port_path("work").name == "work.port"
        assert registry.log_path("work").name == "work.log"


class TestPidAndPort:
    def test_pid_round_trip(self, registry):
        registry.write_pid("s", 42)
        assert registry.read_pid("s") == 42

    def test_malformed_pid_is_none(self, registry, memory_store):
        memory_store.files["s.pid"] = "not-a-number"
        assert registry.read_pid("s") is None

    def test_port_round_trip(self, registry):
        registry.write_port("s", 50123)
        assert registry.read_port("s") == 50123

    def test_missing_port(self, registry):
        assert registry.read_port("s") is None


class TestPreferences:
    def test_defaults(self, registry):
        assert registry.get_backend("s") == "patchright"
        assert registry.get_headed("s") is False
        assert registry.get_user_data_dir("s") == ""

    def test_save_preferences(self, registry, memory_store):
        registry.save_preferences("s", "playwright", True, "/profiles/a")
        assert registry.get_backend("s") == "playwright"
        assert registry.get_headed("s") is True
        assert registry.get_user_data_dir("s") == "/profiles/a"
        assert memory_store.files["s.headed"] == "true"


class TestIsRunning:
    def test_no_pid_file(self, registry):
        assert registry.is_running("s") is False

    def test_dead_process_removes_pid_file(self, registry, memory_store):
        registry.write_pid("s", 100)
        memory_store.files["s.sock"] = ""
        assert registry.is_running("s") is False
        assert "s.pid" not in memory_store.files

    def test_missing_socket_removes_pid_file(self, registry, memory_store, live_pids):
        live_pids.add(100)
        registry.write_pid("s", 100)
        assert registry.is_running("s") is False
        assert "s.pid" not in memory_store.files

    def test_running(self, registry, memory_store, live_pids):
        live_pids.add(100)
        registry.write_pid("s", 100)
        memory_store.files["s.sock"] = ""
        assert registry.is_running("s") is True

    def test_tcp_registry_checks_port_file(self, memory_store, live_pids):
        registry = SessionRegistry(
            memory_store, is_process_alive=lambda pid: pid in live_pids, use_unix_socket=False
        )
        live_pids.add(100)
        registry.write_pid("s", 100)
        memory_store.files["s.sock"] = ""
        assert registry.is_running("s") is False

        registry.write_pid("s", 100)
        registry.write_port("s", 50000)
        assert registry.is_running("s") is True


class TestListRunning:
    def test_lists_only_live_sessions(self, registry, memory_store, live_pids):
        live_pids.update({1, 2})
        for name, pid in (("alpha", 1), ("beta", 2), ("stale", 3)):
            registry.write_pid(name, pid)
            memory_store.files[f"{name}.sock"] = ""
        assert registry.list_running() == ["alpha", "beta"]


class TestNeedsRestart:
    @pytest.fixture
    def saved(self, registry):
        registry.save_preferences("s", "patchright", False, "/profiles/a")
        return registry

    def _check(self, registry, **overrides):
        kwargs = dict(
            backend="patchright",
            backend_specified=False,
            user_data_dir="",
            headed=False,
            action="click",
        )
        kwargs.update(overrides)
        return registry.needs_restart("s", **kwargs)

    def test_same_configuration(self, saved):
        assert self._check(saved) is False

    def test_backend_change_when_specified(self, saved):
        assert self._check(saved, backend="playwright", backend_specified=True) is True

    def test_backend_ignored_when_not_specified(self, saved):
        assert self._check(saved, backend="playwright") is False

    def test_user_data_dir_change(self, saved):
        assert self._check(saved, user_data_dir="/profiles/b") is True
        assert self._check(saved, user_data_dir="/profiles/a") is False

    def test_headed_only_matters_for_launch_actions(self, saved):
        assert self._check(saved, headed=True, action="click") is False
        assert self._check(saved, headed=True, action="open") is True
        assert self._check(saved, headed=True, action="launch") is True


class TestCleanup:
    def test_removes_runtime_artifacts_only(self, registry, memory_store):
        registry.write_pid("s", 1)
        registry.write_port("s", 50000)
        memory_store.files["s.sock"] = ""
        registry.save_preferences("s", "playwright", True, "")
        memory_store.files["s.log"] = "log"

        registry.cleanup("s")

        assert sorted(memory_store.files) == [
            "s.backend",
            "s.headed",
            "s.log",
            "s.userdatadir",
        ]

    def test_remove_address(self, registry, memory_store):
        memory_store.files["s.sock"] = ""
        registry.write_port("s", 50000)
        registry.write_pid("s", 1)
        registry.remove_address("s")
        assert sorted(memory_store.files) == ["s.pid"]
