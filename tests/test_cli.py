"""Tests for agent_browser.cli module."""

from __future__ import annotations

import argparse
import json
from unittest.mock import patch

import pytest

from agent_browser.cli import (
    _register_subcommands,
    build_command,
    build_parser,
    main,
    print_response,
)
from agent_browser.client import DaemonConnectionError, StopResult
from agent_browser.config import AgentBrowserSettings
from agent_browser.daemon import DaemonStartError
from agent_browser.protocol import Response, error_response, success_response


def parse(*argv: str) -> argparse.Namespace:
    return build_parser().parse_args(list(argv))


def command_for(*argv: str):
    return build_command(parse(*argv), "1")


@pytest.fixture
def cli_settings(tmp_path):
    return AgentBrowserSettings(runtime_dir=str(tmp_path / "runtime"))


@pytest.fixture
def client_mock():
    """Patch DaemonClient; the instance's ``send`` returns a success response."""
    with patch("agent_browser.cli.DaemonClient") as client_cls:
        client = client_cls.return_value.__enter__.return_value
        client.send.return_value = success_response("1", {"url": "https://example.com/"})
        yield client


# ---------------------------------------------------------------------------
# _register_subcommands
# ---------------------------------------------------------------------------


class TestRegisterSubcommands:
    def test_all_expected_commands_registered(self):
        parser = argparse.ArgumentParser()
        subparsers = parser.add_subparsers(dest="command")
        _register_subcommands(subparsers)

        expected = {
            "open", "goto", "navigate", "back", "forward", "reload", "close", "quit",
            "exit", "viewport", "click", "dblclick", "type", "fill", "clear", "press",
            "key", "keydown", "keyup", "inserttext", "hover", "focus", "check",
            "uncheck", "select", "upload", "drag", "mouse", "scroll", "scrollintoview",
            "scrollinto", "screenshot", "pdf", "snapshot", "eval", "content", "wait",
            "get", "is", "find", "cookies", "storage", "tab", "session", "daemon",
        }
        assert expected <= set(subparsers.choices)

    @pytest.mark.parametrize("alias", ["open", "goto", "navigate"])
    def test_aliases_map_to_canonical_name(self, alias):
        assert parse(alias, "https://example.com").command == "open"

    def test_global_flags(self):
        args = parse("-s", "work", "--json", "--head", "-b", "playwright",
                     "--profile", "/p", "-l", "de-DE", "get", "url")
        assert args.session == "work"
        assert args.json is True
        assert args.headed is True
        assert args.backend == "playwright"
        assert args.user_data_dir == "/p"
        assert args.locale == "de-DE"


# ---------------------------------------------------------------------------
# build_command
# ---------------------------------------------------------------------------


class TestBuildCommand:
    def test_open(self):
        cmd = command_for("goto", "https://example.com")
        assert cmd.action == "navigate"
        assert cmd.url == "https://example.com"
        assert cmd.id == "1"

    def test_click_options(self):
        cmd = command_for("click", "@e1", "--button", "right", "--count", "2")
        assert (cmd.action, cmd.selector, cmd.button, cmd.click_count) == (
            "click", "@e1", "right", 2,
        )

    def test_key_alias(self):
        cmd = command_for("key", "Enter")
        assert cmd.action == "press"
        assert cmd.key == "Enter"
        assert cmd.selector is None

    def test_snapshot_flags(self):
        cmd = command_for("snapshot", "-i", "-c", "-d", "3", "-s", "#main")
        assert cmd.action == "snapshot"
        assert cmd.interactive and cmd.compact
        assert cmd.max_depth == 3
        assert cmd.selector == "#main"

    def test_screenshot(self):
        cmd = command_for("screenshot", "out.png", "--full")
        assert cmd.path == "out.png"
        assert cmd.full_page is True

    def test_scroll_defaults(self):
        cmd = command_for("scroll")
        assert (cmd.direction, cmd.amount) == ("down", 100)

    def test_scrollinto_alias(self):
        assert command_for("scrollinto", "#footer").action == "scrollintoview"

    @pytest.mark.parametrize(
        ("argv", "action", "fields"),
        [
            (("wait", "1500"), "wait", {"timeout": 1500, "selector": None}),
            (("wait", "#ready"), "wait", {"selector": "#ready"}),
            (("wait", "--url", "**/done"), "waitforurl", {"url": "**/done"}),
            (("wait", "--load", "networkidle"), "waitforloadstate", {"state": "networkidle"}),
        ],
    )
    def test_wait_forms(self, argv, action, fields):
        cmd = command_for(*argv)
        assert cmd.action == action
        for key, value in fields.items():
            assert getattr(cmd, key) == value

    @pytest.mark.parametrize(
        ("argv", "action"),
        [
            (("get", "text", "@e1"), "gettext"),
            (("get", "html", "@e1"), "innerhtml"),
            (("get", "value", "@e1"), "inputvalue"),
            (("get", "count", "li"), "count"),
            (("get", "box", "@e1"), "boundingbox"),
            (("get", "title",), "title"),
            (("get", "url",), "url"),
            (("is", "visible", "@e1"), "isvisible"),
            (("is", "enabled", "@e1"), "isenabled"),
            (("is", "checked", "@e1"), "ischecked"),
        ],
    )
    def test_queries(self, argv, action):
        assert command_for(*argv).action == action

    def test_get_attr(self):
        cmd = command_for("get", "attr", "a", "href")
        assert (cmd.action, cmd.attribute) == ("getattribute", "href")

    def test_find_role(self):
        cmd = command_for("find", "role", "button", "click", "--name", "Save")
        assert cmd.action == "getbyrole"
        assert (cmd.role, cmd.name, cmd.subaction) == ("button", "Save", "click")

    def test_find_label_fill(self):
        cmd = command_for("find", "label", "Email", "fill", "a@b.c")
        assert (cmd.action, cmd.value) == ("getbylabel", "a@b.c")

    def test_find_testid(self):
        cmd = command_for("find", "testid", "login", "click")
        assert (cmd.action, cmd.test_id) == ("getbytestid", "login")

    def test_find_nth(self):
        cmd = command_for("find", "nth", "li", "-1", "hover")
        assert (cmd.action, cmd.index, cmd.subaction) == ("nth", -1, "hover")

    def test_find_bad_subaction(self):
        with pytest.raises(ValueError):
            command_for("find", "text", "Go", "explode")

    def test_cookies(self):
        assert command_for("cookies").action == "cookies_get"
        assert command_for("cookies", "clear").action == "cookies_clear"
        cmd = command_for("cookies", "set", "sid", "abc", "--domain", "example.com")
        assert cmd.action == "cookies_set"
        assert cmd.cookies[0].domain == "example.com"

    def test_cookies_set_needs_value(self):
        with pytest.raises(ValueError, match="usage: cookies set"):
            command_for("cookies", "set", "sid")

    def test_storage(self):
        get_all = command_for("storage", "local")
        assert (get_all.action, get_all.key, get_all.storage) == ("storage_get", None, "local")
        get_one = command_for("storage", "session", "token")
        assert (get_one.key, get_one.storage) == ("token", "session")
        set_cmd = command_for("storage", "local", "set", "k", "v")
        assert (set_cmd.action, set_cmd.key, set_cmd.value) == ("storage_set", "k", "v")
        assert command_for("storage", "local", "clear").action == "storage_clear"

    def test_tabs(self):
        assert command_for("tab").action == "tab_list"
        assert command_for("tab", "list").action == "tab_list"
        new = command_for("tab", "new", "https://example.org")
        assert (new.action, new.url) == ("tab_new", "https://example.org")
        close = command_for("tab", "close")
        assert (close.action, close.index) == ("tab_close", None)
        switch = command_for("tab", "2")
        assert (switch.action, switch.index) == ("tab_switch", 2)

    def test_tab_bad_index(self):
        with pytest.raises(ValueError, match="tab index must be a number"):
            command_for("tab", "two")

    def test_mouse(self):
        move = command_for("mouse", "move", "10", "20")
        assert (move.action, move.x, move.y) == ("mousemove", 10, 20)
        wheel = command_for("mouse", "wheel", "300")
        assert (wheel.action, wheel.delta_y, wheel.delta_x) == ("wheel", 300, 0)
        assert command_for("mouse", "down", "right").button == "right"


# ---------------------------------------------------------------------------
# print_response
# ---------------------------------------------------------------------------


class TestPrintResponse:
    def test_json_mode(self, capsys):
        print_response(success_response("1", {"a": 1}), json_mode=True)
        assert json.loads(capsys.readouterr().out) == {
            "id": "1", "success": True, "data": {"a": 1},
        }

    def test_error_to_stderr(self, capsys):
        print_response(error_response("1", "boom"))
        captured = capsys.readouterr()
        assert captured.err.strip() == "Error: boom"
        assert captured.out == ""

    def test_empty_data_prints_ok(self, capsys):
        print_response(Response(id="1", success=True))
        assert capsys.readouterr().out.strip() == "OK"

    def test_snapshot_printed_verbatim(self, capsys):
        print_response(success_response("1", {"snapshot": "- button", "refs": {}}))
        assert capsys.readouterr().out == "- button\n"

    def test_first_known_key_wins(self, capsys):
        print_response(success_response("1", {"url": "u", "title": "t"}))
        assert capsys.readouterr().out == "u\n"

    def test_other_data_pretty_json(self, capsys):
        print_response(success_response("1", {"visible": True}))
        assert json.loads(capsys.readouterr().out) == {"visible": True}


# ---------------------------------------------------------------------------
# main
# ---------------------------------------------------------------------------


class TestMain:
    def test_version(self, capsys):
        main(["--version"])
        assert capsys.readouterr().out.strip()

    def test_no_command_exits_with_1(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1

    @patch("agent_browser.cli.ensure_daemon")
    @patch("agent_browser.cli.load_config")
    def test_open_sends_navigate(self, mock_load, mock_ensure, cli_settings, client_mock,
                                 capsys):
        mock_load.return_value = cli_settings
        main(["-s", "work", "open", "https://example.com"])

        kwargs = mock_ensure.call_args.kwargs
        assert mock_ensure.call_args.args[0] == "work"
        assert kwargs["action"] == "open"
        assert kwargs["backend"] == "patchright"
        assert kwargs["backend_specified"] is False
        sent = client_mock.send.call_args.args[0]
        assert sent.action == "navigate"
        assert capsys.readouterr().out == "https://example.com/\n"

    @patch("agent_browser.cli.ensure_daemon")
    @patch("agent_browser.cli.load_config")
    def test_saved_backend_used_when_not_specified(
        self, mock_load, mock_ensure, cli_settings, client_mock
    ):
        mock_load.return_value = cli_settings
        with patch("agent_browser.cli.SessionRegistry.get_backend", return_value="playwright"):
            main(["get", "url"])
        assert mock_ensure.call_args.kwargs["backend"] == "playwright"
        assert mock_ensure.call_args.kwargs["backend_specified"] is False

    @patch("agent_browser.cli.ensure_daemon")
    @patch("agent_browser.cli.load_config")
    def test_explicit_backend(self, mock_load, mock_ensure, cli_settings, client_mock):
        mock_load.return_value = cli_settings
        main(["--backend", "playwright", "--headed", "open", "https://example.com"])
        kwargs = mock_ensure.call_args.kwargs
        assert kwargs["backend"] == "playwright"
        assert kwargs["backend_specified"] is True
        assert kwargs["headed"] is True

    @patch("agent_browser.cli.ensure_daemon")
    @patch("agent_browser.cli.load_config")
    def test_error_response_exits_1(self, mock_load, mock_ensure, cli_settings, client_mock,
                                    capsys):
        mock_load.return_value = cli_settings
        client_mock.send.return_value = error_response("1", "Element not found: @e9.")
        with pytest.raises(SystemExit) as exc_info:
            main(["click", "@e9"])
        assert exc_info.value.code == 1
        assert "Error: Element not found: @e9." in capsys.readouterr().err

    @patch("agent_browser.cli.ensure_daemon", side_effect=DaemonStartError("no chromium"))
    @patch("agent_browser.cli.load_config")
    def test_daemon_start_failure(self, mock_load, _mock_ensure, cli_settings, capsys):
        mock_load.return_value = cli_settings
        with pytest.raises(SystemExit) as exc_info:
            main(["get", "url"])
        assert exc_info.value.code == 1
        assert "failed to start daemon: no chromium" in capsys.readouterr().err

    @patch("agent_browser.cli.ensure_daemon")
    @patch("agent_browser.cli.load_config")
    def test_connection_failure_json(self, mock_load, _mock_ensure, cli_settings, capsys):
        mock_load.return_value = cli_settings
        with patch("agent_browser.cli.DaemonClient") as client_cls:
            client_cls.return_value.__enter__.side_effect = DaemonConnectionError(
                "failed to connect to daemon: refused"
            )
            with pytest.raises(SystemExit):
                main(["--json", "get", "url"])
        payload = json.loads(capsys.readouterr().out)
        assert payload["success"] is False
        assert payload["error"] == "failed to connect to daemon: refused"

    @patch("agent_browser.cli.ensure_daemon")
    @patch("agent_browser.cli.load_config")
    def test_bad_arguments_never_reach_daemon(self, mock_load, mock_ensure, cli_settings,
                                              capsys):
        mock_load.return_value = cli_settings
        with pytest.raises(SystemExit):
            main(["tab", "close", "x"])
        mock_ensure.assert_not_called()


class TestLocalCommands:
    @patch("agent_browser.cli.load_config")
    def test_session_prints_name(self, mock_load, cli_settings, capsys):
        mock_load.return_value = cli_settings
        main(["-s", "work", "session"])
        assert capsys.readouterr().out.strip() == "work"

    @patch("agent_browser.cli.load_config")
    def test_session_list_empty(self, mock_load, cli_settings, capsys):
        mock_load.return_value = cli_settings
        main(["session", "list"])
        assert capsys.readouterr().out.strip() == "No active sessions"

    @patch("agent_browser.cli.load_config")
    def test_session_list_marks_current(self, mock_load, cli_settings, capsys):
        mock_load.return_value = cli_settings
        with patch(
            "agent_browser.cli.SessionRegistry.list_running", return_value=["default", "work"]
        ):
            main(["session", "list"])
        assert capsys.readouterr().out.split("\n")[:2] == ["default (current)", "work"]

    @patch("agent_browser.cli.run_daemon")
    @patch("agent_browser.cli.load_config")
    def test_daemon_runs_in_foreground(self, mock_load, mock_run, cli_settings):
        mock_load.return_value = cli_settings
        main(["-s", "work", "-b", "playwright", "--locale", "de-DE", "daemon"])
        mock_run.assert_called_once_with("work", "playwright", "", "de-DE", cli_settings)

    @patch("agent_browser.cli.stop_daemon")
    @patch("agent_browser.cli.load_config")
    def test_daemon_stop(self, mock_load, mock_stop, cli_settings, capsys):
        mock_load.return_value = cli_settings
        main(["-s", "work", "daemon", "stop"])
        assert mock_stop.call_args.args[0] == "work"
        assert "Stopped daemon for session: work" in capsys.readouterr().out

    @patch("agent_browser.cli.stop_all_daemons")
    @patch("agent_browser.cli.load_config")
    def test_daemon_stop_all(self, mock_load, mock_stop_all, cli_settings, capsys):
        mock_load.return_value = cli_settings
        mock_stop_all.return_value = [StopResult("a"), StopResult("b", "denied")]
        main(["daemon", "stop", "--all"])
        captured = capsys.readouterr()
        assert "Stopped daemon for session: a" in captured.out
        assert "Failed to stop daemon for session b: denied" in captured.err
