"""Tests for CLI app entry point."""

from unittest.mock import patch

from typer.testing import CliRunner

from warden.cli.app import app, main

runner = CliRunner()


def test_version_command():
    """Test 'version' prints warden version string."""
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "warden version" in result.output


def test_no_args_shows_help():
    """Test invoking with no arguments shows help (no_args_is_help)."""
    result = runner.invoke(app, [])
    assert result.exit_code in (0, 2)
    assert "Usage" in result.output or "warden" in result.output


def test_main_keyboard_interrupt():
    """Test main() handles KeyboardInterrupt with exit code 130."""
    with (
        patch("warden.cli.app.app", side_effect=KeyboardInterrupt),
        patch("warden.cli.app.sys") as mock_sys,
    ):
        main()
        mock_sys.exit.assert_called_with(130)


def test_main_exception():
    """Test main() handles unexpected exceptions with exit code 1."""
    with (
        patch("warden.cli.app.app", side_effect=RuntimeError("test error")),
        patch("warden.cli.app.sys") as mock_sys,
    ):
        main()
        mock_sys.exit.assert_called_with(1)


def test_plugin_list_command():
    """Test 'plugin list' delegates to list_plugins."""
    with patch("warden.cli.plugin_cmd.list_plugins") as mock_cmd:
        result = runner.invoke(app, ["plugin", "list"])
        mock_cmd.assert_called_once_with(config_path=None)
        assert result.exit_code == 0


def test_plugin_info_command():
    """Test 'plugin info' passes the plugin id."""
    with patch("warden.cli.plugin_cmd.info_plugin") as mock_cmd:
        result = runner.invoke(app, ["plugin", "info", "hello", "-c", "/tmp/w.yaml"])
        mock_cmd.assert_called_once_with("hello", config_path="/tmp/w.yaml")
        assert result.exit_code == 0


def test_plugin_call_command():
    """Test 'plugin call' forwards raw arguments."""
    with patch("warden.cli.plugin_cmd.call_plugin") as mock_cmd:
        result = runner.invoke(app, ["plugin", "call", "hello", "greet", "world", "42"])
        mock_cmd.assert_called_once_with("hello", "greet", ["world", "42"], config_path=None)
        assert result.exit_code == 0


def test_plugin_call_without_args():
    with patch("warden.cli.plugin_cmd.call_plugin") as mock_cmd:
        runner.invoke(app, ["plugin", "call", "hello", "ping"])
        mock_cmd.assert_called_once_with("hello", "ping", [], config_path=None)


def test_plugin_check_updates_command():
    """Test 'plugin check-updates' delegates to check_updates."""
    with patch("warden.cli.plugin_cmd.check_updates") as mock_cmd:
        result = runner.invoke(app, ["plugin", "check-updates"])
        mock_cmd.assert_called_once_with(config_path=None)
        assert result.exit_code == 0


def test_plugin_install_command():
    """Test 'plugin install' delegates to install_plugin."""
    with patch("warden.cli.plugin_cmd.install_plugin") as mock_cmd:
        result = runner.invoke(app, ["plugin", "install", "hello"])
        mock_cmd.assert_called_once_with("hello", config_path=None)
        assert result.exit_code == 0
