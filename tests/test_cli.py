"""Tests for the command line and console commands."""

import asyncio

from click.testing import CliRunner

from duo_rtc.cli import cli
from duo_rtc.rtc_room import handle_console_line


class RecordingSession:
    """Records which session commands the console issued."""

    def __init__(self):
        self.calls = []

    async def toggle_mic(self):
        self.calls.append("mic")
        return False

    async def toggle_camera(self):
        self.calls.append("camera")
        return True

    async def toggle_screen_share(self):
        self.calls.append("screen")
        return True

    async def send_chat(self, text):
        self.calls.append(("chat", text))

    async def leave(self):
        self.calls.append("leave")


def run_lines(*lines):
    session = RecordingSession()
    results = [asyncio.run(handle_console_line(session, line)) for line in lines]
    return session.calls, results


class TestConsoleCommands:
    """Test how console lines map to session commands."""

    def test_toggles(self, capsys):
        calls, results = run_lines("/mic\n", "/camera\n", "/screen\n")

        assert calls == ["mic", "camera", "screen"]
        assert results == [True, True, True]
        output = capsys.readouterr().out
        assert "Microphone off" in output
        assert "Camera on" in output
        assert "Screen sharing on" in output

    def test_chat_lines(self):
        calls, _ = run_lines("hello there\n", "   \n")
        assert calls == [("chat", "hello there")]

    def test_leave_stops_console(self):
        calls, results = run_lines("/leave\n")
        assert calls == ["leave"]
        assert results == [False]

    def test_unknown_command_is_not_sent(self, capsys):
        calls, results = run_lines("/dance\n")

        assert calls == []
        assert results == [True]
        assert "Unknown command /dance" in capsys.readouterr().out


class TestCli:
    """Test the click entry points."""

    def test_help_lists_commands(self):
        result = CliRunner().invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "join" in result.output
        assert "serve" in result.output

    def test_join_requires_room_and_name(self):
        result = CliRunner().invoke(cli, ["join", "--name", "A"])

        assert result.exit_code != 0
        assert "--room" in result.output

    def test_blank_room_rejected(self):
        result = CliRunner().invoke(cli, ["join", "--room", "  ", "--name", "A"])
        assert result.exit_code == 1

    def test_invalid_log_level(self):
        result = CliRunner().invoke(cli, ["--log-level", "LOUD", "join", "--room", "r1", "--name", "A"])
        assert result.exit_code != 0
