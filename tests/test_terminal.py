"""Tests for shell execution and tool-result serialization."""

import json
import sys

import pytest

from fluidcmd.terminal import (
    MAX_STREAM_BYTES,
    MAX_TIMEOUT,
    CommandResult,
    TerminalService,
    display_output,
    result_to_json,
)

unix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


@pytest.fixture
def service():
    return TerminalService(timeout=10, shell=["/bin/sh", "-c"])


@unix_only
def test_stdout_and_exit_code(service):
    result = service.execute("echo hello")
    assert result.stdout == "hello\n"
    assert result.stderr == ""
    assert result.exit_code == 0
    assert result.succeeded


@unix_only
def test_stderr_is_separate(service):
    result = service.execute("echo oops >&2; exit 3")
    assert result.stdout == ""
    assert result.stderr == "oops\n"
    assert result.exit_code == 3
    assert not result.succeeded


@unix_only
def test_working_directory(service, tmp_path):
    (tmp_path / "marker.txt").write_text("x")
    result = service.execute("ls", str(tmp_path))
    assert "marker.txt" in result.stdout
    assert result.working_directory == str(tmp_path)


def test_missing_working_directory(service, tmp_path):
    missing = tmp_path / "nope"
    result = service.execute("ls", str(missing))
    assert result.exit_code == -1
    assert "does not exist" in result.stderr


def test_unstartable_shell(tmp_path):
    service = TerminalService(shell=[str(tmp_path / "no-such-shell"), "-c"])
    result = service.execute("echo hi")
    assert result.exit_code == -1
    assert "failed to start" in result.stderr


@unix_only
def test_timeout_kills_command():
    service = TerminalService(timeout=1, shell=["/bin/sh", "-c"])
    result = service.execute("sleep 30")
    assert result.timed_out
    assert not result.succeeded
    assert "timed out after 1s" in result.stderr


@unix_only
def test_large_output_truncated(service):
    result = service.execute(f"head -c {MAX_STREAM_BYTES * 2} /dev/zero | tr '\\0' 'a'")
    assert "[output truncated" in result.stdout
    assert len(result.stdout) < MAX_STREAM_BYTES + 100


def test_timeout_is_clamped():
    assert TerminalService(timeout=0).timeout == 1
    assert TerminalService(timeout=10_000).timeout == MAX_TIMEOUT


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def test_result_to_json_keys():
    result = CommandResult("ls /tmp", "a\nb\n", "", 0, working_directory="/tmp")
    data = json.loads(result_to_json(result))
    assert data == {
        "command": "ls /tmp",
        "success": True,
        "exitCode": 0,
        "output": "a\nb\n",
        "error": "",
        "workingDirectory": "/tmp",
    }


def test_result_to_json_without_working_directory():
    data = json.loads(result_to_json(CommandResult("false", "", "", 1)))
    assert "workingDirectory" not in data
    assert data["success"] is False


@pytest.mark.parametrize(
    "content, expected",
    [
        ('{"output": "hi\\n", "error": ""}', "hi\n"),
        ('{"output": "", "error": "boom"}', "Error: boom"),
        ('{"output": "", "error": ""}', '{"output": "", "error": ""}'),
        ("plain text", "plain text"),
        ("[1, 2]", "[1, 2]"),
    ],
)
def test_display_output(content, expected):
    assert display_output(content) == expected
