"""Shell command execution for the execute_terminal_command tool."""

import json
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TIMEOUT = 60
MAX_TIMEOUT = 300
MAX_STREAM_BYTES = 50 * 1024  # 50 KB per stream
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after SIGKILL


@dataclass
class CommandResult:
    """Outcome of one shell command."""

    command: str
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False
    working_directory: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


def default_shell() -> list[str]:
    """Return the shell argv prefix: zsh when available, else sh."""
    if sys.platform == "win32":
        return ["cmd.exe", "/c"]
    if Path("/bin/zsh").exists():
        return ["/bin/zsh", "-c"]
    return ["/bin/sh", "-c"]


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its process group, then wait for exit."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _truncate(data: bytes) -> str:
    text = data[:MAX_STREAM_BYTES].decode("utf-8", errors="replace")
    if len(data) > MAX_STREAM_BYTES:
        text += f"\n[output truncated at {MAX_STREAM_BYTES // 1024}KB]"
    return text


class TerminalService:
    """Runs shell command strings and reports stdout, stderr and exit code."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, shell: list[str] | None = None):
        self.timeout = max(1, min(timeout, MAX_TIMEOUT))
        self.shell = shell or default_shell()

    def execute(self, command: str, working_directory: str | None = None) -> CommandResult:
        cwd = None
        if working_directory:
            path = Path(working_directory).expanduser()
            if not path.is_dir():
                return CommandResult(
                    command=command,
                    stdout="",
                    stderr=f"working directory does not exist: {working_directory}",
                    exit_code=-1,
                    working_directory=working_directory,
                )
            cwd = str(path)

        popen_kwargs: dict = dict(
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            cwd=cwd,
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True

        try:
            proc = subprocess.Popen(self.shell + [command], **popen_kwargs)
        except OSError as e:
            return CommandResult(
                command=command,
                stdout="",
                stderr=f"failed to start shell command: {e}",
                exit_code=-1,
                working_directory=working_directory,
            )

        timed_out = False
        try:
            out, err = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            _kill_process_tree(proc)
            out, err = proc.communicate()

        stderr = _truncate(err or b"")
        if timed_out:
            note = f"command timed out after {self.timeout}s"
            stderr = f"{stderr}\n{note}" if stderr else note

        return CommandResult(
            command=command,
            stdout=_truncate(out or b""),
            stderr=stderr,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            timed_out=timed_out,
            working_directory=working_directory,
        )


def result_to_json(result: CommandResult) -> str:
    """Serialize a result as the content of a tool turn."""
    payload = {
        "command": result.command,
        "success": result.succeeded,
        "exitCode": result.exit_code,
        "output": result.stdout,
        "error": result.stderr,
    }
    if result.working_directory:
        payload["workingDirectory"] = result.working_directory
    return json.dumps(payload)


def display_output(content: str) -> str:
    """Return the part of a tool turn worth showing to the user."""
    try:
        parsed = json.loads(content)
    except (json.JSONDecodeError, TypeError):
        return content
    if not isinstance(parsed, dict):
        return content
    output = parsed.get("output")
    if isinstance(output, str) and output:
        return output
    error = parsed.get("error")
    if isinstance(error, str) and error:
        return f"Error: {error}"
    return content
