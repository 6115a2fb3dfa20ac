"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Loop structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, model: str) -> None:
    title = f"Step {n}/{max_n} ({model})"
    _console.print(Rule(escape(title), style="cyan"))


def llm_timing(elapsed: float, kind: str) -> None:
    style = "green" if kind == "text" else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  reply={kind}", style=style)
    _console.print(text)


def completion(steps: int, outcome: str) -> None:
    if outcome == "done":
        _console.print(
            Text(f"  \u2713 Command Mode finished: {steps} steps", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Command Mode finished: {steps} steps, outcome={outcome}",
                style="bold red",
            )
        )


# -- Commands ----------------------------------------------------------------


def tool_call(command: str, working_directory: str | None) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append("execute_terminal_command", style="bold magenta")
    _console.print(header)
    _console.print(Text(f"    $ {command}", style="dim"))
    if working_directory:
        _console.print(Text(f"    (in {working_directory})", style="dim"))


def tool_result(exit_code: int, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  \u2713 exit {exit_code}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        for line in preview.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_error(exit_code: int, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 exit {exit_code}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def pending_command(command: str, working_directory: str | None) -> None:
    header = Text()
    header.append("  \u26a0 Confirm command: ", style="bold yellow")
    header.append(command, style="yellow")
    _console.print(header)
    if working_directory:
        _console.print(Text(f"    (in {working_directory})", style="dim"))


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text("Command Mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )
