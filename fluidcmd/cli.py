"""Command-line front-end: one-shot commands and an interactive REPL."""

import argparse
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .config import (
    _UNSET,
    SettingsStore,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
)
from .engine import CommandModeEngine, State
from .report import CommandModeError, ReportCollector
from .terminal import TerminalService

# argparse dests that feed Settings; CLI values here pin the config file value
_SETTINGS_DESTS = ("provider", "model", "api_key", "base_url", "confirm_before_execute")

_EXIT_CODES = {"done": 0, "cancelled": 0, "error": 1, "interrupted": 130, "step_limit": 2}


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="fluidcmd",
        usage="%(prog)s [options] <task>\n       %(prog)s --repl [options]",
        description="Command Mode: an LLM terminal agent that runs shell commands for you.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "task", nargs="?", default=None, help="What you want done in the terminal."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of running a single task.",
    )
    parser.add_argument(
        "--provider",
        default=_UNSET,
        help="Provider id: openai, groq, or a [providers.<id>] entry from config.",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model identifier (default: gpt-4o).",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides config and env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="OpenAI-compatible base URL (overrides the provider default).",
    )

    confirm_group = parser.add_mutually_exclusive_group()
    confirm_group.add_argument(
        "--confirm",
        dest="confirm_before_execute",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Ask before running each command (default).",
    )
    confirm_group.add_argument(
        "--yes",
        "-y",
        dest="confirm_before_execute",
        action="store_const",
        const=False,
        default=_UNSET,
        help="Run commands without asking.",
    )

    parser.add_argument(
        "--timeout",
        type=int,
        default=_UNSET,
        help="Per-command timeout in seconds (default: 60, max: 300).",
    )
    parser.add_argument(
        "--report",
        metavar="FILE",
        default=None,
        help="Write a JSON report of the run to FILE (not available with --repl).",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color", action="store_true", default=_UNSET, help="Force ANSI color."
    )
    color_group.add_argument(
        "--no-color", action="store_true", default=_UNSET, help="Disable ANSI color."
    )
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        default=_UNSET,
        help="Only print final answers (diagnostics are suppressed).",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (fluidcmd.toml) variant.",
    )
    return parser


def ask_confirmation(engine: CommandModeEngine, read_line) -> None:
    """Resolve pending commands with the user until the loop settles.

    ``read_line`` is called with a prompt string and returns the reply;
    EOF counts as "no".
    """
    while engine.state is State.AWAITING_CONFIRMATION:
        pending = engine.pending_command
        fmt.pending_command(pending.command, pending.working_directory)
        try:
            reply = read_line("Run this command? [y/N] ")
        except EOFError:
            reply = ""
        if reply.strip().lower() in ("y", "yes"):
            engine.confirm_and_execute()
        else:
            engine.cancel_pending_command()


def _stdin_prompt(prompt: str) -> str:
    print(prompt, end="", file=sys.stderr, flush=True)
    line = sys.stdin.readline()
    if not line:
        raise EOFError
    return line


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("fluidcmd")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    overrides = {
        dest: getattr(args, dest)
        for dest in _SETTINGS_DESTS
        if getattr(args, dest) is not _UNSET
    }

    try:
        config = load_config(Path.cwd())
    except CommandModeError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    if not args.repl and args.task is None:
        parser.error("task is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    fmt.init(color=args.color, no_color=args.no_color)

    store = SettingsStore(Path.cwd(), overrides)
    try:
        settings = store()
    except CommandModeError as e:
        fmt.error(str(e))
        sys.exit(1)
    if not settings.api_key:
        fmt.warning(
            f"no API key for provider {settings.provider_id!r}; "
            f"set --api-key, [api_keys] in config or "
            f"{settings.provider_id.upper()}_API_KEY"
        )

    report = ReportCollector() if args.report else None
    engine = CommandModeEngine(
        store,
        executor=TerminalService(timeout=args.timeout),
        verbose=args.verbose,
        report=report,
    )

    if args.repl:
        repl_loop(engine, verbose=args.verbose)
        return

    try:
        engine.submit(args.task)
        ask_confirmation(engine, _stdin_prompt)
    except KeyboardInterrupt:
        if engine.state is State.AWAITING_CONFIRMATION:
            engine.cancel_pending_command()
        fmt.warning("interrupted, task aborted.")

    answer = engine.answer
    if answer is not None:
        print(answer)

    outcome = engine.outcome or "error"
    exit_code = _EXIT_CODES.get(outcome, 1)
    if report:
        report.finalize(
            task=args.task,
            model=settings.model,
            provider=settings.provider_id,
            settings={
                "confirm_before_execute": settings.confirm_before_execute,
                "max_turns": engine.max_turns,
                "timeout": args.timeout,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=engine.turn_count,
            error_message=answer if outcome == "error" else None,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
        else:
            if args.verbose:
                fmt.info(f"Report written to {args.report}")
    sys.exit(exit_code)


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Forget the conversation and any pending command\n"
        "  /exit, /quit       Exit the REPL"
    )


def repl_loop(engine: CommandModeEngine, *, verbose: bool = True, session=None) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    if session is None:
        history_path = global_config_dir() / "repl_history"
        history_path.parent.mkdir(parents=True, exist_ok=True)
        session = PromptSession(
            history=FileHistory(str(history_path)),
            enable_history_search=True,
        )
    prompt_text = FormattedText([("bold fg:ansigreen", "fluidcmd> ")])

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        if line in ("/exit", "/quit"):
            break
        if line == "/help":
            _repl_help()
            continue
        if line == "/clear":
            engine.clear()
            continue

        try:
            engine.submit(line)
            ask_confirmation(engine, session.prompt)
        except KeyboardInterrupt:
            if engine.state is State.AWAITING_CONFIRMATION:
                engine.cancel_pending_command()
            fmt.warning("interrupted, command aborted.")
            continue

        if engine.answer is not None:
            print(engine.answer)
        if engine.outcome == "step_limit":
            fmt.warning("step limit reached for this command.")
        elif engine.outcome == "cancelled" and verbose:
            fmt.info("Cancelled request kept in history; use /clear if the next command fails.")


if __name__ == "__main__":
    main()
