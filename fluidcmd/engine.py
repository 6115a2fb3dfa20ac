"""The Command Mode agent loop.

A user command is turned into a bounded series of model calls and shell
executions. Each model reply is either final text or a request to run one
terminal command; command output is appended to the log and fed back to
the model on the next step so it can check or correct its work.
"""

import functools
import time
from enum import Enum
from typing import Callable

from . import fmt, protocol
from .config import Settings
from .conversation import Conversation, PendingCommand, Role, ToolRequest, Turn
from .report import CommandModeError, ReportCollector
from .terminal import TerminalService, display_output, result_to_json

MAX_TURNS = 15
MAX_PREVIEW = 500

STEP_LIMIT_MESSAGE = "I've reached the maximum number of steps. Stopping here."
CANCELLED_MESSAGE = "Command cancelled."
INTERRUPTED_MESSAGE = "Interrupted."


class State(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING_TOOL = "executing_tool"
    DONE = "done"


class CommandModeEngine:
    """Drives one Command Mode conversation.

    ``settings_provider`` is called before every model call, so settings
    changed between steps apply from the next call on. ``complete`` maps
    (settings, turns) to a ``protocol.ModelReply``; ``executor`` needs an
    ``execute(command, working_directory)`` method returning a
    ``terminal.CommandResult``.

    Entry points are meant to be called from a single thread. Calls made
    outside their valid state are ignored.
    """

    def __init__(
        self,
        settings_provider: Callable[[], Settings],
        *,
        executor=None,
        complete=None,
        max_turns: int = MAX_TURNS,
        verbose: bool = False,
        on_turn: Callable[[Turn], None] | None = None,
        report: ReportCollector | None = None,
    ):
        self.settings_provider = settings_provider
        self.executor = executor if executor is not None else TerminalService()
        self._complete = (
            complete
            if complete is not None
            else functools.partial(protocol.complete, verbose=verbose)
        )
        self.max_turns = max_turns
        self.verbose = verbose
        self.on_turn = on_turn
        self.report = report

        self.conversation = Conversation()
        self.state = State.IDLE
        self.outcome: str | None = None
        self._active_request: ToolRequest | None = None
        self._settings: Settings | None = None

    # -- Observable state ----------------------------------------------------

    @property
    def turns(self) -> tuple[Turn, ...]:
        return self.conversation.turns

    @property
    def turn_count(self) -> int:
        return self.conversation.turn_count

    @property
    def pending_command(self) -> PendingCommand | None:
        return self.conversation.pending

    @property
    def is_processing(self) -> bool:
        return self.state in (State.AWAITING_MODEL, State.EXECUTING_TOOL)

    @property
    def answer(self) -> str | None:
        """Content of the last assistant turn once the loop has settled."""
        if self.state is not State.DONE:
            return None
        last = self.conversation.last(Role.ASSISTANT)
        return last.content if last is not None else None

    # -- Entry points --------------------------------------------------------

    def submit(self, text: str) -> None:
        """Start a new command. Blank input is ignored."""
        if self.state not in (State.IDLE, State.DONE):
            self._ignored("submit")
            return
        if not text or not text.strip():
            return

        self.conversation.turn_count = 0
        self.outcome = None
        self._append(Turn.user(text))
        self.state = State.AWAITING_MODEL
        self._run()

    def confirm_and_execute(self) -> None:
        """Run the pending command and continue the loop."""
        if self.state is not State.AWAITING_CONFIRMATION:
            self._ignored("confirm_and_execute")
            return
        pending = self.conversation.pending
        self.conversation.pending = None
        if self.report:
            self.report.record_confirmation(self.turn_count, pending.command, True)
        self._active_request = ToolRequest(
            pending.id, pending.command, pending.working_directory
        )
        self.state = State.EXECUTING_TOOL
        self._run()

    def cancel_pending_command(self) -> None:
        """Drop the pending command without running it.

        The assistant turn that requested it stays in the log with no tool
        turn answering it, so later model calls resend an open tool call.
        """
        if self.state is not State.AWAITING_CONFIRMATION:
            self._ignored("cancel_pending_command")
            return
        pending = self.conversation.pending
        self.conversation.pending = None
        if self.report:
            self.report.record_confirmation(self.turn_count, pending.command, False)
        self._append(Turn.assistant(CANCELLED_MESSAGE))
        self._finish("cancelled")

    def clear(self) -> None:
        """Forget the conversation, the pending command and the step counter."""
        if self.is_processing:
            self._ignored("clear")
            return
        dropped = self.conversation.clear()
        self._active_request = None
        self.outcome = None
        self.state = State.IDLE
        if self.verbose:
            fmt.info(f"conversation cleared ({dropped} turns removed)")

    # -- Loop ----------------------------------------------------------------

    def _run(self) -> None:
        try:
            while True:
                if self.state is State.AWAITING_MODEL:
                    self._step_model()
                elif self.state is State.EXECUTING_TOOL:
                    self._step_execute()
                else:
                    return
        except KeyboardInterrupt:
            self._active_request = None
            self._append(Turn.assistant(INTERRUPTED_MESSAGE))
            self._finish("interrupted")
            raise

    def _step_model(self) -> None:
        conv = self.conversation
        conv.turn_count += 1
        if conv.turn_count > self.max_turns:
            self._append(Turn.assistant(STEP_LIMIT_MESSAGE))
            self._finish("step_limit")
            return

        t0 = time.monotonic()
        try:
            settings = self.settings_provider()
            if self.verbose:
                fmt.turn_header(conv.turn_count, self.max_turns, settings.model)
            reply = self._complete(settings, conv.turns)
        except CommandModeError as e:
            elapsed = time.monotonic() - t0
            if self.report:
                self.report.record_llm_call(
                    conv.turn_count, elapsed, "error", error=str(e)
                )
            self._append(Turn.assistant(f"Error: {e}"))
            self._finish("error")
            return
        elapsed = time.monotonic() - t0

        request = reply.tool_request
        kind = "text" if request is None else "tool_call"
        if self.verbose:
            fmt.llm_timing(elapsed, kind)
        if self.report:
            self.report.record_llm_call(conv.turn_count, elapsed, kind)

        if request is None:
            self._append(Turn.assistant(reply.content))
            self._finish("done")
            return

        if self.verbose and reply.content:
            fmt.assistant_text(reply.content)
        self._append(Turn.assistant(reply.content, request))

        if settings.confirm_before_execute:
            conv.pending = PendingCommand.from_request(request)
            self.state = State.AWAITING_CONFIRMATION
            return

        self._active_request = request
        self.state = State.EXECUTING_TOOL

    def _step_execute(self) -> None:
        request = self._active_request
        self._active_request = None
        if self.verbose:
            fmt.tool_call(request.command, request.working_directory)

        t0 = time.monotonic()
        result = self.executor.execute(request.command, request.working_directory)
        elapsed = time.monotonic() - t0

        content = result_to_json(result)
        if self.verbose:
            if result.succeeded:
                fmt.tool_result(
                    result.exit_code, elapsed, display_output(content)[:MAX_PREVIEW]
                )
            else:
                fmt.tool_error(result.exit_code, display_output(content)[:MAX_PREVIEW])
        if self.report:
            self.report.record_execution(
                self.turn_count,
                request.command,
                result.exit_code,
                elapsed,
                timed_out=result.timed_out,
            )

        self._append(Turn.tool(content))
        self.state = State.AWAITING_MODEL

    # -- Helpers -------------------------------------------------------------

    def _append(self, turn: Turn) -> None:
        self.conversation.append(turn)
        if self.on_turn is not None:
            self.on_turn(turn)

    def _finish(self, outcome: str) -> None:
        self.outcome = outcome
        self.state = State.DONE
        if self.verbose:
            fmt.completion(min(self.turn_count, self.max_turns), outcome)

    def _ignored(self, operation: str) -> None:
        if self.verbose:
            fmt.info(f"{operation} ignored while {self.state.value}")
