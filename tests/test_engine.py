"""Tests for the Command Mode agent loop: states, confirmation gate, step limit."""

import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from fluidcmd.config import Settings
from fluidcmd.conversation import Role, ToolRequest
from fluidcmd.engine import (
    CANCELLED_MESSAGE,
    INTERRUPTED_MESSAGE,
    MAX_TURNS,
    STEP_LIMIT_MESSAGE,
    CommandModeEngine,
    State,
)
from fluidcmd.protocol import ModelReply
from fluidcmd.report import ProtocolError, ReportCollector, RequestError
from fluidcmd.terminal import CommandResult


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings(confirm=False):
    return Settings(
        provider_id="openai",
        model="gpt-4o",
        api_key="sk-test",
        base_url="https://api.openai.com/v1",
        confirm_before_execute=confirm,
    )


def _text(content):
    return ModelReply(content=content)


def _tool(command, call_id="call_1", workdir=None, content="I'll run this command:"):
    return ModelReply(
        content=content, tool_request=ToolRequest(call_id, command, workdir)
    )


class FakeModel:
    """Returns scripted replies and records the history it was shown."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: list[tuple] = []

    def __call__(self, settings, turns):
        self.calls.append((settings, turns))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeExecutor:
    def __init__(self, exit_code=0, stdout="file1\nfile2\n", stderr=""):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.calls: list[tuple] = []

    def execute(self, command, working_directory=None):
        self.calls.append((command, working_directory))
        return CommandResult(
            command=command,
            stdout=self.stdout,
            stderr=self.stderr,
            exit_code=self.exit_code,
            working_directory=working_directory,
        )


def _engine(model, executor=None, confirm=False, **kwargs):
    return CommandModeEngine(
        lambda: _settings(confirm),
        executor=executor or FakeExecutor(),
        complete=model,
        **kwargs,
    )


def _roles(engine):
    return [t.role for t in engine.turns]


# ---------------------------------------------------------------------------
# submit
# ---------------------------------------------------------------------------


class TestSubmit:
    @pytest.mark.parametrize("text", ["", "   ", "\n\t "])
    def test_blank_input_is_ignored(self, text):
        model = FakeModel(_text("hi"))
        engine = _engine(model)
        engine.submit(text)
        assert engine.turns == ()
        assert engine.state is State.IDLE
        assert model.calls == []

    def test_user_turn_appended_before_model_call(self):
        model = FakeModel(_text("Hello!"))
        engine = _engine(model)
        engine.submit("say hi")

        (_, seen) = model.calls[0]
        assert [t.role for t in seen] == [Role.USER]
        assert seen[0].content == "say hi"

    def test_text_reply_settles_done(self):
        engine = _engine(FakeModel(_text("Hello!")))
        engine.submit("say hi")
        assert _roles(engine) == [Role.USER, Role.ASSISTANT]
        assert engine.state is State.DONE
        assert engine.outcome == "done"
        assert engine.answer == "Hello!"
        assert not engine.is_processing
        assert engine.turn_count == 1

    def test_turn_counter_resets_per_command(self):
        model = FakeModel(_tool("ls"), _text("one"), _text("two"))
        engine = _engine(model)
        engine.submit("first")
        assert engine.turn_count == 2
        engine.submit("second")
        assert engine.turn_count == 1

    def test_history_is_kept_across_commands(self):
        model = FakeModel(_text("one"), _text("two"))
        engine = _engine(model)
        engine.submit("first")
        engine.submit("second")
        (_, seen) = model.calls[1]
        assert [t.content for t in seen] == ["first", "one", "second"]


# ---------------------------------------------------------------------------
# Auto-execute
# ---------------------------------------------------------------------------


class TestAutoExecute:
    def test_list_files_scenario(self):
        model = FakeModel(_tool("ls /tmp"), _text("Done"))
        executor = FakeExecutor()
        engine = _engine(model, executor)

        engine.submit("list files in /tmp")

        assert engine.state is State.DONE
        assert executor.calls == [("ls /tmp", None)]
        assert _roles(engine) == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        assert _roles(engine).count(Role.ASSISTANT) == 2
        assert _roles(engine).count(Role.TOOL) == 1

        tool_turn = engine.turns[2]
        result = json.loads(tool_turn.content)
        assert result["exitCode"] == 0
        assert result["output"] == "file1\nfile2\n"
        assert result["error"] == ""
        assert engine.answer == "Done"

    def test_tool_result_is_shown_to_next_model_call(self):
        model = FakeModel(_tool("ls /tmp"), _text("Done"))
        engine = _engine(model)
        engine.submit("list files in /tmp")

        (_, second) = model.calls[1]
        assert [t.role for t in second] == [Role.USER, Role.ASSISTANT, Role.TOOL]
        assert second[1].tool_request.command == "ls /tmp"

    def test_failed_command_feeds_back_for_correction(self):
        model = FakeModel(
            _tool("mkdir /tmp/a/b", call_id="c1"),
            _tool("mkdir -p /tmp/a/b", call_id="c2"),
            _text("Created."),
        )
        executor = FakeExecutor(exit_code=1, stdout="", stderr="No such file or directory")
        engine = _engine(model, executor)
        engine.submit("make /tmp/a/b")

        assert [c[0] for c in executor.calls] == ["mkdir /tmp/a/b", "mkdir -p /tmp/a/b"]
        first_result = json.loads(engine.turns[2].content)
        assert first_result["success"] is False
        assert first_result["error"] == "No such file or directory"

    def test_working_directory_passed_through(self):
        executor = FakeExecutor()
        engine = _engine(FakeModel(_tool("ls", workdir="/var/log"), _text("ok")), executor)
        engine.submit("list logs")
        assert executor.calls == [("ls", "/var/log")]

    def test_on_turn_sees_every_append_in_order(self):
        seen = []
        engine = _engine(
            FakeModel(_tool("ls"), _text("ok")), on_turn=lambda t: seen.append(t.role)
        )
        engine.submit("go")
        assert seen == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]


# ---------------------------------------------------------------------------
# Confirmation gate
# ---------------------------------------------------------------------------


class TestConfirmation:
    def test_awaits_confirmation_without_executing(self):
        executor = FakeExecutor()
        engine = _engine(FakeModel(_tool("rm -rf /tmp/x")), executor, confirm=True)
        engine.submit("delete /tmp/x")

        assert engine.state is State.AWAITING_CONFIRMATION
        assert engine.is_processing is False
        assert engine.pending_command.command == "rm -rf /tmp/x"
        assert engine.pending_command.id == "call_1"
        assert executor.calls == []
        assert engine.answer is None

    def test_cancel_scenario(self):
        executor = FakeExecutor()
        engine = _engine(FakeModel(_tool("rm -rf /tmp/x")), executor, confirm=True)
        engine.submit("delete /tmp/x")
        before = len(engine.turns)

        engine.cancel_pending_command()

        assert engine.state is State.DONE
        assert engine.outcome == "cancelled"
        assert engine.pending_command is None
        assert executor.calls == []
        assert len(engine.turns) == before + 1
        assert engine.turns[-1].role is Role.ASSISTANT
        assert engine.turns[-1].content == CANCELLED_MESSAGE

    def test_confirm_executes_and_continues(self):
        executor = FakeExecutor()
        model = FakeModel(_tool("ls /tmp", call_id="call_7"), _text("Here you go."))
        engine = _engine(model, executor, confirm=True)
        engine.submit("list /tmp")

        engine.confirm_and_execute()

        assert executor.calls == [("ls /tmp", None)]
        assert engine.pending_command is None
        assert engine.state is State.DONE
        assert engine.answer == "Here you go."
        assert len(model.calls) == 2
        assert engine.turn_count == 2

    def test_confirm_and_cancel_outside_gate_are_noops(self):
        executor = FakeExecutor()
        engine = _engine(FakeModel(_text("hi")), executor)
        engine.confirm_and_execute()
        engine.cancel_pending_command()
        assert engine.turns == ()
        assert engine.state is State.IDLE

        engine.submit("hello")
        engine.cancel_pending_command()
        assert len(engine.turns) == 2
        assert executor.calls == []

    def test_submit_ignored_while_awaiting_confirmation(self):
        model = FakeModel(_tool("rm x"))
        engine = _engine(model, confirm=True)
        engine.submit("remove x")
        engine.submit("something else")
        assert len(model.calls) == 1
        assert [t.content for t in engine.turns if t.role is Role.USER] == ["remove x"]

    def test_each_step_is_gated(self):
        executor = FakeExecutor()
        model = FakeModel(_tool("mkdir d", "c1"), _tool("touch d/f", "c2"), _text("ok"))
        engine = _engine(model, executor, confirm=True)
        engine.submit("make d/f")
        engine.confirm_and_execute()
        assert engine.state is State.AWAITING_CONFIRMATION
        assert engine.pending_command.command == "touch d/f"
        engine.confirm_and_execute()
        assert engine.state is State.DONE
        assert [c[0] for c in executor.calls] == ["mkdir d", "touch d/f"]

    def test_settings_reread_before_each_model_call(self):
        confirm_values = iter([False, True])
        executor = FakeExecutor()
        engine = CommandModeEngine(
            lambda: _settings(next(confirm_values)),
            executor=executor,
            complete=FakeModel(_tool("ls", "c1"), _tool("rm f", "c2")),
        )
        engine.submit("tidy up")
        assert executor.calls == [("ls", None)]
        assert engine.state is State.AWAITING_CONFIRMATION
        assert engine.pending_command.command == "rm f"


# ---------------------------------------------------------------------------
# Step limit
# ---------------------------------------------------------------------------


class TestStepLimit:
    def test_stops_after_max_turns(self):
        model = FakeModel(_tool("sleep 0"))
        executor = FakeExecutor()
        engine = _engine(model, executor)
        engine.submit("loop forever")

        assert len(model.calls) == MAX_TURNS
        assert len(executor.calls) == MAX_TURNS
        assert engine.state is State.DONE
        assert engine.outcome == "step_limit"
        assert engine.turns[-1].content == STEP_LIMIT_MESSAGE
        assert engine.turn_count == MAX_TURNS + 1

    def test_custom_limit(self):
        model = FakeModel(_tool("true"))
        engine = _engine(model, max_turns=2)
        engine.submit("x")
        assert len(model.calls) == 2
        assert engine.answer == STEP_LIMIT_MESSAGE

    def test_limit_counts_confirmed_steps(self):
        model = FakeModel(_tool("true"))
        engine = _engine(model, confirm=True, max_turns=2)
        engine.submit("x")
        engine.confirm_and_execute()
        engine.confirm_and_execute()
        assert engine.outcome == "step_limit"
        assert len(model.calls) == 2


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_request_error_becomes_assistant_turn(self):
        executor = FakeExecutor()
        err = RequestError("HTTP 401: invalid api key", status_code=401)
        engine = _engine(FakeModel(err), executor)
        engine.submit("list files")

        assert _roles(engine) == [Role.USER, Role.ASSISTANT]
        assert engine.turns[-1].content == "Error: HTTP 401: invalid api key"
        assert engine.state is State.DONE
        assert engine.outcome == "error"
        assert executor.calls == []

    def test_protocol_error_handled_the_same(self):
        engine = _engine(FakeModel(ProtocolError("Invalid response: no choices")))
        engine.submit("x")
        assert engine.answer == "Error: Invalid response: no choices"
        assert engine.outcome == "error"

    def test_no_retry_and_resubmit_recovers(self):
        model = FakeModel(RequestError("down"), _text("back"))
        engine = _engine(model)
        engine.submit("x")
        assert len(model.calls) == 1
        engine.submit("x again")
        assert engine.answer == "back"
        assert len(model.calls) == 2

    def test_error_mid_loop_keeps_log_appendable(self):
        executor = FakeExecutor()
        model = FakeModel(_tool("ls"), RequestError("timeout"))
        engine = _engine(model, executor)
        engine.submit("x")
        assert _roles(engine) == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        assert engine.answer == "Error: timeout"

    def test_http_401_through_litellm(self):
        class _AuthError(Exception):
            status_code = 401
            message = "Incorrect API key provided"

        executor = FakeExecutor()
        engine = CommandModeEngine(lambda: _settings(), executor=executor)
        with patch("litellm.completion", side_effect=_AuthError("bad key")):
            engine.submit("list files in /tmp")

        assert _roles(engine) == [Role.USER, Role.ASSISTANT]
        assert "401" in engine.answer
        assert "Incorrect API key" in engine.answer
        assert executor.calls == []

    def test_quiet_run_after_cancel_writes_nothing_to_stderr(self, capsys):
        def response(content=None, call_id=None, command=None):
            tool_calls = None
            if call_id:
                fn = SimpleNamespace(
                    name="execute_terminal_command",
                    arguments=json.dumps({"command": command}),
                )
                tool_calls = [SimpleNamespace(id=call_id, function=fn)]
            message = SimpleNamespace(content=content, tool_calls=tool_calls)
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])

        confirm = {"value": True}
        executor = FakeExecutor()
        engine = CommandModeEngine(
            lambda: _settings(confirm["value"]), executor=executor, verbose=False
        )
        replies = [
            response(call_id="call_a", command="rm -rf /tmp/x"),
            response(call_id="call_b", command="ls"),
            response(content="done"),
        ]
        with patch("litellm.completion", side_effect=replies) as mock_comp:
            capsys.readouterr()
            engine.submit("delete /tmp/x")
            engine.cancel_pending_command()
            confirm["value"] = False
            engine.submit("list files")

        assert engine.answer == "done"
        assert executor.calls == [("ls", None)]
        assert mock_comp.call_count == 3
        assert capsys.readouterr().err == ""

    def test_malformed_response_becomes_error_turn(self):
        engine = CommandModeEngine(lambda: _settings(), executor=FakeExecutor())
        with patch("litellm.completion", return_value={"choices": {"x": 1}}):
            engine.submit("list files")

        assert engine.state is State.DONE
        assert engine.outcome == "error"
        assert engine.answer.startswith("Error: Invalid response")

    def test_interrupt_leaves_done_state(self):
        def interrupted(settings, turns):
            raise KeyboardInterrupt

        engine = _engine(interrupted)
        with pytest.raises(KeyboardInterrupt):
            engine.submit("x")
        assert engine.state is State.DONE
        assert engine.outcome == "interrupted"
        assert engine.answer == INTERRUPTED_MESSAGE


# ---------------------------------------------------------------------------
# clear / report / logging
# ---------------------------------------------------------------------------


def test_clear_resets_state():
    engine = _engine(FakeModel(_tool("rm x")), confirm=True)
    engine.submit("remove x")
    engine.clear()
    assert engine.turns == ()
    assert engine.pending_command is None
    assert engine.turn_count == 0
    assert engine.state is State.IDLE


def test_report_records_calls_and_executions():
    report = ReportCollector()
    engine = _engine(FakeModel(_tool("ls"), _text("ok")), report=report)
    engine.submit("x")

    types_ = [e["type"] for e in report.events]
    assert types_ == ["llm_call", "execution", "llm_call"]
    assert report.llm_calls == 2
    assert report.executions == 1


def test_verbose_logging(capsys):
    engine = _engine(
        FakeModel(_tool("ls /tmp", content="Listing."), _text("Done")), verbose=True
    )
    engine.submit("list files in /tmp")
    err = capsys.readouterr().err
    assert "Step 1/15" in err
    assert "execute_terminal_command" in err
    assert "ls /tmp" in err
    assert "[assistant]" in err
    assert "Listing." in err
    assert "Command Mode finished" in err


def test_default_executor_is_terminal_service():
    from fluidcmd.terminal import TerminalService

    engine = CommandModeEngine(lambda: _settings())
    assert isinstance(engine.executor, TerminalService)
