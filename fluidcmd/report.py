"""Error types and JSON run reports for Command Mode."""

import json
from datetime import datetime, timezone


class CommandModeError(Exception):
    """Raised by the engine or setup helpers for reportable runtime failures."""


class ConfigError(CommandModeError):
    """Raised for invalid configuration (bad TOML, wrong value types, etc.)."""


class RequestError(CommandModeError):
    """The chat-completions request failed (network error or non-2xx status)."""

    def __init__(self, message: str, status_code: int | None = None, payload=None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ProtocolError(CommandModeError):
    """The chat-completions response did not have the expected shape."""


class ReportCollector:
    """Accumulates events during a Command Mode run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.llm_calls = 0
        self.failed_llm_calls = 0
        self.executions = 0
        self.failed_executions = 0
        self.cancellations = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_turn_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(
        self,
        turn: int,
        duration: float,
        outcome: str,
        *,
        error: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if turn > self.max_turn_seen:
            self.max_turn_seen = turn
        if outcome == "error":
            self.failed_llm_calls += 1
        event = {
            "turn": turn,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "outcome": outcome,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_execution(
        self,
        turn: int,
        command: str,
        exit_code: int,
        duration: float,
        *,
        timed_out: bool = False,
    ):
        self.executions += 1
        self.total_tool_time += duration
        if exit_code != 0 or timed_out:
            self.failed_executions += 1
        self.events.append(
            {
                "turn": turn,
                "type": "execution",
                "command": command,
                "exit_code": exit_code,
                "timed_out": timed_out,
                "duration_s": round(duration, 3),
            }
        )

    def record_confirmation(self, turn: int, command: str, accepted: bool):
        if not accepted:
            self.cancellations += 1
        self.events.append(
            {
                "turn": turn,
                "type": "confirmation",
                "command": command,
                "accepted": accepted,
            }
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
    ) -> dict:
        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "llm_calls": self.llm_calls,
                "llm_calls_failed": self.failed_llm_calls,
                "executions_total": self.executions,
                "executions_failed": self.failed_executions,
                "cancellations": self.cancellations,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        if self._last_report is None:
            raise CommandModeError("report has not been finalized")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
