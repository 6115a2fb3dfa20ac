"""Conversation state for Command Mode: turns, pending command, step counter."""

import uuid
from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolRequest:
    """A request from the model to run one shell command."""

    id: str
    command: str
    working_directory: str | None = None


@dataclass(frozen=True)
class Turn:
    """One entry of the conversation log.

    Tool turns carry a JSON-encoded execution result as content. Only
    assistant turns may carry a tool request.
    """

    role: Role
    content: str
    tool_request: ToolRequest | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.tool_request is not None and self.role is not Role.ASSISTANT:
            raise ValueError(f"{self.role.value} turns cannot carry a tool request")

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str, tool_request: ToolRequest | None = None) -> "Turn":
        return cls(Role.ASSISTANT, content, tool_request)

    @classmethod
    def tool(cls, content: str) -> "Turn":
        return cls(Role.TOOL, content)


@dataclass(frozen=True)
class PendingCommand:
    """A tool request staged until the user confirms or cancels it."""

    id: str
    command: str
    working_directory: str | None = None

    @classmethod
    def from_request(cls, request: ToolRequest) -> "PendingCommand":
        return cls(request.id, request.command, request.working_directory)


class Conversation:
    """Append-only turn log plus the pending command and step counter.

    Owned by the engine; everything else only reads it.
    """

    def __init__(self):
        self._turns: list[Turn] = []
        self.pending: PendingCommand | None = None
        self.turn_count = 0

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(tuple(self._turns))

    def append(self, turn: Turn) -> Turn:
        self._turns.append(turn)
        return turn

    def last(self, role: Role | None = None) -> Turn | None:
        for turn in reversed(self._turns):
            if role is None or turn.role is role:
                return turn
        return None

    def open_tool_request(self) -> ToolRequest | None:
        """Return the latest tool request not yet answered by a tool turn."""
        for turn in reversed(self._turns):
            if turn.role is Role.TOOL:
                return None
            if turn.role is Role.ASSISTANT and turn.tool_request is not None:
                return turn.tool_request
        return None

    def clear(self) -> int:
        """Drop all turns, the pending command and the step counter.

        Returns the number of turns removed.
        """
        dropped = len(self._turns)
        self._turns = []
        self.pending = None
        self.turn_count = 0
        return dropped
