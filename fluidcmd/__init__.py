"""fluidcmd: Command Mode terminal agent with a bounded tool-calling loop."""

from .config import Settings, SettingsStore
from .conversation import PendingCommand, Role, ToolRequest, Turn
from .engine import CommandModeEngine, State
from .report import CommandModeError, ConfigError, ProtocolError, RequestError
from .terminal import CommandResult, TerminalService

__all__ = [
    "CommandModeEngine",
    "CommandModeError",
    "CommandResult",
    "ConfigError",
    "PendingCommand",
    "ProtocolError",
    "RequestError",
    "Role",
    "Settings",
    "SettingsStore",
    "State",
    "TerminalService",
    "ToolRequest",
    "Turn",
]
