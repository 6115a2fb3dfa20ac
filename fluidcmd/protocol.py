"""OpenAI-compatible chat-completions client for Command Mode.

Maps the conversation log onto the wire message list, performs one
completion call through LiteLLM and reduces the reply to either plain
text or a single terminal-command request.
"""

import json
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from . import fmt
from .config import Settings
from .conversation import Role, ToolRequest, Turn
from .report import ProtocolError, RequestError

TOOL_NAME = "execute_terminal_command"
TEMPERATURE = 0.1
COMPLETIONS_SUFFIX = "/chat/completions"
UNKNOWN_CALL_ID = "call_unknown"
FALLBACK_REPLY = "I couldn't understand that."
DEFAULT_TOOL_INTRO = "I'll run this command:"

SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
SYSTEM_PROMPT = SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()

TERMINAL_TOOL = {
    "type": "function",
    "function": {
        "name": TOOL_NAME,
        "description": (
            "Execute a shell command on the user's Mac and return its stdout, "
            "stderr and exit code. Use this to inspect or change files, run "
            "programs, and verify the results of previous commands."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to run (zsh syntax).",
                },
                "workingDirectory": {
                    "type": "string",
                    "description": "Optional directory to run the command in.",
                },
            },
            "required": ["command"],
        },
    },
}


# ---------------------------------------------------------------------------
# Wire messages
# ---------------------------------------------------------------------------


@dataclass
class SystemMessage:
    content: str

    def to_dict(self) -> dict:
        return {"role": "system", "content": self.content}


@dataclass
class UserMessage:
    content: str

    def to_dict(self) -> dict:
        return {"role": "user", "content": self.content}


@dataclass
class WireToolCall:
    id: str
    command: str
    working_directory: str | None = None

    def arguments(self) -> str:
        return json.dumps(
            {"command": self.command, "workingDirectory": self.working_directory or ""}
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": TOOL_NAME, "arguments": self.arguments()},
        }


@dataclass
class AssistantMessage:
    content: str
    tool_calls: list[WireToolCall] = field(default_factory=list)

    def to_dict(self) -> dict:
        msg: dict = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return msg


@dataclass
class ToolMessage:
    content: str
    tool_call_id: str

    def to_dict(self) -> dict:
        return {
            "role": "tool",
            "content": self.content,
            "tool_call_id": self.tool_call_id,
        }


def build_messages(
    turns, system_prompt: str | None = SYSTEM_PROMPT, *, verbose: bool = False
) -> list[dict]:
    """Translate the turn log into the chat-completions message list.

    Tool turns are correlated with the most recent assistant tool request
    that has not been answered yet. When there is none the placeholder id
    ``call_unknown`` is used so an inconsistent history can still be sent.

    A request that was cancelled or interrupted before it ran stays in the
    history with no matching tool message. Strict OpenAI endpoints reject
    such a history with HTTP 400 until the conversation is cleared.
    Mismatches are reported on stderr only when ``verbose`` is set.
    """
    wire: list = []
    if system_prompt is not None:
        wire.append(SystemMessage(system_prompt))

    open_call_id: str | None = None
    for turn in turns:
        if turn.role is Role.USER:
            wire.append(UserMessage(turn.content))
        elif turn.role is Role.ASSISTANT:
            req = turn.tool_request
            if req is not None:
                if verbose and open_call_id is not None:
                    fmt.warning(
                        f"tool request {open_call_id} was never answered before {req.id}"
                    )
                open_call_id = req.id
                wire.append(
                    AssistantMessage(
                        turn.content,
                        [WireToolCall(req.id, req.command, req.working_directory)],
                    )
                )
            else:
                wire.append(AssistantMessage(turn.content))
        else:
            if verbose and open_call_id is None:
                fmt.warning(
                    f"tool result without an open tool request, using {UNKNOWN_CALL_ID}"
                )
            wire.append(ToolMessage(turn.content, open_call_id or UNKNOWN_CALL_ID))
            open_call_id = None

    return [m.to_dict() for m in wire]


def _parse_arguments(raw) -> dict | None:
    if isinstance(raw, dict):
        return raw
    try:
        args = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return args if isinstance(args, dict) else None


def turns_from_messages(messages: list[dict]) -> list[Turn]:
    """Rebuild turns from a wire message list (system messages are skipped)."""
    turns: list[Turn] = []
    for i, msg in enumerate(messages):
        role = msg.get("role")
        content = msg.get("content") or ""
        if role == "system":
            continue
        if role == "user":
            turns.append(Turn.user(content))
        elif role == "assistant":
            request = None
            for tc in msg.get("tool_calls") or []:
                fn = tc.get("function", {})
                if fn.get("name") != TOOL_NAME:
                    continue
                args = _parse_arguments(fn.get("arguments"))
                if args is None:
                    raise ProtocolError(f"message {i}: tool call arguments are not JSON")
                request = ToolRequest(
                    id=tc.get("id") or UNKNOWN_CALL_ID,
                    command=str(args.get("command", "")),
                    working_directory=args.get("workingDirectory") or None,
                )
                break
            turns.append(Turn.assistant(content, request))
        elif role == "tool":
            turns.append(Turn.tool(content))
        else:
            raise ProtocolError(f"message {i}: unknown role {role!r}")
    return turns


# ---------------------------------------------------------------------------
# Completion call
# ---------------------------------------------------------------------------


@dataclass
class ModelReply:
    """Either a text-only answer or a single terminal-command request."""

    content: str
    tool_request: ToolRequest | None = None


def chat_completions_endpoint(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.endswith(COMPLETIONS_SUFFIX):
        return base
    return base + COMPLETIONS_SUFFIX


def _get(obj, key, default=None):
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def parse_response(response) -> ModelReply:
    """Reduce a chat-completions response to a ModelReply.

    Raises ProtocolError when ``choices[0].message`` is missing or when
    ``choices`` or ``tool_calls`` is not a list.
    """
    choices = _get(response, "choices")
    if not choices:
        raise ProtocolError("Invalid response: no choices")
    if not isinstance(choices, (list, tuple)):
        raise ProtocolError("Invalid response: choices is not a list")
    message = _get(choices[0], "message")
    if message is None:
        raise ProtocolError("Invalid response: no message")

    content = _get(message, "content")
    tool_calls = _get(message, "tool_calls") or []
    if not isinstance(tool_calls, (list, tuple)):
        raise ProtocolError("Invalid response: tool_calls is not a list")
    if tool_calls:
        tc = tool_calls[0]
        fn = _get(tc, "function")
        args = None
        if fn is not None and _get(fn, "name") == TOOL_NAME:
            args = _parse_arguments(_get(fn, "arguments"))
        if args is not None:
            workdir = args.get("workingDirectory")
            return ModelReply(
                content=content or DEFAULT_TOOL_INTRO,
                tool_request=ToolRequest(
                    id=_get(tc, "id") or f"call_{uuid.uuid4().hex[:8]}",
                    command=str(args.get("command") or ""),
                    working_directory=workdir if workdir else None,
                ),
            )

    if isinstance(content, str) and content:
        return ModelReply(content=content)
    return ModelReply(content=FALLBACK_REPLY)


def call_llm(
    settings: Settings,
    messages: list[dict],
    *,
    tools: list | None = None,
    verbose: bool = False,
):
    """Make one completion call through LiteLLM. Returns the raw response.

    Raises RequestError on any transport failure or non-2xx status.
    """
    import litellm

    litellm.suppress_debug_info = True

    endpoint = chat_completions_endpoint(settings.base_url)
    api_base = endpoint[: -len(COMPLETIONS_SUFFIX)]
    if verbose:
        fmt.model_info(
            f"Calling model {settings.model} at {endpoint} "
            f"(provider={settings.provider_id}, temperature={TEMPERATURE})"
        )

    try:
        return litellm.completion(
            model=f"openai/{settings.model}",
            messages=messages,
            tools=tools if tools is not None else [TERMINAL_TOOL],
            tool_choice="auto",
            temperature=TEMPERATURE,
            api_base=api_base,
            api_key=settings.api_key,
        )
    except Exception as e:
        status = getattr(e, "status_code", None)
        payload = getattr(e, "message", None) or str(e)
        if isinstance(status, int) and status >= 400:
            raise RequestError(f"HTTP {status}: {payload}", status, payload) from e
        raise RequestError(f"LLM call failed: {e}", payload=payload) from e


def complete(settings: Settings, turns, *, verbose: bool = False) -> ModelReply:
    """Build the message list for ``turns``, call the model, parse the reply."""
    messages = build_messages(turns, verbose=verbose)
    response = call_llm(settings, messages, verbose=verbose)
    return parse_response(response)
