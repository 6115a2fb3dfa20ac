"""Configuration file loading and settings resolution for fluidcmd.

Reads TOML config from ~/.config/fluidcmd/config.toml (global) and
<base_dir>/fluidcmd.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_PROVIDER = "openai"
DEFAULT_MODEL = "gpt-4o"

# Built-in provider id -> OpenAI-compatible base URL
BUILTIN_PROVIDERS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
}


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "confirm_before_execute": bool,
    "timeout": int,
    "color": bool,
    "quiet": bool,
}

# Nested tables, validated separately
_TABLE_KEYS = {"api_keys", "providers"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": DEFAULT_PROVIDER,
    "model": DEFAULT_MODEL,
    "api_key": None,
    "base_url": None,
    "confirm_before_execute": True,
    "timeout": 60,
    "color": False,
    "no_color": False,
    "quiet": False,
}


@dataclass(frozen=True)
class Settings:
    """Values the engine reads before every model call."""

    provider_id: str = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    api_key: str = ""
    base_url: str = BUILTIN_PROVIDERS[DEFAULT_PROVIDER]
    confirm_before_execute: bool = True


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "fluidcmd"
    return Path.home() / ".config" / "fluidcmd"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key in _TABLE_KEYS:
            continue
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    api_keys = config.get("api_keys")
    if api_keys is not None:
        if not isinstance(api_keys, dict):
            raise ConfigError(f"{source}: 'api_keys' must be a table")
        for name, key in api_keys.items():
            if not isinstance(key, str):
                raise ConfigError(
                    f"{source}: api_keys.{name}: expected string, got {type(key).__name__}"
                )

    providers = config.get("providers")
    if providers is not None:
        if not isinstance(providers, dict):
            raise ConfigError(f"{source}: 'providers' must be a table")
        for name, cfg in providers.items():
            if not isinstance(cfg, dict):
                raise ConfigError(f"{source}: providers.{name} must be a table")
            if not isinstance(cfg.get("base_url"), str):
                raise ConfigError(
                    f"{source}: providers.{name} must have a string 'base_url'"
                )


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if API keys are set in a project config inside a git repo."""
    if "api_key" not in config and "api_keys" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: API keys in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS or k in _TABLE_KEYS}


# --- Public API ---


def load_config(base_dir: Path | str = ".") -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files.
    Scalar keys from the project file override the global ones; the
    ``api_keys`` and ``providers`` tables are merged by name.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "fluidcmd.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    merged = {**global_config, **project_config}
    for table in _TABLE_KEYS:
        combined = {
            **global_config.get(table, {}),
            **project_config.get(table, {}),
        }
        if combined:
            merged[table] = combined
    return merged


def resolve_base_url(provider_id: str, providers: dict | None = None) -> str:
    """Saved custom providers first, then built-ins, then OpenAI."""
    if providers and provider_id in providers:
        return providers[provider_id]["base_url"]
    return BUILTIN_PROVIDERS.get(provider_id, BUILTIN_PROVIDERS[DEFAULT_PROVIDER])


def resolve_api_key(provider_id: str, config: dict, explicit: str | None = None) -> str:
    if explicit:
        return explicit
    key = config.get("api_keys", {}).get(provider_id)
    if key:
        return key
    if config.get("api_key"):
        return config["api_key"]
    env_name = provider_id.upper().replace("-", "_") + "_API_KEY"
    return os.environ.get(env_name, "")


def resolve_settings(config: dict, overrides: dict | None = None) -> Settings:
    """Combine config-file values with CLI overrides into a Settings value.

    ``overrides`` holds values set on the command line; ``None`` entries
    are ignored.
    """
    merged = dict(config)
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value

    provider_id = merged.get("provider") or DEFAULT_PROVIDER
    base_url = merged.get("base_url") or resolve_base_url(
        provider_id, merged.get("providers")
    )
    return Settings(
        provider_id=provider_id,
        model=merged.get("model") or DEFAULT_MODEL,
        api_key=resolve_api_key(
            provider_id, config, (overrides or {}).get("api_key")
        ),
        base_url=base_url,
        confirm_before_execute=merged.get("confirm_before_execute", True),
    )


class SettingsStore:
    """Settings accessor that re-reads the config files on every call.

    Edits made while a Command Mode run is in progress take effect on the
    next model call.
    """

    def __init__(self, base_dir: Path | str = ".", overrides: dict | None = None):
        self.base_dir = base_dir
        self.overrides = dict(overrides or {})

    def __call__(self) -> Settings:
        return resolve_settings(load_config(self.base_dir), self.overrides)


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are replaced with the hardcoded defaults.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color" or key in _TABLE_KEYS:
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# fluidcmd configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/fluidcmd.toml' if project else '~/.config/fluidcmd/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "openai"             # "openai" | "groq" | any [providers.<id>]',
        '# model = "gpt-4o"',
        '# api_key = "sk-..."               # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# [api_keys]",
        '# groq = "gsk_..."',
        "",
        "# [providers.local]",
        '# base_url = "http://127.0.0.1:1234/v1"',
        "",
        "# --- Command Mode ---",
        "# confirm_before_execute = true",
        "# timeout = 60                     # seconds per command",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
