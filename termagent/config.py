"""Configuration file loading and merging for termagent.

Reads TOML config from ~/.config/termagent/config.toml (global) and
<base_dir>/termagent.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_turns": int,
    "system_prompt": str,
    "yolo": bool,
    "no_stream": bool,
    "command_timeout": int,
    "max_result_length": int,
    "color": bool,
    "quiet": bool,
}

_POSITIVE_INT_KEYS = {"max_output_tokens", "command_timeout", "max_result_length"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "anthropic",
    "model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 8192,
    "temperature": None,
    "max_turns": 0,
    "system_prompt": None,
    "yolo": False,
    "no_stream": False,
    "command_timeout": 30,
    "max_result_length": 30_000,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "termagent"
    return Path.home() / ".config" / "termagent"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be >= 1, got {value}")
        if key == "max_turns" and value < 0:
            raise ConfigError(f"{source}: 'max_turns' must be >= 0, got {value}")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
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

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only the keys that were actually set in
    config files (no defaults injected).
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "termagent.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to the argparse namespace where the CLI didn't set one.

    Remaining _UNSET sentinels are then replaced by _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # One config key controls the mutually exclusive --color/--no-color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    location = "<project>/termagent.toml" if project else "~/.config/termagent/config.toml"
    lines = [
        "# termagent configuration file",
        f"# {'Project' if project else 'Global'} config: {location}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "anthropic"        # "anthropic" | "openai" | "gemini" | "openrouter" | "lmstudio"',
        '# model = "claude-sonnet-4-5-20250929"',
        '# api_key = "sk-..."             # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 8192",
        "# temperature = 0.7",
        "# no_stream = false",
        "",
        "# --- Agent behaviour ---",
        "# max_turns = 0                 # 0 = unlimited tool rounds per question",
        '# system_prompt = "You are a helpful assistant."',
        "# yolo = false                  # run writes, edits and commands without asking",
        "# command_timeout = 30",
        "# max_result_length = 30000",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
