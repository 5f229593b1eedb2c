"""Configuration file loading and merging for harvest.

Reads TOML config from ~/.config/harvest/config.toml (global) and
<base_dir>/harvest.toml (project). Precedence: caller > project > global > defaults.
"""

import dataclasses
import os
import sys
import tomllib
from pathlib import Path

from .phase import ANALYST_BUDGET, PRODUCER_BUDGET, Budget
from .report import ConfigError  # noqa: F401 (re-export)


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "timeout": (int, float),
    "max_retries": int,
    "token_budget": int,
    "temperature": (int, float),
    "max_output_tokens": int,
    "budget_preset": str,
    "skill_only": bool,
    "system_prompt": str,
    "allowed_tools": list,
    "verbose": bool,
}

_LIST_OF_STR_KEYS = {"allowed_tools"}

_POSITIVE_KEYS = {"timeout", "token_budget", "max_output_tokens"}

BUDGET_KEYS = tuple(f.name for f in dataclasses.fields(Budget))

BUDGET_PRESETS: dict[str, Budget] = {
    "default": Budget(),
    "analyst": ANALYST_BUDGET,
    "producer": PRODUCER_BUDGET,
}

# Provider -> environment variables checked for an API key, in order.
API_KEY_ENV: dict[str, tuple[str, ...]] = {
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "google": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "claude": ("ANTHROPIC_API_KEY",),
    "anthropic": ("ANTHROPIC_API_KEY",),
    "openai": ("OPENAI_API_KEY",),
    "deepseek": ("DEEPSEEK_API_KEY",),
    "ollama": (),
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "harvest"
    return Path.home() / ".config" / "harvest"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_type(key: str, value, expected, source: str) -> None:
    # bool is a subclass of int; reject it for non-bool fields.
    if isinstance(value, bool) and expected is not bool:
        raise ConfigError(f"{source}: {key!r} expected {_type_name(expected)}, got bool")
    if not isinstance(value, expected):
        raise ConfigError(
            f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
        )


def _validate_budget_table(table, source: str) -> None:
    if not isinstance(table, dict):
        raise ConfigError(f"{source}: 'budget' must be a table")
    for key, value in table.items():
        if key not in BUDGET_KEYS:
            raise ConfigError(f"{source}: unknown budget key {key!r}")
        _check_type(f"budget.{key}", value, int, source)
        if value < 0:
            raise ConfigError(f"{source}: 'budget.{key}' must be >= 0, got {value}")


def _validate_config(config: dict, source: str) -> None:
    """Validate types and ranges in a parsed config dict.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key == "budget":
            _validate_budget_table(value, source)
            continue
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        _check_type(key, value, CONFIG_KEYS[key], source)

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )
        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")
        if key == "max_retries" and value < 0:
            raise ConfigError(f"{source}: 'max_retries' must be >= 0, got {value}")

    preset = config.get("budget_preset")
    if preset is not None and preset not in BUDGET_PRESETS:
        raise ConfigError(
            f"{source}: 'budget_preset' must be one of {sorted(BUDGET_PRESETS)}, got {preset!r}"
        )


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
    return {k: v for k, v in config.items() if k in CONFIG_KEYS or k == "budget"}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected). The
    ``budget`` table is merged key by key, so a project file can override a
    single budget field.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "harvest.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    global_budget = global_config.pop("budget", {})
    project_budget = project_config.pop("budget", {})
    merged = {**global_config, **project_config}
    budget = {**global_budget, **project_budget}
    if budget:
        merged["budget"] = budget
    return merged


def build_budget(config: dict) -> Budget:
    """Budget from ``budget_preset`` (default "default") with ``[budget]`` overrides applied."""
    base = BUDGET_PRESETS[config.get("budget_preset", "default")]
    overrides = config.get("budget") or {}
    return dataclasses.replace(base, **overrides) if overrides else base


def resolve_api_key(provider: str, api_key: str | None = None) -> str | None:
    """Explicit key wins; otherwise the first set environment variable for the provider."""
    if api_key:
        return api_key
    for var in API_KEY_ENV.get(provider.lower(), ()):
        value = os.environ.get(var)
        if value:
            return value
    return None


def config_to_session_kwargs(config: dict) -> dict:
    """Convert config dict to Session constructor kwargs.

    ``budget_preset`` and the ``[budget]`` table collapse into one Budget.
    A missing api_key is looked up in the provider's environment variables.
    """
    kwargs = {}
    for key, value in config.items():
        if key in ("budget", "budget_preset"):
            continue
        kwargs[key] = value

    if "budget" in config or "budget_preset" in config:
        kwargs["budget"] = build_budget(config)

    provider = kwargs.get("provider", "gemini")
    api_key = resolve_api_key(provider, kwargs.get("api_key"))
    if api_key is not None:
        kwargs["api_key"] = api_key
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# Harvest configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/harvest.toml' if project else '~/.config/harvest/config.toml'}",
        "#",
        "# Values passed to Session override these. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "gemini"            # "gemini" | "claude" | "openai" | "deepseek" | "ollama"',
        '# model = "gemini-2.0-flash"',
        '# api_key = "..."                # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "# timeout = 300                  # seconds per backend call",
        "# max_retries = 4                # ignored by claude",
        "",
        "# --- Generation parameters ---",
        "# temperature = 0.3",
        "# max_output_tokens = 4096",
        "",
        "# --- Agent behaviour ---",
        "# token_budget = 24000",
        '# budget_preset = "default"      # "default" | "analyst" | "producer"',
        "# skill_only = false",
        '# system_prompt = "You study codebases and record reusable knowledge."',
        '# allowed_tools = ["search_project_code", "read_project_file", "submit_candidate"]',
        "# verbose = false",
        "",
        "# [budget]",
        "# max_iterations = 24",
        "# search_budget = 10",
        "# search_budget_grace = 6",
        "# max_submits = 6",
        "# soft_submit_limit = 4",
        "# idle_rounds_to_exit = 2",
        "",
    ]
    return "\n".join(lines)
