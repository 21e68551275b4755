"""Configuration file loading and merging for zai-cli.

Reads TOML config from ~/.config/zai/config.toml (global) and
<base_dir>/zai.toml (project). Precedence: CLI > project > global > defaults.

MCP servers come from ``[mcp_servers.<name>.transport]`` tables in either
file and from ``.mcp.json`` (``mcpServers``). Only the file structure is
checked here; each server's transport is validated by the MCP client so a
bad entry disables that server alone.
"""

import argparse
import json
import logging
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)

_UNSET = object()  # Sentinel for "not set by CLI"

ZAI_MCP_BASE = "https://api.z.ai/api/mcp"
BUILTIN_SERVER_NAMES = ("zai-zread", "zai-web-search")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "temperature": (int, float),
    "max_tool_rounds": int,
    "max_entries": int,
    "keep_recent": int,
    "max_context_tokens": int,
    "mcp_timeout": (int, float),
    "system_prompt": str,
    "no_system_prompt": bool,
    "no_instructions": bool,
    "no_mcp": bool,
    "no_builtin_mcp": bool,
    "yolo": bool,
    "color": bool,
    "quiet": bool,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "zai",
    "model": "glm-4.6",
    "api_key": None,
    "base_url": None,
    "max_output_tokens": None,
    "temperature": None,
    "max_tool_rounds": 10,
    "max_entries": 50,
    "keep_recent": 10,
    "max_context_tokens": None,
    "mcp_timeout": 120,
    "system_prompt": None,
    "no_system_prompt": False,
    "no_instructions": False,
    "no_mcp": False,
    "no_builtin_mcp": False,
    "yolo": False,
    "color": False,
    "no_color": False,
    "quiet": False,
    "mcp_config": None,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "zai"
    return Path.home() / ".config" / "zai"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and mutual exclusions in a parsed config dict.

    Raises ConfigError for type mismatches or invalid combinations.
    Warns about unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            logger.warning("%s: unknown config key %r", source, key)
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

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
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
                f"may be committed accidentally. Consider using ZAI_API_KEY instead.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _check_servers_table(servers: Any, source: str, key: str) -> dict[str, dict]:
    if not isinstance(servers, dict):
        raise ConfigError(f"{source}: '{key}' must be a table")
    for name, cfg in servers.items():
        if not isinstance(cfg, dict):
            raise ConfigError(f"{source}: {key}.{name} must be a table")
    return servers


def server_transport(cfg: dict) -> dict:
    """The transport table of one server entry.

    ``{"transport": {...}}`` is the canonical shape; a flat entry carrying
    ``kind``/``type`` directly is accepted too.
    """
    transport = cfg.get("transport", cfg)
    return transport if isinstance(transport, dict) else {"kind": None}


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    # mcp_servers is a nested table, not a flat key
    mcp_servers = config.pop("mcp_servers", None)

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}

    if mcp_servers is not None:
        known["mcp_servers"] = _check_servers_table(mcp_servers, label, "mcp_servers")
    return known


# --- MCP config helpers ---


def load_mcp_json(path: Path) -> dict[str, dict]:
    """Load MCP server configs from a .mcp.json file.

    Returns a dict of server_name -> server_config.
    Raises ConfigError on invalid JSON or structure.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"{path}: cannot read file: {e}") from e
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path}: invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a JSON object at top level")
    return _check_servers_table(data.get("mcpServers", {}), str(path), "mcpServers")


def merge_mcp_configs(
    toml_servers: dict[str, dict] | None,
    json_servers: dict[str, dict] | None,
) -> dict[str, dict]:
    """Merge MCP server configs. TOML wins on name collision."""
    merged: dict[str, dict] = {}
    if json_servers:
        merged.update(json_servers)
    if toml_servers:
        merged.update(toml_servers)
    return merged


def builtin_mcp_servers(api_key: str | None) -> dict[str, dict]:
    """Z.ai hosted servers, available whenever an API key is known."""
    if not api_key:
        return {}
    return {
        "zai-zread": {
            "transport": {
                "kind": "sse",
                "url": f"{ZAI_MCP_BASE}/zread/sse?Authorization={api_key}",
            }
        },
        "zai-web-search": {
            "transport": {
                "kind": "sse",
                "url": f"{ZAI_MCP_BASE}/web_search/sse?Authorization={api_key}",
            }
        },
    }


def resolve_mcp_servers(
    config: dict,
    base_dir: str | Path,
    mcp_config: str | None = None,
    include_builtin: bool = True,
) -> dict[str, dict]:
    """Every configured server as {name: transport table}.

    Order: .mcp.json (``--mcp-config`` or ``<base_dir>/.mcp.json``), then TOML
    entries (winning on collision), then built-in servers whose name is not
    already taken.
    """
    json_path = Path(mcp_config) if mcp_config else Path(base_dir) / ".mcp.json"
    json_servers = None
    if json_path.is_file():
        json_servers = load_mcp_json(json_path)
    elif mcp_config:
        raise ConfigError(f"{json_path}: MCP config file does not exist")

    servers = merge_mcp_configs(config.get("mcp_servers"), json_servers)
    if include_builtin:
        for name, cfg in builtin_mcp_servers(os.environ.get("ZAI_API_KEY")).items():
            servers.setdefault(name, cfg)
    return {name: server_transport(cfg) for name, cfg in servers.items()}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files.
    ``mcp_servers`` is merged by server name, project entries winning.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "zai.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    global_mcp = global_config.pop("mcp_servers", None)
    project_mcp = project_config.pop("mcp_servers", None)
    merged = {**global_config, **project_config}

    mcp_servers = {**(global_mcp or {}), **(project_mcp or {})}
    if mcp_servers:
        merged["mcp_servers"] = mcp_servers

    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are then replaced by hardcoded defaults.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key in ("color", "mcp_servers"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# zai-cli configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/zai.toml' if project else '~/.config/zai/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "zai"               # "zai" | "openrouter" | "generic"',
        '# model = "glm-4.6"',
        "# api_key = \"...\"                 # prefer ZAI_API_KEY; this is a fallback",
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 8192",
        "# temperature = 0.7",
        "",
        "# --- Agent behaviour ---",
        "# max_tool_rounds = 10",
        "# max_entries = 50               # compress the transcript beyond this",
        "# keep_recent = 10               # entries kept verbatim when compressing",
        "# max_context_tokens = 100000    # also compress beyond ~this many tokens",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "# no_instructions = false        # skip AGENTS.md / ZAI.md",
        "# yolo = false                   # disable the file sandbox",
        "",
        "# --- MCP servers ---",
        "# no_mcp = false",
        "# no_builtin_mcp = false         # skip zai-zread / zai-web-search",
        "# mcp_timeout = 120",
        "",
        "# [mcp_servers.filesystem.transport]",
        '# kind = "stdio"',
        '# command = "npx"',
        '# args = ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]',
        '# env = { DEBUG = "true" }',
        "",
        "# [mcp_servers.remote-api.transport]",
        '# kind = "sse"                   # "stdio" | "http" | "sse" | "streamable_http"',
        '# url = "https://api.example.com/mcp/sse"',
        '# headers = { Authorization = "Bearer token123" }',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
