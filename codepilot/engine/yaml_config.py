"""YAML configuration loader.

Layers are read in order and deep-merged, later layers winning:

1. ``codepilot.yaml`` in the working directory
2. ``codepilot-local.yaml`` in the working directory
3. ``~/codepilot.yaml``
4. an explicit file passed by the caller

``CODEPILOT_PERMISSION_MODE`` then overrides the permission mode and
``DOCKER_RUN`` forces ``full_autonomous``.

Example YAML:
    permission_mode: manual_approval
    workspace: /path/to/project
    user_instructions: |
      Prefer pytest for new tests.

    engine:
      command_in_progress_seconds: 30
      tool_call_timeout_seconds: 600
      log_level: INFO

    memory:
      path: .codepilot
      memory_only: false

    web_fetch:
      enabled: true
      timeout_seconds: 30
      max_length: 5000

    web_search:
      type: brave
      api_key: "${BRAVE_API_KEY}"

    mcp:
      servers:
        filesystem:
          transport:
            type: stdio
            command: npx
            args: ["-y", "@modelcontextprotocol/server-filesystem", "."]
          risk_class: mutating
          handshake_timeout_seconds: 60
        docs:
          transport:
            type: sse
            url: https://docs.example.com/sse
          system_prompt: Use docs__search before guessing APIs.
"""
from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig, env_flag
from .models import PermissionMode, RiskClass

logger = logging.getLogger(__name__)

PROJECT_CONFIG = "codepilot.yaml"
LOCAL_CONFIG = "codepilot-local.yaml"


@dataclass
class MemoryConfig:
    path: str | None = None
    memory_only: bool = True


@dataclass
class WebFetchConfig:
    enabled: bool = True
    timeout_seconds: float = 30.0
    max_length: int = 5000


@dataclass
class WebSearchConfig:
    type: str | None = None  # "brave" or "searx"
    api_key: str | None = None
    url: str | None = None


@dataclass
class McpServerConfig:
    """One hosted tool server from ``mcp.servers``."""
    name: str
    transport: dict[str, Any]
    risk_class: RiskClass | None = None
    system_prompt: str | None = None
    handshake_timeout_seconds: float = 30.0


@dataclass
class CodepilotConfig:
    """Complete parsed configuration."""
    engine: EngineConfig
    user_instructions: str = ""
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    web_fetch: WebFetchConfig = field(default_factory=WebFetchConfig)
    web_search: WebSearchConfig = field(default_factory=WebSearchConfig)
    mcp_servers: list[McpServerConfig] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``override`` merged in; nested dicts merge key by key."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _read_layer(path: Path) -> dict[str, Any]:
    logger.debug("_read_layer: checking %s (exists=%s)", path, path.is_file())
    if not path.is_file():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.error("YAML parse error in %s: %s", path, exc)
        raise ValueError(f"Malformed configuration file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(
            f"Malformed configuration file {path}: top level must be a mapping, "
            f"got {type(data).__name__}"
        )
    logger.info(
        "Loaded config layer %s (sections: %s)",
        path, ", ".join(sorted(data)) or "empty",
    )
    return data


def config_layers(
    custom_path: str | Path | None = None,
    *,
    cwd: str | Path | None = None,
    home: str | Path | None = None,
) -> list[Path]:
    base = Path(cwd) if cwd is not None else Path.cwd()
    home_dir = Path(home) if home is not None else Path.home()
    layers = [
        base / PROJECT_CONFIG,
        base / LOCAL_CONFIG,
        home_dir / PROJECT_CONFIG,
    ]
    if custom_path is not None:
        layers.append(Path(custom_path))
    return layers


def _parse_risk(value: Any, server: str) -> RiskClass | None:
    if value is None:
        return None
    try:
        return RiskClass(str(value))
    except ValueError:
        raise ValueError(
            f"mcp.servers.{server}.risk_class must be one of "
            f"{', '.join(r.value for r in RiskClass)}, got {value!r}"
        ) from None


def _parse_engine(raw: dict[str, Any]) -> EngineConfig:
    engine_raw = raw.get("engine") or {}
    defaults = EngineConfig()

    def _get(key: str, cast):
        return cast(engine_raw.get(key, getattr(defaults, key)))

    return EngineConfig(
        permission_mode=PermissionMode(
            raw.get("permission_mode", defaults.permission_mode.value)
        ),
        workspace=str(raw.get("workspace", defaults.workspace)),
        transport_retry_attempts=max(1, _get("transport_retry_attempts", int)),
        transport_retry_base_delay=_get("transport_retry_base_delay", float),
        transport_retry_max_delay=_get("transport_retry_max_delay", float),
        command_in_progress_seconds=_get("command_in_progress_seconds", float),
        kill_grace_seconds=_get("kill_grace_seconds", float),
        cancel_grace_seconds=_get("cancel_grace_seconds", float),
        tool_call_timeout_seconds=_get("tool_call_timeout_seconds", float),
        output_tail_chars=_get("output_tail_chars", int),
        max_finished_processes=_get("max_finished_processes", int),
        log_level=str(engine_raw.get("log_level", defaults.log_level)),
        log_file=engine_raw.get("log_file", defaults.log_file),
    )


def parse_config(raw: dict[str, Any]) -> CodepilotConfig:
    """Build typed config sections from an already merged mapping."""
    raw = _expand_env(raw)
    try:
        engine = _parse_engine(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid engine configuration: {exc}") from exc

    memory_raw = raw.get("memory") or {}
    memory = MemoryConfig(
        path=memory_raw.get("path"),
        memory_only=bool(memory_raw.get("memory_only", memory_raw.get("path") is None)),
    )

    fetch_raw = raw.get("web_fetch") or {}
    web_fetch = WebFetchConfig(
        enabled=bool(fetch_raw.get("enabled", True)),
        timeout_seconds=float(fetch_raw.get("timeout_seconds", WebFetchConfig.timeout_seconds)),
        max_length=int(fetch_raw.get("max_length", WebFetchConfig.max_length)),
    )

    search_raw = raw.get("web_search") or {}
    search_type = search_raw.get("type")
    if search_type not in (None, "brave", "searx"):
        raise ValueError(f"web_search.type must be 'brave' or 'searx', got {search_type!r}")
    web_search = WebSearchConfig(
        type=search_type,
        api_key=search_raw.get("api_key"),
        url=search_raw.get("url"),
    )

    servers: list[McpServerConfig] = []
    servers_raw = (raw.get("mcp") or {}).get("servers") or {}
    for name, cfg in servers_raw.items():
        cfg = cfg or {}
        transport = dict(cfg.get("transport") or {})
        transport.setdefault("type", "sse" if transport.get("url") else "stdio")
        if transport["type"] not in ("stdio", "sse"):
            raise ValueError(
                f"mcp.servers.{name}.transport.type must be 'stdio' or 'sse', "
                f"got {transport['type']!r}"
            )
        servers.append(McpServerConfig(
            name=str(name),
            transport=transport,
            risk_class=_parse_risk(cfg.get("risk_class"), name),
            system_prompt=cfg.get("system_prompt"),
            handshake_timeout_seconds=float(cfg.get("handshake_timeout_seconds", 30.0)),
        ))

    return CodepilotConfig(
        engine=engine,
        user_instructions=str(raw.get("user_instructions") or ""),
        memory=memory,
        web_fetch=web_fetch,
        web_search=web_search,
        mcp_servers=servers,
    )


def load_layered_config(
    custom_path: str | Path | None = None,
    *,
    cwd: str | Path | None = None,
    home: str | Path | None = None,
) -> CodepilotConfig:
    """Read and merge every config layer. Missing layers are skipped."""
    if custom_path is not None and not Path(custom_path).is_file():
        logger.warning("load_layered_config: custom config %s not found, skipping", custom_path)

    merged: dict[str, Any] = {}
    sources: list[str] = []
    for path in config_layers(custom_path, cwd=cwd, home=home):
        layer = _read_layer(path)
        if layer:
            merged = deep_merge(merged, layer)
            sources.append(str(path))

    env_mode = os.getenv("CODEPILOT_PERMISSION_MODE")
    if env_mode:
        merged["permission_mode"] = env_mode
    if env_flag("DOCKER_RUN"):
        merged["permission_mode"] = PermissionMode.FULL_AUTONOMOUS.value

    config = parse_config(merged)
    config.sources = sources
    logger.info(
        "load_layered_config: mode=%s workspace=%s mcp_servers=%d layers=%s",
        config.engine.permission_mode.value,
        config.engine.workspace,
        len(config.mcp_servers),
        ", ".join(sources) or "(none)",
    )
    return config
