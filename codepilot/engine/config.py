"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CODEPILOT_* env vars
or the YAML layers in yaml_config.py.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .models import PermissionMode

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Callback errors never reach the engine."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def env_flag(name: str) -> bool:
    return os.getenv(name, "").lower() in {"1", "true", "yes"}


@dataclass
class EngineConfig:
    """Task engine configuration."""

    permission_mode: PermissionMode = PermissionMode.MANUAL_APPROVAL
    workspace: str = "."

    # Model transport retry (applied by RetryingProvider).
    transport_retry_attempts: int = 5
    transport_retry_base_delay: float = 0.75
    transport_retry_max_delay: float = 5.0

    # execute_command returns an in-progress handle after this long.
    command_in_progress_seconds: float = 30.0
    # SIGTERM -> SIGKILL escalation window per process.
    kill_grace_seconds: float = 1.0
    # Bound on cancelling in-flight tool executions before force-kill.
    cancel_grace_seconds: float = 5.0
    # Max wall-clock time for any single tool call.
    # Set to 0 (or a negative value) to disable timeout.
    tool_call_timeout_seconds: float = 600.0
    output_tail_chars: int = 12000
    max_finished_processes: int = 64

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    # Receives dicts like {"event": "stream_chunk", "text": "..."}
    event_callback: EventCallback | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CODEPILOT_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CODEPILOT_")
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: CODEPILOT_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no CODEPILOT_* env vars set, using defaults")

        mode = os.getenv("CODEPILOT_PERMISSION_MODE", cls.permission_mode.value)
        if env_flag("DOCKER_RUN"):
            mode = PermissionMode.FULL_AUTONOMOUS.value

        config = cls(
            permission_mode=PermissionMode(mode),
            workspace=os.getenv("CODEPILOT_WORKSPACE", cls.workspace),
            transport_retry_attempts=max(1, int(os.getenv(
                "CODEPILOT_TRANSPORT_RETRY_ATTEMPTS",
                str(cls.transport_retry_attempts),
            ))),
            transport_retry_base_delay=max(0.1, float(os.getenv(
                "CODEPILOT_TRANSPORT_RETRY_BASE_DELAY",
                str(cls.transport_retry_base_delay),
            ))),
            transport_retry_max_delay=float(os.getenv(
                "CODEPILOT_TRANSPORT_RETRY_MAX_DELAY",
                str(cls.transport_retry_max_delay),
            )),
            command_in_progress_seconds=float(os.getenv(
                "CODEPILOT_COMMAND_IN_PROGRESS_SECONDS",
                str(cls.command_in_progress_seconds),
            )),
            kill_grace_seconds=float(os.getenv(
                "CODEPILOT_KILL_GRACE_SECONDS", str(cls.kill_grace_seconds),
            )),
            cancel_grace_seconds=float(os.getenv(
                "CODEPILOT_CANCEL_GRACE_SECONDS", str(cls.cancel_grace_seconds),
            )),
            tool_call_timeout_seconds=float(os.getenv(
                "CODEPILOT_TOOL_TIMEOUT", str(cls.tool_call_timeout_seconds),
            )),
            output_tail_chars=int(os.getenv(
                "CODEPILOT_OUTPUT_TAIL_CHARS", str(cls.output_tail_chars),
            )),
            max_finished_processes=int(os.getenv(
                "CODEPILOT_MAX_FINISHED_PROCESSES",
                str(cls.max_finished_processes),
            )),
            log_level=os.getenv("CODEPILOT_LOG_LEVEL", cls.log_level),
            log_file=os.getenv("CODEPILOT_LOG_FILE") or None,
        )
        config.transport_retry_max_delay = max(
            config.transport_retry_base_delay, config.transport_retry_max_delay,
        )
        logger.info(
            "EngineConfig.from_env: mode=%s workspace=%s in_progress=%.1fs log_level=%s",
            config.permission_mode.value, config.workspace,
            config.command_in_progress_seconds, config.log_level,
        )
        return config
