"""Runtime wiring: logging setup and the AgentRuntime context manager."""
from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from codepilot.engine.config import EventCallback
from codepilot.engine.permission import PermissionGate
from codepilot.engine.process_supervisor import ProcessSupervisor
from codepilot.engine.prompts import build_system_prompt
from codepilot.engine.providers.base import ModelProvider, RetryingProvider
from codepilot.engine.task_engine import TaskEngine
from codepilot.engine.tools import (
    KnowledgeGraphStore,
    McpHost,
    ProtocolHost,
    ProtocolProxy,
    WebTools,
    build_tool_registry,
)
from codepilot.engine.tools.dispatcher import Dispatcher
from codepilot.engine.workspace import Workspace
from codepilot.engine.yaml_config import CodepilotConfig, parse_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Configure the root logger: stderr plus an optional rotating file."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    if log_file is not None:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)


class AgentRuntime:
    """Builds every engine collaborator from one configuration.

    Usage::

        async with AgentRuntime(provider, config) as runtime:
            await runtime.engine.submit("add a README")

    On exit the engine is cancelled if still active, every live process
    is reaped and protocol hosts are closed.
    """

    def __init__(
        self,
        provider: ModelProvider,
        config: CodepilotConfig | None = None,
        *,
        hosts: list[ProtocolHost] | None = None,
        session_store: Any | None = None,
        event_callback: EventCallback | None = None,
        web_tools: WebTools | None = None,
    ) -> None:
        self.config = config or parse_config({})
        self._provider = provider
        self._extra_hosts = list(hosts or [])
        self._session_store = session_store
        self._event_callback = event_callback
        self._web_tools = web_tools

        self.workspace: Workspace | None = None
        self.supervisor: ProcessSupervisor | None = None
        self.engine: TaskEngine | None = None
        self.hosts: list[ProtocolHost] = []

    def _configured_hosts(self) -> list[ProtocolHost]:
        hosts: list[ProtocolHost] = [
            McpHost(
                server.name,
                server.transport,
                risk_class=server.risk_class,
                system_prompt=server.system_prompt,
                handshake_timeout_seconds=server.handshake_timeout_seconds,
            )
            for server in self.config.mcp_servers
        ]
        return hosts + self._extra_hosts

    async def _connect_hosts(self) -> list[ProtocolProxy]:
        proxies: list[ProtocolProxy] = []
        for host in self._configured_hosts():
            try:
                tools = await host.initialize()
            except Exception:
                logger.exception("Protocol host %s failed to initialize; skipping", host.name)
                await host.close()
                continue
            self.hosts.append(host)
            proxies.append(ProtocolProxy(host, tools))
        return proxies

    def _memory_store(self) -> KnowledgeGraphStore:
        memory = self.config.memory
        if memory.memory_only or not memory.path:
            return KnowledgeGraphStore(memory_only=True)
        assert self.workspace is not None
        directory = Path(memory.path).expanduser()
        if not directory.is_absolute():
            directory = self.workspace.root / directory
        return KnowledgeGraphStore(directory)

    def _web(self) -> WebTools | None:
        if self._web_tools is not None:
            return self._web_tools
        fetch = self.config.web_fetch
        search = self.config.web_search
        if not fetch.enabled and search.type is None:
            return None
        return WebTools(
            fetch_enabled=fetch.enabled,
            fetch_timeout_seconds=fetch.timeout_seconds,
            fetch_max_length=fetch.max_length,
            search_type=search.type,
            search_api_key=search.api_key,
            search_url=search.url,
        )

    async def __aenter__(self) -> AgentRuntime:
        cfg = self.config.engine
        if self._event_callback is not None:
            cfg.event_callback = self._event_callback
        self.workspace = Workspace(cfg.workspace)
        self.workspace.root.mkdir(parents=True, exist_ok=True)
        self.supervisor = ProcessSupervisor(
            kill_grace_seconds=cfg.kill_grace_seconds,
            output_tail_chars=cfg.output_tail_chars,
            max_finished=cfg.max_finished_processes,
        )
        try:
            proxies = await self._connect_hosts()
            registry = build_tool_registry(
                self.workspace,
                self.supervisor,
                memory=self._memory_store(),
                web=self._web(),
                proxies=proxies,
                in_progress_seconds=cfg.command_in_progress_seconds,
            )
        except BaseException:
            await self._close_hosts()
            await self.supervisor.shutdown()
            raise

        dispatcher = Dispatcher(
            registry,
            self.workspace,
            supervisor=self.supervisor,
            tool_timeout_seconds=cfg.tool_call_timeout_seconds,
        )
        gate = PermissionGate(cfg.permission_mode, dispatcher.risk_of)
        provider = RetryingProvider(
            self._provider,
            max_attempts=cfg.transport_retry_attempts,
            base_delay=cfg.transport_retry_base_delay,
            max_delay=cfg.transport_retry_max_delay,
        )
        system_prompt = build_system_prompt(
            self.workspace.root,
            self.config.user_instructions,
            [(h.name, h.system_prompt or "") for h in self.hosts],
        )
        self.engine = TaskEngine(
            provider,
            dispatcher,
            gate,
            self.supervisor,
            system_prompt=system_prompt,
            config=cfg,
            session_store=self._session_store,
        )
        logger.info(
            "AgentRuntime ready: workspace=%s mode=%s tools=%d hosts=%d",
            self.workspace.root, cfg.permission_mode.value,
            len(registry), len(self.hosts),
        )
        return self

    async def _close_hosts(self) -> None:
        for host in self.hosts:
            try:
                await host.close()
            except Exception:
                logger.exception("Error closing protocol host %s", host.name)
        self.hosts = []

    async def __aexit__(self, *exc: Any) -> None:
        try:
            if self.engine is not None:
                await self.engine.shutdown()
            elif self.supervisor is not None:
                await self.supervisor.shutdown()
        finally:
            await self._close_hosts()
        logger.info("AgentRuntime closed")
