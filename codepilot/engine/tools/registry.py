"""Name-keyed registry of tool descriptors.

Populated by explicit registration at startup, frozen once the static
tools and hosted tools are merged. Registration problems are fatal:
they abort startup and never happen mid-task.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from typing import Any

from ..errors import DuplicateToolError, RegistryFrozenError
from .base import ToolDescriptor

logger = logging.getLogger(__name__)


class ToolRegistry:

    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._frozen = False

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(list(self._tools.values()))

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, descriptor: ToolDescriptor) -> None:
        if self._frozen:
            raise RegistryFrozenError(descriptor.name)
        if descriptor.name in self._tools:
            raise DuplicateToolError(descriptor.name)
        self._tools[descriptor.name] = descriptor
        logger.debug(
            "Registered tool %s risk=%s source=%s",
            descriptor.name, descriptor.risk_class.value, descriptor.source,
        )

    def register_all(self, descriptors: Iterable[ToolDescriptor]) -> None:
        for descriptor in descriptors:
            self.register(descriptor)

    def freeze(self) -> None:
        self._frozen = True
        logger.info("Tool registry frozen with %d tools", len(self._tools))

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        return [d.to_schema() for d in self._tools.values()]
