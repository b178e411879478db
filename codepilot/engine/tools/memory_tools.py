"""Long-term memory capability: a small knowledge graph.

Entities carry a type and a list of observations; relations are
directed, typed edges between entity names. The graph is persisted as
YAML (``memory.yaml`` in the configured directory) after every
mutation unless the store is memory-only.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ...shared.services.durable_write import atomic_write_text
from ..errors import ExecutionError
from ..models import RiskClass
from .base import ToolContext, ToolDescriptor, _text, dumps, no_lock, object_schema

logger = logging.getLogger(__name__)

MEMORY_FILE = "memory.yaml"


@dataclass
class Entity:
    name: str
    entityType: str
    observations: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Relation:
    # Serialized as "from"/"to".
    source: str
    target: str
    relationType: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.source, "to": self.target, "relationType": self.relationType}

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Relation:
        return cls(str(d["from"]), str(d["to"]), str(d["relationType"]))


class KnowledgeGraphStore:
    """In-memory graph with optional YAML persistence."""

    def __init__(self, directory: str | Path | None = None, *, memory_only: bool = False) -> None:
        self._memory_only = memory_only or directory is None
        self._path = Path(directory) / MEMORY_FILE if directory is not None else None
        self.entities: list[Entity] = []
        self.relations: list[Relation] = []
        if not self._memory_only:
            self._load()

    def _load(self) -> None:
        assert self._path is not None
        if not self._path.exists():
            return
        try:
            data = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Ignoring unreadable memory file %s: %s", self._path, exc)
            return
        for e in data.get("entities") or []:
            self.entities.append(Entity(
                name=str(e["name"]),
                entityType=str(e.get("entityType", "")),
                observations=[str(o) for o in e.get("observations") or []],
            ))
        for r in data.get("relations") or []:
            self.relations.append(Relation.from_dict(r))
        logger.info(
            "Loaded memory graph from %s (%d entities, %d relations)",
            self._path, len(self.entities), len(self.relations),
        )

    def save(self) -> None:
        if self._memory_only or self._path is None:
            return
        try:
            atomic_write_text(self._path, yaml.safe_dump(self.to_dict(), sort_keys=False))
        except OSError as exc:
            raise ExecutionError(f"Failed to persist memory graph: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [asdict(e) for e in self.entities],
            "relations": [r.to_dict() for r in self.relations],
        }

    def find(self, name: str) -> Entity | None:
        for entity in self.entities:
            if entity.name == name:
                return entity
        return None

    # ── Mutations ──

    def create_entities(self, items: list[dict[str, Any]]) -> list[Entity]:
        created: list[Entity] = []
        for item in items:
            if self.find(item["name"]) is not None:
                continue
            entity = Entity(
                name=item["name"],
                entityType=item["entityType"],
                observations=list(dict.fromkeys(item.get("observations") or [])),
            )
            self.entities.append(entity)
            created.append(entity)
        self.save()
        return created

    def create_relations(self, items: list[dict[str, Any]]) -> list[Relation]:
        created: list[Relation] = []
        for item in items:
            relation = Relation.from_dict(item)
            if relation in self.relations:
                continue
            self.relations.append(relation)
            created.append(relation)
        self.save()
        return created

    def add_observations(self, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        # Validate first so a missing entity leaves the graph untouched.
        for item in items:
            if self.find(item["entityName"]) is None:
                raise ExecutionError(f"Entity '{item['entityName']}' not found")
        results: list[dict[str, Any]] = []
        for item in items:
            entity = self.find(item["entityName"])
            assert entity is not None
            added = [
                o for o in dict.fromkeys(item["contents"])
                if o not in entity.observations
            ]
            entity.observations.extend(added)
            results.append({"entityName": entity.name, "addedObservations": added})
        self.save()
        return results

    def delete_entities(self, names: list[str]) -> None:
        doomed = set(names)
        self.entities = [e for e in self.entities if e.name not in doomed]
        self.relations = [
            r for r in self.relations
            if r.source not in doomed and r.target not in doomed
        ]
        self.save()

    def delete_observations(self, items: list[dict[str, Any]]) -> None:
        for item in items:
            entity = self.find(item["entityName"])
            if entity is None:
                continue
            drop = set(item["observations"])
            entity.observations = [o for o in entity.observations if o not in drop]
        self.save()

    def delete_relations(self, items: list[dict[str, Any]]) -> None:
        doomed = {Relation.from_dict(item) for item in items}
        self.relations = [r for r in self.relations if r not in doomed]
        self.save()

    # ── Queries ──

    def search(self, query: str) -> dict[str, Any]:
        terms = [t for t in query.lower().split() if t]
        matches: list[Entity] = []
        for entity in self.entities:
            haystack = " ".join(
                [entity.name, entity.entityType, *entity.observations]
            ).lower()
            if terms and all(t in haystack for t in terms):
                matches.append(entity)
        return self._subgraph(matches)

    def open(self, names: list[str]) -> dict[str, Any]:
        wanted = set(names)
        return self._subgraph([e for e in self.entities if e.name in wanted])

    def _subgraph(self, entities: list[Entity]) -> dict[str, Any]:
        names = {e.name for e in entities}
        return {
            "entities": [asdict(e) for e in entities],
            "relations": [
                r.to_dict() for r in self.relations
                if r.source in names or r.target in names
            ],
        }


_STR_LIST = {"type": "array", "items": {"type": "string"}}
_ENTITY = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "entityType": {"type": "string"},
        "observations": _STR_LIST,
    },
    "required": ["name", "entityType"],
}
_RELATION = {
    "type": "object",
    "properties": {
        "from": {"type": "string"},
        "to": {"type": "string"},
        "relationType": {"type": "string"},
    },
    "required": ["from", "to", "relationType"],
}


class MemoryTools:
    """Memory handlers over one KnowledgeGraphStore."""

    def __init__(self, store: KnowledgeGraphStore) -> None:
        self._store = store

    @property
    def store(self) -> KnowledgeGraphStore:
        return self._store

    def descriptors(self) -> list[ToolDescriptor]:
        def tool(name, description, props, required, risk, handler):
            return ToolDescriptor(
                name=name,
                description=description,
                parameters=object_schema(props, required),
                risk_class=risk,
                handler=handler,
                lock_scope=no_lock,
            )

        mutating = RiskClass.MUTATING
        safe = RiskClass.SAFE
        return [
            tool("create_entities", "Create entities in the knowledge graph.",
                 {"entities": {"type": "array", "items": _ENTITY}},
                 ["entities"], mutating, self.create_entities),
            tool("create_relations",
                 "Create directed relations between entities (active voice).",
                 {"relations": {"type": "array", "items": _RELATION}},
                 ["relations"], mutating, self.create_relations),
            tool("add_observations", "Add observations to existing entities.",
                 {"observations": {"type": "array", "items": {
                     "type": "object",
                     "properties": {"entityName": {"type": "string"}, "contents": _STR_LIST},
                     "required": ["entityName", "contents"],
                 }}},
                 ["observations"], mutating, self.add_observations),
            tool("delete_entities", "Delete entities and their relations.",
                 {"entityNames": _STR_LIST},
                 ["entityNames"], mutating, self.delete_entities),
            tool("delete_observations", "Delete specific observations from entities.",
                 {"deletions": {"type": "array", "items": {
                     "type": "object",
                     "properties": {"entityName": {"type": "string"}, "observations": _STR_LIST},
                     "required": ["entityName", "observations"],
                 }}},
                 ["deletions"], mutating, self.delete_observations),
            tool("delete_relations", "Delete relations from the knowledge graph.",
                 {"relations": {"type": "array", "items": _RELATION}},
                 ["relations"], mutating, self.delete_relations),
            tool("read_graph", "Read the whole knowledge graph.",
                 {}, [], safe, self.read_graph),
            tool("search_nodes",
                 "Find entities whose name, type or observations match the query.",
                 {"query": {"type": "string"}}, ["query"], safe, self.search_nodes),
            tool("open_nodes", "Fetch entities by name with their relations.",
                 {"names": _STR_LIST}, ["names"], safe, self.open_nodes),
        ]

    async def create_entities(self, ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        created = self._store.create_entities(args["entities"])
        return _text(dumps([asdict(e) for e in created]))

    async def create_relations(self, ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        created = self._store.create_relations(args["relations"])
        return _text(dumps([r.to_dict() for r in created]))

    async def add_observations(self, ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        return _text(dumps(self._store.add_observations(args["observations"])))

    async def delete_entities(self, ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        self._store.delete_entities(args["entityNames"])
        return _text("Entities deleted successfully")

    async def delete_observations(self, ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        self._store.delete_observations(args["deletions"])
        return _text("Observations deleted successfully")

    async def delete_relations(self, ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        self._store.delete_relations(args["relations"])
        return _text("Relations deleted successfully")

    async def read_graph(self, ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        return _text(dumps(self._store.to_dict()))

    async def search_nodes(self, ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        return _text(dumps(self._store.search(args["query"])))

    async def open_nodes(self, ctx: ToolContext, args: dict[str, Any]) -> dict[str, Any]:
        return _text(dumps(self._store.open(args["names"])))
