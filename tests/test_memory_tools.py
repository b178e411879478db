import json

import pytest
import yaml

from codepilot.engine.errors import ExecutionError
from codepilot.engine.tools.memory_tools import MEMORY_FILE, KnowledgeGraphStore

from conftest import call_tool


def _seed(store: KnowledgeGraphStore) -> None:
    store.create_entities([
        {"name": "api", "entityType": "service", "observations": ["written in Go", "written in Go"]},
        {"name": "db", "entityType": "database", "observations": ["postgres 15"]},
    ])
    store.create_relations([{"from": "api", "to": "db", "relationType": "reads from"}])


class TestKnowledgeGraphStore:

    def test_create_is_idempotent(self):
        store = KnowledgeGraphStore(memory_only=True)
        _seed(store)
        _seed(store)
        assert [e.name for e in store.entities] == ["api", "db"]
        assert store.find("api").observations == ["written in Go"]
        assert len(store.relations) == 1

    def test_search_and_open(self):
        store = KnowledgeGraphStore(memory_only=True)
        _seed(store)
        found = store.search("POSTGRES")
        assert [e["name"] for e in found["entities"]] == ["db"]
        assert found["relations"][0]["from"] == "api"
        assert store.search("")["entities"] == []
        assert [e["name"] for e in store.open(["api", "ghost"])["entities"]] == ["api"]

    def test_add_observations_requires_entity(self):
        store = KnowledgeGraphStore(memory_only=True)
        _seed(store)
        with pytest.raises(ExecutionError, match="'ghost' not found"):
            store.add_observations([
                {"entityName": "api", "contents": ["new"]},
                {"entityName": "ghost", "contents": ["x"]},
            ])
        assert "new" not in store.find("api").observations

    def test_delete_entity_drops_relations(self):
        store = KnowledgeGraphStore(memory_only=True)
        _seed(store)
        store.delete_entities(["db"])
        assert [e.name for e in store.entities] == ["api"]
        assert store.relations == []

    def test_persists_as_yaml(self, tmp_path):
        store = KnowledgeGraphStore(tmp_path)
        _seed(store)
        data = yaml.safe_load((tmp_path / MEMORY_FILE).read_text())
        assert data["relations"] == [{"from": "api", "to": "db", "relationType": "reads from"}]

        reloaded = KnowledgeGraphStore(tmp_path)
        assert [e.name for e in reloaded.entities] == ["api", "db"]

    def test_unreadable_file_is_ignored(self, tmp_path):
        (tmp_path / MEMORY_FILE).write_text("entities: [unclosed\n")
        store = KnowledgeGraphStore(tmp_path)
        assert store.entities == []


@pytest.mark.asyncio
async def test_memory_tools_through_dispatcher(tools):
    await call_tool(tools, "create_entities", entities=[
        {"name": "ci", "entityType": "pipeline", "observations": ["runs on push"]},
    ])
    added = await call_tool(
        tools, "add_observations", observations=[{"entityName": "ci", "contents": ["uses pytest"]}],
    )
    assert json.loads(added.text) == [{"entityName": "ci", "addedObservations": ["uses pytest"]}]

    graph = json.loads((await call_tool(tools, "read_graph")).text)
    assert graph["entities"][0]["observations"] == ["runs on push", "uses pytest"]

    missing = await call_tool(
        tools, "add_observations", observations=[{"entityName": "nope", "contents": ["x"]}],
    )
    assert missing.is_error
    assert "not found" in missing.text
