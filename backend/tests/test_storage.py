import json
import re

import pytest

from sitebuilder.models import ChatMessage, MessageType
from sitebuilder.storage import ApiKeyStore, JsonFileStore, ProjectStore, new_project_id


@pytest.fixture
def store(tmp_path):
    return JsonFileStore(tmp_path / "store.json")


def test_json_file_store_basic_operations(store):
    assert store.get("missing", "default") == "default"
    store.set("a", {"x": 1})
    store.set("b", [1, 2])
    assert store.get("a") == {"x": 1}

    store.delete("a")
    store.delete("never-there")
    assert store.get("a") is None
    assert store.get("b") == [1, 2]

    store.clear()
    assert store.get("b") is None


def test_json_file_store_survives_corrupt_file(store):
    store.path.write_text("{not json", encoding="utf-8")
    assert store.get("anything") is None
    store.set("k", "v")
    assert json.loads(store.path.read_text(encoding="utf-8")) == {"k": "v"}


def test_default_path_uses_data_dir(tmp_path):
    assert JsonFileStore().path == tmp_path / "data" / "store.json"


def test_api_key_store(store):
    keys = ApiKeyStore(store)
    assert not keys.has_required_keys()
    assert keys.missing_required_keys() == ["Groq", "Daytona"]

    keys.save({"groq": "gsk_1"})
    keys.save({"daytona": "dtn_1", "openai": "sk-1"})
    assert keys.get_all() == {"groq": "gsk_1", "daytona": "dtn_1", "openai": "sk-1"}
    assert keys.has_required_keys()

    keys.save({"openai": ""})
    assert keys.get("openai") is None

    with pytest.raises(ValueError):
        keys.save({"e2b": "x"})

    keys.clear()
    assert keys.get_all() == {}


def test_missing_keys_for_chosen_providers(store):
    keys = ApiKeyStore(store)
    keys.save({"daytona": "dtn_1"})
    assert keys.missing_keys(["anthropic", "daytona", "anthropic"]) == ["Anthropic"]
    assert keys.missing_keys([]) == []


def test_openrouter_model_name_is_persisted(store):
    keys = ApiKeyStore(store)
    assert keys.get_openrouter_model_name() is None

    keys.save_openrouter_model_name("qwen/qwen3-coder:free")
    assert ApiKeyStore(store).get_openrouter_model_name() == "qwen/qwen3-coder:free"

    keys.clear()
    assert keys.get_openrouter_model_name() == "qwen/qwen3-coder:free"

    keys.save_openrouter_model_name("")
    assert keys.get_openrouter_model_name() is None


def test_new_project_id_format():
    assert re.fullmatch(r"project-\d{13}-[a-z0-9]{9}", new_project_id())


def test_project_store_add_makes_current_and_newest_first(store):
    projects = ProjectStore(store)
    first = projects.add("First")
    second = projects.add("Second", description="desc", url="https://x.test")

    assert [p.id for p in projects.list()] == [second.id, first.id]
    assert projects.current.id == second.id
    assert projects.get(first.id).name == "First"


def test_project_dates_and_chat_round_trip(store):
    projects = ProjectStore(store)
    message = ChatMessage(content="hello", type=MessageType.USER)
    created = projects.add("P", chat_history=[message], generated_code="<file/>")

    # Fresh store instance reads from disk
    loaded = ProjectStore(JsonFileStore(store.path)).get(created.id)
    assert loaded.created_at == created.created_at
    assert loaded.chat_history[0].content == "hello"
    assert loaded.chat_history[0].type is MessageType.USER
    assert loaded.chat_history[0].timestamp == message.timestamp
    assert loaded.generated_code == "<file/>"

    raw = store.get("sitebuilder-projects")[0]
    assert "createdAt" in raw and "chatHistory" in raw


def test_project_update_keeps_id_and_bumps_updated_at(store):
    projects = ProjectStore(store)
    project = projects.add("P")
    updated = projects.update(project.id, id="hijack", name="Renamed", sandbox_id="sb-1")

    assert updated.id == project.id
    assert updated.name == "Renamed"
    assert updated.sandbox_id == "sb-1"
    assert updated.updated_at >= project.updated_at
    assert projects.update("missing", name="x") is None


def test_project_delete_clears_current(store):
    projects = ProjectStore(store)
    keep = projects.add("Keep")
    gone = projects.add("Gone")

    assert projects.delete(gone.id)
    assert not projects.delete(gone.id)
    assert projects.current is None
    assert [p.id for p in projects.list()] == [keep.id]


def test_project_set_current_and_clear_all(store):
    projects = ProjectStore(store)
    a = projects.add("A")
    projects.add("B")

    assert projects.set_current(a.id).id == a.id
    assert projects.current.id == a.id
    assert projects.set_current("unknown") is None
    assert projects.current.id == a.id
    assert projects.set_current(None) is None
    assert projects.current is None

    projects.clear_all()
    assert projects.list() == []
