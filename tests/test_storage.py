"""Tests for scenario_continuity.storage — JSON scenario files."""

import json

import pytest

from scenario_continuity.models import Scenario
from scenario_continuity.storage import ScenarioNotFoundError, load_scenario_file


def test_save_and_get(store, linear_scenario) -> None:
    store.save_scenario(linear_scenario)
    loaded = store.get_scenario("linear")
    assert loaded == linear_scenario
    assert store.list_scenario_ids() == ["linear"]


def test_missing_scenario(store) -> None:
    with pytest.raises(ScenarioNotFoundError):
        store.get_scenario("nope")


def test_unsafe_id_is_not_found(store) -> None:
    with pytest.raises(ScenarioNotFoundError):
        store.get_scenario("../etc/passwd")


def test_delete(store, linear_scenario) -> None:
    store.save_scenario(linear_scenario)
    assert store.delete_scenario("linear")
    assert not store.delete_scenario("linear")


def test_legacy_field_names_on_disk(store, tmp_path) -> None:
    (tmp_path / "scenarios" / "old.json").write_text(json.dumps({
        "id": "old", "firstSceneId": "a",
        "scenes": [{"id": "a", "nextSceneId": "b"}, {"id": "b"}],
    }))
    scenario = store.get_scenario("old")
    assert scenario.first_scene_id == "a"
    assert scenario.scenes[0].next_scene_id == "b"


def test_load_scenario_file(tmp_path) -> None:
    path = tmp_path / "s.json"
    path.write_text(json.dumps({"id": "s", "scenes": [{"id": "only"}]}))
    assert load_scenario_file(path) == Scenario(id="s", scenes=[{"id": "only"}])
