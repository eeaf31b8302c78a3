import asyncio
from collections.abc import Sequence
from contextlib import asynccontextmanager

import pytest

from scenario_continuity.models import (
    ConsistencyEvaluationResult,
    EntityClassification,
    Scenario,
    ScenarioCharacter,
    Scene,
    SceneEntityClassificationData,
)
from scenario_continuity.storage import ScenarioStore


class StubJudge:
    """Deterministic judge with canned answers.

    scenes:      scene id → entity classifications returned for that scene
    verdict:     result returned for every path
    fail_scenes: scene ids whose classification raises
    fail_paths:  scene ids; a path whose text contains "[<id>]" raises
    gate:        when set, path calls wait on this event before answering
    delay:       seconds every call sleeps, so concurrent calls overlap
    peak:        most calls seen in flight at once, per stage ("scene", "path")
    """

    def __init__(self) -> None:
        self.scenes: dict[str, list[EntityClassification]] = {}
        self.verdict = ConsistencyEvaluationResult()
        self.fail_scenes: set[str] = set()
        self.fail_paths: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.delay = 0.0
        self.peak = {"scene": 0, "path": 0}
        self._in_flight = {"scene": 0, "path": 0}
        self.scene_calls: list[str] = []
        self.path_calls: list[str] = []

    @asynccontextmanager
    async def _busy(self, stage: str):
        self._in_flight[stage] += 1
        self.peak[stage] = max(self.peak[stage], self._in_flight[stage])
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield
        finally:
            self._in_flight[stage] -= 1

    async def classify_scene(
        self,
        scene: Scene,
        prior_context: str,
        characters: Sequence[ScenarioCharacter] = (),
    ) -> SceneEntityClassificationData:
        self.scene_calls.append(scene.id)
        async with self._busy("scene"):
            pass
        if scene.id in self.fail_scenes:
            raise RuntimeError(f"classifier down for {scene.id}")
        return SceneEntityClassificationData(
            scene_id=scene.id, entity_classifications=list(self.scenes.get(scene.id, [])),
        )

    async def evaluate_path_consistency(self, path_text: str) -> ConsistencyEvaluationResult:
        self.path_calls.append(path_text)
        async with self._busy("path"):
            if self.gate is not None:
                await self.gate.wait()
        if any(f"[{sid}]" in path_text for sid in self.fail_paths):
            raise RuntimeError("judge unavailable")
        return self.verdict.model_copy(deep=True)


def used(name: str, type: str = "item", **kw) -> EntityClassification:
    return EntityClassification(name=name, type=type, introduction_status="already_known", **kw)


def introduced(name: str, type: str = "item", **kw) -> EntityClassification:
    return EntityClassification(name=name, type=type, introduction_status="new", **kw)


@pytest.fixture
def stub_judge() -> StubJudge:
    return StubJudge()


@pytest.fixture
def store(tmp_path) -> ScenarioStore:
    return ScenarioStore(tmp_path)


@pytest.fixture
def linear_scenario() -> Scenario:
    """start → mid → end"""
    return Scenario.model_validate({
        "id": "linear",
        "scenes": [
            {"id": "start", "title": "Gate", "description": "You arrive.", "next_scene_id": "mid"},
            {"id": "mid", "title": "Hall", "description": "A long hall.", "next_scene_id": "end"},
            {"id": "end", "title": "Throne", "description": "The end."},
        ],
    })


@pytest.fixture
def branching_scenario() -> Scenario:
    """start ─┬─► good_end
              └─► bad_end"""
    return Scenario.model_validate({
        "id": "fork",
        "scenes": [
            {"id": "start", "type": "choice", "description": "A fork.", "branches": [
                {"choice": "Left", "next_scene_id": "good_end"},
                {"choice": "Right", "next_scene_id": "bad_end"},
            ]},
            {"id": "good_end", "description": "Sunlight."},
            {"id": "bad_end", "description": "A pit."},
        ],
    })


@pytest.fixture
def lantern_scenario() -> Scenario:
    """start ─┬─► mid ─► end          (mid introduces the lantern)
              └─► shortcut ─► cave    (cave uses it; never introduced)"""
    return Scenario.model_validate({
        "id": "lantern",
        "scenes": [
            {"id": "start", "type": "choice", "description": "Two ways down.", "branches": [
                {"choice": "Search the hut", "next_scene_id": "mid"},
                {"choice": "Climb down", "next_scene_id": "shortcut"},
            ]},
            {"id": "mid", "description": "You find the lantern.", "next_scene_id": "end"},
            {"id": "end", "description": "The lantern lights the vault."},
            {"id": "shortcut", "description": "You drop into a shaft.", "next_scene_id": "cave"},
            {"id": "cave", "description": "The lantern flickers."},
        ],
    })


@pytest.fixture
def lantern_judge(stub_judge) -> StubJudge:
    stub_judge.scenes = {
        "mid": [introduced("the lantern")],
        "end": [used("the lantern")],
        "cave": [used("the lantern")],
    }
    return stub_judge


class ProseJudge:
    """Answers in free text instead of the structured reply the callers expect."""

    def __init__(self) -> None:
        self.path_calls: list[str] = []

    async def classify_scene(self, scene, prior_context, characters=()):
        return "a lantern, probably"

    async def evaluate_path_consistency(self, path_text: str):
        self.path_calls.append(path_text)
        return "looks fine to me"


@pytest.fixture
def prose_judge() -> ProseJudge:
    return ProseJudge()
