"""Tests for scenario_continuity.evaluator — per-path and per-scene judge calls."""

import asyncio

import pytest

from scenario_continuity.evaluator import (
    PathConsistencyEvaluator,
    SceneClassifier,
    call_with_retries,
)
from scenario_continuity.graph import build_graph
from scenario_continuity.models import (
    ConsistencyEvaluationResult,
    ConsistencyIssue,
    ScenarioPath,
    SceneEntityClassificationData,
)
from scenario_continuity.paths import render_path


class TestRetries:
    async def test_second_attempt_succeeds(self) -> None:
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("blip")
            return "ok"

        assert await call_with_retries(flaky, attempts=2, timeout=1, label="t") == "ok"
        assert len(attempts) == 2

    async def test_last_error_reraised(self) -> None:
        async def broken():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError, match="down"):
            await call_with_retries(broken, attempts=3, timeout=1, label="t")

    async def test_timeout_per_attempt(self) -> None:
        async def slow():
            await asyncio.sleep(10)

        with pytest.raises(TimeoutError, match="timed out"):
            await call_with_retries(slow, attempts=1, timeout=0.01, label="slow call")

    async def test_zero_attempts_rejected(self) -> None:
        async def never():
            raise AssertionError("must not be called")

        with pytest.raises(ValueError, match="attempts"):
            await call_with_retries(never, attempts=0, timeout=1, label="t")


class TestPathEvaluator:
    async def test_success(self, stub_judge, branching_scenario) -> None:
        stub_judge.verdict = ConsistencyEvaluationResult(
            overall_assessment="minor_issues", issues=[ConsistencyIssue(summary="x")],
        )
        graph = build_graph(branching_scenario)
        path = ScenarioPath(scene_ids=["start", "bad_end"], content=render_path(graph, ["start", "bad_end"]))
        result = await PathConsistencyEvaluator(stub_judge).evaluate_path(path)
        assert result.scene_ids == ["start", "bad_end"]
        assert result.result is not None
        assert result.result.overall_assessment == "minor_issues"
        assert result.error is None

    async def test_failure_keeps_scene_ids_and_null_result(self, stub_judge, branching_scenario) -> None:
        stub_judge.fail_paths = {"bad_end"}
        graph = build_graph(branching_scenario)
        path = ScenarioPath(scene_ids=["start", "bad_end"], content=render_path(graph, ["start", "bad_end"]))
        result = await PathConsistencyEvaluator(stub_judge, max_attempts=2).evaluate_path(path)
        assert result.result is None
        assert result.scene_ids == ["start", "bad_end"]
        assert "judge unavailable" in result.error
        assert len(stub_judge.path_calls) == 2

    async def test_timeout_is_a_path_failure(self, stub_judge) -> None:
        stub_judge.gate = asyncio.Event()
        path = ScenarioPath(scene_ids=["a"], content="[a]")
        result = await PathConsistencyEvaluator(stub_judge, timeout=0.01, max_attempts=1).evaluate_path(path)
        assert result.result is None
        assert "timed out" in result.error

    async def test_unstructured_reply_is_a_path_failure(self, prose_judge) -> None:
        path = ScenarioPath(scene_ids=["a", "b"], content="[a]\n\n[b]")
        result = await PathConsistencyEvaluator(prose_judge, max_attempts=1).evaluate_path(path)
        assert result.result is None
        assert result.scene_ids == ["a", "b"]
        assert result.error.startswith("ValidationError")


class TestSceneClassifier:
    async def test_classifies_every_reachable_scene(self, stub_judge, lantern_scenario) -> None:
        graph = build_graph(lantern_scenario)
        results = await SceneClassifier(stub_judge).classify_all(graph, max_concurrency=2)
        assert set(results) == {"start", "mid", "end", "shortcut", "cave"}
        assert all(r is not None for r in results.values())

    async def test_concurrency_is_bounded(self, stub_judge, lantern_scenario) -> None:
        stub_judge.delay = 0.02
        graph = build_graph(lantern_scenario)
        await SceneClassifier(stub_judge).classify_all(graph, max_concurrency=2)
        assert len(stub_judge.scene_calls) == 5
        assert stub_judge.peak["scene"] == 2

    async def test_unstructured_classification_is_none(self, prose_judge, linear_scenario) -> None:
        graph = build_graph(linear_scenario)
        results = await SceneClassifier(prose_judge, max_attempts=1).classify_all(graph)
        assert results == {"start": None, "mid": None, "end": None}

    async def test_failed_scene_is_none(self, stub_judge, lantern_scenario) -> None:
        stub_judge.fail_scenes = {"mid"}
        graph = build_graph(lantern_scenario)
        results = await SceneClassifier(stub_judge, max_attempts=1).classify_all(graph)
        assert results["mid"] is None
        assert results["end"] is not None

    async def test_prior_context_is_lead_in_path(self, lantern_scenario) -> None:
        seen = {}

        class RecordingJudge:
            async def classify_scene(self, scene, prior_context, characters=()):
                seen[scene.id] = prior_context
                return SceneEntityClassificationData(scene_id="wrong")

            async def evaluate_path_consistency(self, path_text):
                raise NotImplementedError

        graph = build_graph(lantern_scenario)
        result = await SceneClassifier(RecordingJudge()).classify(graph, "cave")
        assert result.scene_id == "cave"
        assert seen["cave"] == render_path(graph, ["start", "shortcut"])

    async def test_cancelled_before_start_leaves_scenes_unclassified(self, stub_judge, lantern_scenario) -> None:
        event = asyncio.Event()
        event.set()
        graph = build_graph(lantern_scenario)
        results = await SceneClassifier(stub_judge).classify_all(graph, cancel_event=event)
        assert all(r is None for r in results.values())
        assert stub_judge.scene_calls == []
