"""Per-unit judge calls: one path, or one scene.

Both calls are slow, fallible and retryable. Each attempt is bounded by its
own timeout; when every attempt fails the unit yields "no data" (a
PathConsistencyResult with result=None, or a missing scene classification)
instead of an exception, so one bad unit never aborts the evaluation.

Task cancellation is not a failure and always propagates.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from scenario_continuity.graph import ScenarioGraph
from scenario_continuity.judge import SemanticJudge
from scenario_continuity.models import (
    PathConsistencyResult,
    ScenarioCharacter,
    ScenarioPath,
    SceneEntityClassificationData,
)
from scenario_continuity.paths import render_path

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retries(
    call: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    timeout: float,
    label: str,
) -> T:
    """Run call() up to `attempts` times, each bounded by `timeout` seconds.

    Re-raises the last failure once attempts are exhausted.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")
    last: Exception = RuntimeError(f"{label} was never attempted")
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError as e:
            last = TimeoutError(f"{label} timed out after {timeout}s")
            last.__cause__ = e
        except Exception as e:
            last = e
        logger.debug("%s attempt %d/%d failed: %s", label, attempt, attempts, last)
    raise last


def unjudged_path(path: ScenarioPath, error: BaseException) -> PathConsistencyResult:
    """The result recorded for a path the judge gave no verdict on."""
    return PathConsistencyResult(
        scene_ids=list(path.scene_ids),
        path_content=path.content,
        error=f"{type(error).__name__}: {error}",
    )


class PathConsistencyEvaluator:
    """Submits rendered paths to the judge."""

    def __init__(self, judge: SemanticJudge, timeout: float = 60.0, max_attempts: int = 2) -> None:
        self._judge = judge
        self._timeout = timeout
        self._max_attempts = max_attempts

    async def evaluate_path(self, path: ScenarioPath) -> PathConsistencyResult:
        label = f"path {' -> '.join(path.scene_ids)}"
        try:
            result = await call_with_retries(
                lambda: self._judge.evaluate_path_consistency(path.content),
                attempts=self._max_attempts,
                timeout=self._timeout,
                label=label,
            )
            # a reply of the wrong shape is a failed path, not a crash
            return PathConsistencyResult(
                scene_ids=list(path.scene_ids), result=result, path_content=path.content,
            )
        except Exception as e:
            logger.warning("judge gave no verdict for %s: %s", label, e)
            return unjudged_path(path, e)


class SceneClassifier:
    """Classifies every reachable scene's entities through the judge.

    The prior context for a scene is the rendered shortest path leading to
    it, which is what most players will have read on arrival.
    """

    def __init__(
        self,
        judge: SemanticJudge,
        timeout: float = 30.0,
        max_attempts: int = 2,
        characters: Sequence[ScenarioCharacter] = (),
    ) -> None:
        self._judge = judge
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._characters = list(characters)

    async def classify(
        self, graph: ScenarioGraph, scene_id: str
    ) -> SceneEntityClassificationData | None:
        scene = graph.scene(scene_id)
        lead_in = graph.shortest_path(scene_id) or [scene_id]
        prior = render_path(graph, lead_in[:-1])
        try:
            data = await call_with_retries(
                lambda: self._judge.classify_scene(scene, prior, self._characters),
                attempts=self._max_attempts,
                timeout=self._timeout,
                label=f"scene {scene_id}",
            )
            data = SceneEntityClassificationData.model_validate(data)
        except Exception as e:
            logger.warning("no entity classification for scene %s: %s", scene_id, e)
            return None
        if data.scene_id != scene_id:
            data = data.model_copy(update={"scene_id": scene_id})
        return data

    async def classify_all(
        self,
        graph: ScenarioGraph,
        max_concurrency: int = 4,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, SceneEntityClassificationData | None]:
        """Classify reachable scenes with at most max_concurrency judge calls in flight.

        Scenes not yet started when cancel_event is set are left unclassified.
        """
        semaphore = asyncio.Semaphore(max_concurrency)
        order, _ = graph.walk()

        async def _one(scene_id: str) -> SceneEntityClassificationData | None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                return await self.classify(graph, scene_id)

        results = await asyncio.gather(*(_one(s) for s in order))
        return dict(zip(order, results))
