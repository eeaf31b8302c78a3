"""Evaluation orchestrator — runs one continuity evaluation end-to-end.

Evaluation flow:
  1. Build the scene graph (structural defects become diagnostics).
  2. Resolve the paths: explicit ones from the request, or enumerate them
     (bounded, optionally compressed by shared suffix).
  3. Entity analysis: classify every reachable scene through the judge
     (bounded concurrency), then run the graph-wide data-flow analysis.
  4. Path evaluation: a fixed pool of workers pulls paths from a queue and
     pushes results to a second queue; this coroutine is the only consumer
     and the only writer of progress.
  5. Aggregate into a ScenarioConsistencyEvaluationResult.

Path results are appended in completion order.

Cancellation is cooperative: the cancel event is checked between stages and
raced against every result in step 4. Once it is observed no further result
is appended, workers are cancelled, and EvaluationCancelledError is raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from scenario_continuity.config import EvaluationSettings
from scenario_continuity.continuity import (
    CharacterRegistry,
    ScenarioCharacterRegistry,
    analyze_entity_continuity,
    normalize_entity_name,
)
from scenario_continuity.evaluator import (
    PathConsistencyEvaluator,
    SceneClassifier,
    unjudged_path,
)
from scenario_continuity.graph import ScenarioGraph, build_graph
from scenario_continuity.judge import SemanticJudge
from scenario_continuity.models import (
    ASSESSMENT_ORDER,
    CONFIDENCE_ORDER,
    SEVERITY_ORDER,
    ContinuityOperationInfo,
    EntityIntroductionResult,
    EvaluateStoryContinuityRequest,
    PathConsistencyResult,
    Scenario,
    ScenarioConsistencyEvaluationResult,
    ScenarioPath,
    StoryContinuityIssue,
    StoryContinuityIssueFilter,
    StructuralDiagnostic,
)
from scenario_continuity.operations import OperationTracker
from scenario_continuity.paths import (
    compress_by_shared_suffixes,
    enumerate_all_paths,
    render_path,
)
from scenario_continuity.storage import ScenarioNotFoundError, ScenarioStore

logger = logging.getLogger(__name__)

# share of the progress bar used by entity classification when it runs
_CLASSIFICATION_SHARE = 30

_ENTITY_SEVERITY = {
    "not_introduced": "high",
    "unexpected_presence": "high",
    "unexpected_absence": "medium",
    "inconsistent_attribute": "medium",
    "name_variation": "low",
}

_CATEGORY_ISSUE_TYPE = {
    "entity": "narrative_inconsistency",
    "time": "time_inconsistency",
    "emotional": "emotional_inconsistency",
    "causal": "causal_inconsistency",
    "other": "other",
}


class EvaluationCancelledError(RuntimeError):
    """Raised when an evaluation observes its cancellation signal."""


def _check_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise EvaluationCancelledError("Evaluation cancelled")


class ScenarioConsistencyService:
    """Entry points for quick validation, full evaluation and tracked jobs.

    Collaborators are passed in explicitly: the judge, the scenario store
    (needed only for jobs submitted by id), the operation tracker and an
    optional character registry. When no registry is given, one is built
    from the scenario's own registered characters, if it has any.
    """

    def __init__(
        self,
        judge: SemanticJudge,
        *,
        scenarios: ScenarioStore | None = None,
        tracker: OperationTracker | None = None,
        settings: EvaluationSettings | None = None,
        character_registry: CharacterRegistry | None = None,
    ) -> None:
        self._judge = judge
        self._scenarios = scenarios
        self._settings = settings or EvaluationSettings()
        self._tracker = tracker or OperationTracker(self._settings.max_finished_operations)
        self._registry = character_registry
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    @property
    def tracker(self) -> OperationTracker:
        return self._tracker

    @property
    def settings(self) -> EvaluationSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Quick validation (no judge calls)
    # ------------------------------------------------------------------

    def structural_diagnostics(self, scenario: Scenario) -> list[StructuralDiagnostic]:
        _require_scenario(scenario)
        graph = build_graph(scenario)
        diagnostics = list(graph.diagnostics)
        if graph.start_scene_id is not None:
            diagnostics.extend(enumerate_all_paths(graph, self._settings.max_paths).diagnostics)
        return diagnostics

    async def validate_quick(self, scenario: Scenario) -> bool:
        """True when the scenario has no error-severity structural defect."""
        return not any(d.severity == "error" for d in self.structural_diagnostics(scenario))

    # ------------------------------------------------------------------
    # Single path
    # ------------------------------------------------------------------

    async def evaluate_path_consistency(
        self, scenario: Scenario, path: Sequence[str]
    ) -> PathConsistencyResult:
        """Re-check one path. The path's scene ids must all exist."""
        _require_scenario(scenario)
        if isinstance(path, str) or not path:
            raise ValueError("path must be a non-empty sequence of scene ids")
        graph = build_graph(scenario)
        unknown = [s for s in path if s not in graph]
        if unknown:
            raise ValueError(f"Unknown scene id(s) in path: {', '.join(unknown)}")
        return await self._path_evaluator().evaluate_path(
            ScenarioPath(scene_ids=list(path), content=render_path(graph, path))
        )

    # ------------------------------------------------------------------
    # Full evaluation
    # ------------------------------------------------------------------

    async def evaluate_story_continuity(
        self,
        scenario: Scenario,
        request: EvaluateStoryContinuityRequest | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
        operation_id: str | None = None,
    ) -> ScenarioConsistencyEvaluationResult:
        _require_scenario(scenario)
        if request is None:
            request = EvaluateStoryContinuityRequest()
        elif not isinstance(request, EvaluateStoryContinuityRequest):
            raise TypeError(f"request must be EvaluateStoryContinuityRequest, got {type(request).__name__}")
        if request.paths is not None and any(not p for p in request.paths):
            raise ValueError("explicit paths must not be empty")

        logger.info("evaluating scenario %s", scenario.id)
        _check_cancelled(cancel_event)

        # 1. Graph
        graph = build_graph(scenario)
        diagnostics = list(graph.diagnostics)

        # 2. Paths
        paths, path_diagnostics, truncated = self._resolve_paths(graph, request)
        diagnostics.extend(path_diagnostics)
        self._progress(operation_id, current_step="paths enumerated", total_paths=len(paths))
        logger.info("scenario %s: %d path(s), truncated=%s", scenario.id, len(paths), truncated)

        # 3. Entity analysis
        entity_result: EntityIntroductionResult | None = None
        if request.include_entity_analysis and graph.start_scene_id is not None:
            _check_cancelled(cancel_event)
            self._progress(operation_id, current_step="classifying scenes")
            classifier = SceneClassifier(
                self._judge,
                timeout=self._settings.scene_timeout,
                max_attempts=self._settings.judge_max_attempts,
                characters=scenario.characters,
            )
            classifications = await classifier.classify_all(
                graph, self._settings.max_concurrency, cancel_event,
            )
            _check_cancelled(cancel_event)
            entity_result = analyze_entity_continuity(
                graph, classifications, self._registry_for(scenario),
            )
            logger.info(
                "scenario %s: %d entity issue(s), %d scene(s) unclassified",
                scenario.id, len(entity_result.issues), len(entity_result.skipped_scene_ids),
            )

        entity_issue_count = len(entity_result.issues) if entity_result else 0
        base_percent = _CLASSIFICATION_SHARE if request.include_entity_analysis else 0
        self._progress(
            operation_id, issues_found=entity_issue_count, progress_percent=base_percent,
        )

        # 4. Path evaluation
        path_results: list[PathConsistencyResult] = []
        if request.include_path_evaluation and paths:
            _check_cancelled(cancel_event)
            self._progress(operation_id, current_step="evaluating paths")
            path_results = await self._evaluate_paths(
                paths, cancel_event, operation_id, entity_issue_count, base_percent,
            )

        # 5. Aggregate
        return _aggregate(scenario.id, graph, path_results, entity_result, diagnostics, truncated, request)

    def _resolve_paths(
        self, graph: ScenarioGraph, request: EvaluateStoryContinuityRequest
    ) -> tuple[list[ScenarioPath], list[StructuralDiagnostic], bool]:
        diagnostics: list[StructuralDiagnostic] = []
        truncated = False
        if request.paths is not None:
            paths = []
            for ids in request.paths:
                unknown = [s for s in ids if s not in graph]
                if unknown:
                    diagnostics.append(StructuralDiagnostic(
                        code="unknown_path_scene", severity="warning",
                        message=f"Requested path skipped; unknown scene(s): {', '.join(unknown)}",
                        scene_ids=unknown,
                    ))
                    continue
                paths.append(ScenarioPath(scene_ids=list(ids), content=render_path(graph, ids)))
        elif graph.start_scene_id is None:
            paths = []
        else:
            enumeration = enumerate_all_paths(graph, request.max_paths or self._settings.max_paths)
            paths, truncated = enumeration.paths, enumeration.truncated
            diagnostics.extend(enumeration.diagnostics)

        if request.compress_paths and paths:
            at_cycle = {tuple(p.scene_ids) for p in paths if p.ends_at_cycle}
            paths = [
                ScenarioPath(
                    scene_ids=ids,
                    content=render_path(graph, ids),
                    ends_at_cycle=tuple(ids) in at_cycle,
                )
                for ids in compress_by_shared_suffixes([p.scene_ids for p in paths])
            ]
        return paths, diagnostics, truncated

    async def _evaluate_paths(
        self,
        paths: list[ScenarioPath],
        cancel_event: asyncio.Event | None,
        operation_id: str | None,
        issues_so_far: int,
        base_percent: int,
    ) -> list[PathConsistencyResult]:
        evaluator = self._path_evaluator()
        pending: asyncio.Queue[ScenarioPath] = asyncio.Queue()
        for p in paths:
            pending.put_nowait(p)
        completed: asyncio.Queue[PathConsistencyResult] = asyncio.Queue()

        async def _worker() -> None:
            while True:
                try:
                    path = pending.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result = await evaluator.evaluate_path(path)
                except Exception as e:
                    logger.exception("path %s crashed its worker", path.scene_ids)
                    result = unjudged_path(path, e)
                await completed.put(result)

        workers = [
            asyncio.create_task(_worker())
            for _ in range(min(self._settings.max_concurrency, len(paths)))
        ]
        cancel_wait = asyncio.create_task(cancel_event.wait()) if cancel_event else None
        results: list[PathConsistencyResult] = []
        issues_found = issues_so_far
        try:
            while len(results) < len(paths):
                getter = asyncio.create_task(completed.get())
                waiting = {getter, cancel_wait} if cancel_wait else {getter}
                await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if cancel_event is not None and cancel_event.is_set():
                    getter.cancel()
                    raise EvaluationCancelledError(
                        f"Evaluation cancelled after {len(results)} of {len(paths)} path(s)"
                    )
                result = getter.result()
                results.append(result)
                if result.result is not None:
                    issues_found += len(result.result.issues)
                self._progress(
                    operation_id,
                    paths_evaluated=len(results),
                    issues_found=issues_found,
                    progress_percent=base_percent + (100 - base_percent) * len(results) // len(paths),
                )
        finally:
            for w in workers:
                w.cancel()
            if cancel_wait is not None:
                cancel_wait.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
        return results

    # ------------------------------------------------------------------
    # Flat issue view
    # ------------------------------------------------------------------

    async def get_continuity_issues(
        self,
        scenario: Scenario,
        issue_filter: StoryContinuityIssueFilter | None = None,
        request: EvaluateStoryContinuityRequest | None = None,
    ) -> list[StoryContinuityIssue]:
        """Evaluate the scenario and return its issues as one filtered list."""
        result = await self.evaluate_story_continuity(scenario, request)
        return filter_issues(flatten_issues(result), issue_filter)

    # ------------------------------------------------------------------
    # Tracked operations
    # ------------------------------------------------------------------

    def submit_evaluation(
        self, scenario_id: str, request: EvaluateStoryContinuityRequest | None = None
    ) -> ContinuityOperationInfo:
        """Queue an evaluation of a stored scenario; returns the new operation.

        Must be called from inside a running event loop.
        """
        if not scenario_id:
            raise ValueError("scenario_id is required")
        if self._scenarios is None:
            raise RuntimeError("No scenario store configured for submitted evaluations")
        op = self._tracker.create(scenario_id)
        event = asyncio.Event()
        self._cancel_events[op.operation_id] = event
        self._tasks[op.operation_id] = asyncio.create_task(
            self._run_operation(op.operation_id, scenario_id, request, event)
        )
        return op

    async def _run_operation(
        self,
        operation_id: str,
        scenario_id: str,
        request: EvaluateStoryContinuityRequest | None,
        cancel_event: asyncio.Event,
    ) -> None:
        try:
            _check_cancelled(cancel_event)
            scenario = self._scenarios.get_scenario(scenario_id)
            self._tracker.mark_running(operation_id)
            result = await self.evaluate_story_continuity(
                scenario, request, cancel_event=cancel_event, operation_id=operation_id,
            )
        except (ScenarioNotFoundError, EvaluationCancelledError) as e:
            self._tracker.fail(operation_id, str(e))
        except asyncio.CancelledError:
            self._tracker.fail(operation_id, "Evaluation cancelled")
            raise
        except Exception as e:
            logger.exception("operation %s crashed", operation_id)
            self._tracker.fail(operation_id, f"Internal error: {type(e).__name__}: {e}")
        else:
            self._tracker.succeed(operation_id, result)
        finally:
            self._tasks.pop(operation_id, None)
            self._cancel_events.pop(operation_id, None)

    def get_operation(self, operation_id: str) -> ContinuityOperationInfo | None:
        return self._tracker.get(operation_id)

    def list_operations(self, scenario_id: str | None = None) -> list[ContinuityOperationInfo]:
        """Tracked operations, oldest first, optionally for one scenario."""
        return self._tracker.list_operations(scenario_id)

    def cancel_operation(self, operation_id: str) -> ContinuityOperationInfo | None:
        """Signal cancellation. Returns the operation as it stands, or None if unknown.

        The operation reaches "failed" once the running job observes the signal.
        """
        event = self._cancel_events.get(operation_id)
        if event is not None:
            logger.info("cancellation requested for operation %s", operation_id)
            event.set()
        return self._tracker.get(operation_id)

    async def wait_for_operation(self, operation_id: str) -> ContinuityOperationInfo | None:
        """Wait until the operation's job has finished, then return its record."""
        task = self._tasks.get(operation_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self._tracker.get(operation_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _path_evaluator(self) -> PathConsistencyEvaluator:
        return PathConsistencyEvaluator(
            self._judge,
            timeout=self._settings.path_timeout,
            max_attempts=self._settings.judge_max_attempts,
        )

    def _registry_for(self, scenario: Scenario) -> CharacterRegistry | None:
        if self._registry is not None:
            return self._registry
        if scenario.characters:
            return ScenarioCharacterRegistry(scenario.characters)
        return None

    def _progress(self, operation_id: str | None, **fields) -> None:
        if operation_id is not None:
            self._tracker.update_progress(operation_id, **fields)


def _require_scenario(scenario: object) -> None:
    if not isinstance(scenario, Scenario):
        raise TypeError(f"scenario must be a Scenario, got {type(scenario).__name__}")


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def _aggregate(
    scenario_id: str,
    graph: ScenarioGraph,
    path_results: list[PathConsistencyResult],
    entity_result: EntityIntroductionResult | None,
    diagnostics: list[StructuralDiagnostic],
    truncated: bool,
    request: EvaluateStoryContinuityRequest,
) -> ScenarioConsistencyEvaluationResult:
    judged = [r.result for r in path_results if r.result is not None]

    assessment = "ok"
    for verdict in judged:
        if ASSESSMENT_ORDER[verdict.overall_assessment] > ASSESSMENT_ORDER[assessment]:
            assessment = verdict.overall_assessment
    if entity_result and entity_result.issues and assessment == "ok":
        assessment = "minor_issues"
    if any(d.severity == "error" for d in diagnostics):
        assessment = "broken"

    score = sum(v.score for v in judged) / len(judged) if judged else 1.0
    if entity_result:
        score *= 1.0 - min(1.0, 0.05 * len(entity_result.issues))

    degraded = len(judged) < len(path_results) or bool(
        entity_result and entity_result.skipped_scene_ids
    )
    entity_missing = request.include_entity_analysis and entity_result is None
    error = None
    if graph.start_scene_id is None:
        error = "Scenario has no scenes to evaluate"

    return ScenarioConsistencyEvaluationResult(
        scenario_id=scenario_id,
        path_results=path_results,
        entity_introduction=entity_result,
        diagnostics=diagnostics,
        overall_assessment=assessment,
        continuity_score=round(max(0.0, score), 4),
        is_successful=not degraded and not entity_missing and error is None,
        is_degraded=degraded,
        paths_truncated=truncated,
        error=error,
    )


def flatten_issues(result: ScenarioConsistencyEvaluationResult) -> list[StoryContinuityIssue]:
    """One list of every issue in a result: structural, entity and per-path.

    The same judge issue reported on several paths is listed once, with the
    first path it was seen on.
    """
    issues: list[StoryContinuityIssue] = []

    for d in result.diagnostics:
        issues.append(StoryContinuityIssue(
            issue_type="structural",
            severity="high" if d.severity == "error" else "low",
            category="structural",
            scene_ids=list(d.scene_ids),
            summary=d.code,
            details=d.message,
            confidence="high",
        ))

    if result.entity_introduction:
        for e in result.entity_introduction.issues:
            scene_ids = [e.detected_in_scene_id]
            if e.introduced_in_scene_id and e.introduced_in_scene_id != e.detected_in_scene_id:
                scene_ids.append(e.introduced_in_scene_id)
            issues.append(StoryContinuityIssue(
                issue_type=f"entity_{e.issue_type}",
                severity=_ENTITY_SEVERITY[e.issue_type],
                category="entity",
                scene_ids=scene_ids,
                entity_name=e.entity.name,
                entity_type=e.entity.type,
                summary=f"{e.issue_type.replace('_', ' ')}: {e.entity.name}",
                details=e.description,
                confidence=e.confidence,
            ))

    seen: set[tuple[str, str, tuple[str, ...]]] = set()
    for pr in result.path_results:
        if pr.result is None:
            continue
        for i in pr.result.issues:
            marker = (i.category, i.summary.casefold().strip(), tuple(sorted(i.scene_ids)))
            if marker in seen:
                continue
            seen.add(marker)
            issues.append(StoryContinuityIssue(
                id=i.id,
                issue_type=_CATEGORY_ISSUE_TYPE[i.category],
                severity=i.severity,
                category=i.category,
                scene_ids=list(i.scene_ids),
                path=list(pr.scene_ids),
                summary=i.summary,
                details=i.details,
                suggested_fix=i.suggested_fix,
                confidence="medium",
            ))
    return issues


def filter_issues(
    issues: list[StoryContinuityIssue], issue_filter: StoryContinuityIssueFilter | None
) -> list[StoryContinuityIssue]:
    """Apply a filter, order by severity (worst first), then page."""
    f = issue_filter or StoryContinuityIssueFilter()
    wanted_scenes = set(f.scene_ids or ())
    wanted_name = normalize_entity_name(f.entity_name) if f.entity_name else None

    def _keep(issue: StoryContinuityIssue) -> bool:
        if f.issue_types and issue.issue_type not in f.issue_types:
            return False
        if f.min_severity and SEVERITY_ORDER[issue.severity] < SEVERITY_ORDER[f.min_severity]:
            return False
        if f.categories and issue.category not in f.categories:
            return False
        if wanted_scenes and not wanted_scenes.intersection(issue.scene_ids):
            return False
        if wanted_name is not None and (
            issue.entity_name is None or normalize_entity_name(issue.entity_name) != wanted_name
        ):
            return False
        if f.entity_type and issue.entity_type != f.entity_type:
            return False
        if f.min_confidence and CONFIDENCE_ORDER[issue.confidence] < CONFIDENCE_ORDER[f.min_confidence]:
            return False
        return True

    kept = sorted(
        (i for i in issues if _keep(i)), key=lambda i: -SEVERITY_ORDER[i.severity],
    )
    start = f.offset or 0
    end = start + f.limit if f.limit is not None else None
    return kept[start:end]
