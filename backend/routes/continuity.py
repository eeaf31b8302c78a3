"""Continuity evaluation endpoints: synchronous, single path, issues, operations."""

from fastapi import APIRouter, Depends, HTTPException, Query

from scenario_continuity.models import (
    EvaluateStoryContinuityRequest,
    StoryContinuityIssueFilter,
    StoryContinuityIssueType,
)
from scenario_continuity.orchestrator import ScenarioConsistencyService
from scenario_continuity.storage import ScenarioStore

from .deps import get_service, get_store, load_scenario
from .models import PathBody

router = APIRouter()


@router.post("/scenarios/{scenario_id}/continuity")
async def evaluate_continuity(
    scenario_id: str,
    body: EvaluateStoryContinuityRequest | None = None,
    store: ScenarioStore = Depends(get_store),
    service: ScenarioConsistencyService = Depends(get_service),
):
    """Run a full evaluation and wait for the result."""
    scenario = load_scenario(store, scenario_id)
    try:
        return await service.evaluate_story_continuity(scenario, body)
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.post("/scenarios/{scenario_id}/continuity/path")
async def evaluate_path(
    scenario_id: str,
    body: PathBody,
    store: ScenarioStore = Depends(get_store),
    service: ScenarioConsistencyService = Depends(get_service),
):
    """Re-check one path through the scenario."""
    scenario = load_scenario(store, scenario_id)
    try:
        return await service.evaluate_path_consistency(scenario, body.scene_ids)
    except ValueError as e:
        raise HTTPException(400, str(e))


@router.get("/scenarios/{scenario_id}/continuity/issues")
async def list_issues(
    scenario_id: str,
    issue_type: list[StoryContinuityIssueType] | None = Query(default=None),
    min_severity: str | None = None,
    category: list[str] | None = Query(default=None),
    scene_id: list[str] | None = Query(default=None),
    entity_name: str | None = None,
    entity_type: str | None = None,
    min_confidence: str | None = None,
    limit: int | None = None,
    offset: int | None = None,
    store: ScenarioStore = Depends(get_store),
    service: ScenarioConsistencyService = Depends(get_service),
):
    """Evaluate and return every issue as one filtered, severity-ordered list."""
    scenario = load_scenario(store, scenario_id)
    try:
        issue_filter = StoryContinuityIssueFilter(
            issue_types=issue_type,
            min_severity=min_severity,
            categories=category,
            scene_ids=scene_id,
            entity_name=entity_name,
            entity_type=entity_type,
            min_confidence=min_confidence,
            limit=limit,
            offset=offset,
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    return await service.get_continuity_issues(scenario, issue_filter)


@router.post("/scenarios/{scenario_id}/continuity/operations", status_code=202)
async def submit_operation(
    scenario_id: str,
    body: EvaluateStoryContinuityRequest | None = None,
    store: ScenarioStore = Depends(get_store),
    service: ScenarioConsistencyService = Depends(get_service),
):
    """Queue an evaluation; poll the returned operation for progress."""
    load_scenario(store, scenario_id)
    return service.submit_evaluation(scenario_id, body)


@router.get("/continuity/operations")
async def list_operations(
    scenario_id: str | None = None,
    service: ScenarioConsistencyService = Depends(get_service),
):
    """Tracked operations, optionally for one scenario."""
    return service.list_operations(scenario_id)


@router.get("/continuity/operations/{operation_id}")
async def get_operation(
    operation_id: str, service: ScenarioConsistencyService = Depends(get_service)
):
    """Status, progress and (once succeeded) the result of an operation."""
    op = service.get_operation(operation_id)
    if op is None:
        raise HTTPException(404, "Operation not found")
    return op


@router.post("/continuity/operations/{operation_id}/cancel")
async def cancel_operation(
    operation_id: str, service: ScenarioConsistencyService = Depends(get_service)
):
    """Request cancellation. The operation fails once the job observes it."""
    op = service.cancel_operation(operation_id)
    if op is None:
        raise HTTPException(404, "Operation not found")
    return op
