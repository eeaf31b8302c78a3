"""Scenario CRUD, graph view and quick structural validation endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from scenario_continuity.graph import build_graph
from scenario_continuity.models import Scenario
from scenario_continuity.orchestrator import ScenarioConsistencyService
from scenario_continuity.storage import ScenarioStore

from .deps import get_service, get_store, load_scenario
from .models import GraphEdge, GraphView, QuickValidation

router = APIRouter()


@router.get("/scenarios")
async def list_scenarios(store: ScenarioStore = Depends(get_store)):
    """List stored scenario ids."""
    return store.list_scenario_ids()


@router.get("/scenarios/{scenario_id}")
async def get_scenario(scenario_id: str, store: ScenarioStore = Depends(get_store)):
    """Get a stored scenario document."""
    return load_scenario(store, scenario_id)


@router.put("/scenarios/{scenario_id}")
async def put_scenario(
    scenario_id: str, scenario: Scenario, store: ScenarioStore = Depends(get_store)
):
    """Create or replace a scenario document."""
    if scenario.id != scenario_id:
        raise HTTPException(400, "Scenario id does not match URL")
    try:
        store.save_scenario(scenario)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return scenario


@router.delete("/scenarios/{scenario_id}")
async def delete_scenario(scenario_id: str, store: ScenarioStore = Depends(get_store)):
    """Delete a stored scenario."""
    try:
        deleted = store.delete_scenario(scenario_id)
    except ValueError:
        deleted = False
    if not deleted:
        raise HTTPException(404, "Scenario not found")
    return {"ok": True}


@router.get("/scenarios/{scenario_id}/graph", response_model=GraphView)
async def get_graph(scenario_id: str, store: ScenarioStore = Depends(get_store)):
    """Nodes, edges, start and ending scenes, and structural diagnostics."""
    graph = build_graph(load_scenario(store, scenario_id))
    return GraphView(
        scenario_id=scenario_id,
        nodes=list(graph.nodes),
        edges=[
            GraphEdge(
                from_scene_id=t.from_scene_id, to_scene_id=t.to_scene_id,
                kind=t.kind, choice=t.choice,
            )
            for t in graph.transitions()
        ],
        start_scene_id=graph.start_scene_id,
        ending_scene_ids=graph.ending_scene_ids,
        diagnostics=list(graph.diagnostics),
    )


@router.post("/scenarios/{scenario_id}/validate-quick", response_model=QuickValidation)
async def validate_quick(
    scenario_id: str,
    store: ScenarioStore = Depends(get_store),
    service: ScenarioConsistencyService = Depends(get_service),
):
    """Structural checks only; no judge calls."""
    scenario = load_scenario(store, scenario_id)
    return QuickValidation(
        valid=await service.validate_quick(scenario),
        diagnostics=service.structural_diagnostics(scenario),
    )
