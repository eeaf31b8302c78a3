"""Request-scoped accessors for the objects create_app() puts on app.state."""

from fastapi import HTTPException, Request

from scenario_continuity.models import Scenario
from scenario_continuity.orchestrator import ScenarioConsistencyService
from scenario_continuity.storage import ScenarioNotFoundError, ScenarioStore


def get_service(request: Request) -> ScenarioConsistencyService:
    return request.app.state.service


def get_store(request: Request) -> ScenarioStore:
    return request.app.state.scenarios


def load_scenario(store: ScenarioStore, scenario_id: str) -> Scenario:
    """Fetch a stored scenario or raise 404."""
    try:
        return store.get_scenario(scenario_id)
    except ScenarioNotFoundError:
        raise HTTPException(404, "Scenario not found")
