"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel, Field

from scenario_continuity.models import StructuralDiagnostic


class CheckConnectionBody(BaseModel):
    provider_url: str
    api_key: str = ""


class PathBody(BaseModel):
    scene_ids: list[str] = Field(min_length=1)


class QuickValidation(BaseModel):
    valid: bool
    diagnostics: list[StructuralDiagnostic]


class GraphEdge(BaseModel):
    from_scene_id: str
    to_scene_id: str
    kind: str
    choice: str | None = None


class GraphView(BaseModel):
    scenario_id: str
    nodes: list[str]
    edges: list[GraphEdge]
    start_scene_id: str | None
    ending_scene_ids: list[str]
    diagnostics: list[StructuralDiagnostic]
