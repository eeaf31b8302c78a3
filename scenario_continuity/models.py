"""Core domain models.

Every stage of the evaluation engine (graph builder, path enumerator,
continuity analyzer, path evaluator, orchestrator) operates on these types.
Pydantic is used for validation and serialisation at every data boundary:
authored scenario documents, judge responses, and evaluation results.

Authored documents come from several generations of tooling, so scene and
branch fields accept the historical spellings (``next_scene``,
``nextSceneId``, ``choices`` ...) alongside the canonical snake_case names.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

SceneType = Literal["narrative", "choice", "roll", "special"]
EntityType = Literal["character", "location", "item", "concept"]
Confidence = Literal["unknown", "low", "medium", "high"]
IntroductionStatus = Literal["new", "reintroduced", "already_known", "not_present"]
RemovalStatus = Literal["removed", "not_removed"]
EntityIssueType = Literal[
    "not_introduced",
    "inconsistent_attribute",
    "unexpected_absence",
    "unexpected_presence",
    "name_variation",
]
OverallAssessment = Literal["ok", "minor_issues", "major_issues", "broken"]
Severity = Literal["low", "medium", "high", "critical"]
IssueCategory = Literal["entity", "time", "emotional", "causal", "other"]
DiagnosticCode = Literal[
    "empty_scenario",
    "duplicate_scene_id",
    "missing_reference",
    "no_start_scene",
    "multiple_start_scenes",
    "no_ending_scene",
    "unreachable_scene",
    "cycle_detected",
    "path_limit_reached",
    "roll_without_difficulty",
    "unknown_path_scene",
]
OperationStatus = Literal["queued", "running", "succeeded", "failed"]

SEVERITY_ORDER: dict[str, int] = {"low": 0, "medium": 1, "high": 2, "critical": 3}
CONFIDENCE_ORDER: dict[str, int] = {"unknown": 0, "low": 1, "medium": 2, "high": 3}
ASSESSMENT_ORDER: dict[str, int] = {"ok": 0, "minor_issues": 1, "major_issues": 2, "broken": 3}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Authored scenario document
# ---------------------------------------------------------------------------

class EchoLog(BaseModel):
    """Moral echo recorded when the player takes a branch."""

    echo_type: str = Field(validation_alias=AliasChoices("echo_type", "echoType", "type"))
    description: str = Field(
        default="", validation_alias=AliasChoices("description", "message", "text")
    )
    strength: float = Field(
        default=0.0, validation_alias=AliasChoices("strength", "power", "intensity")
    )

    @field_validator("strength")
    @classmethod
    def _clamp_strength(cls, v: float) -> float:
        return max(-1.0, min(1.0, v))


class CompassChange(BaseModel):
    axis: str
    delta: float


class Branch(BaseModel):
    """A player choice: a directed edge owned by a scene."""

    model_config = ConfigDict(populate_by_name=True)

    choice: str = Field(default="", validation_alias=AliasChoices("choice", "text", "option"))
    next_scene_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("next_scene_id", "nextSceneId", "next_scene"),
    )
    echo_log: EchoLog | None = Field(
        default=None, validation_alias=AliasChoices("echo_log", "echoLog")
    )
    compass_change: CompassChange | None = Field(
        default=None,
        validation_alias=AliasChoices("compass_change", "compassChange", "compass_impact"),
    )


class EchoReveal(BaseModel):
    """Reveals an earlier echo when the trigger scene is reached."""

    echo_type: str = Field(validation_alias=AliasChoices("echo_type", "echoType", "type"))
    min_strength: float = Field(
        default=0.5,
        validation_alias=AliasChoices("min_strength", "minStrength", "threshold"),
    )
    trigger_scene_id: str = Field(
        validation_alias=AliasChoices("trigger_scene_id", "triggerSceneId", "scene_id")
    )
    reveal_mechanic: Literal["mirror", "dream", "spirit", "none"] = Field(
        default="none",
        validation_alias=AliasChoices("reveal_mechanic", "revealMechanic", "mechanic"),
    )
    max_age_scenes: int | None = Field(
        default=None,
        validation_alias=AliasChoices("max_age_scenes", "maxAgeScenes", "max_age"),
    )
    required: bool = Field(
        default=False, validation_alias=AliasChoices("required", "is_required", "mandatory")
    )

    @field_validator("min_strength")
    @classmethod
    def _clamp_min_strength(cls, v: float) -> float:
        return max(0.1, min(1.0, v))

    @field_validator("max_age_scenes")
    @classmethod
    def _floor_max_age(cls, v: int | None) -> int | None:
        return None if v is None else max(1, v)


class Scene(BaseModel):
    """A node in the narrative graph."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    description: str = ""
    type: SceneType = "narrative"
    next_scene_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("next_scene_id", "nextSceneId", "next_scene"),
    )
    branches: list[Branch] = Field(
        default_factory=list, validation_alias=AliasChoices("branches", "choices")
    )
    echo_reveals: list[EchoReveal] = Field(
        default_factory=list,
        validation_alias=AliasChoices("echo_reveals", "echoRevealReferences"),
    )
    difficulty: float | None = None  # roll scenes only

    @field_validator("type", mode="before")
    @classmethod
    def _lowercase_type(cls, v: object) -> object:
        return v.lower() if isinstance(v, str) else v


class ScenarioCharacter(BaseModel):
    """A character registered with the scenario (has media, a bio, etc.)."""

    id: str
    name: str
    aliases: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)


class Scenario(BaseModel):
    """A complete authored branching story."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    description: str = ""
    first_scene_id: str | None = Field(
        default=None, validation_alias=AliasChoices("first_scene_id", "firstSceneId")
    )
    characters: list[ScenarioCharacter] = Field(default_factory=list)
    scenes: list[Scene] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Structural diagnostics
# ---------------------------------------------------------------------------

class StructuralDiagnostic(BaseModel):
    """A defect in the shape of the scenario graph. Data, never an exception."""

    code: DiagnosticCode
    severity: Literal["warning", "error"]
    message: str
    scene_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Entity classification (produced by the external judge, never persisted)
# ---------------------------------------------------------------------------

class SceneEntity(BaseModel):
    """A character, location, item or concept referenced in scene content."""

    model_config = ConfigDict(frozen=True)

    type: EntityType
    name: str
    is_proper_noun: bool = False
    confidence: Confidence = "unknown"


class EntityClassification(BaseModel):
    """The judge's verdict about one entity in one scene."""

    name: str
    type: EntityType
    present_in_scene: bool = True
    introduction_status: IntroductionStatus = "already_known"
    removal_status: RemovalStatus = "not_removed"
    is_proper_noun: bool = False
    confidence: Confidence = "unknown"
    attributes: dict[str, str] = Field(default_factory=dict)
    evidence_span: str = ""

    @property
    def is_introduced(self) -> bool:
        return self.present_in_scene and self.introduction_status in ("new", "reintroduced")

    @property
    def is_removed(self) -> bool:
        return self.removal_status == "removed"

    @property
    def is_used(self) -> bool:
        """Present in the scene and relied upon as already known."""
        return self.present_in_scene and not self.is_introduced

    def to_entity(self) -> SceneEntity:
        return SceneEntity(
            type=self.type,
            name=self.name,
            is_proper_noun=self.is_proper_noun,
            confidence=self.confidence,
        )


class SceneEntityClassificationData(BaseModel):
    """All entity verdicts for one scene, plus the coarse time delta."""

    scene_id: str
    time_delta: str = "none"
    entity_classifications: list[EntityClassification] = Field(default_factory=list)

    @property
    def introduced_entities(self) -> list[SceneEntity]:
        return [c.to_entity() for c in self.entity_classifications if c.is_introduced]

    @property
    def removed_entities(self) -> list[SceneEntity]:
        return [c.to_entity() for c in self.entity_classifications if c.is_removed]

    @property
    def used_entities(self) -> list[SceneEntity]:
        return [c.to_entity() for c in self.entity_classifications if c.is_used]


class EntityContinuityIssue(BaseModel):
    """An "introduced before used" or attribute consistency violation."""

    model_config = ConfigDict(frozen=True)

    entity: SceneEntity
    introduced_in_scene_id: str | None = None
    detected_in_scene_id: str
    issue_type: EntityIssueType
    description: str
    expected_value: str | None = None
    actual_value: str | None = None
    confidence: Literal["low", "high"] = "high"


class EntityIntroductionResult(BaseModel):
    """Graph-wide output of the entity continuity analyzer."""

    issues: list[EntityContinuityIssue] = Field(default_factory=list)
    scene_classifications: dict[str, SceneEntityClassificationData] = Field(default_factory=dict)
    skipped_scene_ids: list[str] = Field(default_factory=list)
    guaranteed_known: dict[str, list[str]] = Field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return not self.skipped_scene_ids


# ---------------------------------------------------------------------------
# Paths and per-path consistency
# ---------------------------------------------------------------------------

class ScenarioPath(BaseModel):
    """One traversal: ordered scene ids plus the rendered narrative."""

    scene_ids: list[str]
    content: str = ""
    ends_at_cycle: bool = False


class ConsistencyIssue(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    severity: Severity = "medium"
    category: IssueCategory = "other"
    scene_ids: list[str] = Field(default_factory=list)
    summary: str = ""
    details: str = ""
    suggested_fix: str | None = None


class ConsistencyEvaluationResult(BaseModel):
    """The judge's verdict for one path."""

    overall_assessment: OverallAssessment = "ok"
    issues: list[ConsistencyIssue] = Field(default_factory=list)

    @property
    def score(self) -> float:
        penalty = {"low": 0.05, "medium": 0.1, "high": 0.25, "critical": 0.5}
        return max(0.0, 1.0 - sum(penalty[i.severity] for i in self.issues))


class PathConsistencyResult(BaseModel):
    """Per-path outcome. ``result`` is None when the judge gave no answer."""

    scene_ids: list[str]
    result: ConsistencyEvaluationResult | None = None
    path_content: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Evaluation request / aggregate result
# ---------------------------------------------------------------------------

class EvaluateStoryContinuityRequest(BaseModel):
    paths: list[list[str]] | None = None
    include_entity_analysis: bool = True
    include_path_evaluation: bool = True
    max_paths: int = Field(default=0, ge=0)  # 0 = configured default
    compress_paths: bool = False


class ScenarioConsistencyEvaluationResult(BaseModel):
    """Terminal artifact of one evaluation run."""

    scenario_id: str
    path_results: list[PathConsistencyResult] = Field(default_factory=list)
    entity_introduction: EntityIntroductionResult | None = None
    diagnostics: list[StructuralDiagnostic] = Field(default_factory=list)
    overall_assessment: OverallAssessment = "ok"
    continuity_score: float = 1.0
    is_successful: bool = False
    is_degraded: bool = False
    paths_truncated: bool = False
    evaluated_at: datetime = Field(default_factory=_utcnow)
    error: str | None = None


# ---------------------------------------------------------------------------
# Flat issue view
# ---------------------------------------------------------------------------

StoryContinuityIssueType = Literal[
    "entity_not_introduced",
    "entity_inconsistent_attribute",
    "entity_unexpected_absence",
    "entity_unexpected_presence",
    "entity_name_variation",
    "time_inconsistency",
    "causal_inconsistency",
    "emotional_inconsistency",
    "narrative_inconsistency",
    "structural",
    "other",
]


class StoryContinuityIssue(BaseModel):
    """Unified view of every kind of continuity problem in one list."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    issue_type: StoryContinuityIssueType
    severity: Severity = "medium"
    category: str = ""
    scene_ids: list[str] = Field(default_factory=list)
    path: list[str] | None = None
    entity_name: str | None = None
    entity_type: EntityType | None = None
    summary: str = ""
    details: str = ""
    suggested_fix: str | None = None
    confidence: Literal["low", "medium", "high"] = "medium"


class StoryContinuityIssueFilter(BaseModel):
    issue_types: list[StoryContinuityIssueType] | None = None
    min_severity: Severity | None = None
    categories: list[str] | None = None
    scene_ids: list[str] | None = None
    entity_name: str | None = None
    entity_type: EntityType | None = None
    min_confidence: Literal["low", "medium", "high"] | None = None
    limit: int | None = Field(default=None, ge=0)
    offset: int | None = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Asynchronous operations
# ---------------------------------------------------------------------------

class ContinuityOperationInfo(BaseModel):
    """Lifecycle and progress of one submitted evaluation job."""

    operation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    scenario_id: str
    status: OperationStatus = "queued"
    progress_percent: int = 0
    current_step: str | None = None
    total_paths: int = 0
    paths_evaluated: int = 0
    issues_found: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    result: ScenarioConsistencyEvaluationResult | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("succeeded", "failed")
