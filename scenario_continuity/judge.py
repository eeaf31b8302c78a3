"""Semantic judge — the black box that classifies scenes and scores paths.

The engine consumes two operations:

    classify_scene(scene, prior_context) -> SceneEntityClassificationData
    evaluate_path_consistency(path_text) -> ConsistencyEvaluationResult

LLMJudge implements both on top of the LLM callable protocol. Models rarely
answer in exactly the requested shape, so output goes through a tolerant
parser: markdown fences are stripped, the first JSON object is extracted
from surrounding prose, and loose enum spellings ("has_minor_issues",
"entity_consistency", "warning", "npc") are mapped onto the canonical
values. Output that still cannot be understood raises JudgeError.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any, Protocol

from pydantic import ValidationError

from scenario_continuity.llm import LLM
from scenario_continuity.models import (
    SEVERITY_ORDER,
    ConsistencyEvaluationResult,
    ConsistencyIssue,
    EntityClassification,
    ScenarioCharacter,
    Scene,
    SceneEntityClassificationData,
)
from scenario_continuity.prompts import (
    DEFAULT_PATH_CONSISTENCY_PROMPT,
    DEFAULT_SCENE_CLASSIFIER_PROMPT,
    render_prompt,
)

logger = logging.getLogger(__name__)

STAGE_SCENE_CLASSIFIER = "scene_classifier"
STAGE_PATH_CONSISTENCY = "path_consistency"


class JudgeError(RuntimeError):
    """Raised when judge output cannot be parsed into the expected shape."""


class SemanticJudge(Protocol):
    async def classify_scene(
        self,
        scene: Scene,
        prior_context: str,
        characters: Sequence[ScenarioCharacter] = (),
    ) -> SceneEntityClassificationData: ...

    async def evaluate_path_consistency(self, path_text: str) -> ConsistencyEvaluationResult: ...


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

def _parse_json_output(text: str) -> dict:
    """Parse JSON from LLM output, stripping markdown fences."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        # prose around the object: take the outermost braces
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise JudgeError("Judge output contains no JSON object")
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise JudgeError(f"Judge output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise JudgeError(f"Judge output is a JSON {type(data).__name__}, expected an object")
    return data


def _key(value: Any) -> str:
    return str(value).strip().lower().replace("-", "_").replace(" ", "_")


_ASSESSMENTS = {
    "ok": "ok", "pass": "ok", "passed": "ok", "good": "ok", "none": "ok",
    "no_issues": "ok", "consistent": "ok",
    "minor": "minor_issues", "minor_issues": "minor_issues", "has_minor_issues": "minor_issues",
    "major": "major_issues", "major_issues": "major_issues", "has_major_issues": "major_issues",
    "broken": "broken", "fail": "broken", "failed": "broken", "critical": "broken",
    "inconsistent": "broken",
}

_SEVERITIES = {
    "low": "low", "minor": "low", "info": "low", "trivial": "low",
    "medium": "medium", "moderate": "medium", "warning": "medium",
    "high": "high", "major": "high", "error": "high", "serious": "high",
    "critical": "critical", "severe": "critical", "fatal": "critical", "blocker": "critical",
}

_CATEGORIES = {
    "entity": "entity", "entity_consistency": "entity", "character": "entity",
    "character_consistency": "entity", "item": "entity", "location": "entity",
    "time": "time", "timeline": "time", "temporal": "time", "time_consistency": "time",
    "emotional": "emotional", "emotion": "emotional", "emotional_consistency": "emotional",
    "tone": "emotional",
    "causal": "causal", "causality": "causal", "logic": "causal", "plot": "causal",
    "causal_consistency": "causal",
}

_ENTITY_TYPES = {
    "character": "character", "person": "character", "npc": "character", "creature": "character",
    "location": "location", "place": "location", "setting": "location",
    "item": "item", "object": "item", "thing": "item", "artifact": "item",
    "concept": "concept", "idea": "concept", "event": "concept", "organization": "concept",
}

_INTRODUCTIONS = {
    "new": "new", "introduced": "new", "first_mention": "new", "first_appearance": "new",
    "reintroduced": "reintroduced", "returning": "reintroduced", "returned": "reintroduced",
    "already_known": "already_known", "known": "already_known", "existing": "already_known",
    "used": "already_known", "referenced": "already_known",
    "not_present": "not_present", "absent": "not_present", "mentioned": "not_present",
}

_ASSESSMENT_FOR_SEVERITY = {
    "low": "minor_issues", "medium": "minor_issues", "high": "major_issues", "critical": "broken",
}


def _confidence(value: Any) -> str:
    if isinstance(value, bool):
        return "high" if value else "low"
    if isinstance(value, (int, float)):
        if value >= 0.75:
            return "high"
        return "medium" if value >= 0.4 else "low"
    key = _key(value) if value is not None else "unknown"
    return key if key in ("unknown", "low", "medium", "high") else "unknown"


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def parse_consistency_result(text: str) -> ConsistencyEvaluationResult:
    """Map judge output onto ConsistencyEvaluationResult."""
    data = _parse_json_output(text)
    raw_issues = data.get("issues", [])
    if not isinstance(raw_issues, list):
        raise JudgeError("'issues' must be a list")

    issues: list[ConsistencyIssue] = []
    for raw in raw_issues:
        if not isinstance(raw, dict):
            continue
        severity = _SEVERITIES.get(_key(raw.get("severity", "medium")), "medium")
        category = _CATEGORIES.get(_key(raw.get("category", "other")), "other")
        try:
            issues.append(ConsistencyIssue(
                severity=severity,
                category=category,
                scene_ids=_as_str_list(raw.get("scene_ids") or raw.get("scenes")),
                summary=str(raw.get("summary") or raw.get("title") or ""),
                details=str(raw.get("details") or raw.get("description") or ""),
                suggested_fix=raw.get("suggested_fix") or raw.get("fix"),
            ))
        except ValidationError as e:
            raise JudgeError(f"Malformed issue in judge output: {e}") from e

    raw_assessment = data.get("overall_assessment", data.get("assessment"))
    assessment = _ASSESSMENTS.get(_key(raw_assessment)) if raw_assessment is not None else None
    if assessment is None:
        # missing or unrecognised: derive from the worst issue
        if issues:
            worst = max(issues, key=lambda i: SEVERITY_ORDER[i.severity])
            assessment = _ASSESSMENT_FOR_SEVERITY[worst.severity]
        else:
            assessment = "ok"
    return ConsistencyEvaluationResult(overall_assessment=assessment, issues=issues)


def parse_scene_classification(scene_id: str, text: str) -> SceneEntityClassificationData:
    """Map judge output onto SceneEntityClassificationData for one scene."""
    data = _parse_json_output(text)
    raw_entities = data.get("entities", data.get("entity_classifications", []))
    if not isinstance(raw_entities, list):
        raise JudgeError("'entities' must be a list")

    entries: list[EntityClassification] = []
    for raw in raw_entities:
        if not isinstance(raw, dict):
            continue
        name = str(raw.get("name") or "").strip()
        if not name:
            continue
        removal = raw.get("removal_status", "not_removed")
        if isinstance(removal, bool):
            removed = removal
        else:
            removed = _key(removal) in ("removed", "destroyed", "killed", "lost", "gone", "left")
        attributes = raw.get("attributes") or {}
        if not isinstance(attributes, dict):
            attributes = {}
        entries.append(EntityClassification(
            name=name,
            type=_ENTITY_TYPES.get(_key(raw.get("type", "concept")), "concept"),
            present_in_scene=bool(raw.get("present_in_scene", True)),
            introduction_status=_INTRODUCTIONS.get(
                _key(raw.get("introduction_status", "already_known")), "already_known"
            ),
            removal_status="removed" if removed else "not_removed",
            is_proper_noun=bool(raw.get("is_proper_noun", False)),
            confidence=_confidence(raw.get("confidence")),
            attributes={str(k): str(v) for k, v in attributes.items() if v is not None},
            evidence_span=str(raw.get("evidence_span") or ""),
        ))

    return SceneEntityClassificationData(
        scene_id=scene_id,
        time_delta=str(data.get("time_delta") or "none"),
        entity_classifications=entries,
    )


# ---------------------------------------------------------------------------
# LLMJudge
# ---------------------------------------------------------------------------

class LLMJudge:
    """SemanticJudge backed by an LLM callable and Handlebars prompts."""

    def __init__(
        self,
        llm: LLM,
        classifier_prompt: str = DEFAULT_SCENE_CLASSIFIER_PROMPT,
        consistency_prompt: str = DEFAULT_PATH_CONSISTENCY_PROMPT,
    ) -> None:
        self._llm = llm
        self._classifier_prompt = classifier_prompt
        self._consistency_prompt = consistency_prompt

    async def classify_scene(
        self,
        scene: Scene,
        prior_context: str,
        characters: Sequence[ScenarioCharacter] = (),
    ) -> SceneEntityClassificationData:
        prompt = render_prompt(self._classifier_prompt, {
            "scene_id": scene.id,
            "scene_title": scene.title,
            "scene_text": scene.description,
            "prior_context": prior_context,
            "characters": [
                {"name": c.name, "aliases": ", ".join(c.aliases)} for c in characters
            ],
        })
        raw = await self._llm(STAGE_SCENE_CLASSIFIER, prompt)
        result = parse_scene_classification(scene.id, raw)
        logger.debug(
            "classified scene=%s entities=%d", scene.id, len(result.entity_classifications),
        )
        return result

    async def evaluate_path_consistency(self, path_text: str) -> ConsistencyEvaluationResult:
        prompt = render_prompt(self._consistency_prompt, {"path_text": path_text})
        raw = await self._llm(STAGE_PATH_CONSISTENCY, prompt)
        return parse_consistency_result(raw)
