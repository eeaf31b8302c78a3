"""Tests for scenario_continuity.models."""

import pytest
from pydantic import ValidationError

from scenario_continuity.models import (
    Branch,
    ConsistencyEvaluationResult,
    ConsistencyIssue,
    EchoLog,
    EchoReveal,
    EntityClassification,
    EvaluateStoryContinuityRequest,
    Scene,
    SceneEntityClassificationData,
)


class TestScene:
    def test_next_scene_aliases(self) -> None:
        for key in ("next_scene_id", "nextSceneId", "next_scene"):
            s = Scene.model_validate({"id": "a", key: "b"})
            assert s.next_scene_id == "b"

    def test_type_is_lowercased(self) -> None:
        assert Scene.model_validate({"id": "a", "type": "Choice"}).type == "choice"

    def test_unknown_type_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Scene.model_validate({"id": "a", "type": "cutscene"})

    def test_choices_alias_for_branches(self) -> None:
        s = Scene.model_validate({
            "id": "a", "choices": [{"text": "Go", "nextSceneId": "b"}],
        })
        assert s.branches[0].choice == "Go"
        assert s.branches[0].next_scene_id == "b"

    def test_echo_reveal_alias(self) -> None:
        s = Scene.model_validate({
            "id": "a",
            "echoRevealReferences": [{"echoType": "mercy", "triggerSceneId": "b"}],
        })
        assert s.echo_reveals[0].trigger_scene_id == "b"


class TestBranchMetadata:
    def test_echo_log_strength_clamped(self) -> None:
        assert EchoLog(echo_type="mercy", strength=3).strength == 1.0
        assert EchoLog(echo_type="mercy", strength=-7).strength == -1.0

    def test_echo_log_aliases(self) -> None:
        log = EchoLog.model_validate({"type": "cruelty", "message": "x", "power": 0.4})
        assert (log.echo_type, log.description, log.strength) == ("cruelty", "x", 0.4)

    def test_compass_impact_alias(self) -> None:
        b = Branch.model_validate({"choice": "x", "compass_impact": {"axis": "honor", "delta": 2}})
        assert b.compass_change is not None
        assert b.compass_change.axis == "honor"

    def test_echo_reveal_defaults_and_clamps(self) -> None:
        r = EchoReveal(echo_type="mercy", trigger_scene_id="s")
        assert r.min_strength == 0.5
        assert r.reveal_mechanic == "none"
        assert EchoReveal(echo_type="m", trigger_scene_id="s", min_strength=0).min_strength == 0.1
        assert EchoReveal(echo_type="m", trigger_scene_id="s", min_strength=9).min_strength == 1.0
        assert EchoReveal(echo_type="m", trigger_scene_id="s", max_age_scenes=0).max_age_scenes == 1


class TestEntityClassification:
    def test_new_entity_is_introduced_not_used(self) -> None:
        c = EntityClassification(name="x", type="item", introduction_status="new")
        assert c.is_introduced
        assert not c.is_used

    def test_known_entity_is_used(self) -> None:
        c = EntityClassification(name="x", type="item", introduction_status="already_known")
        assert c.is_used
        assert not c.is_introduced

    def test_absent_entity_neither_used_nor_introduced(self) -> None:
        c = EntityClassification(
            name="x", type="item", present_in_scene=False, introduction_status="new",
        )
        assert not c.is_used
        assert not c.is_introduced

    def test_scene_data_derived_lists(self) -> None:
        data = SceneEntityClassificationData(scene_id="s", entity_classifications=[
            EntityClassification(name="a", type="item", introduction_status="new"),
            EntityClassification(name="b", type="character", removal_status="removed"),
        ])
        assert [e.name for e in data.introduced_entities] == ["a"]
        assert [e.name for e in data.removed_entities] == ["b"]
        assert [e.name for e in data.used_entities] == ["b"]


class TestConsistencyResult:
    def test_score_without_issues(self) -> None:
        assert ConsistencyEvaluationResult().score == 1.0

    def test_score_penalises_by_severity(self) -> None:
        result = ConsistencyEvaluationResult(issues=[
            ConsistencyIssue(severity="high"), ConsistencyIssue(severity="low"),
        ])
        assert result.score == pytest.approx(0.7)

    def test_score_floor_is_zero(self) -> None:
        result = ConsistencyEvaluationResult(
            issues=[ConsistencyIssue(severity="critical") for _ in range(5)],
        )
        assert result.score == 0.0

    def test_issue_ids_unique(self) -> None:
        assert ConsistencyIssue().id != ConsistencyIssue().id


class TestRequest:
    def test_defaults(self) -> None:
        r = EvaluateStoryContinuityRequest()
        assert r.paths is None
        assert r.include_entity_analysis
        assert r.include_path_evaluation
        assert r.max_paths == 0
        assert not r.compress_paths

    def test_negative_max_paths_rejected(self) -> None:
        with pytest.raises(ValidationError):
            EvaluateStoryContinuityRequest(max_paths=-1)
