"""Tests for scenario_continuity.graph — builder, start/ending discovery, diagnostics."""

from scenario_continuity.graph import build_graph, find_ending_scenes, find_start_scene
from scenario_continuity.models import Scenario


def _scenario(*scenes, **kw) -> Scenario:
    return Scenario.model_validate({"id": "t", "scenes": list(scenes), **kw})


def _codes(graph) -> list[str]:
    return [d.code for d in graph.diagnostics]


class TestBuild:
    def test_linear_edges(self, linear_scenario) -> None:
        graph = build_graph(linear_scenario)
        assert [(t.from_scene_id, t.to_scene_id, t.kind) for t in graph.transitions()] == [
            ("start", "mid", "linear"), ("mid", "end", "linear"),
        ]
        assert graph.diagnostics == ()

    def test_branch_edges_carry_choice(self, branching_scenario) -> None:
        graph = build_graph(branching_scenario)
        out = graph.outgoing("start")
        assert [(t.to_scene_id, t.choice) for t in out] == [("good_end", "Left"), ("bad_end", "Right")]
        assert all(t.kind == "branch" for t in out)

    def test_roll_scene_with_next_and_branches(self) -> None:
        graph = build_graph(_scenario(
            {"id": "r", "type": "roll", "difficulty": 12, "next_scene_id": "a",
             "branches": [{"choice": "crit", "next_scene_id": "b"}]},
            {"id": "a"}, {"id": "b"},
        ))
        assert graph.successors("r") == ["a", "b"]

    def test_predecessors_and_degrees(self, lantern_scenario) -> None:
        graph = build_graph(lantern_scenario)
        assert graph.predecessors("mid") == ["start"]
        assert graph.out_degree("start") == 2
        assert graph.in_degree("start") == 0


class TestStartAndEndings:
    def test_single_entry_scene(self, linear_scenario) -> None:
        assert find_start_scene(linear_scenario) == "start"

    def test_endings_of_fork(self, branching_scenario) -> None:
        assert set(find_ending_scenes(branching_scenario)) == {"good_end", "bad_end"}

    def test_explicit_first_scene_wins(self) -> None:
        scenario = _scenario(
            {"id": "a", "next_scene_id": "c"}, {"id": "b", "next_scene_id": "c"}, {"id": "c"},
            first_scene_id="b",
        )
        graph = build_graph(scenario)
        assert graph.start_scene_id == "b"
        assert "multiple_start_scenes" not in _codes(graph)

    def test_multiple_start_candidates_warn(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a", "next_scene_id": "c"}, {"id": "b", "next_scene_id": "c"}, {"id": "c"},
        ))
        assert graph.start_scene_id == "a"
        diag = next(d for d in graph.diagnostics if d.code == "multiple_start_scenes")
        assert diag.severity == "warning"
        assert diag.scene_ids == ["a", "b"]

    def test_full_loop_has_no_start_or_ending(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a", "next_scene_id": "b"}, {"id": "b", "next_scene_id": "a"},
        ))
        assert graph.start_scene_id == "a"
        assert "no_start_scene" in _codes(graph)
        assert "no_ending_scene" in _codes(graph)

    def test_special_scene_with_edges_is_not_an_ending(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a", "type": "special", "next_scene_id": "b"}, {"id": "b"},
        ))
        assert graph.ending_scene_ids == ["b"]


class TestDefects:
    def test_empty_scenario(self) -> None:
        graph = build_graph(_scenario())
        assert len(graph) == 0
        assert graph.start_scene_id is None
        assert _codes(graph) == ["empty_scenario"]

    def test_dangling_reference_is_diagnostic_not_edge(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a", "branches": [
                {"choice": "ok", "next_scene_id": "b"},
                {"choice": "broken", "next_scene_id": "nowhere"},
            ]},
            {"id": "b"},
        ))
        assert graph.successors("a") == ["b"]
        diag = next(d for d in graph.diagnostics if d.code == "missing_reference")
        assert diag.severity == "error"
        assert "nowhere" in diag.message

    def test_duplicate_scene_id_keeps_first(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a", "title": "first", "next_scene_id": "b"},
            {"id": "a", "title": "second"},
            {"id": "b"},
        ))
        assert graph.scene("a").title == "first"
        assert "duplicate_scene_id" in _codes(graph)

    def test_unreachable_scene_reported(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a", "next_scene_id": "b"}, {"id": "b"},
            {"id": "island", "next_scene_id": "island2"}, {"id": "island2", "next_scene_id": "island"},
        ))
        diag = next(d for d in graph.diagnostics if d.code == "unreachable_scene")
        assert diag.scene_ids == ["island", "island2"]

    def test_missing_echo_reveal_trigger(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a", "echo_reveals": [{"echo_type": "mercy", "trigger_scene_id": "ghost"}]},
        ))
        assert "missing_reference" in _codes(graph)

    def test_roll_without_difficulty_warns(self) -> None:
        graph = build_graph(_scenario({"id": "a", "type": "roll"}))
        assert "roll_without_difficulty" in _codes(graph)


class TestTraversals:
    def test_walk_is_topological_and_reports_back_edges(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a", "next_scene_id": "b"},
            {"id": "b", "branches": [
                {"choice": "again", "next_scene_id": "a"},
                {"choice": "on", "next_scene_id": "c"},
            ]},
            {"id": "c"},
            first_scene_id="a",
        ))
        order, back = graph.walk()
        assert order == ["a", "b", "c"]
        assert back == frozenset({("b", "a")})

    def test_shortest_path(self, lantern_scenario) -> None:
        graph = build_graph(lantern_scenario)
        assert graph.shortest_path("cave") == ["start", "shortcut", "cave"]
        assert graph.shortest_path("start") == ["start"]

    def test_downstream_ignores_back_edges(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a", "next_scene_id": "b"},
            {"id": "b", "branches": [
                {"choice": "again", "next_scene_id": "a"},
                {"choice": "on", "next_scene_id": "c"},
            ]},
            {"id": "c"},
            first_scene_id="a",
        ))
        assert graph.downstream({"b"}) == {"c"}
        assert graph.downstream({"a"}) == {"b", "c"}
        assert ("b", "a") not in graph.forward_graph().edges

    def test_self_loop_is_a_back_edge(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a", "branches": [
                {"choice": "wait", "next_scene_id": "a"},
                {"choice": "go", "next_scene_id": "b"},
            ]},
            {"id": "b"},
            first_scene_id="a",
        ))
        order, back = graph.walk()
        assert order == ["a", "b"]
        assert back == frozenset({("a", "a")})

    def test_unreachable_target_has_no_shortest_path(self) -> None:
        graph = build_graph(_scenario(
            {"id": "a"}, {"id": "island"}, first_scene_id="a",
        ))
        assert graph.shortest_path("island") is None
        assert graph.shortest_path("ghost") is None
        assert graph.reachable() == {"a"}
