"""Scenario graph — immutable directed view of scenes and transitions.

Built once per evaluation from the authored scene list:

    narrative / roll   → one "linear" edge to next_scene_id, if set
    choice / roll      → one "branch" edge per branch target

Malformed content is the common case this engine exists to catch, so the
builder never raises on a bad scenario. Every defect (dangling reference,
duplicate id, zero or several start scenes, no endings, unreachable scenes)
is recorded as a StructuralDiagnostic on the graph and the well-formed
remainder is still usable.

Start scene: the explicit ``first_scene_id`` if it resolves, otherwise the
first scene in declaration order with no incoming edges. If every scene has
an incoming edge (the whole story is a loop) the first declared scene is used
and a ``no_start_scene`` error is recorded.

Ending scenes: every scene with no outgoing edge.
"""

from __future__ import annotations

import logging
from typing import Literal

import networkx as nx
from pydantic import BaseModel, ConfigDict

from scenario_continuity.models import Branch, Scenario, Scene, StructuralDiagnostic

logger = logging.getLogger(__name__)

TransitionKind = Literal["linear", "branch"]


class SceneTransition(BaseModel):
    """One directed edge, carrying the branch metadata when it came from a choice."""

    model_config = ConfigDict(frozen=True)

    from_scene_id: str
    to_scene_id: str
    kind: TransitionKind
    choice: str | None = None
    branch: Branch | None = None


class ScenarioGraph:
    """Read-only view over one scenario, backed by a networkx DiGraph.

    Parallel transitions between the same two scenes collapse into one
    DiGraph edge; the transitions themselves (with branch metadata) are kept
    per scene in declaration order. Safe to share across concurrent workers:
    nothing is mutated after construction apart from lazily cached traversals.
    """

    def __init__(
        self,
        scenes: list[Scene],
        transitions: list[SceneTransition],
        start_scene_id: str | None,
        diagnostics: list[StructuralDiagnostic],
    ) -> None:
        self._scenes: dict[str, Scene] = {s.id: s for s in scenes}
        self._order: tuple[str, ...] = tuple(self._scenes)
        self._outgoing: dict[str, list[SceneTransition]] = {n: [] for n in self._order}
        self._graph = nx.DiGraph()
        self._graph.add_nodes_from(self._order)
        for t in transitions:
            self._outgoing[t.from_scene_id].append(t)
            self._graph.add_edge(t.from_scene_id, t.to_scene_id)
        self._start = start_scene_id
        self._diagnostics = tuple(diagnostics)
        self._walk: tuple[list[str], frozenset[tuple[str, str]]] | None = None
        self._forward: nx.DiGraph | None = None

    # ------------------------------------------------------------------
    # Nodes and edges
    # ------------------------------------------------------------------

    @property
    def nodes(self) -> tuple[str, ...]:
        """Scene ids in declaration order."""
        return self._order

    @property
    def start_scene_id(self) -> str | None:
        return self._start

    @property
    def ending_scene_ids(self) -> list[str]:
        return [n for n in self._order if self._graph.out_degree(n) == 0]

    @property
    def diagnostics(self) -> tuple[StructuralDiagnostic, ...]:
        return self._diagnostics

    def __contains__(self, scene_id: object) -> bool:
        return scene_id in self._scenes

    def __len__(self) -> int:
        return len(self._order)

    def scene(self, scene_id: str) -> Scene:
        return self._scenes[scene_id]

    def outgoing(self, scene_id: str) -> list[SceneTransition]:
        return list(self._outgoing[scene_id])

    def transitions(self) -> list[SceneTransition]:
        return [t for n in self._order for t in self._outgoing[n]]

    def successors(self, scene_id: str) -> list[str]:
        """Distinct successor ids, in edge order."""
        return list(self._graph.successors(scene_id))

    def predecessors(self, scene_id: str) -> list[str]:
        return list(self._graph.predecessors(scene_id))

    def out_degree(self, scene_id: str) -> int:
        return self._graph.out_degree(scene_id)

    def in_degree(self, scene_id: str) -> int:
        return self._graph.in_degree(scene_id)

    # ------------------------------------------------------------------
    # Traversals
    # ------------------------------------------------------------------

    def walk(self) -> tuple[list[str], frozenset[tuple[str, str]]]:
        """Depth-first walk from the start scene.

        Returns (reverse postorder of reachable scenes, back edges). Removing
        the back edges leaves a DAG whose topological order is the returned
        list.
        """
        if self._walk is not None:
            return self._walk
        if self._start is None:
            self._walk = ([], frozenset())
            return self._walk

        postorder: list[str] = []
        back_edges: set[tuple[str, str]] = set()
        on_stack: set[str] = set()
        for u, v, kind in nx.dfs_labeled_edges(self._graph, source=self._start):
            if kind == "forward":
                on_stack.add(v)
            elif kind == "reverse":
                on_stack.discard(v)
                postorder.append(v)
            elif kind == "nontree" and v in on_stack:
                # an edge to a scene still being explored closes a cycle
                back_edges.add((u, v))

        postorder.reverse()
        self._walk = (postorder, frozenset(back_edges))
        return self._walk

    def forward_graph(self) -> nx.DiGraph:
        """Reachable part of the graph with back edges removed (a DAG)."""
        if self._forward is None:
            order, back_edges = self.walk()
            dag = self._graph.subgraph(order).copy()
            dag.remove_edges_from(back_edges)
            self._forward = dag
        return self._forward

    def reachable(self) -> set[str]:
        if self._start is None:
            return set()
        return {self._start} | nx.descendants(self._graph, self._start)

    def downstream(self, scene_ids: set[str]) -> set[str]:
        """Scenes that some reachable source scene leads into without a back edge.

        A source is only included when another source lies upstream of it.
        """
        dag = self.forward_graph()
        found: set[str] = set()
        for scene_id in scene_ids:
            if scene_id in dag:
                found |= nx.descendants(dag, scene_id)
        return found

    def shortest_path(self, target: str) -> list[str] | None:
        """Fewest-scenes path from the start scene to target, or None."""
        if self._start is None:
            return None
        try:
            return nx.shortest_path(self._graph, source=self._start, target=target)
        except (nx.NetworkXNoPath, nx.NodeNotFound):
            return None


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def build_graph(scenario: Scenario) -> ScenarioGraph:
    """Construct the scene graph for a scenario. Never raises on bad content."""
    diagnostics: list[StructuralDiagnostic] = []

    if not scenario.scenes:
        diagnostics.append(StructuralDiagnostic(
            code="empty_scenario", severity="error",
            message=f"Scenario '{scenario.id}' has no scenes",
        ))
        return ScenarioGraph([], [], None, diagnostics)

    scenes: list[Scene] = []
    seen_ids: set[str] = set()
    for scene in scenario.scenes:
        if scene.id in seen_ids:
            diagnostics.append(StructuralDiagnostic(
                code="duplicate_scene_id", severity="error",
                message=f"Scene id '{scene.id}' is declared more than once; later copies ignored",
                scene_ids=[scene.id],
            ))
            continue
        seen_ids.add(scene.id)
        scenes.append(scene)

    transitions: list[SceneTransition] = []

    def _missing(scene_id: str, target: str, what: str) -> None:
        diagnostics.append(StructuralDiagnostic(
            code="missing_reference", severity="error",
            message=f"Scene '{scene_id}' {what} references unknown scene '{target}'",
            scene_ids=[scene_id],
        ))

    for scene in scenes:
        if scene.next_scene_id:
            if scene.next_scene_id in seen_ids:
                transitions.append(SceneTransition(
                    from_scene_id=scene.id, to_scene_id=scene.next_scene_id, kind="linear",
                ))
            else:
                _missing(scene.id, scene.next_scene_id, "next scene")

        for i, branch in enumerate(scene.branches):
            if not branch.next_scene_id:
                continue
            if branch.next_scene_id in seen_ids:
                transitions.append(SceneTransition(
                    from_scene_id=scene.id, to_scene_id=branch.next_scene_id,
                    kind="branch", choice=branch.choice, branch=branch,
                ))
            else:
                _missing(scene.id, branch.next_scene_id, f"branch {i} ('{branch.choice}')")

        for reveal in scene.echo_reveals:
            if reveal.trigger_scene_id not in seen_ids:
                _missing(scene.id, reveal.trigger_scene_id, "echo reveal trigger")

        if scene.type == "roll" and scene.difficulty is None:
            diagnostics.append(StructuralDiagnostic(
                code="roll_without_difficulty", severity="warning",
                message=f"Roll scene '{scene.id}' has no difficulty",
                scene_ids=[scene.id],
            ))

    start = _choose_start(scenario, scenes, transitions, diagnostics)
    graph = ScenarioGraph(scenes, transitions, start, diagnostics)

    if not graph.ending_scene_ids:
        diagnostics.append(StructuralDiagnostic(
            code="no_ending_scene", severity="error",
            message="No scene lacks an outgoing transition; the story cannot end",
        ))

    reachable = graph.reachable()
    unreachable = [n for n in graph.nodes if n not in reachable]
    if unreachable:
        diagnostics.append(StructuralDiagnostic(
            code="unreachable_scene", severity="warning",
            message=f"{len(unreachable)} scene(s) cannot be reached from '{start}'",
            scene_ids=unreachable,
        ))

    # diagnostics appended after construction must be visible on the graph
    graph = ScenarioGraph(scenes, transitions, start, diagnostics)
    for d in diagnostics:
        logger.debug("scenario=%s structural %s: %s", scenario.id, d.code, d.message)
    return graph


def _choose_start(
    scenario: Scenario,
    scenes: list[Scene],
    transitions: list[SceneTransition],
    diagnostics: list[StructuralDiagnostic],
) -> str:
    ids = [s.id for s in scenes]
    if scenario.first_scene_id:
        if scenario.first_scene_id in ids:
            return scenario.first_scene_id
        diagnostics.append(StructuralDiagnostic(
            code="missing_reference", severity="error",
            message=f"Scenario first scene '{scenario.first_scene_id}' does not exist",
        ))

    targets = {t.to_scene_id for t in transitions}
    candidates = [sid for sid in ids if sid not in targets]
    if not candidates:
        diagnostics.append(StructuralDiagnostic(
            code="no_start_scene", severity="error",
            message=f"Every scene has an incoming transition; falling back to '{ids[0]}'",
            scene_ids=[ids[0]],
        ))
        return ids[0]
    if len(candidates) > 1:
        diagnostics.append(StructuralDiagnostic(
            code="multiple_start_scenes", severity="warning",
            message=f"{len(candidates)} scenes have no incoming transition; using '{candidates[0]}'",
            scene_ids=candidates,
        ))
    return candidates[0]


def find_start_scene(scenario: Scenario) -> str | None:
    """Id of the scene a player starts in, or None for an empty scenario."""
    return build_graph(scenario).start_scene_id


def find_ending_scenes(scenario: Scenario) -> list[str]:
    """Ids of every scene with no outgoing transition."""
    return build_graph(scenario).ending_scene_ids
