"""Entity continuity analysis — "introduced before used" over every path.

A forward must-analysis over the scenario graph, analogous to dominator
computation. For every reachable scene S:

    known_in(S)   = ∩ known_out(P)    over forward predecessors P of S
    known_out(S)  = (known_in(S) ∪ introduced(S)) − removed(S)

known_in(start) is empty. Back edges found by the depth-first walk are
ignored, which turns the graph into a DAG processed once in reverse
postorder. An entity is guaranteed known at S iff it is introduced (and not
since removed) on every path from the start scene to S.

Two companion analyses share the same walk:
  removed_in  — removed on every path and not reintroduced since
  maybe_in    — introduced on at least one path (used only for messages)

Entities are matched across scenes by normalised name (case-folded, leading
articles and punctuation dropped), so "The Lantern" and "lantern" are the
same entity; the differing spelling is reported as a name variation.

Scenes with no classification (the judge failed for them) are treated as
introducing and removing nothing. They are listed in skipped_scene_ids and
every issue found downstream of one is marked low confidence.

Everything here is a pure function of (graph, classifications, registry).
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Mapping
from typing import NamedTuple, Protocol

from scenario_continuity.graph import ScenarioGraph
from scenario_continuity.models import (
    EntityClassification,
    EntityContinuityIssue,
    EntityIntroductionResult,
    EntityIssueType,
    ScenarioCharacter,
    SceneEntityClassificationData,
)

logger = logging.getLogger(__name__)

_ARTICLES = {"the", "a", "an"}


def normalize_entity_name(name: str) -> str:
    """Matching key for an entity name.

    "The  Old Lantern!" → "old lantern"
    """
    text = unicodedata.normalize("NFKC", name).casefold()
    text = re.sub(r"[^\w\s'-]", " ", text)
    words = text.split()
    while len(words) > 1 and words[0] in _ARTICLES:
        words.pop(0)
    return " ".join(words)


def _display_form(name: str) -> str:
    return " ".join(name.split()).casefold()


# ---------------------------------------------------------------------------
# Character registry (media/character existence validation)
# ---------------------------------------------------------------------------

class CharacterRegistry(Protocol):
    def lookup(self, name: str) -> bool | None: ...


class ScenarioCharacterRegistry:
    """Registered characters of one scenario, matched by name or alias."""

    def __init__(self, characters: list[ScenarioCharacter]) -> None:
        self._names: set[str] = set()
        for c in characters:
            self._names.add(normalize_entity_name(c.name))
            self._names.update(normalize_entity_name(a) for a in c.aliases)

    def lookup(self, name: str) -> bool:
        return normalize_entity_name(name) in self._names


def resolve_confidence(
    classification: EntityClassification, registry: CharacterRegistry | None
) -> EntityClassification:
    """Adjust a character's confidence by whether it is a registered character.

    With no registry the judge is the only evidence, so "high" is capped at
    "medium". A registry hit raises the confidence to "high".
    """
    if classification.type != "character":
        return classification
    if registry is None:
        if classification.confidence == "high":
            return classification.model_copy(update={"confidence": "medium"})
        return classification
    if registry.lookup(classification.name):
        return classification.model_copy(update={"confidence": "high"})
    return classification


# ---------------------------------------------------------------------------
# Data flow
# ---------------------------------------------------------------------------

class EntityFlow(NamedTuple):
    order: list[str]
    known_in: dict[str, frozenset[str]]
    removed_in: dict[str, frozenset[str]]
    maybe_in: dict[str, frozenset[str]]


def compute_entity_flow(
    graph: ScenarioGraph,
    introduced: Mapping[str, set[str]],
    removed: Mapping[str, set[str]],
) -> EntityFlow:
    """Per-scene entry sets for every scene reachable from the start scene."""
    order, _ = graph.walk()
    dag = graph.forward_graph()

    known_in: dict[str, frozenset[str]] = {}
    removed_in: dict[str, frozenset[str]] = {}
    maybe_in: dict[str, frozenset[str]] = {}
    known_out: dict[str, frozenset[str]] = {}
    removed_out: dict[str, frozenset[str]] = {}
    maybe_out: dict[str, frozenset[str]] = {}

    for node in order:
        preds = list(dag.predecessors(node))
        if node == graph.start_scene_id or not preds:
            k_in = r_in = m_in = frozenset()
        else:
            k_in = frozenset.intersection(*(known_out[p] for p in preds))
            r_in = frozenset.intersection(*(removed_out[p] for p in preds))
            m_in = frozenset().union(*(maybe_out[p] for p in preds))

        intro = frozenset(introduced.get(node, ()))
        gone = frozenset(removed.get(node, ()))
        known_in[node], removed_in[node], maybe_in[node] = k_in, r_in, m_in
        known_out[node] = (k_in | intro) - gone
        removed_out[node] = (r_in | gone) - intro
        maybe_out[node] = m_in | intro

    return EntityFlow(order, known_in, removed_in, maybe_in)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

class _FirstSighting(NamedTuple):
    scene_id: str
    display: str
    name: str
    type: str
    attributes: dict[str, str]


def analyze_entity_continuity(
    graph: ScenarioGraph,
    classifications: Mapping[str, SceneEntityClassificationData | None],
    registry: CharacterRegistry | None = None,
) -> EntityIntroductionResult:
    """Find every entity used in a scene without being guaranteed known there."""
    order, _ = graph.walk()

    per_scene: dict[str, list[EntityClassification]] = {}
    skipped: list[str] = []
    introduced: dict[str, set[str]] = {}
    removed: dict[str, set[str]] = {}
    for scene_id in order:
        data = classifications.get(scene_id)
        if data is None:
            skipped.append(scene_id)
            continue
        entries = [resolve_confidence(c, registry) for c in data.entity_classifications]
        per_scene[scene_id] = entries
        introduced[scene_id] = {normalize_entity_name(c.name) for c in entries if c.is_introduced}
        removed[scene_id] = {normalize_entity_name(c.name) for c in entries if c.is_removed}

    flow = compute_entity_flow(graph, introduced, removed)
    tainted = graph.downstream(set(skipped))

    issues: list[EntityContinuityIssue] = []
    emitted: set[tuple[str, str, str, str]] = set()
    first_seen: dict[str, _FirstSighting] = {}
    first_introduced: dict[str, str] = {}

    def _emit(
        scene_id: str, key: str, c: EntityClassification, issue_type: EntityIssueType,
        description: str, introduced_in: str | None = None,
        expected: str | None = None, actual: str | None = None,
    ) -> None:
        marker = (scene_id, key, issue_type, actual or "")
        if marker in emitted:
            return
        emitted.add(marker)
        issues.append(EntityContinuityIssue(
            entity=c.to_entity(),
            introduced_in_scene_id=introduced_in,
            detected_in_scene_id=scene_id,
            issue_type=issue_type,
            description=description,
            expected_value=expected,
            actual_value=actual,
            confidence="low" if scene_id in tainted else "high",
        ))

    for scene_id in order:
        entries = per_scene.get(scene_id)
        if entries is None:
            continue
        known = flow.known_in[scene_id]
        local_intro = introduced[scene_id]

        for c in entries:
            key = normalize_entity_name(c.name)
            if not key:
                continue
            if c.is_introduced:
                first_introduced.setdefault(key, scene_id)

            _check_sighting(scene_id, key, c, first_seen, _emit)

            if c.is_used and key not in known and key not in local_intro:
                origin = first_introduced.get(key)
                if key in flow.removed_in[scene_id]:
                    _emit(
                        scene_id, key, c, "unexpected_presence",
                        f"'{c.name}' appears in '{scene_id}' but was removed on every path reaching it",
                        introduced_in=origin,
                    )
                elif key in flow.maybe_in[scene_id]:
                    _emit(
                        scene_id, key, c, "not_introduced",
                        f"'{c.name}' is used in '{scene_id}' but is only introduced on some paths reaching it",
                        introduced_in=origin,
                    )
                else:
                    _emit(
                        scene_id, key, c, "not_introduced",
                        f"'{c.name}' is used in '{scene_id}' but is never introduced before it",
                        introduced_in=origin,
                    )

            if c.is_removed and key not in known and key not in local_intro:
                _emit(
                    scene_id, key, c, "unexpected_absence",
                    f"'{c.name}' is removed in '{scene_id}' but is not guaranteed to be present there",
                    introduced_in=first_introduced.get(key),
                )

    if skipped:
        logger.warning(
            "entity analysis skipped %d unclassified scene(s): %s", len(skipped), ", ".join(skipped),
        )

    return EntityIntroductionResult(
        issues=issues,
        scene_classifications={
            sid: data for sid, data in classifications.items() if data is not None
        },
        skipped_scene_ids=skipped,
        guaranteed_known={sid: sorted(flow.known_in[sid]) for sid in order},
    )


def _check_sighting(scene_id, key, c, first_seen, emit) -> None:
    """Compare this mention with the first mention of the same entity."""
    display = _display_form(c.name)
    first = first_seen.get(key)
    if first is None:
        first_seen[key] = _FirstSighting(scene_id, display, c.name, c.type, dict(c.attributes))
        return

    if display != first.display:
        emit(
            scene_id, key, c, "name_variation",
            f"'{c.name}' in '{scene_id}' looks like '{first.name}' from '{first.scene_id}' spelled differently",
            introduced_in=first.scene_id, expected=first.name, actual=c.name,
        )
    if c.type != first.type:
        emit(
            scene_id, key, c, "inconsistent_attribute",
            f"'{c.name}' is a {c.type} in '{scene_id}' but a {first.type} in '{first.scene_id}'",
            introduced_in=first.scene_id, expected=f"type: {first.type}", actual=f"type: {c.type}",
        )
    for attr, value in c.attributes.items():
        before = first.attributes.get(attr)
        if before is None:
            first.attributes[attr] = value
        elif before.casefold() != value.casefold():
            emit(
                scene_id, key, c, "inconsistent_attribute",
                f"'{c.name}' has {attr} '{value}' in '{scene_id}' but '{before}' in '{first.scene_id}'",
                introduced_in=first.scene_id, expected=f"{attr}: {before}", actual=f"{attr}: {value}",
            )
