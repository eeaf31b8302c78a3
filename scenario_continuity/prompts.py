"""Handlebars prompt rendering for the semantic judge."""

from collections.abc import Callable
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} — iterate over the first N items."""
    result = []
    for item in list(items)[:int(count)]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Default templates ────────────────────────────────────
# Narrative text is inserted with triple braces so it is not HTML-escaped.

DEFAULT_SCENE_CLASSIFIER_PROMPT = """\
You are a continuity editor for a branching interactive story.

Read the CURRENT SCENE and list every character, location, item and concept
it mentions. The STORY SO FAR is what a player has already read on the way
to this scene.

{{#if characters}}
Registered characters:
{{#take characters 40}}- {{{name}}}{{#if aliases}} (also: {{{aliases}}}){{/if}}
{{/take}}
{{/if}}
STORY SO FAR:
{{#if prior_context}}{{{prior_context}}}{{else}}(this is the opening scene){{/if}}

CURRENT SCENE [{{{scene_id}}}] {{{scene_title}}}
{{{scene_text}}}

For each entity decide:
- introduction_status: "new" if the scene presents it for the first time,
  "reintroduced" if it comes back after being gone, "already_known" if the
  scene assumes the reader knows it, "not_present" if only alluded to.
- removal_status: "removed" if the scene destroys, kills, loses or sends it
  away for good, otherwise "not_removed".
- attributes: stable facts stated here (e.g. species, role, colour).

Also give time_delta: one of "none", "minutes", "hours", "days", "longer".

Respond with JSON only:
{"time_delta": "...", "entities": [{"name": "...", "type": "character|location|item|concept",
"present_in_scene": true, "introduction_status": "...", "removal_status": "...",
"is_proper_noun": false, "confidence": "low|medium|high", "attributes": {},
"evidence_span": "..."}]}
"""

DEFAULT_PATH_CONSISTENCY_PROMPT = """\
You are a continuity editor for a branching interactive story.

Below is ONE playthrough, scene by scene, in the order a player reads it.
Lines starting with "> Choice:" show the option the player picked.

{{{path_text}}}

Find contradictions a reader of this playthrough would notice:
entities that appear without introduction or after being removed (entity),
impossible timing (time), emotional reactions that contradict earlier
events (emotional), effects without causes (causal), anything else (other).

Respond with JSON only:
{"overall_assessment": "ok|minor_issues|major_issues|broken",
 "issues": [{"severity": "low|medium|high|critical",
 "category": "entity|time|emotional|causal|other",
 "scene_ids": ["..."], "summary": "...", "details": "...",
 "suggested_fix": "..."}]}
"""
