"""JSON file storage for authored scenarios.

Scenarios are flat JSON files under a configurable base directory:

    {base}/
      scenarios/
        {scenario_id}.json    ← one Scenario document
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from pydantic import ValidationError

from scenario_continuity.models import Scenario

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ScenarioNotFoundError(LookupError):
    """Raised when a scenario id has no stored document."""

    def __init__(self, scenario_id: str) -> None:
        super().__init__(f"Scenario '{scenario_id}' not found")
        self.scenario_id = scenario_id


class ScenarioStore:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._root = base_path / "scenarios"
        self._root.mkdir(parents=True, exist_ok=True)

    def _file(self, scenario_id: str) -> Path:
        if not _SAFE_ID.match(scenario_id):
            raise ValueError(f"Invalid scenario id '{scenario_id}'")
        return self._root / f"{scenario_id}.json"

    def get_scenario(self, scenario_id: str) -> Scenario:
        """Load a scenario. Raises ScenarioNotFoundError if it is not stored."""
        try:
            path = self._file(scenario_id)
        except ValueError:
            raise ScenarioNotFoundError(scenario_id)
        if not path.exists():
            raise ScenarioNotFoundError(scenario_id)
        try:
            return Scenario.model_validate_json(path.read_text())
        except ValidationError as e:
            logger.warning("scenario %s failed validation: %s", scenario_id, e)
            raise

    def save_scenario(self, scenario: Scenario) -> None:
        self._file(scenario.id).write_text(scenario.model_dump_json(indent=2))

    def delete_scenario(self, scenario_id: str) -> bool:
        path = self._file(scenario_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_scenario_ids(self) -> list[str]:
        return sorted(p.stem for p in self._root.glob("*.json"))


def load_scenario_file(path: Path) -> Scenario:
    """Read a scenario document from an arbitrary JSON file."""
    return Scenario.model_validate(json.loads(path.read_text()))
