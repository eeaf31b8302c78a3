"""In-memory tracker for asynchronous evaluation jobs.

Lifecycle:

    queued ──► running ──► succeeded
      │           │
      └───────────┴──────► failed

queued and running are the only non-terminal states. A terminal record is
never changed again; any attempt raises OperationStateError, which makes the
terminal transition (and the attached result) exactly-once.

All mutation happens on the event loop thread, so plain dict updates are
atomic with respect to other coroutines. Readers get copies.
"""

from __future__ import annotations

import logging

from scenario_continuity.models import (
    ContinuityOperationInfo,
    OperationStatus,
    ScenarioConsistencyEvaluationResult,
    _utcnow,
)

logger = logging.getLogger(__name__)

_ALLOWED: dict[OperationStatus, set[OperationStatus]] = {
    "queued": {"running", "failed"},
    "running": {"succeeded", "failed"},
    "succeeded": set(),
    "failed": set(),
}


class OperationStateError(RuntimeError):
    """Raised on an illegal lifecycle transition or an unknown operation."""


class OperationTracker:
    """Operation records keyed by id.

    Only the newest `max_finished` terminal records are retained; older ones
    are evicted when another operation finishes. Queued and running records
    are never evicted.
    """

    def __init__(self, max_finished: int = 200) -> None:
        if max_finished < 1:
            raise ValueError("max_finished must be at least 1")
        self._ops: dict[str, ContinuityOperationInfo] = {}
        self._max_finished = max_finished

    def create(self, scenario_id: str) -> ContinuityOperationInfo:
        op = ContinuityOperationInfo(scenario_id=scenario_id)
        self._ops[op.operation_id] = op
        logger.info("operation %s queued for scenario %s", op.operation_id, scenario_id)
        return op.model_copy(deep=True)

    def get(self, operation_id: str) -> ContinuityOperationInfo | None:
        op = self._ops.get(operation_id)
        return op.model_copy(deep=True) if op is not None else None

    def list_operations(self, scenario_id: str | None = None) -> list[ContinuityOperationInfo]:
        return [
            op.model_copy(deep=True) for op in self._ops.values()
            if scenario_id is None or op.scenario_id == scenario_id
        ]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _require(self, operation_id: str) -> ContinuityOperationInfo:
        op = self._ops.get(operation_id)
        if op is None:
            raise OperationStateError(f"Unknown operation '{operation_id}'")
        return op

    def _transition(self, operation_id: str, target: OperationStatus) -> ContinuityOperationInfo:
        op = self._require(operation_id)
        if target not in _ALLOWED[op.status]:
            raise OperationStateError(
                f"Operation '{operation_id}' cannot move from {op.status} to {target}"
            )
        op.status = target
        return op

    def mark_running(self, operation_id: str, total_paths: int = 0) -> None:
        op = self._transition(operation_id, "running")
        op.started_at = _utcnow()
        op.total_paths = total_paths
        op.current_step = "starting"

    def update_progress(
        self,
        operation_id: str,
        *,
        current_step: str | None = None,
        total_paths: int | None = None,
        paths_evaluated: int | None = None,
        issues_found: int | None = None,
        progress_percent: int | None = None,
    ) -> None:
        """Update counters of a non-terminal operation. No-op once terminal."""
        op = self._require(operation_id)
        if op.is_terminal:
            return
        if current_step is not None:
            op.current_step = current_step
        if total_paths is not None:
            op.total_paths = total_paths
        if paths_evaluated is not None:
            op.paths_evaluated = paths_evaluated
        if issues_found is not None:
            op.issues_found = issues_found
        if progress_percent is not None:
            op.progress_percent = max(op.progress_percent, min(100, max(0, progress_percent)))

    def succeed(self, operation_id: str, result: ScenarioConsistencyEvaluationResult) -> None:
        op = self._transition(operation_id, "succeeded")
        op.result = result
        op.progress_percent = 100
        op.current_step = "completed"
        op.completed_at = _utcnow()
        logger.info("operation %s succeeded", operation_id)
        self._evict_finished()

    def fail(self, operation_id: str, error: str) -> None:
        op = self._transition(operation_id, "failed")
        op.error = error
        op.current_step = "failed"
        op.completed_at = _utcnow()
        logger.warning("operation %s failed: %s", operation_id, error)
        self._evict_finished()

    def _evict_finished(self) -> None:
        finished = sorted(
            (op for op in self._ops.values() if op.is_terminal),
            key=lambda op: op.completed_at,
        )
        for op in finished[: max(0, len(finished) - self._max_finished)]:
            del self._ops[op.operation_id]
            logger.debug("operation %s evicted", op.operation_id)
