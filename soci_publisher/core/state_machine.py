"""Deterministic pipeline state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- No transition out of a terminal state
- Every transition recorded, in order, for the invocation result
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from soci_publisher.errors import InvalidTransitionError
from soci_publisher.models.pipeline import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    PipelineState,
)

logger = logging.getLogger(__name__)


class PipelineTransition(BaseModel):
    """Records a single state transition."""

    model_config = ConfigDict(frozen=True)

    from_state: PipelineState
    to_state: PipelineState
    reason: str = ""
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class PipelineStateMachine:
    """Tracks one invocation through the build-and-publish states."""

    def __init__(self) -> None:
        self._state = PipelineState.START
        self._transitions: list[PipelineTransition] = []

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def transitions(self) -> list[PipelineTransition]:
        return list(self._transitions)

    def history(self) -> tuple[PipelineState, ...]:
        """Every state visited, starting with START."""
        return (PipelineState.START, *(t.to_state for t in self._transitions))

    def transition(self, target: PipelineState, reason: str = "") -> PipelineTransition:
        """Move to *target*, raising ``InvalidTransitionError`` if not allowed."""
        allowed = VALID_TRANSITIONS.get(self._state, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {self._state.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )
        record = PipelineTransition(from_state=self._state, to_state=target, reason=reason)
        self._transitions.append(record)
        logger.debug("Pipeline state %s -> %s", self._state.value, target.value)
        self._state = target
        return record

    def fail(self, reason: str = "") -> PipelineTransition:
        return self.transition(PipelineState.FAILED, reason)
