"""Pipeline state machine models and the invocation result."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class PipelineState(str, Enum):
    """Strictly sequential states of one build-and-publish invocation."""

    START = "start"
    VALIDATED = "validated"
    WORKSPACE_READY = "workspace_ready"
    STORAGE_READY = "storage_ready"
    PULLED = "pulled"
    INDEXED = "indexed"
    SELECTED = "selected"
    PUBLISHED = "published"
    DONE = "done"
    SKIPPED_EARLY = "skipped_early"
    FAILED = "failed"


TERMINAL_STATES: frozenset[PipelineState] = frozenset(
    {PipelineState.DONE, PipelineState.SKIPPED_EARLY, PipelineState.FAILED}
)

# No branching back. SKIPPED_EARLY is reachable only when validation fails;
# FAILED is reachable from every non-terminal state.
VALID_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.START: {
        PipelineState.VALIDATED,
        PipelineState.SKIPPED_EARLY,
        PipelineState.FAILED,
    },
    PipelineState.VALIDATED: {PipelineState.WORKSPACE_READY, PipelineState.FAILED},
    PipelineState.WORKSPACE_READY: {PipelineState.STORAGE_READY, PipelineState.FAILED},
    PipelineState.STORAGE_READY: {PipelineState.PULLED, PipelineState.FAILED},
    PipelineState.PULLED: {PipelineState.INDEXED, PipelineState.FAILED},
    PipelineState.INDEXED: {PipelineState.SELECTED, PipelineState.FAILED},
    PipelineState.SELECTED: {PipelineState.PUBLISHED, PipelineState.FAILED},
    PipelineState.PUBLISHED: {PipelineState.DONE, PipelineState.FAILED},
    PipelineState.DONE: set(),  # terminal
    PipelineState.SKIPPED_EARLY: set(),  # terminal
    PipelineState.FAILED: set(),  # terminal
}


class PipelineOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class PipelineResult(BaseModel):
    """What the pipeline hands back to its caller.

    ``error`` is ``None`` for both success and the validation skip, so a
    retry-on-error invoker only retries real failures.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    message: str
    error: Exception | None = None
    outcome: PipelineOutcome
    state: PipelineState
    index_digest: str = ""
    history: tuple[PipelineState, ...] = ()

    @property
    def ok(self) -> bool:
        return self.error is None
