"""Build-and-publish orchestrator: the pipeline for one invocation.

The Orchestrator sequences workspace provisioning, storage initialisation,
image pull, index build, index selection and publication, recording every
step in a ``PipelineStateMachine``. It performs no retries: every external
call is attempted once, and its only job on the failure path is to classify
the fault and hand it back.

The scratch workspace is released on every exit path, including
cancellation and unexpected errors.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import ExitStack, contextmanager
from pathlib import Path

from soci_publisher.config import PublisherConfig
from soci_publisher.core.cancellation import CancellationToken
from soci_publisher.core.state_machine import PipelineStateMachine
from soci_publisher.core.storage import (
    init_artifact_store,
    init_artifacts_db,
    init_content_store,
)
from soci_publisher.core.workspace import ScratchWorkspace
from soci_publisher.errors import (
    BuildError,
    ManifestValidationError,
    PipelineCancelledError,
)
from soci_publisher.indexer.base import BuildOptions, IndexBuilder
from soci_publisher.logging_setup import ContextLogger, LogContext, get_context_logger
from soci_publisher.models.descriptors import Descriptor, ImageRef, IndexDescriptorInfo
from soci_publisher.models.pipeline import PipelineOutcome, PipelineResult, PipelineState
from soci_publisher.models.request import InvocationRequest
from soci_publisher.registry.base import RegistryClient

SUCCESS_MESSAGE = "Successfully built and pushed SOCI index"
SKIP_MESSAGE = "Exited early due to manifest validation error"
CANCELLED_MESSAGE = "Pipeline cancelled"

RegistryFactory = Callable[[InvocationRequest], RegistryClient]


class _StageFailure(Exception):
    """Carries the status message of the stage that failed."""

    def __init__(self, message: str, cause: Exception) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


@contextmanager
def _stage(message: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        raise _StageFailure(message, exc) from exc


def select_latest_descriptor(infos: Sequence[IndexDescriptorInfo]) -> Descriptor:
    """Return the descriptor with the latest creation timestamp.

    Raises ``BuildError`` when *infos* is empty, or when different digests
    share the latest timestamp (a builder defect, never resolved silently).
    Several records of the same digest at that timestamp are equivalent.
    """
    if not infos:
        raise BuildError("No SOCI indices found in OCI store")
    latest = max(info.created_at for info in infos)
    newest = [info.descriptor for info in infos if info.created_at == latest]
    digests = sorted({d.digest for d in newest})
    if len(digests) > 1:
        raise BuildError(
            f"Ambiguous SOCI index selection: {', '.join(digests)} "
            f"were all created at {latest.isoformat()}"
        )
    return newest[0]


class Orchestrator:
    """Runs the build-and-publish pipeline.

    Parameters
    ----------
    registry_factory:
        Builds the registry client for a request. Failures here are
        reported as a registry initialisation error.
    builder:
        The index builder.
    scratch_root:
        Parent directory of the per-invocation workspace.
    workspace_prefix:
        Name prefix of the workspace directory.
    build_options:
        Builder options; defaults to every layer on the host platform.
    """

    def __init__(
        self,
        registry_factory: RegistryFactory,
        builder: IndexBuilder,
        *,
        scratch_root: Path = Path("/tmp"),
        workspace_prefix: str = "soci-",
        build_options: BuildOptions | None = None,
    ) -> None:
        self._registry_factory = registry_factory
        self._builder = builder
        self.scratch_root = Path(scratch_root)
        self.workspace_prefix = workspace_prefix
        self.build_options = build_options or BuildOptions()

    @classmethod
    def from_config(
        cls, config: PublisherConfig, *, workspace_prefix: str | None = None
    ) -> Orchestrator:
        """Production wiring: ECR registry client and SOCI index builder."""
        from soci_publisher.indexer.soci import SociIndexBuilder
        from soci_publisher.registry.ecr import EcrRegistryClient

        options = BuildOptions()

        def registry_factory(request: InvocationRequest) -> RegistryClient:
            return EcrRegistryClient.from_credentials(
                request.registry_url,
                config.resolve_region(request.region),
                request.account,
                timeout_seconds=config.registry_timeout_seconds,
                chunk_size=config.chunk_size,
                platform=options.platform,
            )

        return cls(
            registry_factory,
            SociIndexBuilder(),
            scratch_root=config.scratch_root,
            workspace_prefix=workspace_prefix or config.workspace_prefix,
            build_options=options,
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def run(
        self,
        request: InvocationRequest,
        cancel: CancellationToken | None = None,
    ) -> PipelineResult:
        """Run the pipeline once for *request*.

        Returns a result whose ``error`` is ``None`` on success and on the
        validation skip, and the original exception on every other outcome.
        """
        cancel = cancel or CancellationToken()
        machine = PipelineStateMachine()
        context = LogContext(
            registry_url=request.registry_url,
            repository=request.repository,
            digest=request.digest,
        )
        log = get_context_logger(__name__, context)
        options = self.build_options

        try:
            with _stage("Remote registry initialization error"):
                registry = self._registry_factory(request)

            try:
                cancel.raise_if_cancelled()
                registry.validate_manifest(request.repository, request.digest, cancel)
            except ManifestValidationError as exc:
                log.warning("Image manifest validation error: %s", exc)
                machine.transition(PipelineState.SKIPPED_EARLY, str(exc))
                return self._result(machine, SKIP_MESSAGE, None, PipelineOutcome.SKIPPED)
            except Exception as exc:
                raise _StageFailure("Image manifest fetch error", exc) from exc
            machine.transition(PipelineState.VALIDATED)

            with ExitStack() as cleanup:
                with _stage("Directory create error"):
                    cancel.raise_if_cancelled()
                    workspace = cleanup.enter_context(
                        ScratchWorkspace(self.scratch_root, self.workspace_prefix)
                    )
                machine.transition(PipelineState.WORKSPACE_READY)

                with _stage("OCI storage initialization error"):
                    content_store = init_content_store(workspace)
                    artifact_store = init_artifact_store(workspace, cancel)
                with _stage("SOCI artifacts database initialization error"):
                    artifacts_db = init_artifacts_db(workspace)
                machine.transition(PipelineState.STORAGE_READY)

                with _stage("Image pull error"):
                    cancel.raise_if_cancelled()
                    target = registry.pull(
                        request.repository, request.digest, artifact_store, cancel
                    )
                image = ImageRef(name=request.image_name, target=target)
                machine.transition(PipelineState.PULLED)

                with _stage("SOCI index build error"):
                    cancel.raise_if_cancelled()
                    log.info("Building SOCI index")
                    self._builder.build(
                        image, content_store, artifact_store, artifacts_db, options, cancel
                    )
                machine.transition(PipelineState.INDEXED)

                with _stage("SOCI index build error"):
                    infos = self._builder.list_descriptors(
                        content_store, artifacts_db, image, [options.platform]
                    )
                    index_descriptor = select_latest_descriptor(infos)
                context = context.with_index_digest(index_descriptor.digest)
                log = log.bind(context)
                machine.transition(PipelineState.SELECTED)

                with _stage("SOCI index push error"):
                    cancel.raise_if_cancelled()
                    registry.push(
                        artifact_store, index_descriptor, request.repository, cancel
                    )
                machine.transition(PipelineState.PUBLISHED)

            log.info(SUCCESS_MESSAGE)
            machine.transition(PipelineState.DONE)
            return self._result(
                machine,
                SUCCESS_MESSAGE,
                None,
                PipelineOutcome.SUCCEEDED,
                index_digest=index_descriptor.digest,
            )

        except _StageFailure as failure:
            return self._fail(machine, log, context, failure, cancel)

    # ------------------------------------------------------------------
    # Result helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fail(
        machine: PipelineStateMachine,
        log: ContextLogger,
        context: LogContext,
        failure: _StageFailure,
        cancel: CancellationToken,
    ) -> PipelineResult:
        message = failure.message
        # A stage cut short by the deadline usually surfaces as a timeout.
        if isinstance(failure.cause, PipelineCancelledError) or cancel.is_cancelled():
            message = CANCELLED_MESSAGE
        log.error("%s: %s", message, failure.cause)
        machine.fail(message)
        return Orchestrator._result(
            machine,
            message,
            failure.cause,
            PipelineOutcome.FAILED,
            index_digest=context.index_digest,
        )

    @staticmethod
    def _result(
        machine: PipelineStateMachine,
        message: str,
        error: Exception | None,
        outcome: PipelineOutcome,
        *,
        index_digest: str = "",
    ) -> PipelineResult:
        return PipelineResult(
            message=message,
            error=error,
            outcome=outcome,
            state=machine.state,
            index_digest=index_digest,
            history=machine.history(),
        )
