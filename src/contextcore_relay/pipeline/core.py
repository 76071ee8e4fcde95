"""
Core pipeline orchestration.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Sequence

from contextcore_relay.config import get_config
from contextcore_relay.credentials import SecretResolver, default_resolver
from contextcore_relay.errors import PipelineDefinitionError
from contextcore_relay.models import (
    NotifyResult,
    PipelineRun,
    RunStatus,
    StageResult,
    StageSpec,
    WaitKind,
)
from contextcore_relay.notify import Notifier, default_notifier, dispatch
from contextcore_relay.pipeline.stage import Stage
from contextcore_relay.runner import CancelToken, CommandRunner

if TYPE_CHECKING:
    from contextcore_relay.loader import PipelineDefinition

logger = logging.getLogger(__name__)

EXIT_CODES = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.ABORTED: 2,
}


def exit_code_for(status: RunStatus) -> int:
    """Process exit status equivalent of a terminal run status."""
    return EXIT_CODES.get(status, 1)


def validate_stage_specs(stages: Sequence[StageSpec]) -> None:
    """
    Check stage declarations before a run starts.

    Raises:
        PipelineDefinitionError: Duplicate names, non-increasing ordinals,
            non-positive timeouts, or a stage with nothing to do
    """
    seen = set()
    previous: Optional[StageSpec] = None
    for spec in stages:
        if not spec.name:
            raise PipelineDefinitionError(f"stage at ordinal {spec.ordinal} has no name")
        if spec.name in seen:
            raise PipelineDefinitionError(f"duplicate stage name '{spec.name}'")
        seen.add(spec.name)
        if previous is not None and spec.ordinal <= previous.ordinal:
            raise PipelineDefinitionError(
                f"stage '{spec.name}' ordinal {spec.ordinal} must be greater than "
                f"'{previous.name}' ordinal {previous.ordinal}"
            )
        if spec.timeout_seconds <= 0:
            raise PipelineDefinitionError(f"stage '{spec.name}' timeout must be positive")
        for template in spec.commands:
            if template.timeout_seconds is not None and template.timeout_seconds <= 0:
                raise PipelineDefinitionError(
                    f"stage '{spec.name}' command {template.display!r} timeout must be positive"
                )
        if not spec.commands and spec.wait is None:
            raise PipelineDefinitionError(f"stage '{spec.name}' declares no commands and no wait")
        if spec.wait is not None and (
            spec.wait.interval_seconds <= 0 or spec.wait.timeout_seconds <= 0
        ):
            raise PipelineDefinitionError(
                f"stage '{spec.name}' wait interval and timeout must be positive"
            )
        if (
            spec.wait is not None
            and spec.wait.kind == WaitKind.QUALITY_GATE
            and spec.wait.abort_on_unfavorable is None
        ):
            raise PipelineDefinitionError(
                f"stage '{spec.name}' quality gate must set abort_on_unfavorable explicitly"
            )
        previous = spec


class Pipeline:
    """
    Sequential stage pipeline.

    Runs stages strictly in ordinal order. A failed stage that is not
    tolerated aborts the run; the notifier fires exactly once per run,
    whatever the outcome.
    """

    def __init__(
        self,
        stages: Iterable[StageSpec],
        resolver: Optional[SecretResolver] = None,
        runner: Optional[CommandRunner] = None,
        notifier: Optional[Notifier] = None,
        job_name: str = "pipeline",
        build_number: int = 1,
        link: Optional[str] = None,
        attachments: Sequence[str] = (),
        on_stage_complete: Optional[Callable[[StageResult], None]] = None,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            stages: Stage declarations in execution order
            resolver: Secret resolver (default: environment + secrets directory)
            runner: Command runner (default: configured CommandRunner)
            notifier: Post-run notifier (default: from configuration)
            job_name: Name reported in the notification
            build_number: Build number reported in the notification
            link: Link to the build (default: RELAY_BUILD_URL)
            attachments: Attachment references for the notification
            on_stage_complete: Callback when a stage result is recorded
        """
        self.config = get_config()
        self.stages: List[StageSpec] = list(stages)
        validate_stage_specs(self.stages)
        self.resolver = resolver if resolver is not None else default_resolver()
        self.runner = runner if runner is not None else CommandRunner()
        self.notifier = notifier if notifier is not None else default_notifier()
        self.job_name = job_name
        self.build_number = build_number
        self.link = link or self.config.build_url
        self.attachments = tuple(attachments)
        self.on_stage_complete = on_stage_complete
        self.last_notify_result: Optional[NotifyResult] = None

    @classmethod
    def from_definition(
        cls,
        definition: "PipelineDefinition",
        build_number: int = 1,
        job_name: Optional[str] = None,
        **kwargs,
    ) -> "Pipeline":
        """
        Create a pipeline from a loaded definition file.

        Args:
            definition: Loaded PipelineDefinition
            build_number: Build number of this run
            job_name: Override for the definition's name
            **kwargs: Passed through to the constructor

        Returns:
            Pipeline for the definition's stages
        """
        kwargs.setdefault("link", definition.link)
        kwargs.setdefault("attachments", definition.attachments)
        return cls(
            stages=definition.stages,
            job_name=job_name or definition.name,
            build_number=build_number,
            **kwargs,
        )

    def run(self, cancel: Optional[CancelToken] = None) -> PipelineRun:
        """
        Run every stage and notify.

        Args:
            cancel: Token that stops the run before the next stage and
                terminates any in-flight command

        Returns:
            The terminal PipelineRun
        """
        run = PipelineRun(
            job_name=self.job_name,
            build_number=self.build_number,
            link=self.link,
            attachments=self.attachments,
        )
        logger.info(f"Starting {run.job_name} #{run.build_number} ({len(self.stages)} stages)")

        if self.config.telemetry_enabled:
            return self._run_with_telemetry(run, cancel)
        return self._run(run, cancel)

    def _run(self, run: PipelineRun, cancel: Optional[CancelToken]) -> PipelineRun:
        run.start()
        try:
            status = self._run_stages(run, cancel)
        except KeyboardInterrupt:
            run.finish(RunStatus.ABORTED)
            raise
        except BaseException:
            logger.exception(f"Pipeline {run.job_name} #{run.build_number} faulted")
            run.finish(RunStatus.FAILED)
            raise
        else:
            run.finish(status)
        finally:
            self.last_notify_result = dispatch(self.notifier, run)

        logger.info(f"{run.job_name} #{run.build_number} finished: {run.status.value}")
        return run

    def _run_stages(self, run: PipelineRun, cancel: Optional[CancelToken]) -> RunStatus:
        """Execute stages in order; returns the terminal status."""
        for spec in self.stages:
            if cancel is not None and cancel.cancelled:
                logger.warning(f"Run cancelled before stage {spec.name}: {cancel.reason}")
                return RunStatus.ABORTED

            logger.info(f"Running stage {spec.ordinal}: {spec.name}")
            result = Stage(spec).run(self.resolver, self.runner, cancel)
            run.record(result)

            if self.on_stage_complete:
                self.on_stage_complete(result)

            if result.aborts_run:
                logger.error(f"Stage {spec.name} failed, aborting: {result.error}")
                return RunStatus.ABORTED
            if result.failed:
                logger.warning(f"Stage {spec.name} failed but is tolerated")

        return RunStatus.SUCCEEDED

    def _run_with_telemetry(self, run: PipelineRun, cancel: Optional[CancelToken]) -> PipelineRun:
        """Run pipeline with OpenTelemetry tracing."""
        try:
            from opentelemetry import trace
        except ImportError:
            return self._run(run, cancel)

        tracer = trace.get_tracer(self.config.otel_service_name)
        with tracer.start_as_current_span(
            "relay.pipeline",
            attributes={
                "relay.run.id": run.run_id,
                "relay.job.name": run.job_name,
                "relay.build.number": run.build_number,
                "relay.pipeline.stages": len(self.stages),
            },
        ) as span:
            result = self._run(run, cancel)
            span.set_attribute("relay.pipeline.status", result.status.value)
            return result

    def add_stage(self, spec: StageSpec) -> "Pipeline":
        """
        Append a stage; its ordinal must follow the last one.

        Returns:
            Self for chaining
        """
        validate_stage_specs([*self.stages, spec])
        self.stages.append(spec)
        return self
