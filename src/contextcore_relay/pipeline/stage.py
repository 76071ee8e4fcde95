"""
Stage execution.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import List, Optional

from contextcore_relay.config import get_config
from contextcore_relay.credentials import SecretResolver, SecretScope
from contextcore_relay.errors import (
    ConfigurationError,
    RunnerFault,
    SecretError,
    StageFailure,
    TimeoutExceeded,
)
from contextcore_relay.models import (
    FailureKind,
    StageResult,
    StageSpec,
    StageStatus,
    Verdict,
    WaitKind,
)
from contextcore_relay.pipeline.waits import wait_for_verdict
from contextcore_relay.runner import CancelToken, CommandRunner

logger = logging.getLogger(__name__)


class Stage:
    """
    Executes one StageSpec.

    Secrets are acquired for the duration of the stage only, commands run in
    declared order and stop at the first failure, and every outcome,
    including secret and runner errors, comes back as a StageResult.
    """

    def __init__(self, spec: StageSpec) -> None:
        self.spec = spec
        self.config = get_config()

    @property
    def name(self) -> str:
        return self.spec.name

    def run(
        self,
        resolver: SecretResolver,
        runner: CommandRunner,
        cancel: Optional[CancelToken] = None,
    ) -> StageResult:
        """
        Run the stage with timing and error handling.

        Args:
            resolver: Secret resolver for the stage's declared secrets
            runner: Command runner
            cancel: Cancellation token of the run

        Returns:
            StageResult with execution outcome
        """
        if self.config.telemetry_enabled:
            return self._run_with_telemetry(resolver, runner, cancel)
        return self._run(resolver, runner, cancel)

    def _run(
        self,
        resolver: SecretResolver,
        runner: CommandRunner,
        cancel: Optional[CancelToken],
    ) -> StageResult:
        started_at = datetime.now()
        try:
            with SecretScope(self.spec.secrets, resolver) as scope:
                return self._execute(scope, runner, cancel, started_at)
        except SecretError as e:
            return self._failed(started_at, FailureKind.SECRET, str(e))
        except RunnerFault as e:
            return self._failed(started_at, FailureKind.RUNNER_FAULT, str(e))
        except TimeoutExceeded as e:
            return self._failed(started_at, FailureKind.TIMEOUT, str(e))
        except ConfigurationError as e:
            return self._failed(started_at, FailureKind.ERROR, str(e))
        except Exception as e:
            logger.exception(f"Stage {self.name} raised unexpectedly")
            return self._failed(started_at, FailureKind.ERROR, f"{type(e).__name__}: {e}")

    def _execute(
        self,
        scope: SecretScope,
        runner: CommandRunner,
        cancel: Optional[CancelToken],
        started_at: datetime,
    ) -> StageResult:
        spec = self.spec
        bindings = scope.bindings
        deadline = time.monotonic() + spec.timeout_seconds
        stdout: List[str] = []
        stderr: List[str] = []
        exit_code: Optional[int] = None
        count = 0

        def failed(kind: FailureKind, error: str, tolerated: Optional[bool] = None, verdict=None):
            return self._failed(
                started_at,
                kind,
                error,
                exit_code=exit_code,
                stdout="".join(stdout),
                stderr="".join(stderr),
                commands_run=count,
                tolerated=tolerated,
                verdict=verdict,
            )

        for template in spec.commands:
            if cancel is not None and cancel.cancelled:
                return failed(FailureKind.CANCELLED, cancel.reason or "cancelled")

            argv, env = template.render(bindings)
            remaining = deadline - time.monotonic()
            timeout = remaining if template.timeout_seconds is None else min(template.timeout_seconds, remaining)
            logger.info(f"[{spec.name}] $ {template.display}")

            result = runner.run(
                argv,
                env={**bindings, **env},
                timeout_seconds=timeout,
                cwd=template.cwd,
                cancel=cancel,
            )
            count += 1
            exit_code = result.exit_code
            stdout.append(scope.mask(result.stdout))
            stderr.append(scope.mask(result.stderr))

            if result.cancelled:
                return failed(FailureKind.CANCELLED, (cancel.reason if cancel else None) or "cancelled")
            if result.timed_out:
                error = TimeoutExceeded(f"command {template.display!r}", max(timeout, 0.0))
                return failed(FailureKind.TIMEOUT, str(error))
            if result.exit_code != 0:
                error = StageFailure(
                    spec.name,
                    f"{template.display!r} exited {result.exit_code}",
                    tolerated=spec.tolerate_failure,
                )
                return failed(FailureKind.COMMAND, str(error))

        verdict = None
        if spec.wait is not None:
            wait = spec.wait
            try:
                verdict = wait_for_verdict(
                    wait.probe,
                    wait.interval_seconds,
                    wait.timeout_seconds,
                    bindings,
                    runner,
                    cancel,
                )
            except TimeoutExceeded as e:
                return failed(FailureKind.TIMEOUT, str(e))

            if verdict is None:
                return failed(FailureKind.CANCELLED, (cancel.reason if cancel else None) or "cancelled")
            if verdict == Verdict.FAILED:
                if wait.kind == WaitKind.QUALITY_GATE:
                    advisory = not wait.abort_on_unfavorable
                    label = "advisory" if advisory else "blocking"
                    return failed(
                        FailureKind.VERDICT,
                        f"quality gate unfavorable ({label})",
                        tolerated=advisory,
                        verdict=verdict,
                    )
                return failed(FailureKind.VERDICT, "rollout verification failed", verdict=verdict)

        return StageResult(
            stage_name=spec.name,
            ordinal=spec.ordinal,
            status=StageStatus.SUCCEEDED,
            started_at=started_at,
            completed_at=datetime.now(),
            exit_code=exit_code,
            stdout="".join(stdout),
            stderr="".join(stderr),
            commands_run=count,
            verdict=verdict,
        )

    def _failed(
        self,
        started_at: datetime,
        kind: FailureKind,
        error: str,
        tolerated: Optional[bool] = None,
        **fields,
    ) -> StageResult:
        if tolerated is None:
            tolerated = self.spec.tolerate_failure and not kind.always_fatal
        elif kind.always_fatal:
            tolerated = False

        log = logger.warning if tolerated else logger.error
        log(f"Stage {self.name} failed ({kind.value}){' [tolerated]' if tolerated else ''}: {error}")

        return StageResult(
            stage_name=self.spec.name,
            ordinal=self.spec.ordinal,
            status=StageStatus.FAILED,
            started_at=started_at,
            completed_at=datetime.now(),
            tolerated=tolerated,
            failure_kind=kind,
            error=error,
            **fields,
        )

    def _run_with_telemetry(
        self,
        resolver: SecretResolver,
        runner: CommandRunner,
        cancel: Optional[CancelToken],
    ) -> StageResult:
        """Run stage inside an OpenTelemetry span."""
        try:
            from opentelemetry import trace
        except ImportError:
            return self._run(resolver, runner, cancel)

        tracer = trace.get_tracer(self.config.otel_service_name)
        with tracer.start_as_current_span(
            f"relay.stage.{self.name}",
            attributes={
                "relay.stage.name": self.name,
                "relay.stage.ordinal": self.spec.ordinal,
                "relay.stage.tolerate_failure": self.spec.tolerate_failure,
            },
        ) as span:
            result = self._run(resolver, runner, cancel)
            span.set_attribute("relay.stage.status", result.status.value)
            span.set_attribute("relay.stage.tolerated", result.tolerated)
            if result.error:
                span.set_attribute("relay.stage.error", result.error)
            return result


def execute(
    spec: StageSpec,
    resolver: SecretResolver,
    runner: CommandRunner,
    cancel: Optional[CancelToken] = None,
) -> StageResult:
    """Execute one StageSpec and return its StageResult."""
    return Stage(spec).run(resolver, runner, cancel)
