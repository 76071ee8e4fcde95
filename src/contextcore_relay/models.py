"""
Core data models for ContextCore Relay.
"""

from __future__ import annotations

import re
import shlex
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from string import Template
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from contextcore_relay.errors import ConfigurationError, RunStateError

if TYPE_CHECKING:
    from contextcore_relay.pipeline.waits import Probe


class RunStatus(str, Enum):
    """Status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)


class StageStatus(str, Enum):
    """Outcome of a single stage."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"


class SecretShape(str, Enum):
    """Shape of a stored credential."""

    USERNAME_PASSWORD = "username_password"
    FILE = "file"
    STRING = "string"


class FailureKind(str, Enum):
    """Why a stage failed."""

    COMMAND = "command"
    SECRET = "secret"
    RUNNER_FAULT = "runner_fault"
    TIMEOUT = "timeout"
    VERDICT = "verdict"
    CANCELLED = "cancelled"
    ERROR = "error"

    @property
    def always_fatal(self) -> bool:
        """Kinds that abort the run regardless of the stage's tolerate policy."""
        return self in (FailureKind.RUNNER_FAULT, FailureKind.TIMEOUT, FailureKind.CANCELLED)


class WaitKind(str, Enum):
    """Kind of bounded wait a stage performs after its commands."""

    QUALITY_GATE = "quality_gate"
    ROLLOUT = "rollout"


class Verdict(str, Enum):
    """Answer from an external system polled during a bounded wait."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


_VARIABLE_RE = re.compile(r"[^A-Za-z0-9]+")


@dataclass(frozen=True)
class SecretRef:
    """A named credential reference with the shape the stage expects."""

    name: str
    shape: SecretShape = SecretShape.STRING
    variable: Optional[str] = None

    @property
    def binding(self) -> str:
        """Template variable the resolved value is bound to."""
        if self.variable:
            return self.variable
        return _VARIABLE_RE.sub("_", self.name).strip("_").upper()


@dataclass(frozen=True)
class CommandTemplate:
    """
    A structured command with ``${VAR}`` placeholders.

    String commands are split into arguments before substitution, so a
    substituted value always lands in exactly one argument.
    """

    argv: Tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout_seconds: Optional[float] = None

    @classmethod
    def parse(
        cls,
        command: Union[str, Sequence[str]],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> "CommandTemplate":
        """
        Build a template from a command string or argv list.

        Args:
            command: Shell-style string or list of arguments
            env: Extra environment variables (values may hold placeholders)
            cwd: Working directory for the command
            timeout_seconds: Per-command timeout (defaults to the stage budget)

        Returns:
            New CommandTemplate
        """
        if isinstance(command, str):
            try:
                argv = tuple(shlex.split(command))
            except ValueError as e:
                raise ConfigurationError(f"cannot parse command {command!r}: {e}") from e
        else:
            argv = tuple(str(arg) for arg in command)
        if not argv:
            raise ConfigurationError("command must not be empty")
        return cls(argv=argv, env=dict(env or {}), cwd=cwd, timeout_seconds=timeout_seconds)

    @property
    def display(self) -> str:
        """Unrendered command line, safe to log."""
        return shlex.join(self.argv)

    def render(self, bindings: Mapping[str, str]) -> Tuple[List[str], Dict[str, str]]:
        """Substitute bindings into argv and env; unknown placeholders are errors."""
        try:
            argv = [Template(arg).substitute(bindings) for arg in self.argv]
            env = {key: Template(value).substitute(bindings) for key, value in self.env.items()}
        except KeyError as e:
            raise ConfigurationError(
                f"unknown placeholder {e.args[0]!r} in command {self.display!r}"
            ) from e
        except ValueError as e:
            raise ConfigurationError(f"malformed placeholder in command {self.display!r}: {e}") from e
        return argv, env


@dataclass(frozen=True)
class WaitSpec:
    """A wait-bounded check performed after a stage's commands succeed."""

    kind: WaitKind
    probe: "Probe"
    interval_seconds: float = 5.0
    timeout_seconds: float = 120.0
    # Quality gates must choose explicitly; None is only valid for rollouts.
    abort_on_unfavorable: Optional[bool] = None


@dataclass(frozen=True)
class StageSpec:
    """Declarative description of one stage."""

    name: str
    ordinal: int
    commands: Tuple[CommandTemplate, ...] = ()
    secrets: Tuple[SecretRef, ...] = ()
    timeout_seconds: float = 600.0
    tolerate_failure: bool = False
    wait: Optional[WaitSpec] = None
    description: str = ""


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


@dataclass(frozen=True)
class StageResult:
    """Result of executing one StageSpec. Immutable once recorded."""

    stage_name: str
    ordinal: int
    status: StageStatus
    started_at: datetime
    completed_at: datetime
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    tolerated: bool = False
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None
    commands_run: int = 0
    verdict: Optional[Verdict] = None

    @property
    def failed(self) -> bool:
        return self.status == StageStatus.FAILED

    @property
    def aborts_run(self) -> bool:
        """Whether this result stops the pipeline."""
        return self.failed and not self.tolerated

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "stage_name": self.stage_name,
            "ordinal": self.ordinal,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "exit_code": self.exit_code,
            "tolerated": self.tolerated,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "error": self.error,
            "commands_run": self.commands_run,
            "verdict": self.verdict.value if self.verdict else None,
        }


@dataclass
class PipelineRun:
    """
    One execution of a pipeline.

    Mutated only by the engine through ``start``, ``record`` and ``finish``;
    any mutation once the run is terminal raises RunStateError.
    """

    job_name: str
    build_number: int = 1
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: RunStatus = RunStatus.PENDING
    stage_results: List[StageResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    link: Optional[str] = None
    attachments: Tuple[str, ...] = ()

    def start(self) -> None:
        if self.status != RunStatus.PENDING:
            raise RunStateError(f"run {self.run_id} cannot start from {self.status.value}")
        self.status = RunStatus.RUNNING
        self.started_at = datetime.now()

    def record(self, result: StageResult) -> None:
        if self.status != RunStatus.RUNNING:
            raise RunStateError(f"run {self.run_id} is {self.status.value}, cannot record stages")
        self.stage_results.append(result)

    def finish(self, status: RunStatus) -> None:
        if not status.terminal:
            raise RunStateError(f"{status.value} is not a terminal status")
        if self.terminal:
            raise RunStateError(f"run {self.run_id} already finished as {self.status.value}")
        self.status = status
        self.completed_at = datetime.now()

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def failed_stages(self) -> List[StageResult]:
        return [r for r in self.stage_results if r.failed]

    @property
    def aborting_stage(self) -> Optional[StageResult]:
        """The stage that stopped the run, if any."""
        for result in self.stage_results:
            if result.aborts_run:
                return result
        return None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def summary(self) -> str:
        """Generate a human-readable summary of the run."""
        lines = [
            f"{self.job_name} #{self.build_number}",
            f"Status: {self.status.value.upper()}",
        ]
        if self.duration_seconds is not None:
            lines.append(f"Duration: {self.duration_seconds:.1f}s")
        lines.extend(["", "Stages:"])

        for result in self.stage_results:
            if result.status == StageStatus.SUCCEEDED:
                icon = "✓"
            elif result.tolerated:
                icon = "!"
            else:
                icon = "✗"
            lines.append(f"  {icon} {result.stage_name} ({result.duration_seconds:.1f}s)")
            if result.error:
                lines.append(f"    {result.error}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "job_name": self.job_name,
            "build_number": self.build_number,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "link": self.link,
            "attachments": list(self.attachments),
            "stages": [r.to_dict() for r in self.stage_results],
        }


@dataclass(frozen=True)
class NotificationPayload:
    """Read-only view of a terminal run, sent through a notification channel."""

    job_name: str
    build_number: int
    status: RunStatus
    subject: str
    body: str
    color: str
    recipients: Tuple[str, ...] = ()
    link: Optional[str] = None
    attachments: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "build_number": self.build_number,
            "status": self.status.value,
            "subject": self.subject,
            "body": self.body,
            "color": self.color,
            "recipients": list(self.recipients),
            "link": self.link,
            "attachments": list(self.attachments),
        }


@dataclass(frozen=True)
class NotifyResult:
    """Whether a notification was delivered."""

    delivered: bool
    channel: str
    error: Optional[str] = None
