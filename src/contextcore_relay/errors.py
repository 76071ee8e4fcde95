"""
Error taxonomy for ContextCore Relay.
"""

from __future__ import annotations

from dataclasses import dataclass


class RelayError(Exception):
    """Base exception for pipeline, secret, runner, and notifier failures."""


class ConfigurationError(RelayError):
    """Raised when configuration or a stage declaration is invalid."""


class PipelineDefinitionError(ConfigurationError):
    """Raised when a pipeline definition cannot be loaded or violates ordering rules."""


class SecretError(RelayError):
    """Base class for secret resolution failures."""


@dataclass
class SecretNotFound(SecretError):
    """Raised when no backend knows the requested secret."""

    name: str

    def __str__(self) -> str:
        return f"secret '{self.name}' not found"


@dataclass
class SecretShapeMismatch(SecretError):
    """Raised when a stored secret has a different shape than the one declared."""

    name: str
    expected: str
    actual: str

    def __str__(self) -> str:
        return f"secret '{self.name}' is a {self.actual}, stage declared {self.expected}"


class RunnerFault(RelayError):
    """Raised when a command cannot be executed at all (spawn failure, exhaustion)."""


@dataclass
class StageFailure(RelayError):
    """A stage's command exited non-zero."""

    stage: str
    detail: str
    tolerated: bool = False

    def __str__(self) -> str:
        suffix = " (tolerated)" if self.tolerated else ""
        return f"stage '{self.stage}' failed: {self.detail}{suffix}"


@dataclass
class TimeoutExceeded(RelayError):
    """A bounded wait or command ran past its deadline."""

    what: str
    timeout_seconds: float

    def __str__(self) -> str:
        return f"{self.what} did not finish within {self.timeout_seconds:g}s"


@dataclass
class NotifyFailure(RelayError):
    """Dispatch of the final report failed."""

    channel: str
    detail: str

    def __str__(self) -> str:
        return f"notification via {self.channel} failed: {self.detail}"


class RunStateError(RelayError):
    """Raised on an illegal PipelineRun state transition."""
