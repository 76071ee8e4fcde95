from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

import pytest

from contextcore_relay.config import reset_config
from contextcore_relay.credentials import MappingSecretResolver
from contextcore_relay.models import (
    CommandResult,
    CommandTemplate,
    NotificationPayload,
    NotifyResult,
    PipelineRun,
    StageSpec,
    Verdict,
)
from contextcore_relay.notify import Notifier
from contextcore_relay.pipeline.waits import Probe
from contextcore_relay.runner import CommandRunner

PYTHON = sys.executable


@pytest.fixture(autouse=True)
def clean_config(monkeypatch: pytest.MonkeyPatch):
    for name in [
        "RELAY_WEBHOOK_URL",
        "RELAY_SECRETS_DIR",
        "RELAY_TELEMETRY_ENABLED",
        "RELAY_BUILD_URL",
        "RELAY_NOTIFY_RECIPIENTS",
    ]:
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@dataclass
class Call:
    argv: List[str]
    env: Dict[str, str]
    timeout_seconds: float
    cwd: Optional[str]


Scripted = Union[CommandResult, Exception, Callable[[List[str], Dict[str, str]], CommandResult]]


class FakeRunner(CommandRunner):
    """Records calls and returns scripted results keyed by program name."""

    def __init__(self, scripted: Optional[Mapping[str, Scripted]] = None) -> None:
        super().__init__(kill_grace_seconds=0.1, max_output_bytes=10_000, inherit_env=False)
        self.scripted: Dict[str, Scripted] = dict(scripted or {})
        self.calls: List[Call] = []

    @property
    def programs(self) -> List[str]:
        return [call.argv[0] for call in self.calls]

    def run(self, argv, env=None, timeout_seconds=600.0, cwd=None, cancel=None) -> CommandResult:
        argv = list(argv)
        env = dict(env or {})
        self.calls.append(Call(argv, env, timeout_seconds, cwd))
        outcome = self.scripted.get(argv[0], CommandResult(exit_code=0))
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(argv, env)
        return outcome


class RecordingNotifier(Notifier):
    channel = "recording"

    def __init__(self) -> None:
        super().__init__(["team@example.com"])
        self.runs: List[PipelineRun] = []
        self.payloads: List[NotificationPayload] = []

    def notify(self, run: PipelineRun) -> NotifyResult:
        self.runs.append(run)
        return super().notify(run)

    def send(self, payload: NotificationPayload) -> NotifyResult:
        self.payloads.append(payload)
        return NotifyResult(delivered=True, channel=self.channel)


class ScriptedProbe(Probe):
    """Returns verdicts from a list; the last one repeats."""

    description = "scripted probe"

    def __init__(self, verdicts: Sequence[Verdict]) -> None:
        self.verdicts = list(verdicts)
        self.polls = 0

    def check(self, bindings, runner, cancel=None, timeout_seconds=30.0) -> Verdict:
        verdict = self.verdicts[min(self.polls, len(self.verdicts) - 1)]
        self.polls += 1
        return verdict


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def stage(name: str, ordinal: int, *commands: str, **kwargs) -> StageSpec:
    """Shorthand for a StageSpec whose commands are strings."""
    if not commands:
        commands = (name,)
    return StageSpec(
        name=name,
        ordinal=ordinal,
        commands=tuple(CommandTemplate.parse(c) for c in commands),
        **kwargs,
    )


def failing(exit_code: int = 1, stderr: str = "boom") -> CommandResult:
    return CommandResult(exit_code=exit_code, stderr=stderr)


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def resolver() -> MappingSecretResolver:
    return MappingSecretResolver(
        {
            "registry": ("deploy", "s3cr3t-pass"),
            "sonar-token": "tok-123456",
            "kubeconfig": b"apiVersion: v1\nkind: Config\n",
        }
    )


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def real_runner() -> CommandRunner:
    return CommandRunner(kill_grace_seconds=1.0, max_output_bytes=10_000, inherit_env=True)
