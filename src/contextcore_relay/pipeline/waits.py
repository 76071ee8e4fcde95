"""
Wait-bounded checks: quality gates and rollout verification.

A probe asks an external system for a verdict; ``wait_for_verdict`` polls it
on a fixed interval until the verdict is final or the deadline passes.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from string import Template
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import httpx

from contextcore_relay.errors import ConfigurationError, TimeoutExceeded
from contextcore_relay.models import CommandTemplate, Verdict
from contextcore_relay.runner import CancelToken, CommandRunner

logger = logging.getLogger(__name__)


class Probe(ABC):
    """Asks an external system for a pass/fail/pending verdict."""

    description: str = "probe"

    @abstractmethod
    def check(
        self,
        bindings: Mapping[str, str],
        runner: CommandRunner,
        cancel: Optional[CancelToken] = None,
        timeout_seconds: float = 30.0,
    ) -> Verdict:
        """
        Perform one check.

        Args:
            bindings: Secret bindings of the owning stage
            runner: Command runner for command-based probes
            cancel: Cancellation token of the run
            timeout_seconds: Upper bound for this single check

        Returns:
            Verdict for this poll
        """
        ...


class CommandProbe(Probe):
    """
    Runs a command per poll.

    Exit 0 passes, an exit code in ``fail_exit_codes`` fails, anything else is
    still pending (for example ``kubectl rollout status`` before readiness).
    """

    def __init__(
        self,
        command: CommandTemplate,
        fail_exit_codes: Iterable[int] = (),
        check_timeout_seconds: float = 30.0,
    ) -> None:
        self.command = command
        self.fail_exit_codes = frozenset(fail_exit_codes)
        self.check_timeout_seconds = check_timeout_seconds
        self.description = command.display

    def check(self, bindings, runner, cancel=None, timeout_seconds=30.0) -> Verdict:
        argv, env = self.command.render(bindings)
        result = runner.run(
            argv,
            env={**bindings, **env},
            timeout_seconds=min(self.check_timeout_seconds, timeout_seconds),
            cwd=self.command.cwd,
            cancel=cancel,
        )
        if result.ok:
            return Verdict.PASSED
        if not result.timed_out and result.exit_code in self.fail_exit_codes:
            return Verdict.FAILED
        return Verdict.PENDING


def _dig(data: Any, path: str) -> Any:
    for part in path.split("."):
        if not isinstance(data, Mapping):
            return None
        data = data.get(part)
    return data


class HttpProbe(Probe):
    """
    Polls a JSON endpoint (for example a code-quality server's gate status).

    The value at the dotted ``field`` path decides the verdict. HTTP errors
    count as pending; the overall wait deadline bounds them.
    """

    def __init__(
        self,
        url: str,
        field: str,
        pass_values: Sequence[str] = ("OK",),
        fail_values: Sequence[str] = ("ERROR",),
        auth_variable: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.field = field
        self.pass_values = {str(v) for v in pass_values}
        self.fail_values = {str(v) for v in fail_values}
        self.auth_variable = auth_variable
        self.client = client
        self.description = f"GET {url}"

    def _request_kwargs(self, bindings: Mapping[str, str]) -> dict:
        if not self.auth_variable:
            return {}
        var = self.auth_variable
        if f"{var}_USR" in bindings:
            return {"auth": (bindings[f"{var}_USR"], bindings.get(f"{var}_PSW", ""))}
        if var in bindings:
            return {"headers": {"Authorization": f"Bearer {bindings[var]}"}}
        raise ConfigurationError(f"probe auth variable {var!r} is not bound by the stage's secrets")

    def check(self, bindings, runner, cancel=None, timeout_seconds=30.0) -> Verdict:
        if timeout_seconds <= 0:
            return Verdict.PENDING
        try:
            url = Template(self.url).substitute(bindings)
        except KeyError as e:
            raise ConfigurationError(f"unknown placeholder {e.args[0]!r} in probe url") from e

        kwargs = self._request_kwargs(bindings)
        try:
            if self.client is not None:
                response = self.client.get(url, timeout=timeout_seconds, **kwargs)
            else:
                with httpx.Client(timeout=timeout_seconds) as client:
                    response = client.get(url, **kwargs)
            response.raise_for_status()
            value = _dig(response.json(), self.field)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Probe {self.description} failed, treating as pending: {e}")
            return Verdict.PENDING

        if value is not None and str(value) in self.pass_values:
            return Verdict.PASSED
        if value is not None and str(value) in self.fail_values:
            return Verdict.FAILED
        return Verdict.PENDING


def wait_for_verdict(
    probe: Probe,
    interval_seconds: float,
    timeout_seconds: float,
    bindings: Mapping[str, str],
    runner: CommandRunner,
    cancel: Optional[CancelToken] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Optional[Callable[[float], None]] = None,
) -> Optional[Verdict]:
    """
    Poll ``probe`` until it returns a final verdict.

    Returns:
        PASSED or FAILED, or None if the run was cancelled while waiting

    Raises:
        TimeoutExceeded: No final verdict before ``timeout_seconds`` elapsed
    """
    deadline = clock() + timeout_seconds
    polls = 0

    while True:
        if cancel is not None and cancel.cancelled:
            return None

        remaining = max(deadline - clock(), 0.0)
        verdict = probe.check(bindings, runner, cancel, timeout_seconds=remaining)
        polls += 1
        if verdict != Verdict.PENDING:
            logger.info(f"{probe.description}: {verdict.value} after {polls} poll(s)")
            return verdict

        remaining = deadline - clock()
        if remaining <= 0:
            raise TimeoutExceeded(f"waiting on {probe.description}", timeout_seconds)

        pause = min(interval_seconds, remaining)
        logger.debug(f"{probe.description}: pending, next poll in {pause:.1f}s")
        if sleep is not None:
            sleep(pause)
        elif cancel is not None:
            cancel.wait(pause)
        else:
            time.sleep(pause)
