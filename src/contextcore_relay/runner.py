"""
External command execution.

The CommandRunner is the only place processes are spawned, so it owns
timeout enforcement and cancellation for every stage.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from typing import Dict, Mapping, Optional, Sequence

from contextcore_relay.config import get_config
from contextcore_relay.errors import RunnerFault
from contextcore_relay.models import CommandResult

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1
_TRUNCATED = "...[truncated]\n"


class CancelToken:
    """Thread-safe cancellation flag shared by the engine, stages and runner."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True early if cancelled."""
        return self._event.wait(timeout)


class CommandRunner:
    """
    Runs one external command with a captured environment and a hard timeout.

    A non-zero exit is a normal result. Only failures to execute at all
    surface as RunnerFault.
    """

    def __init__(
        self,
        kill_grace_seconds: Optional[float] = None,
        max_output_bytes: Optional[int] = None,
        inherit_env: Optional[bool] = None,
    ) -> None:
        config = get_config()
        self.kill_grace_seconds = (
            kill_grace_seconds if kill_grace_seconds is not None else config.kill_grace_seconds
        )
        self.max_output_bytes = (
            max_output_bytes if max_output_bytes is not None else config.max_output_bytes
        )
        self.inherit_env = inherit_env if inherit_env is not None else config.inherit_env

    def build_env(self, env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Child environment: parent env (when inherited) overlaid with ``env``."""
        if self.inherit_env:
            child = dict(os.environ)
        else:
            child = {"PATH": os.environ.get("PATH", os.defpath)}
        child.update(env or {})
        return child

    def run(
        self,
        argv: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        timeout_seconds: float = 600.0,
        cwd: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> CommandResult:
        """
        Execute a command.

        Args:
            argv: Program and arguments
            env: Extra environment variables for the child
            timeout_seconds: Hard limit; the process group is killed after it
            cwd: Working directory
            cancel: Token that terminates the process when set

        Returns:
            CommandResult with exit code, captured output and timeout/cancel flags

        Raises:
            RunnerFault: The process could not be spawned
        """
        if timeout_seconds <= 0:
            return CommandResult(exit_code=-1, timed_out=True)

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=self.build_env(env),
                start_new_session=os.name == "posix",
            )
        except (OSError, ValueError) as e:
            raise RunnerFault(f"cannot execute {argv[0] if argv else '<empty>'}: {e}") from e

        deadline = started + timeout_seconds
        timed_out = False
        cancelled = False
        while True:
            if cancel is not None and cancel.cancelled:
                cancelled = True
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            try:
                stdout, stderr = proc.communicate(timeout=min(_POLL_SECONDS, remaining))
                break
            except subprocess.TimeoutExpired:
                continue

        if timed_out or cancelled:
            why = "timed out" if timed_out else "cancelled"
            logger.warning(f"Command {argv[0]} {why} after {time.monotonic() - started:.1f}s, terminating")
            stdout, stderr = self._terminate(proc)

        return CommandResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=self._clip(stdout),
            stderr=self._clip(stderr),
            timed_out=timed_out,
            cancelled=cancelled,
            duration_seconds=time.monotonic() - started,
        )

    def _terminate(self, proc: subprocess.Popen) -> tuple:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        self._signal(proc, signal.SIGTERM)
        try:
            return proc.communicate(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            return proc.communicate()

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def _clip(self, data: Optional[bytes]) -> str:
        if not data:
            return ""
        if len(data) > self.max_output_bytes:
            data = data[-self.max_output_bytes :]
            return _TRUNCATED + data.decode("utf-8", errors="replace")
        return data.decode("utf-8", errors="replace")
