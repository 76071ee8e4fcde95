"""
Post-run notification.

The engine calls ``dispatch`` exactly once per run after it reaches a
terminal status. Delivery failures are logged and reported, never raised.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence

import httpx

from contextcore_relay.config import get_config
from contextcore_relay.errors import NotifyFailure, RunStateError
from contextcore_relay.models import NotificationPayload, NotifyResult, PipelineRun, RunStatus

logger = logging.getLogger(__name__)

STATUS_COLORS = {
    RunStatus.SUCCEEDED: "#2eb886",
    RunStatus.FAILED: "#d00000",
    RunStatus.ABORTED: "#9e9e9e",
}


def build_payload(run: PipelineRun, recipients: Sequence[str] = ()) -> NotificationPayload:
    """
    Build the notification view of a terminal run.

    Raises:
        RunStateError: The run has not finished yet
    """
    if not run.terminal:
        raise RunStateError(f"run {run.run_id} is {run.status.value}, not terminal")

    body = run.summary()
    if run.link:
        body += f"\n\nDetails: {run.link}"

    return NotificationPayload(
        job_name=run.job_name,
        build_number=run.build_number,
        status=run.status,
        subject=f"{run.job_name} #{run.build_number}: {run.status.value.upper()}",
        body=body,
        color=STATUS_COLORS[run.status],
        recipients=tuple(recipients),
        link=run.link,
        attachments=run.attachments,
    )


class Notifier(ABC):
    """Sends the final run report through one channel."""

    channel: str = "base"

    def __init__(self, recipients: Iterable[str] = ()) -> None:
        self.recipients = tuple(recipients)

    @abstractmethod
    def send(self, payload: NotificationPayload) -> NotifyResult:
        """Deliver a payload. May raise; ``dispatch`` converts errors."""
        ...

    def notify(self, run: PipelineRun) -> NotifyResult:
        """Format the run and send it."""
        return self.send(build_payload(run, self.recipients))


class LogNotifier(Notifier):
    """Writes the report to the log."""

    channel = "log"

    def send(self, payload: NotificationPayload) -> NotifyResult:
        level = logging.INFO if payload.status == RunStatus.SUCCEEDED else logging.WARNING
        logger.log(level, f"{payload.subject}\n{payload.body}")
        return NotifyResult(delivered=True, channel=self.channel)


class WebhookNotifier(Notifier):
    """POSTs the payload as JSON to a chat or webhook endpoint."""

    channel = "webhook"

    def __init__(
        self,
        url: str,
        recipients: Iterable[str] = (),
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__(recipients)
        self.url = url
        self.timeout = timeout if timeout is not None else get_config().notify_timeout
        self.client = client

    def send(self, payload: NotificationPayload) -> NotifyResult:
        try:
            if self.client is not None:
                response = self.client.post(self.url, json=payload.to_dict(), timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, json=payload.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as e:
            failure = NotifyFailure(self.channel, str(e))
            logger.error(str(failure))
            return NotifyResult(delivered=False, channel=self.channel, error=str(failure))

        return NotifyResult(delivered=True, channel=self.channel)


class CompositeNotifier(Notifier):
    """Sends through every channel; delivered if any channel delivered."""

    channel = "composite"

    def __init__(self, notifiers: Iterable[Notifier], recipients: Optional[Iterable[str]] = None) -> None:
        self.notifiers: List[Notifier] = list(notifiers)
        if recipients is None:
            # Union of the channels' recipients, first occurrence wins.
            recipients = dict.fromkeys(r for n in self.notifiers for r in n.recipients)
        super().__init__(recipients)

    def send(self, payload: NotificationPayload) -> NotifyResult:
        results = [_guarded_send(n, payload) for n in self.notifiers]
        errors = [r.error for r in results if r.error]
        return NotifyResult(
            delivered=any(r.delivered for r in results),
            channel=self.channel,
            error="; ".join(errors) if errors else None,
        )


def _guarded_send(notifier: Notifier, payload: NotificationPayload) -> NotifyResult:
    try:
        return notifier.send(payload)
    except Exception as e:
        failure = NotifyFailure(notifier.channel, f"{type(e).__name__}: {e}")
        logger.error(str(failure))
        return NotifyResult(delivered=False, channel=notifier.channel, error=str(failure))


def dispatch(notifier: Notifier, run: PipelineRun) -> NotifyResult:
    """Notify for a terminal run. Never raises; failures are logged and returned."""
    try:
        result = notifier.notify(run)
    except Exception as e:
        failure = NotifyFailure(notifier.channel, f"{type(e).__name__}: {e}")
        logger.error(str(failure))
        return NotifyResult(delivered=False, channel=notifier.channel, error=str(failure))

    if not result.delivered:
        logger.warning(f"Notification for {run.job_name} #{run.build_number} not delivered")
    return result


def default_notifier() -> Notifier:
    """Log notifier, plus a webhook notifier when RELAY_WEBHOOK_URL is set."""
    config = get_config()
    log = LogNotifier(config.notify_recipients)
    if not config.webhook_url:
        return log
    return CompositeNotifier(
        [log, WebhookNotifier(config.webhook_url, config.notify_recipients, config.notify_timeout)],
        recipients=config.notify_recipients,
    )
