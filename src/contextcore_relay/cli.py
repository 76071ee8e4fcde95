"""
Command-line interface for ContextCore Relay.
"""

from __future__ import annotations

import json
import logging
import signal
import sys

import click

from contextcore_relay import __version__, configure
from contextcore_relay.config import configure_logging, get_config
from contextcore_relay.errors import ConfigurationError


@click.group()
@click.version_option(version=__version__)
def main():
    """ContextCore Relay - staged build, scan and deploy pipelines."""
    pass


@main.command()
@click.argument("definition", type=click.Path(exists=True, dir_okay=False))
@click.option("--job-name", "-j", help="Job name (default: from the definition)")
@click.option("--build-number", "-b", default=1, type=int, help="Build number")
@click.option("--secrets-dir", type=click.Path(file_okay=False), help="Directory of file-backed secrets")
@click.option("--webhook", help="Webhook URL for the final report")
@click.option("--output", "-o", default="text", type=click.Choice(["text", "json"]))
@click.option("--debug", is_flag=True, help="Enable debug logging")
def run(definition, job_name, build_number, secrets_dir, webhook, output, debug):
    """Run a pipeline definition and exit with its status."""
    from contextcore_relay.loader import load_definition
    from contextcore_relay.pipeline import Pipeline, exit_code_for
    from contextcore_relay.runner import CancelToken

    configure(secrets_dir=secrets_dir, webhook_url=webhook, log_level="DEBUG" if debug else None)
    configure_logging()

    try:
        pipeline = Pipeline.from_definition(
            load_definition(definition),
            build_number=build_number,
            job_name=job_name,
        )
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    cancel = CancelToken()

    def _interrupt(signum, frame):
        click.echo("Cancelling run...", err=True)
        cancel.cancel(f"received {signal.Signals(signum).name}")

    previous = signal.signal(signal.SIGINT, _interrupt)
    try:
        result = pipeline.run(cancel=cancel)
    finally:
        signal.signal(signal.SIGINT, previous)

    if output == "json":
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        click.echo(result.summary())

    sys.exit(exit_code_for(result.status))


@main.command()
@click.argument("definition", type=click.Path(exists=True, dir_okay=False))
def validate(definition):
    """Validate a pipeline definition without running it."""
    from contextcore_relay.loader import load_definition

    try:
        loaded = load_definition(definition)
    except ConfigurationError as e:
        click.echo(f"Invalid: {e}", err=True)
        sys.exit(1)

    click.echo(f"{loaded.name}: {len(loaded.stages)} stages")
    for spec in loaded.stages:
        flags = []
        if spec.tolerate_failure:
            flags.append("tolerates failure")
        if spec.wait is not None:
            flags.append(f"{spec.wait.kind.value} wait {spec.wait.timeout_seconds:g}s")
        if spec.secrets:
            flags.append(f"secrets: {', '.join(ref.name for ref in spec.secrets)}")
        suffix = f" ({'; '.join(flags)})" if flags else ""
        click.echo(f"  {spec.ordinal}. {spec.name} [{spec.timeout_seconds:g}s]{suffix}")


@main.command()
def config():
    """Show current configuration."""
    cfg = get_config()

    click.echo("ContextCore Relay Configuration")
    click.echo("=" * 40)
    click.echo(f"Default Stage Timeout: {cfg.default_stage_timeout:g}s")
    click.echo(f"Kill Grace: {cfg.kill_grace_seconds:g}s")
    click.echo(f"Max Output Bytes: {cfg.max_output_bytes}")
    click.echo(f"Inherit Environment: {cfg.inherit_env}")
    click.echo(f"Secret Prefix: {cfg.secret_prefix}")
    click.echo(f"Secrets Dir: {cfg.secrets_dir or 'Not configured'}")
    click.echo(f"Webhook URL: {cfg.webhook_url or 'Not configured'}")
    click.echo(f"Recipients: {', '.join(cfg.notify_recipients) or 'None'}")
    click.echo(f"Telemetry Enabled: {cfg.telemetry_enabled}")
    click.echo(f"Log Level: {cfg.log_level}")
