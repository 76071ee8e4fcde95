"""
Pipeline definition files (TOML).
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from contextcore_relay.config import get_config
from contextcore_relay.errors import ConfigurationError, PipelineDefinitionError
from contextcore_relay.models import CommandTemplate, SecretRef, SecretShape, StageSpec, WaitKind, WaitSpec
from contextcore_relay.pipeline.core import validate_stage_specs
from contextcore_relay.pipeline.waits import CommandProbe, HttpProbe, Probe


@dataclass(frozen=True)
class PipelineDefinition:
    """A loaded pipeline: its name, ordered stages and notification extras."""

    name: str
    stages: Tuple[StageSpec, ...]
    link: Optional[str] = None
    attachments: Tuple[str, ...] = ()
    source: Optional[Path] = None


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise PipelineDefinitionError(f"cannot read pipeline definition '{path}': {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise PipelineDefinitionError(f"invalid TOML in '{path}': {exc}") from exc


def load_definition(path: Union[str, Path]) -> PipelineDefinition:
    """
    Load and validate a pipeline definition file.

    Raises:
        PipelineDefinitionError: Unreadable file, bad TOML, or invalid stages
    """
    definition_path = Path(path).expanduser().resolve()
    raw = _read_toml(definition_path)
    try:
        return parse_definition(raw, source=definition_path)
    except PipelineDefinitionError as exc:
        raise PipelineDefinitionError(f"{definition_path}: {exc}") from exc


def parse_definition(raw: Mapping[str, Any], source: Optional[Path] = None) -> PipelineDefinition:
    """Build a PipelineDefinition from already-parsed TOML data."""
    pipeline = raw.get("pipeline", {})
    if not isinstance(pipeline, Mapping):
        raise PipelineDefinitionError("[pipeline] must be a table")

    raw_stages = raw.get("stages", [])
    if not isinstance(raw_stages, list) or not raw_stages:
        raise PipelineDefinitionError("at least one [[stages]] entry is required")

    stages: List[StageSpec] = []
    previous_ordinal = 0
    for index, entry in enumerate(raw_stages):
        if not isinstance(entry, Mapping):
            raise PipelineDefinitionError(f"stage #{index + 1} must be a table")
        label = entry.get("name") or f"#{index + 1}"
        try:
            spec = _parse_stage(entry, previous_ordinal + 1)
        except (ConfigurationError, TypeError, ValueError) as exc:
            raise PipelineDefinitionError(f"stage '{label}': {exc}") from exc
        stages.append(spec)
        previous_ordinal = spec.ordinal

    validate_stage_specs(stages)

    name = pipeline.get("name") or (source.stem if source else "pipeline")
    attachments = pipeline.get("attachments", [])
    if not isinstance(attachments, list):
        raise PipelineDefinitionError("pipeline.attachments must be a list")

    return PipelineDefinition(
        name=str(name),
        stages=tuple(stages),
        link=pipeline.get("link"),
        attachments=tuple(str(a) for a in attachments),
        source=source,
    )


def _parse_stage(entry: Mapping[str, Any], default_ordinal: int) -> StageSpec:
    name = entry.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigurationError("'name' is required")

    ordinal = entry.get("ordinal", default_ordinal)
    if not isinstance(ordinal, int) or isinstance(ordinal, bool):
        raise ConfigurationError("'ordinal' must be an integer")

    raw_commands = entry.get("commands", [])
    if not isinstance(raw_commands, list):
        raise ConfigurationError("'commands' must be a list")

    wait = entry.get("wait")
    return StageSpec(
        name=name,
        ordinal=ordinal,
        commands=tuple(_parse_command(c) for c in raw_commands),
        secrets=tuple(_parse_secret(s) for s in entry.get("secrets", [])),
        timeout_seconds=float(entry.get("timeout", get_config().default_stage_timeout)),
        tolerate_failure=_bool(entry.get("tolerate_failure", False), "tolerate_failure"),
        wait=_parse_wait(wait) if wait is not None else None,
        description=str(entry.get("description", "")),
    )


def _bool(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"'{key}' must be true or false")
    return value


def _parse_command(raw: Any) -> CommandTemplate:
    if isinstance(raw, (str, list)):
        return CommandTemplate.parse(raw)
    if isinstance(raw, Mapping):
        if "run" not in raw:
            raise ConfigurationError("command tables need a 'run' key")
        timeout = raw.get("timeout")
        return CommandTemplate.parse(
            raw["run"],
            env={str(k): str(v) for k, v in raw.get("env", {}).items()},
            cwd=raw.get("cwd"),
            timeout_seconds=float(timeout) if timeout is not None else None,
        )
    raise ConfigurationError("each command must be a string, an argv list, or a table")


def _parse_secret(raw: Any) -> SecretRef:
    if isinstance(raw, str):
        return SecretRef(name=raw)
    if not isinstance(raw, Mapping) or "name" not in raw:
        raise ConfigurationError("secrets must be names or tables with a 'name'")
    shape = raw.get("shape", SecretShape.STRING.value)
    try:
        shape = SecretShape(shape)
    except ValueError:
        choices = ", ".join(s.value for s in SecretShape)
        raise ConfigurationError(f"secret '{raw['name']}' shape must be one of {choices}") from None
    return SecretRef(name=str(raw["name"]), shape=shape, variable=raw.get("variable"))


def _parse_wait(raw: Any) -> WaitSpec:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("'wait' must be a table")
    try:
        kind = WaitKind(raw.get("kind"))
    except ValueError:
        raise ConfigurationError("wait.kind must be 'quality_gate' or 'rollout'") from None

    abort = raw.get("abort_on_unfavorable")
    return WaitSpec(
        kind=kind,
        probe=_parse_probe(raw.get("probe")),
        interval_seconds=float(raw.get("interval", 5)),
        timeout_seconds=float(raw.get("timeout", 120)),
        abort_on_unfavorable=_bool(abort, "abort_on_unfavorable") if abort is not None else None,
    )


def _parse_probe(raw: Any) -> Probe:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("wait.probe must be a table")
    if "command" in raw:
        return CommandProbe(
            CommandTemplate.parse(raw["command"]),
            fail_exit_codes=[int(c) for c in raw.get("fail_exit_codes", [])],
            check_timeout_seconds=float(raw.get("check_timeout", 30)),
        )
    if "url" in raw:
        if "field" not in raw:
            raise ConfigurationError("http probes need a 'field'")
        return HttpProbe(
            url=str(raw["url"]),
            field=str(raw["field"]),
            pass_values=[str(v) for v in raw.get("pass", ["OK"])],
            fail_values=[str(v) for v in raw.get("fail", ["ERROR"])],
            auth_variable=raw.get("auth"),
        )
    raise ConfigurationError("wait.probe needs either 'command' or 'url'")
