"""
Pipeline orchestration for staged build, scan and deploy runs.
"""

from contextcore_relay.pipeline.core import Pipeline, exit_code_for, validate_stage_specs
from contextcore_relay.pipeline.stage import Stage, execute
from contextcore_relay.pipeline.waits import CommandProbe, HttpProbe, Probe, wait_for_verdict

__all__ = [
    "Pipeline",
    "Stage",
    "execute",
    "exit_code_for",
    "validate_stage_specs",
    "Probe",
    "CommandProbe",
    "HttpProbe",
    "wait_for_verdict",
]
