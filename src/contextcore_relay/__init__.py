"""
ContextCore Relay - Staged build, scan and deploy pipeline engine.

Relay runs a declared sequence of stages:
    Build → Test → Analyze → Quality Gate → Package → Scan → Push → Deploy → Verify

Each stage resolves its credentials for its own duration only, runs external
commands under a hard timeout, and either aborts the run or has its failure
tolerated by explicit declaration. A notifier reports every run exactly once.
"""

from contextcore_relay.config import configure, get_config, RelayConfig
from contextcore_relay.pipeline import Pipeline
from contextcore_relay.models import (
    CommandTemplate,
    PipelineRun,
    RunStatus,
    SecretRef,
    SecretShape,
    StageResult,
    StageSpec,
    StageStatus,
    WaitKind,
    WaitSpec,
)

__version__ = "0.1.0"

__all__ = [
    # Config
    "configure",
    "get_config",
    "RelayConfig",
    # Pipeline
    "Pipeline",
    # Models
    "CommandTemplate",
    "PipelineRun",
    "RunStatus",
    "SecretRef",
    "SecretShape",
    "StageResult",
    "StageSpec",
    "StageStatus",
    "WaitKind",
    "WaitSpec",
    # Version
    "__version__",
]
