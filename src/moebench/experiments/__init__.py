# src/moebench/experiments/__init__.py
"""
Experiment API.

This package intentionally exposes a small public surface:
- Dataclasses representing experiment state
- Status enum and its transition table
- Metastore-backed persistence + atomic update helper (ExperimentStore)
"""

from __future__ import annotations

from .experiment import (
    TERMINAL_STATES,
    TRANSITIONS,
    Experiment,
    ExperimentSpec,
    ExperimentStatus,
)
from .store import (
    ExperimentStore,
    experiment_path,
    EXPERIMENTS_ROOT,
)

__all__ = [
    "ExperimentStatus",
    "ExperimentSpec",
    "Experiment",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "ExperimentStore",
    "experiment_path",
    "EXPERIMENTS_ROOT",
]
