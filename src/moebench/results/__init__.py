# src/moebench/results/__init__.py
"""
Result API: per-run-key iteration history and its Metastore-backed store.
"""

from __future__ import annotations

from .result import ExperimentResult, IterationResult, RunKey
from .store import (
    ResultStore,
    results_path,
    run_key_path,
    RESULTS_ROOT,
)

__all__ = [
    "RunKey",
    "IterationResult",
    "ExperimentResult",
    "ResultStore",
    "results_path",
    "run_key_path",
    "RESULTS_ROOT",
]
