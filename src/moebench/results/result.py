from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, NamedTuple, Optional

from moebench.exceptions import OutOfOrderIteration, ValidationError

SCHEMA_VERSION = 1


class RunKey(NamedTuple):
    """(experiment, algorithm, problem): one algorithm-vs-problem execution stream."""
    expid: str
    algorithm: str
    problem: str

    def __str__(self) -> str:
        return f"{self.expid}/{self.algorithm}/{self.problem}"


def _metric_value(kind: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"metric {kind!r} must be a number, got {value!r}")
    value = float(value)
    if not math.isfinite(value):
        raise ValidationError(f"metric {kind!r} must be finite")
    return value


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{name} must be a positive integer, got {value!r}")
    return value


@dataclass(frozen=True, slots=True)
class IterationResult:
    iteration: int
    metric_values: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.iteration, bool) or not isinstance(self.iteration, int) or self.iteration < 0:
            raise ValidationError(f"iteration must be a non-negative integer, got {self.iteration!r}")
        values: Dict[str, float] = {}
        for kind, value in dict(self.metric_values).items():
            name = str(kind).strip()
            if not name:
                raise ValidationError("metric kind must not be empty")
            if name in values:
                raise ValidationError(f"duplicate metric kind {name!r}")
            values[name] = _metric_value(name, value)
        object.__setattr__(self, "metric_values", values)

    def to_dict(self) -> Dict[str, Any]:
        return {"iteration": self.iteration, "metricValues": dict(self.metric_values)}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "IterationResult":
        return IterationResult(iteration=int(d["iteration"]), metric_values=d.get("metricValues") or {})


@dataclass(slots=True)
class ExperimentResult:
    resid: str
    expid: str
    algorithm: str
    problem: str
    iterations: List[IterationResult] = field(default_factory=list)
    run_count: int = 1

    def __post_init__(self) -> None:
        self.run_count = _positive_int("run_count", self.run_count)
        last: Optional[int] = None
        for it in self.iterations:
            if last is not None and it.iteration <= last:
                raise ValidationError(f"iterations of {self.run_key} are not strictly increasing")
            last = it.iteration

    @property
    def run_key(self) -> RunKey:
        return RunKey(self.expid, self.algorithm, self.problem)

    @property
    def last_iteration(self) -> Optional[int]:
        return self.iterations[-1].iteration if self.iterations else None

    def has_iteration(self, iteration: int) -> bool:
        return any(it.iteration == iteration for it in self.iterations)

    def latest_metrics(self) -> Dict[str, float]:
        """Most recent value reported for each metric kind."""
        out: Dict[str, float] = {}
        for it in self.iterations:
            out.update(it.metric_values)
        return out

    def append(self, item: IterationResult) -> bool:
        """
        Append `item` if its index is past the last stored one.

        Returns False for an already recorded index (idempotent retry) and
        raises OutOfOrderIteration for an unseen index below the last one.
        """
        last = self.last_iteration
        if last is None or item.iteration > last:
            self.iterations.append(item)
            return True
        if self.has_iteration(item.iteration):
            return False
        raise OutOfOrderIteration(str(self.run_key), item.iteration, last)

    # -----------------------------
    # (De)serialization
    # -----------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": SCHEMA_VERSION,
            "id": self.resid,
            "experimentId": self.expid,
            "algorithm": self.algorithm,
            "problem": self.problem,
            "iterations": [it.to_dict() for it in self.iterations],
            "runCount": int(self.run_count),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ExperimentResult":
        return ExperimentResult(
            resid=str(d["id"]),
            expid=str(d["experimentId"]),
            algorithm=str(d["algorithm"]),
            problem=str(d["problem"]),
            iterations=[IterationResult.from_dict(x) for x in d.get("iterations", []) or []],
            run_count=int(d.get("runCount", 1)),
        )
