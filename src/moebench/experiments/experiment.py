from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional

from moebench.exceptions import IllegalStateTransition, ValidationError

SCHEMA_VERSION = 1


class ExperimentStatus(IntEnum):
    PENDING = 1
    RUNNING = 2
    FINISHED = 3
    FAILED = 4

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @classmethod
    def parse(cls, value: Any) -> "ExperimentStatus":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.upper()]
            except KeyError:
                raise ValidationError(f"Unknown experiment status {value!r}") from None
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            raise ValidationError(f"Unknown experiment status {value!r}") from None


TERMINAL_STATES = frozenset({ExperimentStatus.FINISHED, ExperimentStatus.FAILED})

# from -> allowed targets
TRANSITIONS: Dict[ExperimentStatus, frozenset[ExperimentStatus]] = {
    ExperimentStatus.PENDING: frozenset({ExperimentStatus.RUNNING}),
    ExperimentStatus.RUNNING: frozenset({ExperimentStatus.FINISHED, ExperimentStatus.FAILED}),
    ExperimentStatus.FINISHED: frozenset(),
    ExperimentStatus.FAILED: frozenset(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _names(values: Optional[Iterable[Any]], what: str) -> List[str]:
    if values is None:
        return []
    if isinstance(values, str):
        raise ValidationError(f"{what} must be a collection of names, not a string")
    out = set()
    for v in values:
        s = str(v).strip()
        if not s:
            raise ValidationError(f"{what} contains an empty name")
        out.add(s)
    return sorted(out)


def _budget(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"budget must be an integer, got {value!r}")
    if value <= 0:
        raise ValidationError("budget must be > 0")
    return value


def _ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True, slots=True)
class ExperimentSpec:
    """
    Caller-supplied configuration for a new experiment.
    """
    budget: int
    algorithms: Iterable[str] = ()
    problems: Iterable[str] = ()
    metrics: Iterable[str] = ()


@dataclass(slots=True)
class Experiment:
    expid: str
    budget: int
    algorithms: List[str] = field(default_factory=list)
    problems: List[str] = field(default_factory=list)
    metrics: List[str] = field(default_factory=list)
    status: ExperimentStatus = ExperimentStatus.PENDING
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None

    def __post_init__(self) -> None:
        self.budget = _budget(self.budget)
        self.algorithms = _names(self.algorithms, "algorithms")
        self.problems = _names(self.problems, "problems")
        self.metrics = _names(self.metrics, "metrics")
        self.status = ExperimentStatus.parse(self.status)

    @classmethod
    def from_spec(cls, expid: str, spec: ExperimentSpec, *, now: Optional[datetime] = None) -> "Experiment":
        return cls(
            expid=expid,
            budget=spec.budget,
            algorithms=spec.algorithms,
            problems=spec.problems,
            metrics=spec.metrics,
            start_time=now or utcnow(),
        )

    @property
    def is_closed(self) -> bool:
        return self.status.is_terminal

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def transition(
        self,
        target: ExperimentStatus,
        *,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Move to `target`, enforcing the status state machine.

        end_time is stamped on entering a terminal state; error_message is only
        accepted (and required to be a string) for FAILED.
        """
        target = ExperimentStatus.parse(target)
        if target not in TRANSITIONS[self.status]:
            raise IllegalStateTransition(self.expid, self.status.name, target.name)

        if error_message is not None and target != ExperimentStatus.FAILED:
            raise ValidationError("error_message is only allowed when failing an experiment")

        if target == ExperimentStatus.RUNNING and not self.algorithms:
            raise ValidationError(f"Experiment {self.expid!r} cannot start without algorithms")

        self.status = target
        if target.is_terminal:
            self.end_time = now or utcnow()
        if target == ExperimentStatus.FAILED:
            self.error_message = error_message if error_message is not None else ""

    def reconfigure(
        self,
        *,
        algorithms: Optional[Iterable[str]] = None,
        problems: Optional[Iterable[str]] = None,
        metrics: Optional[Iterable[str]] = None,
        budget: Optional[int] = None,
    ) -> None:
        if self.status != ExperimentStatus.PENDING:
            raise IllegalStateTransition(self.expid, self.status.name, "reconfigure")
        if budget is not None:
            self.budget = _budget(budget)
        if algorithms is not None:
            self.algorithms = _names(algorithms, "algorithms")
        if problems is not None:
            self.problems = _names(problems, "problems")
        if metrics is not None:
            self.metrics = _names(metrics, "metrics")

    # -----------------------------
    # (De)serialization
    # -----------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schemaVersion": SCHEMA_VERSION,
            "id": self.expid,
            "algorithms": list(self.algorithms),
            "problems": list(self.problems),
            "metrics": list(self.metrics),
            "budget": int(self.budget),
            "status": self.status.name,
            "startTime": self.start_time.isoformat(),
            "endTime": None if self.end_time is None else self.end_time.isoformat(),
            "errorMessage": self.error_message,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Experiment":
        return Experiment(
            expid=str(d["id"]),
            budget=int(d["budget"]),
            algorithms=list(d.get("algorithms", []) or []),
            problems=list(d.get("problems", []) or []),
            metrics=list(d.get("metrics", []) or []),
            status=ExperimentStatus.parse(d.get("status", ExperimentStatus.PENDING.name)),
            start_time=datetime.fromisoformat(d["startTime"]),
            end_time=_ts(d.get("endTime")),
            error_message=d.get("errorMessage"),
        )
