from __future__ import annotations

from typing import Any, Optional


class MoebenchError(Exception):
    pass


class ValidationError(MoebenchError, ValueError):
    """Malformed input for a create/update operation."""
    pass


class NotFound(MoebenchError, LookupError):
    """An id has no matching document."""

    def __init__(self, kind: str, key: Any) -> None:
        super().__init__(f"{kind} {key!r} not found")
        self.kind = kind
        self.key = key


class ExperimentNotFound(NotFound):
    def __init__(self, expid: str) -> None:
        super().__init__("Experiment", expid)
        self.expid = expid


class IllegalStateTransition(MoebenchError):
    def __init__(self, expid: str, current: Any, target: Any) -> None:
        super().__init__(f"Experiment {expid!r}: illegal status transition {current} -> {target}")
        self.expid = expid
        self.current = current
        self.target = target


class ExperimentClosed(MoebenchError):
    """Result submitted against an experiment in a terminal state."""

    def __init__(self, expid: str, status: Any) -> None:
        super().__init__(f"Experiment {expid!r} is closed ({status}); results are not accepted")
        self.expid = expid
        self.status = status


class OutOfOrderIteration(MoebenchError):
    def __init__(self, run_key: Any, iteration: int, last: Optional[int]) -> None:
        super().__init__(
            f"Iteration {iteration} for {run_key} arrived after iteration {last} and was not recorded before"
        )
        self.run_key = run_key
        self.iteration = iteration
        self.last = last


class ConcurrentModification(MoebenchError):
    """A conditional write kept losing against concurrent writers."""
    pass


class StorageError(MoebenchError):
    """Transport/storage failure, distinct from the domain errors above."""
    pass
