# src/moebench/experiments/store.py
from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from kazoo.exceptions import NoNodeError

from moebench.exceptions import ExperimentClosed, ExperimentNotFound, StorageError
from moebench.ids import IdentifierAllocator
from moebench.metastore import Metastore, Precondition
from .experiment import (
    Experiment,
    ExperimentSpec,
    ExperimentStatus,
)

EXPERIMENTS_ROOT = "/experiments"

logger = logging.getLogger(__name__)


def experiment_path(expid: str) -> str:
    return f"{EXPERIMENTS_ROOT}/{expid}"


class ExperimentStore:
    """
    Persistence & atomic update helper around Metastore.
    Stores each experiment as a SINGLE key (one znode) to guarantee:
      - load/store/update in a single "transaction" (single znode set/CAS)
      - linearizable status transitions via metastore.atomic_update_key()

    Deleting an experiment here does not touch its results; use
    ConsistencyCoordinator.delete_experiment_and_results() for that.
    """

    def __init__(self, metastore: Metastore, ids: Optional[IdentifierAllocator] = None):
        self.metastore = metastore
        self.ids = ids or IdentifierAllocator()
        metastore.ensure_structure([EXPERIMENTS_ROOT])

    # -----------------------------
    # CRUD
    # -----------------------------

    def create(self, spec: ExperimentSpec) -> Experiment:
        exp = Experiment.from_spec(self.ids.new_id(), spec)
        if not self.metastore.create_key(experiment_path(exp.expid), exp.to_dict()):
            raise StorageError(f"Experiment id {exp.expid!r} already allocated")
        logger.info("Created experiment %s (budget=%d)", exp.expid, exp.budget)
        return exp

    def get(self, expid: str) -> Experiment:
        raw = self.metastore.get_key(experiment_path(expid))
        if raw is None:
            raise ExperimentNotFound(expid)
        if not isinstance(raw, dict):
            raise TypeError(f"Unexpected experiment payload type: {type(raw)}")
        return Experiment.from_dict(raw)

    def exists(self, expid: str) -> bool:
        return experiment_path(expid) in self.metastore

    def delete(self, expid: str) -> bool:
        dropped = self.metastore.drop_key(experiment_path(expid))
        if dropped:
            logger.info("Deleted experiment %s", expid)
        return dropped

    def list_expids(self) -> list[str]:
        """
        List known experiments (child names under EXPERIMENTS_ROOT), in id order.
        """
        return sorted(self.metastore.list_members(EXPERIMENTS_ROOT))

    def list_experiments(self) -> list[Experiment]:
        exps: list[Experiment] = []
        for expid in self.list_expids():
            try:
                exps.append(self.get(expid))
            except ExperimentNotFound:
                # Experiment disappeared between list and load; ignore.
                continue
        return exps

    def list_by_status(self, status: ExperimentStatus | str) -> list[Experiment]:
        wanted = ExperimentStatus.parse(status)
        return [e for e in self.list_experiments() if e.status == wanted]

    def accepting_results(self, expid: str) -> Precondition:
        """
        Guard for writes that may only land while `expid` exists and is open.

        Raises ExperimentNotFound / ExperimentClosed when checked, and makes the
        guarded write fail over if the experiment document changes before it
        commits.
        """

        def check(raw: Any) -> None:
            if raw is None:
                raise ExperimentNotFound(expid)
            exp = Experiment.from_dict(raw)
            if exp.is_closed:
                raise ExperimentClosed(expid, exp.status.name)

        return Precondition(experiment_path(expid), check)

    # -----------------------------
    # Atomic updates
    # -----------------------------

    def atomic_update(self, expid: str, mutator: Callable[[Experiment], None]) -> Experiment:
        """
        Atomically read-modify-write the experiment document.

        The mutator runs against the freshly read state on every CAS attempt,
        so validation inside it always sees the latest committed version.
        """
        path = experiment_path(expid)

        def _updater(current: Any) -> Any:
            if not isinstance(current, dict):
                raise TypeError(f"Unexpected experiment payload type: {type(current)}")
            e = Experiment.from_dict(current)
            mutator(e)
            return e.to_dict()

        try:
            updated_raw = self.metastore.atomic_update_key(path, _updater, create_if_missing=False)
        except NoNodeError:
            raise ExperimentNotFound(expid) from None
        return Experiment.from_dict(updated_raw)

    def update_status(
            self,
            expid: str,
            new_status: ExperimentStatus | str,
            error_message: Optional[str] = None,
    ) -> Experiment:
        target = ExperimentStatus.parse(new_status)

        def mut(e: Experiment) -> None:
            e.transition(target, error_message=error_message)

        exp = self.atomic_update(expid, mut)
        logger.info("Experiment %s -> %s", expid, exp.status.name)
        return exp

    def update_config(
            self,
            expid: str,
            *,
            algorithms: Optional[Iterable[str]] = None,
            problems: Optional[Iterable[str]] = None,
            metrics: Optional[Iterable[str]] = None,
            budget: Optional[int] = None,
    ) -> Experiment:
        def mut(e: Experiment) -> None:
            e.reconfigure(algorithms=algorithms, problems=problems, metrics=metrics, budget=budget)

        return self.atomic_update(expid, mut)
