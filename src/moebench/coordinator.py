# src/moebench/coordinator.py
from __future__ import annotations

import logging
from typing import Iterable, Optional

from moebench.exceptions import ExperimentClosed
from moebench.experiments import Experiment, ExperimentSpec, ExperimentStatus, ExperimentStore
from moebench.results import ExperimentResult, IterationResult, ResultStore

logger = logging.getLogger(__name__)


class ConsistencyCoordinator:
    """
    Cross-entity operations the document store cannot express natively.

    Invariants maintained here:
      - a result is only written for an existing, non-terminal experiment
      - deleting an experiment deletes its results, dependents first

    The delete ordering means an interrupted delete leaves an experiment
    without results (retry finishes the job), never results without an
    experiment.
    """

    def __init__(self, experiments: ExperimentStore, results: ResultStore) -> None:
        self.experiments = experiments
        self.results = results

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def create_experiment(self, spec: ExperimentSpec) -> Experiment:
        return self.experiments.create(spec)

    def start_experiment(self, expid: str) -> Experiment:
        return self.experiments.update_status(expid, ExperimentStatus.RUNNING)

    def finish_experiment(self, expid: str) -> Experiment:
        return self.experiments.update_status(expid, ExperimentStatus.FINISHED)

    def fail_experiment(self, expid: str, error_message: str) -> Experiment:
        return self.experiments.update_status(expid, ExperimentStatus.FAILED, error_message)

    # ------------------------------------------------------------------ #
    # Result submission
    # ------------------------------------------------------------------ #

    def _open_experiment(self, expid: str) -> Experiment:
        exp = self.experiments.get(expid)
        if exp.is_closed:
            raise ExperimentClosed(expid, exp.status.name)
        return exp

    def submit_result(
            self,
            expid: str,
            algorithm: str,
            problem: str,
            iteration_result: IterationResult,
            *,
            run_count: int = 1,
    ) -> ExperimentResult:
        """
        Record one iteration for (expid, algorithm, problem).

        The write commits together with a version check on the experiment
        document, so a finish, fail or delete that lands after validation
        makes it retry and fail instead of writing.

        Raises:
            ExperimentNotFound: the experiment does not exist.
            ExperimentClosed: the experiment is FINISHED or FAILED.
            OutOfOrderIteration: see ResultStore.upsert_iteration().
        """
        return self.results.upsert_iteration(
            expid,
            algorithm,
            problem,
            iteration_result,
            run_count=run_count,
            precondition=self.experiments.accepting_results(expid),
        )

    def submit_results(
            self,
            expid: str,
            algorithm: str,
            problem: str,
            iteration_results: Iterable[IterationResult],
            *,
            run_count: int = 1,
    ) -> Optional[ExperimentResult]:
        """
        Record several iterations of one run key in order, each guarded like
        submit_result(). Returns the final stored state (None for an empty batch).
        """
        self._open_experiment(expid)
        guard = self.experiments.accepting_results(expid)
        result: Optional[ExperimentResult] = None
        for item in iteration_results:
            result = self.results.upsert_iteration(
                expid, algorithm, problem, item, run_count=run_count, precondition=guard
            )
        return result

    # ------------------------------------------------------------------ #
    # Deletion
    # ------------------------------------------------------------------ #

    def delete_experiment_and_results(self, expid: str) -> bool:
        """
        Delete an experiment and every result referencing it.

        Safe to retry after any failure and a no-op once everything is gone.
        Returns True if the experiment document existed.
        """
        removed = self.results.delete_by_experiment(expid)
        existed = self.experiments.delete(expid)
        # Sweep again for results written without the submission guard.
        removed += self.results.delete_by_experiment(expid)
        if existed or removed:
            logger.info("Deleted experiment %s with %d result(s)", expid, removed)
        return existed

    def purge_orphaned_results(self) -> list[str]:
        """
        Remove results whose experiment no longer exists (e.g. written straight
        through ResultStore, bypassing the submission guard). Returns the
        experiment ids that were purged.
        """
        purged: list[str] = []
        for expid in self.results.list_expids():
            if not self.experiments.exists(expid):
                self.results.delete_by_experiment(expid)
                purged.append(expid)
        if purged:
            logger.warning("Purged orphaned results of %d experiment(s)", len(purged))
        return purged
