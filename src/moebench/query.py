# src/moebench/query.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from moebench.exceptions import NotFound
from moebench.experiments import Experiment, ExperimentStatus, ExperimentStore
from moebench.results import ExperimentResult, ResultStore, RunKey


@dataclass(frozen=True, slots=True)
class ExperimentSummary:
    experiment: Experiment
    results: List[ExperimentResult] = field(default_factory=list)

    @property
    def latest_metrics(self) -> Dict[RunKey, Dict[str, float]]:
        return {r.run_key: r.latest_metrics() for r in self.results}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment": self.experiment.to_dict(),
            "results": [r.to_dict() for r in self.results],
        }


class QueryFacade:
    """
    Read-only access patterns over ExperimentStore and ResultStore.
    """

    def __init__(self, experiments: ExperimentStore, results: ResultStore) -> None:
        self.experiments = experiments
        self.results = results

    def get_experiment(self, expid: str) -> Experiment:
        return self.experiments.get(expid)

    def experiments_by_status(self, status: ExperimentStatus | str) -> list[Experiment]:
        return self.experiments.list_by_status(status)

    def results_for_experiment(self, expid: str) -> list[ExperimentResult]:
        return self.results.find_by_experiment(expid)

    def results_for_run_key(self, expid: str, algorithm: str, problem: str) -> ExperimentResult:
        return self.results.find_by_run_key(expid, algorithm, problem)

    def _scan(self, keep: Callable[[RunKey], bool]) -> list[ExperimentResult]:
        out: list[ExperimentResult] = []
        for expid in self.experiments.list_expids():
            for key in self.results.list_run_keys(expid):
                if not keep(key):
                    continue
                try:
                    out.append(self.results.find_by_run_key(*key))
                except NotFound:  # removed between list and load
                    continue
        return out

    def results_by_algorithm(self, algorithm: str) -> list[ExperimentResult]:
        """All results of `algorithm` across experiments (full scan)."""
        return self._scan(lambda k: k.algorithm == algorithm)

    def results_by_problem(self, problem: str) -> list[ExperimentResult]:
        """All results on `problem` across experiments (full scan)."""
        return self._scan(lambda k: k.problem == problem)

    def experiment_summary(self, expid: str) -> ExperimentSummary:
        return ExperimentSummary(
            experiment=self.experiments.get(expid),
            results=self.results.find_by_experiment(expid),
        )
