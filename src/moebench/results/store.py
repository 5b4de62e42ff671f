# src/moebench/results/store.py
from __future__ import annotations

import logging
from typing import Any, Callable, Optional
from urllib.parse import quote, unquote

from kazoo.exceptions import NoNodeError

from moebench.exceptions import NotFound, ValidationError
from moebench.ids import IdentifierAllocator
from moebench.metastore import Metastore, Precondition
from .result import ExperimentResult, IterationResult, RunKey, _positive_int

RESULTS_ROOT = "/results"

logger = logging.getLogger(__name__)


def _segment(name: str) -> str:
    # znode names may not contain '/', and ':' separates algorithm from problem
    return quote(name, safe="")


def results_path(expid: str) -> str:
    return f"{RESULTS_ROOT}/{_segment(expid)}"


def run_key_path(key: RunKey) -> str:
    return f"{results_path(key.expid)}/{_segment(key.algorithm)}:{_segment(key.problem)}"


def parse_run_key_node(expid: str, node: str) -> RunKey:
    algorithm, _, problem = node.partition(":")
    return RunKey(expid, unquote(algorithm), unquote(problem))


def _run_key(expid: str, algorithm: str, problem: str) -> RunKey:
    for what, value in (("experiment id", expid), ("algorithm", algorithm), ("problem", problem)):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{what} must be a non-empty string")
    return RunKey(expid, algorithm.strip(), problem.strip())


class ResultStore:
    """
    Persistence for ExperimentResult documents, one znode per run key.

    Layout: /results/<expid>/<algorithm>:<problem>

    All writes to one run key go through a compare-and-set on that znode, so
    concurrent producers always observe a consistent last iteration. This
    store never checks that the experiment exists; the coordinator does.
    """

    def __init__(self, metastore: Metastore, ids: Optional[IdentifierAllocator] = None):
        self.metastore = metastore
        self.ids = ids or IdentifierAllocator()
        metastore.ensure_structure([RESULTS_ROOT])

    def _load(self, key: RunKey) -> Optional[ExperimentResult]:
        raw = self.metastore.get_key(run_key_path(key))
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise TypeError(f"Unexpected result payload type: {type(raw)}")
        return ExperimentResult.from_dict(raw)

    def _atomic_update(
            self,
            key: RunKey,
            mutator: Callable[[Optional[ExperimentResult]], Optional[ExperimentResult]],
            *,
            create_if_missing: bool,
            precondition: Optional[Precondition] = None,
    ) -> ExperimentResult:
        """
        CAS read-modify-write of one run key.

        `mutator` receives the current result (None if absent) and returns the
        result to store, or None to leave the document untouched.
        """
        path = run_key_path(key)

        def _updater(current: Any) -> Any:
            if current is not None and not isinstance(current, dict):
                raise TypeError(f"Unexpected result payload type: {type(current)}")
            r = None if current is None else ExperimentResult.from_dict(current)
            updated = mutator(r)
            if updated is None:
                return current
            return updated.to_dict()

        try:
            raw = self.metastore.atomic_update_key(
                path, _updater, create_if_missing=create_if_missing, precondition=precondition
            )
        except NoNodeError:
            raise NotFound("ExperimentResult", str(key)) from None
        return ExperimentResult.from_dict(raw)

    # -----------------------------
    # Writes
    # -----------------------------

    def upsert_iteration(
            self,
            expid: str,
            algorithm: str,
            problem: str,
            iteration_result: IterationResult,
            *,
            run_count: int = 1,
            precondition: Optional[Precondition] = None,
    ) -> ExperimentResult:
        """
        Append one iteration to the run key, creating the result if needed.

        A repeated iteration index is a no-op returning the stored state; an
        unseen index below the last stored one raises OutOfOrderIteration.
        `run_count` only applies when the result is created here.
        `precondition` is checked (and version-guarded) on every write attempt.
        """
        run_count = _positive_int("run_count", run_count)
        key = _run_key(expid, algorithm, problem)

        def mut(r: Optional[ExperimentResult]) -> Optional[ExperimentResult]:
            if r is None:
                r = ExperimentResult(
                    resid=self.ids.new_id(),
                    expid=key.expid,
                    algorithm=key.algorithm,
                    problem=key.problem,
                    run_count=run_count,
                )
                r.append(iteration_result)
                return r
            if r.append(iteration_result):
                return r
            logger.debug("Duplicate iteration %d for %s ignored", iteration_result.iteration, key)
            return None

        return self._atomic_update(key, mut, create_if_missing=True, precondition=precondition)

    def set_run_count(self, expid: str, algorithm: str, problem: str, run_count: int) -> ExperimentResult:
        run_count = _positive_int("run_count", run_count)
        key = _run_key(expid, algorithm, problem)

        def mut(r: Optional[ExperimentResult]) -> Optional[ExperimentResult]:
            if r is None:
                raise NoNodeError(run_key_path(key))
            if r.run_count == run_count:
                return None
            r.run_count = run_count
            return r

        return self._atomic_update(key, mut, create_if_missing=False)

    def increment_run_count(self, expid: str, algorithm: str, problem: str, by: int = 1) -> ExperimentResult:
        by = _positive_int("increment", by)
        key = _run_key(expid, algorithm, problem)

        def mut(r: Optional[ExperimentResult]) -> Optional[ExperimentResult]:
            if r is None:
                raise NoNodeError(run_key_path(key))
            r.run_count += by
            return r

        return self._atomic_update(key, mut, create_if_missing=False)

    def delete_by_experiment(self, expid: str) -> int:
        """
        Remove every result of `expid`. Returns how many run keys were removed;
        0 (and no error) if there were none.
        """
        removed = len(self.metastore.list_members(results_path(expid)))
        if not self.metastore.drop_key(results_path(expid)):
            return 0
        logger.info("Deleted %d result(s) of experiment %s", removed, expid)
        return removed

    # -----------------------------
    # Reads
    # -----------------------------

    def list_run_keys(self, expid: str) -> list[RunKey]:
        nodes = self.metastore.list_members(results_path(expid))
        return sorted(parse_run_key_node(expid, n) for n in nodes)

    def list_expids(self) -> list[str]:
        """Experiment ids that have at least one result node (orphans included)."""
        return sorted(unquote(n) for n in self.metastore.list_members(RESULTS_ROOT))

    def find_by_experiment(self, expid: str) -> list[ExperimentResult]:
        out: list[ExperimentResult] = []
        for key in self.list_run_keys(expid):
            r = self._load(key)
            if r is not None:  # removed between list and load
                out.append(r)
        return out

    def find_by_run_key(self, expid: str, algorithm: str, problem: str) -> ExperimentResult:
        key = _run_key(expid, algorithm, problem)
        r = self._load(key)
        if r is None:
            raise NotFound("ExperimentResult", str(key))
        return r
