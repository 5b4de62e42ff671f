try:
    from ._version import version as __version__  # populated by setuptools-scm
except ModuleNotFoundError:
    __version__ = "0.0.0"

from .client import Client
from .coordinator import ConsistencyCoordinator
from .experiments import Experiment, ExperimentSpec, ExperimentStatus, ExperimentStore
from .query import QueryFacade
from .results import ExperimentResult, IterationResult, ResultStore, RunKey

__all__ = [
    "__version__",
    "Client",
    "ConsistencyCoordinator",
    "Experiment",
    "ExperimentSpec",
    "ExperimentStatus",
    "ExperimentStore",
    "QueryFacade",
    "ExperimentResult",
    "IterationResult",
    "ResultStore",
    "RunKey",
]
