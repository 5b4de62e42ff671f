# src/moebench/cli/commands.py
from __future__ import annotations

import json
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Literal, Optional, TextIO

from pydantic import BaseModel, Field

from moebench.exceptions import MoebenchError

LogLevel = Literal[
    "CRITICAL",
    "ERROR",
    "WARNING",
    "INFO",
    "DEBUG",
    "critical",
    "error",
    "warning",
    "info",
    "debug",
]


class CommandLineError(MoebenchError): ...


class _Common(BaseModel):
    group: Optional[str] = Field(None, description="ZooKeeper group (namespace) to operate on.")
    config_file: Optional[str] = Field(None, description="Optional moebench config file (toml/yaml).")
    loglevel: Optional[LogLevel] = Field(None, description="Logging level override.")


class ListCommand(_Common):
    status: Literal["PENDING", "RUNNING", "FINISHED", "FAILED"] = Field(
        description="Only list experiments with this status."
    )


class ShowCommand(_Common):
    expid: str = Field(description="Experiment id.")


class DeleteCommand(_Common):
    expid: str = Field(description="Experiment id; its results are deleted first.")


class PurgeCommand(_Common):
    pass


@contextmanager
def _client(command: _Common) -> Iterator[Any]:
    from moebench.client import Client
    from moebench.config import get_settings
    from moebench.log import configure_logging

    settings = get_settings(config_file=command.config_file)
    configure_logging(settings.logging, level=command.loglevel)

    with Client.make(settings=settings, group=command.group) as client:
        yield client


def _emit(payload: Any, out: Optional[TextIO]) -> None:
    (out or sys.stdout).write(json.dumps(payload, sort_keys=True) + "\n")


def handle_list(command: ListCommand, out: Optional[TextIO] = None) -> None:
    with _client(command) as client:
        for exp in client.query.experiments_by_status(command.status):
            _emit(exp.to_dict(), out)


def handle_show(command: ShowCommand, out: Optional[TextIO] = None) -> None:
    with _client(command) as client:
        _emit(client.query.experiment_summary(command.expid).to_dict(), out)


def handle_delete(command: DeleteCommand, out: Optional[TextIO] = None) -> None:
    with _client(command) as client:
        existed = client.coordinator.delete_experiment_and_results(command.expid)
        _emit({"id": command.expid, "deleted": existed}, out)


def handle_purge(command: PurgeCommand, out: Optional[TextIO] = None) -> None:
    with _client(command) as client:
        _emit({"purged": client.coordinator.purge_orphaned_results()}, out)


COMMANDS: dict[str, tuple[type[_Common], Any, str]] = {
    "list": (ListCommand, handle_list, "List experiments by status."),
    "show": (ShowCommand, handle_show, "Show an experiment with its results."),
    "delete": (DeleteCommand, handle_delete, "Delete an experiment and all of its results."),
    "purge": (PurgeCommand, handle_purge, "Remove results whose experiment no longer exists."),
}


def handle_command(name: str, data: dict[str, Any]) -> None:
    try:
        model, handler, _help = COMMANDS[name]
    except KeyError:
        raise CommandLineError(f"Unknown command: {name}") from None
    handler(model.model_validate(data))
