from __future__ import annotations

import argparse
import types
from typing import Any, Tuple, Type, Union, cast, get_args, get_origin, Literal

from pydantic import BaseModel


def _is_optional(tp: Any) -> tuple[bool, Any]:
    origin = get_origin(tp)
    if origin in (Union, types.UnionType):
        args = tuple(a for a in get_args(tp))
        if len(args) == 2 and type(None) in args:
            other = args[0] if args[1] is type(None) else args[1]
            return True, other
    return False, tp


def _choices(tp: Any) -> Tuple[Any, ...]:
    """Allowed values of a Literal annotation (empty for anything else)."""
    if get_origin(tp) is Literal:
        return get_args(tp)
    return ()


def _python_type_for_argparse(tp: Any) -> type:
    # Pydantic validates anything richer than these from strings.
    if tp in (str, int, float):
        return cast(type, tp)
    return str


def add_model_to_parser(parser: argparse.ArgumentParser, model: Type[BaseModel]) -> None:
    """
    Add arguments for all fields of a Pydantic v2 model to an argparse parser.
    Parsed values are intended to be passed to model.model_validate(vars(args)).
    """
    for name, field in model.model_fields.items():
        ann = field.annotation
        if ann is None:
            ann = Any

        required = field.is_required()
        help_text = field.description or ""
        flag = f"--{name.replace('_', '-')}"
        default = None if required else field.default

        _, inner_ann = _is_optional(ann)

        if inner_ann is bool:
            # --flag / --no-flag
            parser.add_argument(
                flag,
                dest=name,
                action=argparse.BooleanOptionalAction,
                default=bool(field.default),
                help=help_text,
            )
            continue

        choices = _choices(inner_ann)
        if choices:
            parser.add_argument(
                flag,
                dest=name,
                choices=list(choices),
                default=default,
                required=required,
                help=help_text,
            )
            continue

        if get_origin(inner_ann) is list:
            args = get_args(inner_ann)
            elem_type = _python_type_for_argparse(args[0] if args else str)
            parser.add_argument(
                flag,
                dest=name,
                nargs="*",
                type=elem_type,
                default=default,
                required=required,
                help=help_text,
            )
            continue

        parser.add_argument(
            flag,
            dest=name,
            type=_python_type_for_argparse(inner_ann),
            default=default,
            required=required,
            help=help_text,
        )
