"""Helpers for user-supplied setup/validate routines and session keys."""

from __future__ import annotations

import ast
import functools
import inspect
import json
import linecache
import textwrap
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from sessionflow.service.errors import ConfigurationError


@dataclass(frozen=True)
class Sync:
    """The routine returned a plain value."""
    value: Any


@dataclass(frozen=True)
class Rejected:
    """The routine raised before returning."""
    error: BaseException


@dataclass(frozen=True)
class Pending:
    """The routine returned an awaitable that still has to be settled."""
    awaitable: Awaitable[Any]


Outcome = Union[Sync, Rejected, Pending]


def invoke(routine: Callable[..., Any], *args: Any) -> Outcome:
    """Call ``routine`` once and classify what came back.

    Coroutine functions and sync functions returning awaitables both end up
    as Pending; nothing is awaited here.
    """
    try:
        value = routine(*args)
    except Exception as exc:
        return Rejected(exc)
    if inspect.isawaitable(value):
        return Pending(value)
    return Sync(value)


async def settle(outcome: Outcome) -> Any:
    """Resolve an outcome to its value, raising the routine's error."""
    if isinstance(outcome, Rejected):
        raise outcome.error
    if isinstance(outcome, Pending):
        return await outcome.awaitable
    return outcome.value


def as_exception(value: Any) -> BaseException:
    """Turn a failure payload that is not an exception into one."""
    if isinstance(value, BaseException):
        return value
    return Exception(str(value))


def fingerprint(routine: Callable[..., Any]) -> str:
    """Stable textual identity of a routine, used to detect redefinition.

    Source text is compared, so two routines with identical source are the
    same definition even when they are different objects. Lambdas are
    identified by their own expression, not by the statement around them.
    """
    if isinstance(routine, functools.partial):
        return (
            f"partial({fingerprint(routine.func)}, "
            f"args={routine.args!r}, kwargs={sorted(routine.keywords.items())!r})"
        )
    target = routine if inspect.isroutine(routine) else type(routine)
    if inspect.isfunction(target) and target.__name__ == "<lambda>":
        text = _lambda_source(target)
        if text is not None:
            return text
    try:
        return textwrap.dedent(inspect.getsource(target)).strip()
    except (OSError, TypeError):
        module = getattr(target, "__module__", None) or "<unknown>"
        name = getattr(target, "__qualname__", None) or repr(target)
        return f"{module}.{name}"


@functools.lru_cache(maxsize=32)
def _parse_module(source: str) -> ast.Module:
    return ast.parse(source)


def _lambda_source(routine: Callable[..., Any]) -> Optional[str]:
    """Extract the lambda expression ``routine`` was compiled from.

    Several lambdas can start on one line; the one whose body encloses the
    code object's instruction positions wins, innermost first.
    """
    code = routine.__code__
    try:
        filename = inspect.getsourcefile(routine)
    except TypeError:
        return None
    source = "".join(linecache.getlines(filename, routine.__globals__)) if filename else ""
    if not source:
        return None
    try:
        tree = _parse_module(source)
    except SyntaxError:
        return None
    positions = [
        (line, col, end_line, end_col)
        for line, end_line, col, end_col in code.co_positions()
        if None not in (line, end_line, col, end_col) and (line, col) != (end_line, end_col)
    ]
    best = None
    best_key = None
    for node in ast.walk(tree):
        if not isinstance(node, ast.Lambda) or node.lineno != code.co_firstlineno:
            continue
        body = node.body
        start = (body.lineno, body.col_offset)
        end = (body.end_lineno, body.end_col_offset)
        hits = sum(
            1
            for line, col, end_line, end_col in positions
            if start <= (line, col) and (end_line, end_col) <= end
        )
        key = (hits, node.col_offset)
        if hits and (best_key is None or key > best_key):
            best, best_key = node, key
    if best is None:
        return None
    return ast.get_source_segment(source, best)


def stable_id(key: Any) -> str:
    """Derive the session id from a string or a JSON-serializable key.

    Structured keys are serialized with sorted keys so equal mappings map to
    the same id regardless of insertion order.
    """
    if isinstance(key, str):
        if not key:
            raise ConfigurationError("session id must be a non-empty string or a serializable object")
        return key
    if isinstance(key, (Mapping, list, tuple)):
        try:
            return json.dumps(key, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"session id object is not serializable: {exc}",
                detail={"id_type": type(key).__name__},
            ) from exc
    raise ConfigurationError(
        "session id must be a non-empty string or a serializable object",
        detail={"id_type": type(key).__name__},
    )
