"""Pattern router that maps paths with named parameters to values."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Generic, Iterator, TypeVar

V = TypeVar("V")

_STATIC = 0
_PARAM = 1
_CATCH_ALL = 2


class InsertError(ValueError):
    """A pattern could not be added to a router."""


@dataclass(frozen=True)
class _Token:
    kind: int
    text: str


@dataclass
class Match(Generic[V]):
    """A matched value and the parameters captured from the path."""

    value: V
    params: dict[str, str] = field(default_factory=dict)


@dataclass
class _Entry(Generic[V]):
    pattern: str
    tokens: tuple[_Token, ...]
    regex: re.Pattern[str]
    value: V


def _tokenize(pattern: str) -> tuple[_Token, ...]:
    tokens: list[_Token] = []
    buf: list[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "{":
            if pattern.startswith("{{", i):
                buf.append("{")
                i += 2
                continue
            end = pattern.find("}", i)
            if end == -1:
                raise InsertError(f"unclosed parameter in {pattern!r}")
            name = pattern[i + 1 : end]
            catch_all = name.startswith("*")
            if catch_all:
                name = name[1:]
            if not name or any(c in name for c in "{}*/"):
                raise InsertError(f"invalid parameter name in {pattern!r}")
            if buf:
                tokens.append(_Token(_STATIC, "".join(buf)))
                buf = []
            tokens.append(_Token(_CATCH_ALL if catch_all else _PARAM, name))
            i = end + 1
        elif ch == "}":
            if pattern.startswith("}}", i):
                buf.append("}")
                i += 2
                continue
            raise InsertError(f"unmatched '}}' in {pattern!r}")
        else:
            buf.append(ch)
            i += 1
    if buf:
        tokens.append(_Token(_STATIC, "".join(buf)))
    _validate(pattern, tokens)
    return tuple(tokens)


def _validate(pattern: str, tokens: list[_Token]) -> None:
    names: set[str] = set()
    params_in_segment = 0
    for position, token in enumerate(tokens):
        if token.kind == _STATIC:
            if "/" in token.text:
                params_in_segment = 0
            continue
        if token.kind == _CATCH_ALL and position != len(tokens) - 1:
            raise InsertError(f"catch-all parameter must end the route: {pattern!r}")
        params_in_segment += 1
        if params_in_segment > 1:
            raise InsertError(f"only one parameter is allowed per path segment: {pattern!r}")
        if token.text in names:
            raise InsertError(f"duplicate parameter {token.text!r} in {pattern!r}")
        names.add(token.text)


def _compile(tokens: tuple[_Token, ...]) -> re.Pattern[str]:
    parts = []
    for token in tokens:
        if token.kind == _STATIC:
            parts.append(re.escape(token.text))
        elif token.kind == _PARAM:
            parts.append("([^/]+)")
        else:
            parts.append("(.+)")
    return re.compile("".join(parts), re.DOTALL)


def _shape(tokens: tuple[_Token, ...]) -> tuple[tuple[int, str], ...]:
    return tuple((t.kind, t.text if t.kind == _STATIC else "") for t in tokens)


class Router(Generic[V]):
    """Maps patterns such as ``/users/{id}`` or ``/files/{*path}`` to values.

    Static text is preferred over a parameter, and a parameter over a
    catch-all, wherever two patterns could match the same path.
    """

    def __init__(self) -> None:
        self._entries: list[_Entry[V]] = []

    def insert(self, path: str, value: V) -> None:
        """Add a pattern; raises InsertError if it is malformed or conflicts."""
        tokens = _tokenize(path)
        shape = _shape(tokens)
        for entry in self._entries:
            if _shape(entry.tokens) == shape:
                raise InsertError(f"{path!r} conflicts with existing route {entry.pattern!r}")
        self._entries.append(_Entry(path, tokens, _compile(tokens), value))

    def at(self, path: str) -> Match[V] | None:
        """The best match for a path, or None."""
        best: tuple[tuple[int, ...], int] | None = None
        best_match: Match[V] | None = None
        for index, entry in enumerate(self._entries):
            found = entry.regex.fullmatch(path)
            if found is None:
                continue
            kinds = [_STATIC] * len(path)
            params: dict[str, str] = {}
            dynamic = [t for t in entry.tokens if t.kind != _STATIC]
            for group, token in enumerate(dynamic, start=1):
                start, end = found.span(group)
                kinds[start:end] = [token.kind] * (end - start)
                params[token.text] = found.group(group)
            rank = (tuple(kinds), index)
            if best is None or rank < best:
                best = rank
                best_match = Match(entry.value, params)
        return best_match

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        """Iterate over the inserted patterns."""
        return iter([entry.pattern for entry in self._entries])