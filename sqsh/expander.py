"""
Variable expansion. Only flat $name / ${name} substitution, back-tick
command substitution and shell-style quoting are supported.
"""

import os
from collections.abc import Mapping
from string import Template
from typing import Any, Callable, Iterator, Self

from sqsh.errors import CommandLineSyntaxError
from sqsh.shell import (
    DEFAULT_IFS,
    ShellError,
    read_shell,
    split_fields,
    to_field_separator,
)


class VariableLookup(Mapping):
    """
    A read-only, layered view over several variable scopes. The first scope
    that defines a name wins. A missing name raises KeyError, so that
    Template.safe_substitute() leaves the reference alone.
    """

    def __init__(self: Self, *scopes: Mapping[str, Any]) -> None:
        self._scopes = [s for s in scopes if s is not None]

    def __getitem__(self: Self, key: str) -> str:
        for scope in self._scopes:
            if key in scope:
                return str(scope[key])
        raise KeyError(key)

    def __iter__(self: Self) -> Iterator[str]:
        seen: set[str] = set()
        for scope in self._scopes:
            for key in scope:
                if key not in seen:
                    seen.add(key)
                    yield key

    def __len__(self: Self) -> int:
        return sum(1 for _ in self)


class DynamicScope(Mapping):
    """
    A scope whose contents are fetched each time it's consulted, for
    variables that belong to something that can be replaced (like a
    session's connection).
    """

    def __init__(self: Self, source: Callable[[], Mapping[str, Any]]) -> None:
        self._source = source

    def __getitem__(self: Self, key: str) -> Any:
        return self._source()[key]

    def __iter__(self: Self) -> Iterator[str]:
        return iter(self._source())

    def __len__(self: Self) -> int:
        return len(self._source())


class StringExpander:
    """
    Expands variable references in text. Variables are looked up in the
    supplied scopes, in order, and then in the process environment.
    """

    def __init__(
        self: Self,
        *scopes: Mapping[str, Any],
        shell: Callable[[str], str] = read_shell,
        ifs: Callable[[], str] | None = None,
    ) -> None:
        """
        :param scopes: variable scopes, most specific first
        :param shell: function used to run back-tick commands
        :param ifs: function returning the current IFS specification
        """
        self._scopes = scopes
        self._shell = shell
        self._ifs = ifs or (lambda: DEFAULT_IFS)

    def lookup(self: Self, extra: Mapping[str, Any] | None = None) -> VariableLookup:
        """
        The layered variable view used for substitution.
        """
        return VariableLookup(
            *([extra] if extra else []), *self._scopes, os.environ
        )

    def expand(self: Self, text: str, extra: Mapping[str, Any] | None = None) -> str:
        """
        Substitute variable references, without regard to quoting.

        :param text: the text to expand
        :param extra: additional variables that take precedence over all
            other scopes

        :returns: the expanded text. Unknown variables are left as-is.
        """
        if "$" not in text:
            return text
        return Template(text).safe_substitute(self.lookup(extra))

    def expand_with_quotes(self: Self, text: str) -> str:
        """
        Expand text following shell quoting rules. Single-quoted text is
        left alone, double-quoted text is expanded, back-ticks are replaced
        by the output of the command they enclose. Quotes and escapes are
        kept in the output so that the tokenizer can process them.

        :raises CommandLineSyntaxError: for unterminated quotes or back-ticks
        """
        out: list[str] = []
        chunk: list[str] = []
        idx = 0

        def flush() -> None:
            if chunk:
                out.append(self.expand("".join(chunk)))
                chunk.clear()

        while idx < len(text):
            ch = text[idx]
            if ch == "'":
                flush()
                end = text.find("'", idx + 1)
                if end < 0:
                    raise CommandLineSyntaxError(
                        "Missing closing single quote", text, idx
                    )
                out.append(text[idx : end + 1])
                idx = end + 1
            elif ch == "\\":
                flush()
                out.append(text[idx : idx + 2])
                idx += 2
            elif ch == '"':
                flush()
                idx = self._double_quoted(text, idx, out)
            elif ch == "`":
                flush()
                idx = self._back_tick(text, idx, out)
            else:
                chunk.append(ch)
                idx += 1

        flush()
        return "".join(out)

    def _double_quoted(self: Self, text: str, start: int, out: list[str]) -> int:
        out.append('"')
        chunk: list[str] = []
        idx = start + 1

        def flush() -> None:
            if chunk:
                out.append(self.expand("".join(chunk)))
                chunk.clear()

        while idx < len(text) and text[idx] != '"':
            ch = text[idx]
            if ch == "\\":
                flush()
                out.append(text[idx : idx + 2])
                idx += 2
            elif ch == "`":
                flush()
                idx = self._back_tick(text, idx, out)
            else:
                chunk.append(ch)
                idx += 1

        if idx >= len(text):
            raise CommandLineSyntaxError("Missing closing double-quote", text, start)

        flush()
        out.append('"')
        return idx + 1

    def _back_tick(self: Self, text: str, start: int, out: list[str]) -> int:
        end = text.find("`", start + 1)
        if end < 0:
            raise CommandLineSyntaxError("Missing closing back-tick (`)", text, start)

        command = self.expand(text[start + 1 : end])
        try:
            output = self._shell(command)
        except ShellError as e:
            raise CommandLineSyntaxError(
                f"Failed to execute: {command}: {e}", text, start
            ) from e

        fields = split_fields(output, to_field_separator(self._ifs()))
        out.append(" ".join(fields))
        return end + 1
