"""
Command aliases. An alias replaces its name with arbitrary text when the
name starts an input line, or anywhere in the line for a global alias.
"""

import re
from dataclasses import dataclass
from typing import Self


@dataclass(frozen=True)
class Alias:
    """
    A single alias definition.
    """

    name: str
    text: str
    is_global: bool = False


class AliasManager:
    """
    Holds the alias definitions and applies them to input lines.
    """

    def __init__(self: Self) -> None:
        self._aliases: dict[str, Alias] = {}

    def __len__(self: Self) -> int:
        return len(self._aliases)

    def __contains__(self: Self, name: str) -> bool:
        return name in self._aliases

    def add(self: Self, alias: Alias) -> None:
        """
        Define (or redefine) an alias.
        """
        self._aliases[alias.name] = alias

    def remove(self: Self, name: str) -> bool:
        """
        Remove an alias.

        :returns: True if there was such an alias
        """
        return self._aliases.pop(name, None) is not None

    def get(self: Self, name: str) -> Alias | None:
        """
        Look up an alias by name.
        """
        return self._aliases.get(name)

    def aliases(self: Self) -> list[Alias]:
        """
        All aliases, sorted by name.
        """
        return sorted(self._aliases.values(), key=lambda a: a.name)

    def process(self: Self, line: str) -> str:
        """
        Expand the aliases in a line. An alias only matches when it isn't
        followed by a letter, digit or underscore.

        :returns: the expanded line, or the line itself if there was
            nothing to expand
        """
        start = len(line) - len(line.lstrip())
        points: list[tuple[int, Alias]] = []
        for alias in self._aliases.values():
            pattern = re.compile(re.escape(alias.name) + r"(?!\w)")
            if alias.is_global:
                points.extend((m.start(), alias) for m in pattern.finditer(line))
            elif pattern.match(line, start):
                points.append((start, alias))

        if not points:
            return line

        out: list[str] = []
        idx = 0
        for pos, alias in sorted(points, key=lambda p: p[0]):
            if pos < idx:
                # Overlaps an alias that was already expanded.
                continue
            out.append(line[idx:pos])
            out.append(alias.text)
            idx = pos + len(alias.name)

        out.append(line[idx:])
        return "".join(out)
