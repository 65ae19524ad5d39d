"""
SQL buffers. The current buffer accumulates input until it's executed or
reset, at which point it's retired into a bounded history and a new, empty
buffer takes its place.
"""

import json
import logging
from pathlib import Path
from typing import Self

DEFAULT_MAX_BUFFERS = 50


class Buffer:
    """
    A block of SQL text, built up a line at a time.
    """

    def __init__(self: Self, buffer_id: int = -1, text: str = "") -> None:
        self.id = buffer_id
        self._text = ""
        self.line_count = 0
        if text:
            self.add(text)

    @property
    def line_number(self: Self) -> int:
        """
        The number of the line that will be added next.
        """
        return self.line_count + 1

    def add_line(self: Self, line: str) -> None:
        """
        Append a single line of text, followed by a newline.
        """
        if self._text and not self._text.endswith("\n"):
            # Left unterminated by truncate().
            self._text += "\n"
        self._text += f"{line}\n"
        self.line_count += 1

    def add(self: Self, text: str) -> None:
        """
        Append a block of text, a line at a time.
        """
        for line in text.splitlines():
            self.add_line(line)

    def set(self: Self, text: str) -> None:
        """
        Replace the contents of the buffer.
        """
        self.clear()
        self.add(text)

    def clear(self: Self) -> None:
        """
        Empty the buffer.
        """
        self._text = ""
        self.line_count = 0

    def truncate(self: Self, length: int) -> None:
        """
        Cut the buffer down to `length` characters, adjusting the line count
        to match.
        """
        if length >= len(self._text):
            return
        self._text = self._text[: max(length, 0)]
        self.line_count = self._text.count("\n")
        if self._text and not self._text.endswith("\n"):
            self.line_count += 1

    def is_empty(self: Self, ignore_whitespace: bool = True) -> bool:
        """
        Whether the buffer has anything in it.

        :param ignore_whitespace: if True, a buffer containing only white
            space is considered empty
        """
        if ignore_whitespace:
            return self._text.strip() == ""
        return self._text == ""

    def lines(self: Self) -> list[str]:
        """
        The lines in the buffer, without line terminators.
        """
        return self._text.splitlines()

    def load(self: Self, path: Path, append: bool = False) -> None:
        """
        Load the buffer from a file.

        :param path: the file to read
        :param append: if True, add to the buffer instead of replacing it

        :raises OSError: if the file can't be read
        """
        with open(path, mode="r", encoding="utf-8") as f:
            text = f.read()

        if not append:
            self.clear()
        self.add(text)

    def save(self: Self, path: Path, append: bool = False) -> None:
        """
        Write the buffer to a file.

        :param path: the file to write
        :param append: if True, append to the file instead of replacing it

        :raises OSError: if the file can't be written
        """
        with open(path, mode="a" if append else "w", encoding="utf-8") as f:
            f.write(self._text)

    def __str__(self: Self) -> str:
        return self._text

    def __len__(self: Self) -> int:
        return len(self._text)

    def __repr__(self: Self) -> str:
        return f"Buffer(id={self.id}, lines={self.line_count})"


class BufferManager:
    """
    Keeps the current buffer and the history of retired buffers. The current
    buffer is always the last entry in the list.
    """

    def __init__(
        self: Self,
        max_buffers: int = DEFAULT_MAX_BUFFERS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._buffers: list[Buffer] = []
        self._names: dict[str, int] = {}
        self._next_id = 1
        self._max_buffers = max_buffers
        self._log = logger or logging.getLogger("sqsh.buffers")

    @property
    def max_buffers(self: Self) -> int:
        """
        The number of history buffers retained, not counting the current one.
        """
        return self._max_buffers

    @max_buffers.setter
    def max_buffers(self: Self, count: int) -> None:
        self._max_buffers = max(count, 0)
        self._trim()

    def __len__(self: Self) -> int:
        return len(self._buffers)

    def buffers(self: Self) -> list[Buffer]:
        """
        All buffers, oldest first. The last one is the current buffer.
        """
        return list(self._buffers)

    def history(self: Self) -> list[Buffer]:
        """
        The retired buffers, oldest first.
        """
        return self._buffers[:-1]

    def current(self: Self) -> Buffer:
        """
        Returns the current buffer, creating it if necessary.
        """
        if not self._buffers:
            return self.new_buffer()
        return self._buffers[-1]

    def new_buffer(self: Self) -> Buffer:
        """
        Retire the current buffer (empty or not) into the history and start
        a new current buffer.

        :returns: the new current buffer
        """
        buf = Buffer(self._next_id)
        self._next_id += 1
        self._buffers.append(buf)
        self._trim()
        return buf

    def _trim(self: Self) -> None:
        while len(self._buffers) > self._max_buffers + 1:
            evicted = self._buffers.pop(0)
            self._log.debug("Evicting buffer %d from history", evicted.id)

    def get(self: Self, buffer_id: int) -> Buffer | None:
        """
        Look up a buffer by id. Id 0 is the current buffer.
        """
        if buffer_id == 0:
            return self.current()

        for buf in self._buffers:
            if buf.id == buffer_id:
                return buf
        return None

    def bind(self: Self, name: str, buf: Buffer) -> None:
        """
        Give a buffer a name, so that it can be referred to as "!name".
        """
        self._names[name] = buf.id

    def resolve(self: Self, name: str) -> Buffer | None:
        """
        Resolve a buffer reference: "!." is the current buffer, "!.." the
        one before it (and so on, one step per extra "."), "!!" is the same
        as "!..", "!N" is the buffer with id N and "!name" is a buffer bound
        with bind().

        :returns: the buffer, or None if the reference is malformed or
            doesn't refer to an existing buffer
        """
        if name == "!!":
            name = "!.."

        if len(name) < 2 or not name.startswith("!"):
            return None

        ref = name[1:]
        if ref.strip(".") == "":
            self.current()
            idx = len(self._buffers) - len(ref)
            if idx < 0:
                return None
            return self._buffers[idx]

        if ref.isdigit():
            return self.get(int(ref))

        if (buffer_id := self._names.get(ref)) is not None:
            return self.get(buffer_id)

        return None

    def clear(self: Self, buf: Buffer | None = None) -> None:
        """
        Empty a buffer (the current one, by default).
        """
        (buf or self.current()).clear()

    def append(self: Self, buf: Buffer, text: str) -> None:
        """
        Append text to a buffer.
        """
        buf.add(text)

    def load(self: Self, buf: Buffer, path: Path, append: bool = False) -> None:
        """
        Replace (or append to) a buffer with the contents of a file.
        """
        buf.load(path, append=append)

    def save(self: Self, buf: Buffer, path: Path, append: bool = False) -> None:
        """
        Write a buffer to a file.
        """
        buf.save(path, append=append)

    def save_history(self: Self, path: Path) -> None:
        """
        Write the non-empty history buffers to a JSON file.

        :raises OSError: on write failure
        """
        entries = [
            {"id": b.id, "text": str(b)}
            for b in self.history()
            if not b.is_empty()
        ]
        with open(path, mode="w", encoding="utf-8") as f:
            json.dump(entries, f, indent=2)

    def load_history(self: Self, path: Path) -> None:
        """
        Load history buffers previously written by save_history(). The
        loaded buffers are placed before the current buffer and renumbered
        so that ids keep increasing.

        :raises OSError: on read failure
        :raises ValueError: if the file isn't valid history JSON
        """
        with open(path, mode="r", encoding="utf-8") as f:
            entries = json.load(f)

        if not isinstance(entries, list):
            raise ValueError(f'"{path}" does not contain a list of buffers.')

        current = self._buffers.pop() if self._buffers else None
        for entry in entries:
            self._buffers.append(Buffer(self._next_id, entry.get("text", "")))
            self._next_id += 1

        if current is None:
            current = Buffer()
        current.id = self._next_id
        self._next_id += 1
        self._buffers.append(current)
        self._trim()
        self._log.debug("Loaded %d buffers from %s", len(entries), path)
