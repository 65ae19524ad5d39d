"""
The command line tokenizer. Splits a (variable expanded) command line into
words and the shell-like operators the session acts on: output redirection,
file descriptor duplication, pipes and the statement terminator.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Iterator, Self

from sqsh.errors import CommandLineSyntaxError
from sqsh.shell import DEFAULT_IFS, ShellError, split_fields, to_field_separator


@dataclass(frozen=True)
class Word:
    """
    A plain or quoted string.
    """

    text: str
    quoted: bool = False
    position: int = field(default=0, compare=False)

    def __str__(self: Self) -> str:
        return self.text


@dataclass(frozen=True)
class RedirectOut:
    """
    [fd]>file or [fd]>>file
    """

    fd: int
    filename: str
    append: bool = False
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class FdDup:
    """
    old>&new: make file descriptor `old` refer to `new`.
    """

    old_fd: int
    new_fd: int
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class Pipe:
    """
    | command. The command is the rest of the line.
    """

    command: str
    position: int = field(default=0, compare=False)


@dataclass(frozen=True)
class Terminator:
    """
    The session's statement terminator, appearing outside of quotes.
    """

    char: str
    position: int = field(default=0, compare=False)


Token = Word | RedirectOut | FdDup | Pipe | Terminator

OPERATOR_CHARS = "'\"|<>&`"


class Tokenizer:
    """
    Walks a single command line, producing tokens on demand. A token can be
    pushed back with unget(), to be returned by the following next().
    """

    # pylint: disable=too-many-instance-attributes

    def __init__(
        self: Self,
        line: str,
        terminator: str | None = None,
        keep_double_quotes: bool = False,
        retain_initial_escape: bool = True,
        shell: Callable[[str], str] | None = None,
        ifs: str = DEFAULT_IFS,
    ) -> None:
        """
        :param line: the line to tokenize
        :param terminator: the statement terminator character, or None
        :param keep_double_quotes: whether to keep double quotes in the text
            of the words they appear in
        :param retain_initial_escape: keep a leading backslash on the very
            first token (command names start with one)
        :param shell: function used to run back-tick commands. If None,
            back-ticks aren't special.
        :param ifs: IFS specification used to split back-tick output
        """
        self.line = line
        self._terminator = terminator if terminator and len(terminator) == 1 else None
        self._keep_double_quotes = keep_double_quotes
        self._retain_initial_escape = retain_initial_escape
        self._shell = shell
        self._separators = to_field_separator(ifs)
        self._idx = 0
        self._count = 0
        self._pending: deque[Token] = deque()
        self._pushed: list[Token] = []

    def __iter__(self: Self) -> Iterator[Token]:
        while (token := self.next()) is not None:
            yield token

    def unget(self: Self, token: Token) -> None:
        """
        Push a token back.
        """
        self._pushed.append(token)

    def tokens(self: Self) -> list[Token]:
        """
        Consume the remainder of the line.
        """
        return list(self)

    def _peek(self: Self) -> str:
        return self.line[self._idx]

    def _at_end(self: Self) -> bool:
        return self._idx >= len(self.line)

    def _skip_whitespace(self: Self) -> None:
        while not self._at_end() and self._peek().isspace():
            self._idx += 1

    def _fail(self: Self, message: str, position: int) -> CommandLineSyntaxError:
        return CommandLineSyntaxError(message, self.line, position)

    def _is_terminator(self: Self, ch: str) -> bool:
        return self._terminator is not None and ch == self._terminator

    def _is_word_char(self: Self, ch: str) -> bool:
        if ch.isspace() or self._is_terminator(ch):
            return False
        if ch == "`":
            return self._shell is None
        return ch not in OPERATOR_CHARS

    def next(self: Self) -> Token | None:
        """
        Returns the next token, or None at the end of the line.

        :raises CommandLineSyntaxError: on malformed input
        """
        if self._pushed:
            return self._pushed.pop()

        if self._pending:
            return self._pending.popleft()

        self._skip_whitespace()
        if self._at_end():
            return None

        token = self._next_token()
        if token is not None:
            self._count += 1
        return token

    def _next_token(self: Self) -> Token | None:
        start = self._idx
        ch = self._peek()

        if self._is_terminator(ch):
            self._idx += 1
            return Terminator(ch, position=start)

        if ch == "|":
            self._idx += 1
            command = self.line[self._idx :].strip()
            self._idx = len(self.line)
            if command == "":
                raise self._fail("Expected a command following '|'", start)
            return Pipe(command, position=start)

        if ch == ">":
            return self._redirect(1, start)

        if ch.isdigit():
            end = start
            while end < len(self.line) and self.line[end].isdigit():
                end += 1
            if end < len(self.line) and self.line[end] == ">":
                fd = int(self.line[start:end])
                self._idx = end
                return self._redirect(fd, start)

        if ch == "`" and self._shell is not None:
            return self._back_tick()

        return self._word()

    def _redirect(self: Self, fd: int, start: int) -> Token:
        # Positioned on the ">".
        self._idx += 1
        append = False

        if not self._at_end() and self._peek() == "&":
            self._idx += 1
            self._skip_whitespace()
            digits_start = self._idx
            while not self._at_end() and self._peek().isdigit():
                self._idx += 1
            if self._idx == digits_start:
                raise self._fail(
                    "Expected a number following file descriptor "
                    "duplication token '>&'",
                    digits_start,
                )
            return FdDup(fd, int(self.line[digits_start : self._idx]), position=start)

        if not self._at_end() and self._peek() == ">":
            self._idx += 1
            append = True

        self._skip_whitespace()
        target = None
        if not self._at_end() and (
            self._is_word_char(self._peek()) or self._peek() in "'\""
        ):
            target = self._word()
        if target is None or target.text == "":
            raise self._fail(
                "Expected a target filename following redirection", self._idx
            )

        return RedirectOut(fd, target.text, append, position=start)

    def _word(self: Self) -> Word | None:
        start = self._idx
        parts: list[str] = []
        quoted = False

        # Adjacent pieces, like abc'def'"ghi", make up a single word.
        while not self._at_end():
            ch = self._peek()
            if (
                ch == "\\"
                and self._retain_initial_escape
                and self._count == 0
                and self._idx == start
            ):
                parts.append(ch)
                self._idx += 1
            elif ch == "'":
                quoted = True
                self._single_quoted(parts)
            elif ch == '"':
                quoted = True
                self._double_quoted(parts)
            elif self._is_word_char(ch):
                self._unquoted(parts)
            else:
                break

        if self._idx == start:
            # Something we don't understand on its own, such as "<" or "&".
            # Treat it as a one-character word rather than looping forever.
            self._idx += 1
            return Word(self.line[start], position=start)

        return Word("".join(parts), quoted=quoted, position=start)

    def _escape(self: Self, parts: list[str]) -> None:
        self._idx += 1
        if self._at_end():
            raise self._fail("Expected character following '\\'", self._idx)
        parts.append(self._peek())
        self._idx += 1

    def _unquoted(self: Self, parts: list[str]) -> None:
        while not self._at_end():
            ch = self._peek()
            if ch == "\\":
                self._escape(parts)
            elif self._is_word_char(ch):
                parts.append(ch)
                self._idx += 1
            else:
                break

    def _single_quoted(self: Self, parts: list[str]) -> None:
        start = self._idx
        end = self.line.find("'", start + 1)
        if end < 0:
            raise self._fail("Closing single quote not found", start)
        parts.append(self.line[start + 1 : end])
        self._idx = end + 1

    def _double_quoted(self: Self, parts: list[str]) -> None:
        start = self._idx
        self._idx += 1
        if self._keep_double_quotes:
            parts.append('"')

        while not self._at_end() and self._peek() != '"':
            if self._peek() == "\\":
                self._escape(parts)
            else:
                parts.append(self._peek())
                self._idx += 1

        if self._at_end():
            raise self._fail("Closing double quote not found", start)

        self._idx += 1
        if self._keep_double_quotes:
            parts.append('"')

    def _back_tick(self: Self) -> Token | None:
        assert self._shell is not None
        start = self._idx
        end = self.line.find("`", start + 1)
        if end < 0:
            raise self._fail("Missing closing back-tick (`)", start)

        command = self.line[start + 1 : end].strip()
        self._idx = end + 1
        try:
            output = self._shell(command)
        except ShellError as e:
            raise self._fail(f"Failed to execute: {command}: {e}", start) from e

        for text in split_fields(output, self._separators):
            self._pending.append(Word(text, position=start))

        if not self._pending:
            # No output; move on to whatever follows.
            self._skip_whitespace()
            return None if self._at_end() else self._next_token()
        return self._pending.popleft()
