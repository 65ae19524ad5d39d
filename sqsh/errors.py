"""
Exceptions used throughout sqsh, along with the helper used to report errors
to a stream in a consistent way.
"""

import sys
from typing import Self, TextIO

from termcolor import colored


class SqshException(Exception):
    """
    Base class for exceptions thrown by the shell. Also thrown explicitly
    for certain errors in the shell.
    """


class AbortError(SqshException):
    """
    Thrown to force an abort with a non-zero exit code.
    """


class NotConnectedError(SqshException):
    """
    Thrown when something that requires a database connection is attempted
    in a session that doesn't have one.
    """


class CommandLineSyntaxError(SqshException):
    """
    Thrown by the tokenizer and the string expander when a command line
    can't be parsed. Carries the offending line and the position within it,
    so the problem can be pointed out to the user.
    """

    def __init__(self: Self, message: str, line: str, position: int) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.position = position

    def context(self: Self) -> str:
        """
        Returns the line with a "^" marker under the failing position.
        """
        return f"{self.line}\n{' ' * max(self.position, 0)}^"

    def __str__(self: Self) -> str:
        return f"{self.message}\n{self.context()}"


def error(msg: str, file: TextIO | None = None) -> None:
    """
    Print error messages in a consistent way.

    :param msg: the message to print
    :param file: where to print it. Defaults to standard error.
    """
    print(f"{colored('Error:', 'red')} {msg}", file=file or sys.stderr)
