"""
Helpers for running external shell commands, used for back-tick
substitution and for piping command output.
"""

import os
import subprocess

DEFAULT_IFS = r"\s"
WHITESPACE = " \t\n\r"


class ShellError(Exception):
    """
    Thrown when a shell command can't be started.
    """


def to_field_separator(spec: str) -> str:
    r"""
    Convert an IFS specification into the set of separator characters.
    Supports the escapes \n, \r, \t and \s (any white space).

    :param spec: the specification, e.g. "\s" or ",\t"

    :returns: the separator characters
    """
    chars: list[str] = []
    i = 0
    while i < len(spec):
        ch = spec[i]
        if ch == "\\" and i + 1 < len(spec):
            i += 1
            match spec[i]:
                case "n":
                    chars.append("\n")
                case "r":
                    chars.append("\r")
                case "t":
                    chars.append("\t")
                case "s":
                    chars.append(WHITESPACE)
                case other:
                    chars.append(other)
        else:
            chars.append(ch)
        i += 1

    return "".join(chars)


def split_fields(text: str, separators: str) -> list[str]:
    """
    Split text into fields on any of the separator characters, dropping
    empty fields.
    """
    fields: list[str] = []
    current: list[str] = []
    for ch in text:
        if ch in separators:
            if current:
                fields.append("".join(current))
                current = []
        else:
            current.append(ch)

    if current:
        fields.append("".join(current))

    # A trailing newline that isn't a separator still shouldn't end up in
    # the last field.
    if fields:
        fields[-1] = fields[-1].rstrip("\r\n")
        if fields[-1] == "":
            fields.pop()

    return fields


def shell_command() -> list[str]:
    """
    The shell used to run commands, honoring $SHELL.
    """
    return [os.environ.get("SHELL", "/bin/sh"), "-c"]


def read_shell(command: str) -> str:
    """
    Run a command and capture its standard output.

    :param command: the shell command line

    :returns: everything the command wrote to standard output

    :raises ShellError: if the shell couldn't be started
    """
    try:
        completed = subprocess.run(
            [*shell_command(), command],
            stdout=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            check=False,
        )
    except OSError as e:
        raise ShellError(str(e)) from e

    return completed.stdout


def pipe_shell(command: str) -> subprocess.Popen:
    """
    Start a command that reads from a pipe. The caller writes to the
    process's stdin and must close it and wait on the process.

    :raises ShellError: if the shell couldn't be started
    """
    try:
        return subprocess.Popen(
            [*shell_command(), command],
            stdin=subprocess.PIPE,
            text=True,
        )
    except OSError as e:
        raise ShellError(str(e)) from e
