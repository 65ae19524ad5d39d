"""
The result of dispatching a command. Most commands simply complete, with
an exit code. The rest ask the session, or the context that owns it, to do
something: redraw the buffer, read input from somewhere else, switch to a
different session or end the current one.
"""

from dataclasses import dataclass
from typing import TextIO


@dataclass(frozen=True)
class Completed:
    """
    The command ran. A non-zero exit code means it failed.
    """

    exit_code: int = 0


@dataclass(frozen=True)
class RedrawBuffer:
    """
    The current buffer was changed; redisplay it.
    """


@dataclass(frozen=True)
class SwitchInput:
    """
    Read input from `source` until it's exhausted, then resume reading
    from the current input.
    """

    source: TextIO
    auto_close: bool = True
    interactive: bool = False


@dataclass(frozen=True)
class SwitchSession:
    """
    Make another session current. `target` is a session id; None means
    the next available session, unless `previous` is set, in which case the
    previously current session is used. If `end_current` is set, the session
    that asked for the switch is ended.
    """

    target: int | None = None
    previous: bool = False
    end_current: bool = False


@dataclass(frozen=True)
class EndSession:
    """
    End the current session. With `exit_all`, end every session and leave
    the shell.
    """

    exit_all: bool = False


DispatchOutcome = Completed | RedrawBuffer | SwitchInput | SwitchSession | EndSession
ContextRequest = SwitchSession | EndSession

OK = Completed(0)
FAILED = Completed(1)
