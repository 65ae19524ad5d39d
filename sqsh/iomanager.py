"""
Input/output handle management for a session. Redirection works by saving
the current handles, replacing them for the duration of a command and then
restoring the saved ones. Handles the session opened itself are marked
auto-close and are closed when nothing refers to them any more.
"""

import logging
import sys
from dataclasses import dataclass, replace
from typing import Self, TextIO

from sqsh.errors import SqshException

STANDARD_STREAMS = (sys.__stdin__, sys.__stdout__, sys.__stderr__)


@dataclass
class IOState:
    """
    One set of input, output and error handles.
    """

    # pylint: disable=too-many-instance-attributes

    input: TextIO
    out: TextIO
    err: TextIO
    interactive: bool = False
    auto_close_input: bool = False
    auto_close_out: bool = False
    auto_close_err: bool = False

    def handles(self: Self) -> list[TextIO]:
        """
        All the handles in this state.
        """
        return [self.input, self.out, self.err]


class InputOutputManager:
    """
    A stack of IOStates. The top of the stack is the active state.
    """

    def __init__(
        self: Self,
        input: TextIO,  # pylint: disable=redefined-builtin
        out: TextIO,
        err: TextIO,
        interactive: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self._stack = [IOState(input, out, err, interactive)]
        self._log = logger or logging.getLogger("sqsh.io")

    @property
    def state(self: Self) -> IOState:
        """
        The active state.
        """
        return self._stack[-1]

    @property
    def base(self: Self) -> IOState:
        """
        The state the manager was created with.
        """
        return self._stack[0]

    @property
    def depth(self: Self) -> int:
        """
        The number of states on the stack; 1 when nothing has been saved.
        """
        return len(self._stack)

    @property
    def input(self: Self) -> TextIO:
        """The current input handle."""
        return self.state.input

    @property
    def out(self: Self) -> TextIO:
        """The current output handle."""
        return self.state.out

    @property
    def err(self: Self) -> TextIO:
        """The current error handle."""
        return self.state.err

    @property
    def interactive(self: Self) -> bool:
        """Whether the current input is interactive."""
        return self.state.interactive

    def save(self: Self) -> None:
        """
        Push a copy of the current state. Handles in the copy are shared
        with the saved state, so they are never closed by the copy.
        """
        self._stack.append(
            replace(
                self.state,
                auto_close_input=False,
                auto_close_out=False,
                auto_close_err=False,
            )
        )

    def restore(self: Self) -> None:
        """
        Pop the current state, closing any handles it owns that the
        remaining states don't use.

        :raises SqshException: if there is nothing to restore
        """
        if len(self._stack) == 1:
            raise SqshException("There is no saved input/output state to restore.")

        state = self._stack.pop()
        owned = []
        if state.auto_close_input:
            owned.append(state.input)
        if state.auto_close_out:
            owned.append(state.out)
        if state.auto_close_err:
            owned.append(state.err)

        for handle in owned:
            self._close(handle)

        for handle in (state.out, state.err):
            if handle not in owned and not handle.closed:
                handle.flush()

    def set_input(
        self: Self, input: TextIO, auto_close: bool, interactive: bool  # pylint: disable=redefined-builtin
    ) -> None:
        """
        Replace the input handle of the current state.
        """
        state = self.state
        old, old_auto = state.input, state.auto_close_input
        state.input = input
        state.auto_close_input = auto_close
        state.interactive = interactive
        if old_auto:
            self._close(old)

    def set_out(self: Self, out: TextIO, auto_close: bool) -> None:
        """
        Replace the output handle of the current state.
        """
        state = self.state
        old, old_auto = state.out, state.auto_close_out
        state.out = out
        state.auto_close_out = auto_close
        if old_auto:
            self._close(old)

    def set_err(self: Self, err: TextIO, auto_close: bool) -> None:
        """
        Replace the error handle of the current state.
        """
        state = self.state
        old, old_auto = state.err, state.auto_close_err
        state.err = err
        state.auto_close_err = auto_close
        if old_auto:
            self._close(old)

    def _in_use(self: Self, handle: TextIO) -> bool:
        return any(handle in s.handles() for s in self._stack)

    def _close(self: Self, handle: TextIO) -> None:
        if handle in STANDARD_STREAMS or handle.closed or self._in_use(handle):
            return

        self._log.debug("Closing %r", handle)
        try:
            handle.close()
        except (OSError, ValueError) as e:
            # Usually a pipe whose reader already went away.
            self._log.debug("Error closing %r: %s", handle, e)

    def close(self: Self) -> None:
        """
        Unwind the whole stack, closing everything the manager owns.
        """
        while len(self._stack) > 1:
            self.restore()

        state = self.state
        for handle, auto in (
            (state.input, state.auto_close_input),
            (state.out, state.auto_close_out),
            (state.err, state.auto_close_err),
        ):
            if auto and not handle.closed and handle not in STANDARD_STREAMS:
                handle.close()
