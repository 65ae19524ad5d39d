"""
A session: one read-eval-print loop with its own buffers, variables,
connection and input/output handles.
"""

# pylint: disable=too-many-instance-attributes,too-many-public-methods

import re
import shlex
import signal
import subprocess
import sys
import threading
import traceback
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, Self, Sequence, TextIO

from termcolor import colored

from sqsh.buffers import BufferManager
from sqsh.connection import ConnectionContext, DisconnectedContext
from sqsh.errors import CommandLineSyntaxError, error
from sqsh.expander import DynamicScope, StringExpander
from sqsh.formatting import ColumnDescription
from sqsh.iomanager import InputOutputManager
from sqsh.outcome import (
    FAILED,
    Completed,
    ContextRequest,
    DispatchOutcome,
    EndSession,
    RedrawBuffer,
    SwitchInput,
    SwitchSession,
)
from sqsh.registry import Command, UsageError
from sqsh.render import LimitPolicy, PrettyRenderer, Renderer, SQLRenderer, make_renderer
from sqsh.shell import DEFAULT_IFS, ShellError, pipe_shell, read_shell
from sqsh.tokenizer import FdDup, Pipe, RedirectOut, Terminator, Tokenizer, Word

if TYPE_CHECKING:
    from sqsh.context import SqshContext

GO_COMMAND = "\\go"
COMMENT_PREFIX = "##"
TRUE_VALUES = ("true", "yes", "on", "1")

# Arguments for \go that may follow the terminator on the same line.
GO_ARGUMENTS = re.compile(r"\s*($|-{1,2}[A-Za-z]|\d?>|\|)")


class Session:
    """
    One session. Sessions are created and owned by a SqshContext.
    """

    # pylint: disable=too-many-arguments,too-many-positional-arguments
    def __init__(
        self: Self,
        context: "SqshContext",
        session_id: int,
        input: TextIO,  # pylint: disable=redefined-builtin
        out: TextIO,
        err: TextIO,
        interactive: bool = False,
        connection: ConnectionContext | None = None,
    ) -> None:
        self.context = context
        self.id = session_id
        self._logging = context.logging
        self._log = context.logging.logger("session")
        self.io = InputOutputManager(
            input, out, err, interactive, logger=context.logging.logger("io")
        )
        self.variables: dict[str, str] = {}
        self.buffers = BufferManager(
            max_buffers=self.setting_int("histsize", 50),
            logger=context.logging.logger("buffers"),
        )
        self.connection: ConnectionContext = connection or DisconnectedContext(
            context, logger=context.logging.logger("connection")
        )
        self.expander = StringExpander(
            self.variables,
            context.variables,
            DynamicScope(lambda: self.connection.globals()),
            shell=read_shell,
            ifs=lambda: self.get_variable("ifs") or DEFAULT_IFS,
        )
        self.fail_count = 0
        self.interrupted = False

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    @property
    def out(self: Self) -> TextIO:
        """The current output handle."""
        return self.io.out

    @property
    def err(self: Self) -> TextIO:
        """The current error handle."""
        return self.io.err

    @property
    def interactive(self: Self) -> bool:
        """Whether input is coming from a person."""
        return self.io.interactive

    def read_line(self: Self, prompt: str) -> str | None:
        """
        Read one line of input, without its line terminator.

        :returns: the line, or None at end of input
        """
        if self.interactive and self.io.input is sys.stdin:
            # input() automatically uses the readline library, if it's
            # been loaded.
            try:
                return input(prompt)
            except EOFError:
                print(file=self.out)
                return None

        if self.interactive and prompt:
            print(prompt, end="", file=self.out, flush=True)

        line = self.io.input.readline()
        if line == "":
            return None
        return line.rstrip("\r\n")

    # ------------------------------------------------------------------
    # Variables
    # ------------------------------------------------------------------

    def get_variable(self: Self, name: str) -> str | None:
        """
        Look up a variable: session-local first, then global.
        """
        if name in self.variables:
            return self.variables[name]
        return self.context.variables.get(name)

    def set_variable(self: Self, name: str, value: str, local: bool = False) -> None:
        """
        Set a variable. It's set locally if `local` is given or if a local
        variable of that name already exists; otherwise globally.

        :raises ValueError: if the value isn't valid for a setting
        """
        self.context.validate_setting(name, value)
        if local or name in self.variables:
            self.variables[name] = value
        else:
            self.context.variables[name] = value

        if name == "histsize":
            self.buffers.max_buffers = int(value)

    def unset_variable(self: Self, name: str) -> bool:
        """
        Remove a variable, local first.

        :returns: True if a variable was removed
        """
        if name in self.variables:
            del self.variables[name]
            return True
        return self.context.variables.pop(name, None) is not None

    def setting_bool(self: Self, name: str, default: bool = False) -> bool:
        """A variable interpreted as a boolean."""
        value = self.get_variable(name)
        if value is None:
            return default
        return value.strip().lower() in TRUE_VALUES

    def setting_int(self: Self, name: str, default: int = 0) -> int:
        """A variable interpreted as an integer."""
        value = self.get_variable(name)
        try:
            return int(value) if value is not None else default
        except ValueError:
            return default

    @property
    def terminator(self: Self) -> str | None:
        """The statement terminator, or None if there isn't one."""
        value = self.get_variable("terminator")
        return value if value else None

    def expand(self: Self, text: str, extra: dict[str, Any] | None = None) -> str:
        """
        Expand variable references in text, ignoring quotes.
        """
        return self.expander.expand(text, extra)

    def prompt(self: Self) -> str:
        """
        The expanded prompt for the next line.
        """
        template = self.get_variable("prompt") or "${lineno}> "
        text = self.expand(
            template,
            {"id": self.id, "lineno": self.buffers.current().line_number},
        )
        return colored(text, "cyan", attrs=["bold"])

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------

    def make_renderer(
        self: Self,
        style: str | None = None,
        headers: bool | None = None,
        footers: bool | None = None,
    ) -> Renderer:
        """
        Create a renderer writing to the session's output, from the
        display settings unless overridden.

        :raises ValueError: for an unknown style
        """
        return make_renderer(
            style or self.get_variable("style") or "pretty",
            self.out,
            self.err,
            show_headers=self.setting_bool("headers", True) if headers is None else headers,
            show_footers=self.setting_bool("footers", True) if footers is None else footers,
        )

    def make_sql_renderer(self: Self) -> SQLRenderer:
        """
        Create a SQLRenderer from the session's settings.
        """
        return SQLRenderer(
            formatter=self.context.formatter,
            max_rows=self.setting_int("maxrows", 0),
            limit_policy=LimitPolicy.from_name(
                self.get_variable("maxrows_method") or "discard"
            ),
            show_timings=self.setting_bool("timer", True),
            no_count=self.setting_bool("nocount", False),
            logger=self._logging.logger("render"),
        )

    def display_table(self: Self, names: Sequence[str], rows: Sequence[Sequence[Any]]) -> None:
        """
        Show a small table (e.g., a list of variables) on the output.
        """
        renderer = PrettyRenderer(self.out, self.err, show_footers=False)
        renderer.header([ColumnDescription(name) for name in names])
        for row in rows:
            renderer.row(["" if v is None else str(v) for v in row])
        renderer.flush()

    @contextmanager
    def cancel_on_interrupt(self: Self) -> Iterator[None]:
        """
        While active, Ctrl-C cancels the running statement instead of
        raising KeyboardInterrupt. Only possible on the main thread.
        """
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def handler(signum: int, frame: Any) -> None:
            # pylint: disable=unused-argument
            self.interrupted = True
            self.connection.cancel()

        previous = signal.signal(signal.SIGINT, handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous)

    # ------------------------------------------------------------------
    # The read-eval-print loop
    # ------------------------------------------------------------------

    def read_eval_print(self: Self) -> ContextRequest | None:
        """
        Read and evaluate lines until input runs out or a command asks the
        context to switch or end sessions.

        :returns: the request for the context, or None if input ran out
        """
        while True:
            self.buffers.current()

            if self.interrupted:
                self.interrupted = False
                if not self.interactive:
                    return None

            try:
                line = self.read_line(self.prompt() if self.interactive else "")
            except KeyboardInterrupt:
                if not self.interactive:
                    return None
                print(file=self.out)
                if not self.buffers.current().is_empty():
                    self.buffers.new_buffer()
                continue

            if line is None:
                if self.io.depth > 1:
                    # End of a nested input; go back to the one before.
                    self.io.restore()
                    continue
                return None

            try:
                outcome = self.evaluate(line)
            except KeyboardInterrupt:
                print("Interrupted.", file=self.err)
                if not self.interactive:
                    return None
                continue

            match outcome:
                case SwitchSession() | EndSession():
                    return outcome
                case SwitchInput():
                    self.switch_input(outcome)
                case RedrawBuffer():
                    self.redraw_buffer()
                case _:
                    pass

    def evaluate(self: Self, line: str) -> DispatchOutcome | None:
        """
        Evaluate one line of input: run it as a command, recall a buffer,
        ignore it as a comment or add it to the current buffer. Adding the
        line that terminates a statement runs the statement.

        :returns: the outcome of the command that ran, if any
        """
        line = self.context.aliases.process(line)

        if (command := self.resolve_command(line)) is not None:
            return self.run_command(command, line)

        if line.startswith(COMMENT_PREFIX):
            return None

        current = self.buffers.current()
        if line.startswith("!"):
            buf = self.buffers.resolve(line.strip())
            if buf is not None:
                current.add(str(buf))
                return RedrawBuffer()

        current.add_line(line)
        args = self.is_terminated()
        if args is not None and (go := self.context.commands.resolve(GO_COMMAND)):
            return self.run_command(go, f"{GO_COMMAND} {args}".rstrip())

        return None

    def resolve_command(self: Self, line: str) -> Command | None:
        """
        If the first word of the line names a command, return the command.
        """
        try:
            token = Tokenizer(line, terminator=self.terminator).next()
            if isinstance(token, Word) and "$" in token.text:
                token = Tokenizer(
                    self.expand(token.text), terminator=self.terminator
                ).next()
        except CommandLineSyntaxError:
            return None

        if not isinstance(token, Word):
            return None
        return self.context.commands.resolve(token.text)

    def is_terminated(self: Self) -> str | None:
        """
        Whether the current buffer ends with the statement terminator, as
        judged by the connection. The terminator may be followed by
        arguments for \\go, such as "-m csv" or "> file". They're cut
        from the buffer, along with the terminator if the connection
        says so.

        :returns: the arguments following the terminator (possibly empty),
            or None if the buffer isn't terminated
        """
        terminator = self.terminator
        if terminator is None:
            return None

        buf = self.buffers.current()
        text = str(buf)
        line_start = text.rstrip("\n").rfind("\n") + 1
        end = text.rfind(terminator, line_start)
        while end >= 0:
            rest = text[end + len(terminator) :]
            if GO_ARGUMENTS.match(rest) and self.connection.is_terminated(
                text[: end + len(terminator)], terminator
            ):
                if self.connection.is_terminator_removed(terminator):
                    buf.truncate(end)
                else:
                    buf.truncate(end + len(terminator))
                return rest.strip()
            end = text.rfind(terminator, line_start, end)
        return None

    def run_command(self: Self, command: Command, line: str) -> DispatchOutcome:
        """
        Run a command line: expand it, tokenize it, set up any redirection
        or pipe, parse the options and execute the command. Redirection is
        always undone afterwards.
        """
        # pylint: disable=too-many-branches
        pipe: subprocess.Popen | None = None
        outcome: DispatchOutcome = FAILED

        self.io.save()
        try:
            expanded = self.expander.expand_with_quotes(line)
            tokenizer = Tokenizer(
                expanded,
                terminator=self.terminator,
                keep_double_quotes=command.keep_double_quotes,
                ifs=self.get_variable("ifs") or DEFAULT_IFS,
            )

            # The first word is the command itself.
            tokenizer.next()
            argv: list[str] = []
            have_terminator = False
            for token in tokenizer:
                if have_terminator:
                    raise CommandLineSyntaxError(
                        "Input is not allowed after the command terminator "
                        f'"{self.terminator}"',
                        expanded,
                        token.position,
                    )

                match token:
                    case Terminator():
                        have_terminator = True
                    case RedirectOut():
                        self._redirect(token, expanded)
                    case FdDup():
                        self._dup(token, expanded)
                    case Pipe():
                        pipe = self._pipe(token, expanded)
                    case Word():
                        argv.append(token.text)

            try:
                opts = command.parse(argv)
            except UsageError as e:
                print(str(e), file=self.err)
                print(command.usage_line(), file=self.err)
            else:
                outcome = command.execute(self, opts)

        except CommandLineSyntaxError as e:
            print(str(e), file=self.err)
        except BrokenPipeError:
            # The process we were piping to went away.
            self._log.debug("Broken pipe running %s", command.name)
            outcome = Completed(0)
        # pylint: disable=broad-except
        except Exception as e:
            error(f"{type(e).__name__}: {e}", file=self.err)
            traceback.print_exception(e, file=self.err)
        finally:
            self.io.restore()
            if pipe is not None:
                pipe.wait()

        if isinstance(outcome, Completed) and outcome.exit_code != 0:
            self.fail_count += 1
        return outcome

    def execute(self: Self, name: str, *argv: str) -> DispatchOutcome:
        """
        Run a command programmatically, e.g. execute("\\\\set", "x=1").

        :raises KeyError: if there's no such command
        """
        if (command := self.context.commands.resolve(name)) is None:
            raise KeyError(name)
        return self.run_command(command, shlex.join([name, *argv]))

    def _redirect(self: Self, token: RedirectOut, line: str) -> None:
        if token.fd not in (1, 2):
            raise CommandLineSyntaxError(
                "Redirection can only be performed on file descriptors 1 "
                "(stdout) and 2 (stderr)",
                line,
                token.position,
            )

        path = Path(token.filename).expanduser()
        try:
            # pylint: disable=consider-using-with
            f = open(path, mode="a" if token.append else "w", encoding="utf-8")
        except OSError as e:
            raise CommandLineSyntaxError(
                f'Cannot redirect to file "{token.filename}": {e}',
                line,
                token.position,
            ) from e

        if token.fd == 1:
            self.io.set_out(f, auto_close=True)
        else:
            self.io.set_err(f, auto_close=True)

    def _dup(self: Self, token: FdDup, line: str) -> None:
        if token.old_fd == token.new_fd:
            return

        if token.old_fd not in (1, 2) or token.new_fd not in (1, 2):
            raise CommandLineSyntaxError(
                "Redirection can only be performed on file descriptors 1 "
                "(stdout) and 2 (stderr)",
                line,
                token.position,
            )

        if token.old_fd == 1:
            self.io.set_out(self.err, auto_close=False)
        else:
            self.io.set_err(self.out, auto_close=False)

    def _pipe(self: Self, token: Pipe, line: str) -> subprocess.Popen:
        try:
            process = pipe_shell(token.command)
        except ShellError as e:
            raise CommandLineSyntaxError(
                f"Failed to execute: {token.command}: {e}", line, token.position
            ) from e

        assert process.stdin is not None
        self.io.set_out(process.stdin, auto_close=True)
        return process

    def switch_input(self: Self, request: SwitchInput) -> None:
        """
        Start reading from another input. When it runs out, the current
        input is resumed.
        """
        self.io.save()
        self.io.set_input(request.source, request.auto_close, request.interactive)

    def redraw_buffer(self: Self) -> None:
        """
        Redisplay the current buffer, a line at a time with the prompt,
        as if it had been typed.
        """
        if not self.interactive:
            return

        buf = self.buffers.current()
        lines = buf.lines()
        buf.clear()
        for line in lines:
            print(f"{self.prompt()}{line}", file=self.out)
            buf.add_line(line)

    def close(self: Self) -> None:
        """
        Close the connection and any handles the session opened.
        """
        self.connection.close()
        self.io.close()

    def __str__(self: Self) -> str:
        return f"{self.id} ({self.connection})"
