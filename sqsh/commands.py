"""
The built-in backslash commands.
"""

# pylint: disable=too-few-public-methods,missing-function-docstring

import csv
import re
import textwrap
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING, Self

import click
import sqlalchemy

from sqsh.aliases import Alias
from sqsh.buffers import Buffer
from sqsh.config import (
    ConfigurationError,
    lookup_connection,
    make_connection_config,
)
from sqsh.connection import (
    NOT_CONNECTED_MESSAGE,
    SQLConnectionContext,
    print_sql_exception,
)
from sqsh.errors import NotConnectedError, error
from sqsh.logconfig import parse_level
from sqsh.outcome import (
    FAILED,
    OK,
    DispatchOutcome,
    EndSession,
    RedrawBuffer,
    SwitchInput,
    SwitchSession,
)
from sqsh.params import (
    bind_parameters,
    bind_value,
    number_placeholders,
    parse_call,
    parse_parameters,
)
from sqsh.registry import Command

if TYPE_CHECKING:
    from sqsh.session import Session

DEFAULT_SCREEN_WIDTH = 79
MULTI_WHITESPACE = re.compile(r"\s+")
HISTORY_LINES = 10


def _buffer(session: "Session", name: str) -> Buffer | None:
    """
    Resolve a buffer reference. The leading "!" is optional.
    """
    if not name.startswith("!"):
        name = f"!{name}"
    return session.buffers.resolve(name)


def _retire_buffer(session: "Session") -> str:
    """
    Take the text of the current buffer, and start a fresh one. When the
    session isn't interactive, the buffer is just emptied, so the history
    doesn't fill up with a script's statements.
    """
    buf = session.buffers.current()
    sql = str(buf)
    if session.interactive:
        session.buffers.new_buffer()
    else:
        buf.clear()
    return sql


class GoCommand(Command):
    name = "\\go"
    aliases = ("go",)
    usage = "[-m style] [-n count] [-H] [-F] [-t seconds]"
    description = """
    Execute the contents of the current buffer. The buffer is also executed
    when a line ends with the statement terminator (see the "terminator"
    variable). The buffer is then moved into the history.
    """
    options = (
        click.Option(["-m", "--display-style", "style"], help="Display style."),
        click.Option(["-n", "--repeat"], type=click.IntRange(min=1), default=1),
        click.Option(["-H", "--no-headers"], is_flag=True, default=False),
        click.Option(["-F", "--no-footers"], is_flag=True, default=False),
        click.Option(["-t", "--timeout"], type=click.IntRange(min=0)),
    )
    max_args = 0

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        connection = session.connection
        if not connection.connected:
            print(NOT_CONNECTED_MESSAGE, file=session.err)
            return FAILED

        sql = _retire_buffer(session)
        if session.setting_bool("expand"):
            sql = session.expand(sql)
        if sql.strip() == "":
            return OK

        try:
            renderer = session.make_renderer(
                style=opts.style,
                headers=False if opts.no_headers else None,
                footers=False if opts.no_footers else None,
            )
            sql_renderer = session.make_sql_renderer()
        except ValueError as e:
            error(str(e), file=session.err)
            return FAILED

        connection.query_timeout = (
            opts.timeout if opts.timeout is not None else session.setting_int("timeout")
        )
        for _ in range(opts.repeat):
            try:
                with session.cancel_on_interrupt():
                    connection.evaluate(sql, renderer, sql_renderer)
            except NotConnectedError as e:
                print(str(e), file=session.err)
                return FAILED
            except sqlalchemy.exc.SQLAlchemyError as e:
                print_sql_exception(e, file=session.err)
                return FAILED

        return OK


class ResetCommand(Command):
    name = "\\reset"
    description = "Move the current buffer into the history, and start a new one."
    max_args = 0

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        session.buffers.new_buffer()
        return OK


class BufCopyCommand(Command):
    name = "\\buf-copy"
    usage = "src-buf [dst-buf]"
    description = """
    Copy one buffer into another, replacing its contents. Buffers are
    referred to as "!." (the current buffer), "!.." (the one before it),
    "!N" (buffer N) or "!name". The destination defaults to the current
    buffer.
    """
    min_args = 1
    max_args = 2
    append = False

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        src_name = opts.args[0]
        dst_name = opts.args[1] if len(opts.args) > 1 else "!."

        if (src := _buffer(session, src_name)) is None:
            error(f"Specified source buffer '{src_name}' does not exist", file=session.err)
            return FAILED
        if (dst := _buffer(session, dst_name)) is None:
            error(f"Specified destination buffer '{dst_name}' does not exist", file=session.err)
            return FAILED

        if src is not dst:
            text = str(src)
            if self.append:
                dst.add(text)
            else:
                dst.set(text)

        if dst is session.buffers.current():
            return RedrawBuffer()
        return OK


class BufAppendCommand(BufCopyCommand):
    name = "\\buf-append"
    description = """
    Append one buffer to another. The destination defaults to the current
    buffer.
    """
    append = True


class BufLoadCommand(Command):
    name = "\\buf-load"
    usage = "[-a] filename [dst-buf]"
    description = "Load a file into a buffer (by default, the current one)."
    options = (click.Option(["-a", "--append"], is_flag=True, default=False),)
    min_args = 1
    max_args = 2

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        dst_name = opts.args[1] if len(opts.args) > 1 else "!."
        if (dst := _buffer(session, dst_name)) is None:
            error(f"Specified destination buffer '{dst_name}' does not exist", file=session.err)
            return FAILED

        path = Path(opts.args[0]).expanduser()
        try:
            session.buffers.load(dst, path, append=opts.append)
        except OSError as e:
            error(f'Unable to read "{path}": {e}', file=session.err)
            return FAILED

        if dst is session.buffers.current():
            return RedrawBuffer()
        return OK


class BufSaveCommand(Command):
    name = "\\buf-save"
    usage = "[-a] filename [src-buf]"
    description = """
    Save a buffer to a file. The buffer defaults to the current one or, if
    that's empty, the one before it.
    """
    options = (click.Option(["-a", "--append"], is_flag=True, default=False),)
    min_args = 1
    max_args = 2

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        if len(opts.args) > 1:
            src_name = opts.args[1]
        elif session.buffers.current().is_empty():
            src_name = "!.."
        else:
            src_name = "!."

        if (src := _buffer(session, src_name)) is None:
            error(f"Specified source buffer '{src_name}' does not exist", file=session.err)
            return FAILED

        path = Path(opts.args[0]).expanduser()
        try:
            session.buffers.save(src, path, append=opts.append)
        except OSError as e:
            error(f'Unable to write "{path}": {e}', file=session.err)
            return FAILED
        return OK


class BufNameCommand(Command):
    name = "\\buf-name"
    usage = "name [buf]"
    description = """
    Give a buffer (by default, the previous one) a name, so that it can be
    referred to as "!name".
    """
    min_args = 1
    max_args = 2

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        name = opts.args[0]
        if not re.match(r"^[A-Za-z_]\w*$", name):
            error(f'Invalid buffer name "{name}"', file=session.err)
            return FAILED

        ref = opts.args[1] if len(opts.args) > 1 else "!.."
        if (buf := _buffer(session, ref)) is None:
            error(f"Specified buffer '{ref}' does not exist", file=session.err)
            return FAILED

        session.buffers.bind(name, buf)
        return OK


class HistoryCommand(Command):
    name = "\\history"
    usage = "[-a]"
    description = """
    Show the buffer history. Long buffers are cut short unless -a is given.
    """
    options = (click.Option(["-a", "--all", "show_all"], is_flag=True, default=False),)
    max_args = 0

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        for buf in session.buffers.history():
            if buf.is_empty():
                continue

            prefix = f"({buf.id}) "
            lines = buf.lines()
            if not opts.show_all and len(lines) > HISTORY_LINES:
                lines = lines[:HISTORY_LINES] + ["..."]

            print(f"{prefix}{lines[0]}", file=session.out)
            for line in lines[1:]:
                print(f"{' ' * len(prefix)}{line}", file=session.out)
        return OK


class SessionCommand(Command):
    name = "\\session"
    usage = "[session-id | -]"
    description = """
    With no arguments, list the active sessions; the current one is marked
    with "*". Otherwise, switch to the given session, or to the previous one
    if the argument is "-".
    """
    max_args = 1

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        if not opts.args:
            rows = []
            for s in session.context.sessions():
                marker = "*" if s is session else ""
                username = getattr(s.connection, "username", None)
                rows.append([f"{marker}{s.id}", username, s.connection.url])
            session.display_table(["Id", "Username", "URL"], rows)
            return OK

        target = opts.args[0]
        if target == "-":
            return SwitchSession(previous=True)

        try:
            session_id = int(target)
        except ValueError:
            error(f"Invalid session id '{target}'", file=session.err)
            return FAILED

        if session.context.get_session(session_id) is None:
            error(f"Specified session id '{target}' does not exist", file=session.err)
            return FAILED

        return SwitchSession(target=session_id)


class EndCommand(Command):
    name = "\\end"
    usage = "[next-session-id]"
    description = """
    End the current session, closing its connection. If a session id is
    given, that session becomes current; otherwise the previous session
    does. Ending the last session leaves the shell.
    """
    max_args = 1

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        if not opts.args:
            return EndSession()

        target = opts.args[0]
        try:
            session_id = int(target)
        except ValueError:
            error(f"Invalid session id '{target}'", file=session.err)
            return FAILED

        if session.context.get_session(session_id) is None:
            error(f"Specified next session id '{target}' does not exist", file=session.err)
            return FAILED

        return SwitchSession(target=session_id, end_current=True)


class QuitCommand(Command):
    name = "\\quit"
    aliases = ("\\exit", "quit", "exit")
    description = "End all sessions and leave the shell."
    max_args = 0

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        return EndSession(exit_all=True)


class EvalCommand(Command):
    name = "\\eval"
    usage = "filename"
    description = """
    Read input from a file, as if it were typed. Input resumes from the
    current source when the file is exhausted.
    """
    min_args = 1
    max_args = 1

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        path = Path(opts.args[0]).expanduser()
        try:
            # pylint: disable=consider-using-with
            f = open(path, mode="r", encoding="utf-8")
        except OSError as e:
            error(f'Unable to open "{path}": {e}', file=session.err)
            return FAILED

        return SwitchInput(f, auto_close=True, interactive=False)


class EchoCommand(Command):
    name = "\\echo"
    aliases = ("echo",)
    usage = "[-n] [text ...]"
    description = "Print the arguments. -n suppresses the trailing newline."
    options = (click.Option(["-n", "no_newline"], is_flag=True, default=False),)

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        print(" ".join(opts.args), end="" if opts.no_newline else "\n", file=session.out)
        return OK


class SetCommand(Command):
    name = "\\set"
    usage = "[-x] [-l] [name=value]"
    description = """
    Set a variable, or list all variables. A variable is set globally,
    unless -l is given or a session-local variable of the same name already
    exists. -x also exports the variable to the environment of commands the
    shell runs.
    """
    options = (
        click.Option(["-x", "--export"], is_flag=True, default=False),
        click.Option(["-l", "--local"], is_flag=True, default=False),
    )

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        if not opts.args:
            names = sorted(set(session.variables) | set(session.context.variables))
            session.display_table(
                ["Name", "Value"], [[n, session.get_variable(n)] for n in names]
            )
            return OK

        assignment = " ".join(opts.args)
        name, sep, value = assignment.partition("=")
        name = name.strip()
        if not sep or name == "":
            error(f'Expected "name=value", not "{assignment}"', file=session.err)
            return FAILED

        try:
            session.set_variable(name, value, local=opts.local)
        except ValueError as e:
            error(str(e), file=session.err)
            return FAILED

        if opts.export:
            session.context.export_variable(name, value)
        return OK


class UnsetCommand(Command):
    name = "\\unset"
    usage = "name [name ...]"
    description = "Remove variables."
    min_args = 1

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        rc = OK
        for name in opts.args:
            if not session.unset_variable(name):
                error(f'No such variable "{name}"', file=session.err)
                rc = FAILED
        return rc


class GlobalsCommand(Command):
    name = "\\globals"
    description = "List the global variables."
    max_args = 0

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        variables = session.context.variables
        session.display_table(
            ["Name", "Value"], [[n, variables[n]] for n in sorted(variables)]
        )
        return OK


class AliasCommand(Command):
    name = "\\alias"
    usage = "[-g] [-r] [name=text]"
    description = """
    Define an alias, or list them. An alias replaces its name with its text
    when the name starts a line; a global alias (-g) is replaced anywhere on
    the line. -r removes an alias.
    """
    options = (
        click.Option(["-g", "--global", "is_global"], is_flag=True, default=False),
        click.Option(["-r", "--remove"], is_flag=True, default=False),
    )

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        aliases = session.context.aliases
        if not opts.args:
            session.display_table(
                ["Alias", "Global?", "Text"],
                [[a.name, "Y" if a.is_global else "N", a.text] for a in aliases.aliases()],
            )
            return OK

        if opts.remove:
            rc = OK
            for name in opts.args:
                if not aliases.remove(name):
                    error(f'No such alias "{name}"', file=session.err)
                    rc = FAILED
            return rc

        definition = " ".join(opts.args)
        name, sep, text = definition.partition("=")
        name = name.strip()
        if not sep or name == "":
            error(f'Expected "name=text", not "{definition}"', file=session.err)
            return FAILED

        aliases.add(Alias(name, text, is_global=opts.is_global))
        return OK


class ConnectCommand(Command):
    name = "\\connect"
    usage = "[-n] [-a name] [-r name] [-l] [url | name]"
    description = """
    Connect to a database, given a SQLAlchemy URL or the (unique prefix of
    the) name of a connection in the configuration file. -n opens the
    connection in a new session; -a saves the connection under a name; -r
    removes a saved connection; -l lists the saved connections.
    """
    options = (
        click.Option(["-n", "--new-session"], is_flag=True, default=False),
        click.Option(["-a", "--add", "save_as"]),
        click.Option(["-r", "--remove"]),
        click.Option(["-l", "--list", "show_list"], is_flag=True, default=False),
    )
    max_args = 1

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        # pylint: disable=too-many-return-statements
        configuration = session.context.configuration

        if opts.show_list:
            rows = []
            for name in configuration.names():
                cfg = configuration.get(name)
                assert cfg is not None
                rows.append([name, cfg.raw_url or cfg.url])
            session.display_table(["Name", "URL"], rows)
            return OK

        if opts.remove is not None:
            if not configuration.remove(opts.remove):
                error(f'No saved connection named "{opts.remove}"', file=session.err)
                return FAILED
            return self._save(session)

        if not opts.args:
            error("A URL or connection name is required", file=session.err)
            return FAILED

        try:
            cfg = lookup_connection(configuration, opts.args[0])
        except ConfigurationError as e:
            error(str(e), file=session.err)
            return FAILED

        try:
            connection = session.context.connect(cfg.url)
        except (sqlalchemy.exc.SQLAlchemyError, ImportError) as e:
            error(f"Unable to connect to {cfg.url}: {e}", file=session.err)
            return FAILED

        if opts.save_as is not None:
            configuration.put(make_connection_config(opts.save_as, cfg.raw_url or cfg.url))
            if self._save(session) != OK:
                connection.close()
                return FAILED

        if opts.new_session:
            base = session.io.base
            new = session.context.new_session(
                connection=connection,
                input=base.input,
                out=base.out,
                err=base.err,
                interactive=base.interactive,
            )
            return SwitchSession(target=new.id)

        session.connection.close()
        session.connection = connection
        return OK

    @staticmethod
    def _save(session: "Session") -> DispatchOutcome:
        try:
            session.context.configuration.save()
        except ConfigurationError as e:
            error(str(e), file=session.err)
            return FAILED
        return OK


class CallCommand(Command):
    name = "\\call"
    usage = "[-f file] [-i] [param ...]"
    description = """
    Execute the current buffer as a prepared statement, once with the given
    parameters or once per line of a CSV file. Each parameter is "T:value"
    where T is one of S (string), C (char), Z (boolean), D (double), F
    (float), I (integer), J (bigint) or R (result set); "T:#n" takes the
    value from column n of each line of the file and "T:#" from the column
    at the parameter's position. -i ignores the first line of the file.
    """
    options = (
        click.Option(["-f", "--file", "input_file"], type=click.Path(dir_okay=False)),
        click.Option(["-i", "--ignore-header"], is_flag=True, default=False),
    )

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        # pylint: disable=too-many-return-statements
        connection = session.connection
        if not isinstance(connection, SQLConnectionContext):
            print(NOT_CONNECTED_MESSAGE, file=session.err)
            return FAILED

        sql = _retire_buffer(session).strip()
        if sql == "":
            error("The current buffer is empty", file=session.err)
            return FAILED

        try:
            params = parse_parameters(opts.args)
        except ValueError as e:
            error(str(e), file=session.err)
            return FAILED

        rows: list[list[str]] = [[]]
        if opts.input_file is not None:
            path = Path(opts.input_file).expanduser()
            try:
                with open(path, mode="r", newline="", encoding="utf-8") as f:
                    rows = list(csv.reader(f))
            except (OSError, csv.Error) as e:
                error(f'Unable to read "{path}": {e}', file=session.err)
                return FAILED

            if opts.ignore_header:
                rows = rows[1:]
            if not params and rows:
                params = parse_parameters(["S:#"] * len(rows[0]))

        renderer = session.make_renderer()
        sql_renderer = session.make_sql_renderer()
        procedure = parse_call(sql)
        statement, count = number_placeholders(sql)
        if procedure is None and count != len(params):
            error(
                f"The statement has {count} parameter marker(s), but "
                f"{len(params)} parameter(s) were supplied",
                file=session.err,
            )
            return FAILED

        for line_no, row in enumerate(rows, start=2 if opts.ignore_header else 1):
            for param in params:
                try:
                    param.set_from_row(row)
                except IndexError:
                    error(
                        f"Line #{line_no} does not contain requested column "
                        f"#{(param.column or 0) + 1}",
                        file=session.err,
                    )
                    return FAILED

            try:
                with session.cancel_on_interrupt():
                    if procedure is not None:
                        connection.call_procedure(
                            procedure,
                            [bind_value(p) for p in params],
                            renderer,
                            sql_renderer,
                        )
                    else:
                        connection.run(
                            statement, renderer, sql_renderer, bind_parameters(params)
                        )
            except ValueError as e:
                error(str(e), file=session.err)
                return FAILED
            except NotImplementedError as e:
                error(str(e), file=session.err)
                return FAILED
            except sqlalchemy.exc.SQLAlchemyError as e:
                print_sql_exception(e, file=session.err)
                return FAILED

        return OK


class DebugCommand(Command):
    name = "\\debug"
    usage = "[-l level] [component ...]"
    description = """
    Change the logging level (default: debug) of some part of the shell,
    e.g. "session", "connection", "render", "io" or "buffers". With no
    component, the level of the whole shell is changed.
    """
    options = (click.Option(["-l", "--level"], default="DEBUG"),)

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        try:
            level = parse_level(opts.level)
        except ValueError as e:
            error(str(e), file=session.err)
            return FAILED

        for component in opts.args or [None]:
            session.context.logging.set_level(component, level)
        return OK


class HelpCommand(Command):
    name = "\\help"
    aliases = ("help",)
    usage = "[command]"
    description = "Show help for all commands, or for just one."
    max_args = 1

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        def collapse_help(text: str) -> str:
            return MULTI_WHITESPACE.sub(" ", text.strip().replace("\n", " "))

        manager = session.context.commands
        if opts.args:
            name = opts.args[0]
            if (command := manager.resolve(name)) is None and not name.startswith("\\"):
                command = manager.resolve(f"\\{name}")
            if command is None:
                error(f'Unknown command "{name}".', file=session.err)
                return FAILED
            commands = [command]
        else:
            commands = manager.commands()

        prefixes = [f"{c.name} {c.usage}".rstrip() for c in commands]
        prefix_width = max(len(p) for p in prefixes)

        # How much room do we have left for text? Allow for separating " - ".
        separator = " - "
        text_width = DEFAULT_SCREEN_WIDTH - len(separator) - prefix_width
        if text_width < 20:
            text_width = DEFAULT_SCREEN_WIDTH // 2

        for prefix, command in zip(prefixes, commands):
            text_lines = textwrap.wrap(collapse_help(command.description), width=text_width) or [""]
            print(f"{prefix.ljust(prefix_width)}{separator}{text_lines[0]}", file=session.out)
            padding = " " * (prefix_width + len(separator))
            for text_line in text_lines[1:]:
                print(f"{padding}{text_line}", file=session.out)

        return OK


BUILTIN_COMMANDS: list[Command] = [
    GoCommand(),
    ResetCommand(),
    BufCopyCommand(),
    BufAppendCommand(),
    BufLoadCommand(),
    BufSaveCommand(),
    BufNameCommand(),
    HistoryCommand(),
    SessionCommand(),
    EndCommand(),
    QuitCommand(),
    EvalCommand(),
    EchoCommand(),
    SetCommand(),
    UnsetCommand(),
    GlobalsCommand(),
    AliasCommand(),
    ConnectCommand(),
    CallCommand(),
    DebugCommand(),
    HelpCommand(),
]
