"""
The shell-wide context. It owns the sessions, the global variables, the
commands and aliases and the configuration, and runs whichever session is
current until there are none left.
"""

# pylint: disable=too-many-instance-attributes

import os
import sys
from pathlib import Path
from typing import Callable, Self, TextIO

from sqsh.aliases import AliasManager
from sqsh.commands import BUILTIN_COMMANDS
from sqsh.config import Configuration
from sqsh.connection import ConnectionContext, SQLConnectionContext
from sqsh.errors import error
from sqsh.formatting import DataFormatter
from sqsh.logconfig import LoggingConfig
from sqsh.outcome import EndSession, SwitchSession
from sqsh.registry import CommandManager
from sqsh.render import RENDERERS, LimitPolicy
from sqsh.session import Session

DEFAULT_VARIABLES: dict[str, str] = {
    "terminator": ";",
    "prompt": "${lineno}> ",
    "maxrows": "500",
    "maxrows_method": "discard",
    "style": "pretty",
    "headers": "true",
    "footers": "true",
    "timer": "true",
    "nocount": "false",
    "timeout": "0",
    "ifs": r"\s",
    "expand": "false",
    "histsize": "50",
}


def _non_negative_int(name: str, value: str) -> None:
    try:
        if int(value) >= 0:
            return
    except ValueError:
        pass
    raise ValueError(f'"{name}" must be a number greater than or equal to 0')


def _terminator(name: str, value: str) -> None:
    if len(value) > 1 or value.isalnum() or value.isspace():
        raise ValueError(
            f'"{name}" must be a single punctuation character, or empty to '
            "disable statement terminators"
        )


def _limit_policy(name: str, value: str) -> None:
    LimitPolicy.from_name(value)


def _style(name: str, value: str) -> None:
    if value.lower() not in RENDERERS:
        styles = ", ".join(sorted(RENDERERS))
        raise ValueError(f'Unknown display style "{value}". Use one of: {styles}')


SETTING_VALIDATORS: dict[str, Callable[[str, str], None]] = {
    "maxrows": _non_negative_int,
    "timeout": _non_negative_int,
    "histsize": _non_negative_int,
    "terminator": _terminator,
    "style": _style,
    "maxrows_method": _limit_policy,
}


class SqshContext:
    """
    The supervisor for all sessions.
    """

    def __init__(
        self: Self,
        configuration: Configuration | None = None,
        logging_config: LoggingConfig | None = None,
        commands: CommandManager | None = None,
        buffer_history: Path | None = None,
    ) -> None:
        """
        :param configuration: the connection profiles
        :param logging_config: the logging settings
        :param commands: the command registry; the built-in commands if None
        :param buffer_history: where the buffer history of the first
            interactive session is loaded from and saved to, if anywhere
        """
        self.logging = logging_config or LoggingConfig()
        self._log = self.logging.logger("context")
        self.configuration = configuration or Configuration(
            [], Path("~/.sqsh.toml").expanduser()
        )
        self.commands = commands or CommandManager(BUILTIN_COMMANDS)
        self.aliases = AliasManager()
        self.variables: dict[str, str] = dict(DEFAULT_VARIABLES)
        self.formatter = DataFormatter()
        self.buffer_history = buffer_history
        self.current: Session | None = None
        self.fail_count = 0
        self._sessions: dict[int, Session] = {}
        self._next_id = 1
        self._previous_id: int | None = None
        self._history_session: int | None = None

    @property
    def query_timeout(self: Self) -> int:
        """The default query timeout, in seconds. 0 means no timeout."""
        try:
            return int(self.variables.get("timeout", "0"))
        except ValueError:
            return 0

    @query_timeout.setter
    def query_timeout(self: Self, seconds: int) -> None:
        self.variables["timeout"] = str(max(seconds, 0))

    def validate_setting(self: Self, name: str, value: str) -> None:
        """
        Check the value of a variable that controls the shell.

        :raises ValueError: if the value isn't acceptable
        """
        if (validate := SETTING_VALIDATORS.get(name)) is not None:
            validate(name, value)

    def export_variable(self: Self, name: str, value: str) -> None:
        """
        Put a variable into the environment, so that commands run by the
        shell see it.
        """
        os.environ[name] = value

    def connect(self: Self, url: str) -> SQLConnectionContext:
        """
        Open a connection.

        :raises sqlalchemy.exc.SQLAlchemyError: if the connection fails
        """
        self._log.info("Connecting to %s", url)
        return SQLConnectionContext.connect(url, logger=self.logging.logger("connection"))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def sessions(self: Self) -> list[Session]:
        """
        The live sessions, in the order they were created.
        """
        return list(self._sessions.values())

    def get_session(self: Self, session_id: int) -> Session | None:
        """
        Look up a session by id.
        """
        return self._sessions.get(session_id)

    def new_session(
        self: Self,
        connection: ConnectionContext | None = None,
        input: TextIO = sys.stdin,  # pylint: disable=redefined-builtin
        out: TextIO = sys.stdout,
        err: TextIO = sys.stderr,
        interactive: bool = False,
    ) -> Session:
        """
        Create a session. If there's no current session, the new one
        becomes current.
        """
        # pylint: disable=too-many-arguments,too-many-positional-arguments
        session = Session(
            self,
            self._next_id,
            input=input,
            out=out,
            err=err,
            interactive=interactive,
            connection=connection,
        )
        self._next_id += 1
        self._sessions[session.id] = session
        self._log.debug("Created session %d", session.id)

        if interactive and self.buffer_history is not None and self._history_session is None:
            self._history_session = session.id
            if self.buffer_history.exists():
                try:
                    session.buffers.load_history(self.buffer_history)
                except (OSError, ValueError) as e:
                    self._log.warning("Unable to load buffer history: %s", e)

        if self.current is None:
            self.current = session
        return session

    def remove_session(self: Self, session_id: int) -> None:
        """
        End a session, closing its connection. -1 ends all sessions. If the
        current session is removed, the one created before it (or, failing
        that, the first remaining one) becomes current.
        """
        if session_id == -1:
            for sid in list(self._sessions):
                self.remove_session(sid)
            return

        ids = list(self._sessions)
        if session_id not in ids:
            return

        position = ids.index(session_id)
        session = self._sessions.pop(session_id)
        self._log.debug("Removing session %d", session_id)
        self.fail_count += session.fail_count
        self._save_history(session)
        session.close()

        if self._previous_id == session_id:
            self._previous_id = None

        if self.current is session:
            remaining = list(self._sessions)
            if not remaining:
                self.current = None
            else:
                self.current = self._sessions[remaining[max(position - 1, 0)]]

    def _save_history(self: Self, session: Session) -> None:
        if self.buffer_history is None or session.id != self._history_session:
            return
        try:
            session.buffers.save_history(self.buffer_history)
        except OSError as e:
            self._log.warning("Unable to save buffer history: %s", e)

    def run(self: Self, session: Session | None = None) -> int:
        """
        Run sessions until none are left. If a session is given, it's made
        current first, and run() returns (without ending it) when its input
        runs out.

        :returns: the number of commands that failed
        """
        if session is not None:
            self.current = session

        while (current := self.current) is not None:
            request = current.read_eval_print()
            match request:
                case None:
                    if current is session:
                        break
                    self.remove_session(current.id)
                case EndSession(exit_all=True):
                    self.remove_session(-1)
                case EndSession():
                    self.remove_session(current.id)
                    self._announce()
                case SwitchSession():
                    self._switch(current, request)

        return self.fail_count + sum(s.fail_count for s in self._sessions.values())

    def _switch(self: Self, session: Session, request: SwitchSession) -> None:
        target: Session | None = None
        if request.target is not None:
            target = self._sessions.get(request.target)
            if target is None:
                error(f"Session {request.target} does not exist", file=session.err)
                return
        elif request.previous:
            if self._previous_id is not None:
                target = self._sessions.get(self._previous_id)
            if target is None:
                error("There is no previous session", file=session.err)
                return
        else:
            target = next((s for s in self._sessions.values() if s is not session), None)

        if request.end_current:
            if target is session:
                target = None
            self.remove_session(session.id)
        elif target is not None and target is not session:
            self._previous_id = session.id

        if target is not None:
            self.current = target
        self._announce()

    def _announce(self: Self) -> None:
        if self.current is not None:
            print(f"Current session: {self.current}", file=self.current.out)

    def close(self: Self) -> None:
        """
        End all sessions.
        """
        self.remove_session(-1)
