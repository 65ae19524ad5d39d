"""
The command registry. Commands declare their options with click, and are
looked up by name (or alias) when a line starts with one.
"""

from types import SimpleNamespace
from typing import TYPE_CHECKING, ClassVar, Iterable, Self, Sequence

import click

from sqsh.outcome import DispatchOutcome

if TYPE_CHECKING:
    from sqsh.session import Session

HELP_OPTION = click.Option(
    ["-h", "--help", "show_help"], is_flag=True, default=False, help="Show usage."
)


class UsageError(Exception):
    """
    Thrown by Command.parse() when the arguments don't fit the command's
    options. The message is suitable for display.
    """


class Command:
    """
    Base class for backslash commands. Subclasses set the class attributes
    and implement execute().
    """

    name: ClassVar[str] = ""
    aliases: ClassVar[Sequence[str]] = ()
    usage: ClassVar[str] = ""
    description: ClassVar[str] = ""
    options: ClassVar[Sequence[click.Option]] = ()
    min_args: ClassVar[int] = 0
    # -1 means no limit
    max_args: ClassVar[int] = -1
    keep_double_quotes: ClassVar[bool] = False

    def usage_line(self: Self) -> str:
        """
        The one-line usage message.
        """
        return f"Use: {self.name} {self.usage}".rstrip()

    def parse(self: Self, argv: Sequence[str]) -> SimpleNamespace:
        """
        Parse a command's arguments. Positional arguments end up in `args`.

        :raises UsageError: if the options are malformed, the number of
            positional arguments is out of range or help was requested
        """
        command = click.Command(
            self.name,
            params=[
                *self.options,
                HELP_OPTION,
                click.Argument(["args"], nargs=-1),
            ],
            add_help_option=False,
        )
        try:
            ctx = command.make_context(self.name, list(argv), resilient_parsing=False)
        except click.ClickException as e:
            raise UsageError(f"{self.name}: {e.format_message()}") from e

        opts = SimpleNamespace(**ctx.params)
        if opts.show_help:
            raise UsageError(self.description.strip() or self.usage_line())

        opts.args = list(opts.args)
        if len(opts.args) < self.min_args or (
            self.max_args >= 0 and len(opts.args) > self.max_args
        ):
            raise UsageError(f"{self.name}: wrong number of arguments")

        return opts

    def execute(self: Self, session: "Session", opts: SimpleNamespace) -> DispatchOutcome:
        """
        Run the command.
        """
        raise NotImplementedError


class CommandManager:
    """
    Maps command names and aliases to commands.
    """

    def __init__(self: Self, commands: Iterable[Command] = ()) -> None:
        self._commands: dict[str, Command] = {}
        for command in commands:
            self.register(command)

    def register(self: Self, command: Command) -> None:
        """
        Add a command under its name and all of its aliases.
        """
        for name in (command.name, *command.aliases):
            self._commands[name] = command

    def resolve(self: Self, name: str) -> Command | None:
        """
        Look up a command by name or alias.
        """
        return self._commands.get(name)

    def commands(self: Self) -> list[Command]:
        """
        The distinct commands, sorted by name.
        """
        unique = {id(c): c for c in self._commands.values()}
        return sorted(unique.values(), key=lambda c: c.name)
