"""
Result rendering. A Renderer draws rows in some style; SQLRenderer feeds it
rows from a result set, applying the row limit and producing the footers.
"""

# pylint: disable=too-few-public-methods

import csv
import logging
from dataclasses import dataclass
from enum import IntEnum
from time import perf_counter
from typing import Any, Callable, Iterable, Self, Sequence, TextIO

from sqsh.formatting import (
    Alignment,
    ColumnDescription,
    DataFormatter,
    SQLType,
)

ERROR_VALUE = "*ERROR*"


class LimitPolicy(IntEnum):
    """
    How a row limit is enforced.

    DRIVER:  the limit is pushed to the data source before fetching.
    CANCEL:  the query is cancelled once the limit is reached.
    DISCARD: every row is fetched; rows past the limit are dropped.
    """

    DRIVER = 1
    CANCEL = 2
    DISCARD = 3

    @classmethod
    def from_name(cls: type[Self], name: str) -> Self:
        """
        Look up a policy by name (case-blind).

        :raises ValueError: for an unknown name
        """
        try:
            return cls[name.strip().upper()]
        except KeyError:
            # pylint: disable=raise-missing-from
            names = ", ".join(p.name.lower() for p in cls)
            raise ValueError(f'Invalid row limit method "{name}". Use one of: {names}')


class Renderer:
    """
    Base class for result renderers. Subclasses override header() and row().
    row() and flush() return False when output can't be delivered (e.g.,
    the reader of a pipe went away), which aborts rendering.
    """

    name = "base"

    def __init__(
        self: Self,
        out: TextIO,
        err: TextIO,
        show_headers: bool = True,
        show_footers: bool = True,
    ) -> None:
        self.out = out
        self.err = err
        self.show_headers = show_headers
        self.show_footers = show_footers
        self.columns: list[ColumnDescription] = []

    @property
    def is_discard(self: Self) -> bool:
        """
        True if the renderer throws rows away, so there's no need to format
        them.
        """
        return False

    def header(self: Self, columns: Sequence[ColumnDescription]) -> None:
        """
        Start a new result set.
        """
        self.columns = list(columns)

    def row(self: Self, values: Sequence[str]) -> bool:
        """
        Render one row of already formatted values.
        """
        raise NotImplementedError

    def footer(self: Self, text: str) -> None:
        """
        Display footer text, such as the row count.
        """
        if self.show_footers:
            print(text, file=self.err)

    def flush(self: Self) -> bool:
        """
        Finish the current result set.
        """
        return self._write_safely(self.out.flush)

    def _write_safely(self: Self, func: Callable[[], Any]) -> bool:
        try:
            func()
            return True
        except (BrokenPipeError, ValueError):
            # ValueError: I/O operation on closed file
            return False

    @staticmethod
    def pad(value: str, width: int, alignment: Alignment) -> str:
        """
        Pad a value to a width, honoring the column alignment.
        """
        if alignment == Alignment.RIGHT:
            return value.rjust(width)
        return value.ljust(width)


class PrettyRenderer(Renderer):
    """
    The default renderer: a bordered table. Rows are held until flush() so
    that column widths can be fitted to the data.
    """

    name = "pretty"

    def __init__(self: Self, *args: Any, **kw: Any) -> None:
        super().__init__(*args, **kw)
        self._rows: list[Sequence[str]] = []

    def header(self: Self, columns: Sequence[ColumnDescription]) -> None:
        super().header(columns)
        self._rows = []

    def row(self: Self, values: Sequence[str]) -> bool:
        self._rows.append(values)
        return True

    def flush(self: Self) -> bool:
        return self._write_safely(self._draw)

    def _draw(self: Self) -> None:
        # pylint: disable=too-many-locals

        def make_output_line(
            fields: list[str], delim: str = "|", pad_char: str = " "
        ) -> str:
            return (
                f"{delim}{pad_char}"
                + f"{pad_char}{delim}{pad_char}".join(fields)
                + f"{pad_char}{delim}"
            )

        if not self.columns:
            return

        widths = [len(c.name) for c in self.columns]
        for values in self._rows:
            for i, value in enumerate(values):
                for line in value.splitlines() or [""]:
                    widths[i] = max(widths[i], len(line))

        sep = make_output_line(["-" * w for w in widths], "+", "-")
        print(sep, file=self.out)
        if self.show_headers:
            names = [c.name.ljust(w) for c, w in zip(self.columns, widths)]
            print(make_output_line(names), file=self.out)
            print(sep, file=self.out)

        for values in self._rows:
            # A value with embedded newlines takes more than one line.
            cells = [v.splitlines() or [""] for v in values]
            height = max((len(c) for c in cells), default=1)
            for n in range(height):
                fields = [
                    self.pad(
                        lines[n] if n < len(lines) else "",
                        width,
                        column.alignment,
                    )
                    for lines, width, column in zip(cells, widths, self.columns)
                ]
                print(make_output_line(fields), file=self.out)

        print(sep, file=self.out)
        self._rows = []
        self.out.flush()


class CSVRenderer(Renderer):
    """
    Writes rows as CSV, as they arrive.
    """

    name = "csv"

    def __init__(self: Self, *args: Any, **kw: Any) -> None:
        super().__init__(*args, **kw)
        self._writer = csv.writer(self.out, lineterminator="\n")

    def header(self: Self, columns: Sequence[ColumnDescription]) -> None:
        super().header(columns)
        if self.show_headers:
            self._write_safely(lambda: self._writer.writerow([c.name for c in columns]))

    def row(self: Self, values: Sequence[str]) -> bool:
        return self._write_safely(lambda: self._writer.writerow(values))


class TightRenderer(Renderer):
    """
    Columns separated by a single space, no borders, written as they
    arrive. Column widths come from the formatters.
    """

    name = "tight"

    def _widths(self: Self) -> list[int]:
        widths = []
        for c in self.columns:
            max_width = c.formatter.max_width if c.formatter else -1
            widths.append(max(len(c.name), max_width if max_width > 0 else 0))
        return widths

    def header(self: Self, columns: Sequence[ColumnDescription]) -> None:
        super().header(columns)
        if self.show_headers:
            names = [c.name.ljust(w) for c, w in zip(self.columns, self._widths())]
            self._write_safely(lambda: print(" ".join(names).rstrip(), file=self.out))

    def row(self: Self, values: Sequence[str]) -> bool:
        fields = [
            self.pad(v, w, c.alignment)
            for v, w, c in zip(values, self._widths(), self.columns)
        ]
        return self._write_safely(lambda: print(" ".join(fields).rstrip(), file=self.out))


class DiscardRenderer(Renderer):
    """
    Throws the results away. Useful for timing queries.
    """

    name = "discard"

    @property
    def is_discard(self: Self) -> bool:
        return True

    def row(self: Self, values: Sequence[str]) -> bool:
        return True


RENDERERS: dict[str, type[Renderer]] = {
    r.name: r for r in (PrettyRenderer, CSVRenderer, TightRenderer, DiscardRenderer)
}


def make_renderer(
    style: str,
    out: TextIO,
    err: TextIO,
    show_headers: bool = True,
    show_footers: bool = True,
) -> Renderer:
    """
    Create a renderer by style name.

    :raises ValueError: for an unknown style
    """
    # pylint: disable=too-many-arguments,too-many-positional-arguments
    if (cls := RENDERERS.get(style.lower())) is None:
        styles = ", ".join(sorted(RENDERERS))
        raise ValueError(f'Unknown display style "{style}". Use one of: {styles}')
    return cls(out, err, show_headers=show_headers, show_footers=show_footers)


def duration(seconds: float) -> str:
    """
    Format an elapsed time, e.g. "1m2.345s".
    """
    prefix = ""
    if seconds < 0:
        prefix = "-"
        seconds = -seconds

    parts = []
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    if days:
        parts.append(f"{int(days)}d")
    if parts or hours:
        parts.append(f"{int(hours)}h")
    if parts or minutes:
        parts.append(f"{int(minutes)}m")
    parts.append(f"{seconds:.3f}s")
    return prefix + "".join(parts)


@dataclass
class Timings:
    """
    Timestamps (from perf_counter) for one statement.
    """

    start: float = 0.0
    first_row: float = 0.0
    end: float = 0.0


class SQLRenderer:
    """
    Feeds result sets through a Renderer, applying the row limit policy
    and producing footers.
    """

    # pylint: disable=too-many-instance-attributes,too-many-arguments
    # pylint: disable=too-many-positional-arguments

    def __init__(
        self: Self,
        formatter: DataFormatter | None = None,
        max_rows: int = 0,
        limit_policy: LimitPolicy = LimitPolicy.DISCARD,
        show_timings: bool = True,
        no_count: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self.formatter = formatter or DataFormatter()
        self.max_rows = max_rows
        self.limit_policy = limit_policy
        self.show_timings = show_timings
        self.no_count = no_count
        self.timings = Timings()
        self._log = logger or logging.getLogger("sqsh.render")

    def start(self: Self) -> None:
        """
        Mark the start of a statement, for the timing footer.
        """
        self.timings = Timings(start=perf_counter())

    def format_row(
        self: Self, columns: Sequence[ColumnDescription], row: Sequence[Any]
    ) -> list[str]:
        """
        Format one row of raw values. NULLs use the NULL string rather than
        the column's formatter. A column's type is a guess, so a value the
        column's formatter rejects is formatted for its own type instead;
        only a value that no formatter takes shows up as *ERROR*.
        """
        values = []
        for column, value in zip(columns, row):
            if value is None:
                values.append(self.formatter.null)
                continue

            try:
                values.append(self._format_value(column, value))
            except (ValueError, TypeError) as e:
                self._log.debug("Cannot format %r for %s: %s", value, column.name, e)
                values.append(ERROR_VALUE)
        return values

    def _format_value(self: Self, column: ColumnDescription, value: Any) -> str:
        if column.formatter is None:
            return str(value)
        try:
            return column.formatter.format(value)
        except (ValueError, TypeError):
            actual = SQLType.from_python(value)
            if actual is None or actual == column.sql_type:
                raise
        return self.formatter.formatter(actual).format(value)

    def display_results(
        self: Self,
        renderer: Renderer,
        columns: Sequence[ColumnDescription],
        rows: Iterable[Sequence[Any]],
        cancel: Callable[[], None] | None = None,
    ) -> int:
        """
        Render a result set.

        :param renderer: where the rows go
        :param columns: the column descriptions
        :param rows: the raw rows. Under the DRIVER policy the caller has
            already limited them.
        :param cancel: called to cancel the query under the CANCEL policy

        :returns: the number of rows fetched, which can be more than the
            number rendered, or -1 if the renderer rejected output
        """
        row_count = 0
        limited = self.max_rows > 0

        renderer.header(columns)
        for row in rows:
            row_count += 1
            if row_count == 1 and self.timings.first_row == 0.0:
                self.timings.first_row = perf_counter()

            if limited and row_count > self.max_rows:
                if self.limit_policy == LimitPolicy.CANCEL:
                    if cancel is not None:
                        cancel()
                    break
                if self.limit_policy == LimitPolicy.DISCARD:
                    continue

            if renderer.is_discard:
                continue

            if not renderer.row(self.format_row(columns, row)):
                return -1

        if not renderer.flush():
            return -1

        return row_count

    def results_footer(self: Self, row_count: int) -> str:
        """
        The footer for a result set of row_count rows.
        """
        footer = f"{row_count} row{'' if row_count == 1 else 's'} in results"
        if 0 < self.max_rows < row_count:
            if self.limit_policy == LimitPolicy.CANCEL:
                footer += ", query cancelled to limit results "
            else:
                footer += f", first {self.max_rows} rows shown "
        return footer

    def update_footer(self: Self, update_count: int) -> str:
        """
        The footer for a statement that didn't produce results, or "" if
        counts are turned off.
        """
        if self.no_count:
            return ""
        if update_count >= 0:
            return f"{update_count} row{'' if update_count == 1 else 's'} affected "
        return "ok. "

    def timing_footer(self: Self) -> str:
        """
        The elapsed time footer, or "" if timings are turned off.
        """
        if not self.show_timings:
            return ""

        self.timings.end = perf_counter()
        total = duration(self.timings.end - self.timings.start)
        if self.timings.first_row > 0.0:
            first = duration(self.timings.first_row - self.timings.start)
            return f"(first row: {first}; total: {total})"
        return f"(total: {total})"
