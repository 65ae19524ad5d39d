"""
Connection contexts: the things a session evaluates SQL against. A session
is either connected to a database through SQLAlchemy or disconnected.
"""

import itertools
import logging
import textwrap
import threading
from abc import ABC, abstractmethod
from typing import Any, Iterable, Self, Sequence, TextIO

import sqlalchemy
from sqlalchemy.engine import Connection, CursorResult, Engine

from sqsh.errors import NotConnectedError
from sqsh.formatting import (
    ColumnDescription,
    DataFormatter,
    SQLType,
    describe_column,
)
from sqsh.render import LimitPolicy, Renderer, SQLRenderer

DEFAULT_WRAP_WIDTH = 79
SQL_LINE_COMMENT_PREFIX = "--"
NOT_CONNECTED_MESSAGE = (
    "You are not currently connected to a database or another queryable "
    "data source. Type 'help \\connect' for details"
)


def statement_is_terminated(sql: str, terminator: str) -> bool:
    """
    Determine whether a SQL statement ends with the terminator. Quoted
    strings, quoted identifiers ("..." and [...]), comments and @variables
    are skipped, so a terminator inside any of those doesn't count.

    :param sql: the possibly partial SQL statement to check
    :param terminator: the terminator character

    :returns: True if the last thing in the statement is the terminator
    """
    # pylint: disable=too-many-branches
    last_token: str | None = None
    i = 0
    n = len(sql)
    while i < n:
        c = sql[i]
        if c.isspace():
            i += 1
        elif sql.startswith(SQL_LINE_COMMENT_PREFIX, i):
            end = sql.find("\n", i)
            i = n if end < 0 else end + 1
        elif sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            i = n if end < 0 else end + 2
        elif c in ("'", '"', "["):
            close = "]" if c == "[" else c
            end = sql.find(close, i + 1)
            # An unterminated quote can't end with a terminator.
            if end < 0:
                return False
            last_token = sql[i : end + 1]
            i = end + 1
        elif c == terminator:
            last_token = c
            i += 1
        elif c == "@":
            j = i + 1
            while j < n and (sql[j].isalnum() or sql[j] in "_@#$"):
                j += 1
            last_token = sql[i:j]
            i = j
        elif c.isalnum() or c == "_":
            j = i + 1
            while j < n and (sql[j].isalnum() or sql[j] == "_"):
                j += 1
            last_token = sql[i:j]
            i = j
        else:
            last_token = c
            i += 1

    return last_token == terminator


def exception_chain(e: BaseException) -> list[BaseException]:
    """
    Flatten an exception and its causes (including the DB-API exception a
    SQLAlchemy error wraps) into a list, outermost first.
    """
    chain: list[BaseException] = []
    seen: set[int] = set()
    current: BaseException | None = e
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        chain.append(current)
        if isinstance(current, sqlalchemy.exc.DBAPIError) and current.orig is not None:
            if id(current.orig) not in seen:
                seen.add(id(current.orig))
                chain.append(current.orig)
        current = current.__cause__ or current.__context__
    return chain


def print_sql_exception(
    e: BaseException, file: TextIO, width: int = DEFAULT_WRAP_WIDTH
) -> None:
    """
    Print a database error, and everything that caused it, with the SQL
    state and vendor error code where the driver supplies them.
    """
    lines = ["SQL Exception(s) Encountered: "]
    for exc in exception_chain(e):
        if isinstance(exc, sqlalchemy.exc.StatementError) and exc.orig is not None:
            # The wrapped DB-API error is reported on its own.
            continue

        message = str(exc)

        state = getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)
        code = getattr(exc, "sqlite_errorcode", None)
        if code is None and exc.args and isinstance(exc.args[0], int):
            code = exc.args[0]

        text = f"[State: {state}][Code: {code}]: {message}"
        lines.append(
            textwrap.fill(text, width=width, subsequent_indent="    ")
        )

    print("\n".join(lines), file=file)


class ConnectionContext(ABC):
    """
    Something SQL can be evaluated against.
    """

    def __init__(self: Self, logger: logging.Logger | None = None) -> None:
        self._query_timeout = 0
        self._log = logger or logging.getLogger("sqsh.connection")

    @property
    def connected(self: Self) -> bool:
        """Whether there's a database behind this context."""
        return True

    @property
    def url(self: Self) -> str | None:
        """The URL the context is connected to, if any."""
        return None

    @property
    def query_timeout(self: Self) -> int:
        """Seconds a query may run before it's cancelled. 0 means forever."""
        return self._query_timeout

    @query_timeout.setter
    def query_timeout(self: Self, seconds: int) -> None:
        self._query_timeout = max(seconds, 0)

    def evaluate(
        self: Self, sql: str, renderer: Renderer, sql_renderer: SQLRenderer
    ) -> None:
        """
        Evaluate a batch of SQL, displaying the results. If a query timeout
        is set, a timer cancels the statement when it expires.
        """
        timer: threading.Timer | None = None
        if self.query_timeout > 0:
            timer = threading.Timer(self.query_timeout, self._timed_out)
            timer.daemon = True
            timer.start()

        try:
            self.eval_impl(sql, renderer, sql_renderer)
        finally:
            if timer is not None:
                timer.cancel()

    def _timed_out(self: Self) -> None:
        self._log.info("Query timeout (%ds) expired, cancelling", self.query_timeout)
        self.cancel()

    @abstractmethod
    def eval_impl(
        self: Self, sql: str, renderer: Renderer, sql_renderer: SQLRenderer
    ) -> None:
        """
        Does the work of evaluate().
        """

    def cancel(self: Self) -> None:
        """
        Cancel the statement being evaluated, if possible. May be called
        from another thread.
        """

    def is_terminated(self: Self, sql: str, terminator: str) -> bool:
        """
        Whether a batch ends with the terminator.
        """
        return sql.rstrip().endswith(terminator)

    def is_terminator_removed(self: Self, terminator: str) -> bool:
        """
        Whether the terminator should be removed from a batch before it's
        executed.
        """
        return True

    def globals(self: Self) -> dict[str, Any]:
        """
        Variables the context makes available for expansion.
        """
        return {}

    def commit(self: Self) -> None:
        """Commit the current transaction, if there is one."""

    def rollback(self: Self) -> None:
        """Roll back the current transaction, if there is one."""

    def close(self: Self) -> None:
        """Release the context's resources."""

    def __str__(self: Self) -> str:
        return self.url or "*no connection*"


class DisconnectedContext(ConnectionContext):
    """
    The context of a session with no connection. The query timeout is the
    shell-wide default, held by the owner.
    """

    def __init__(self: Self, owner: Any = None, logger: logging.Logger | None = None) -> None:
        super().__init__(logger)
        self._owner = owner

    @property
    def connected(self: Self) -> bool:
        return False

    @property
    def query_timeout(self: Self) -> int:
        if self._owner is not None:
            return self._owner.query_timeout
        return self._query_timeout

    @query_timeout.setter
    def query_timeout(self: Self, seconds: int) -> None:
        if self._owner is not None:
            self._owner.query_timeout = max(seconds, 0)
        else:
            self._query_timeout = max(seconds, 0)

    def eval_impl(
        self: Self, sql: str, renderer: Renderer, sql_renderer: SQLRenderer
    ) -> None:
        raise NotConnectedError(NOT_CONNECTED_MESSAGE)


# DB-API type objects, in the order they're checked.
DBAPI_TYPE_OBJECTS = (
    ("NUMBER", SQLType.DOUBLE),
    ("DATETIME", SQLType.TIMESTAMP),
    ("BINARY", SQLType.BINARY),
    ("ROWID", SQLType.VARCHAR),
    ("STRING", SQLType.VARCHAR),
)


class SQLConnectionContext(ConnectionContext):
    """
    A context backed by a SQLAlchemy connection.
    """

    def __init__(
        self: Self,
        engine: Engine,
        logger: logging.Logger | None = None,
        autocommit: bool = True,
    ) -> None:
        super().__init__(logger)
        self.engine = engine
        self.autocommit = autocommit
        self.connection: Connection = engine.connect()
        self._lock = threading.Lock()
        self._running = False

    @classmethod
    def connect(
        cls: type[Self], url: str, logger: logging.Logger | None = None
    ) -> Self:
        """
        Create an engine for a URL and connect to it.

        :raises sqlalchemy.exc.SQLAlchemyError: if the connection fails
        :raises sqlalchemy.exc.ArgumentError: for a malformed URL
        """
        return cls(sqlalchemy.create_engine(url), logger=logger)

    @property
    def url(self: Self) -> str:
        return self.engine.url.render_as_string(hide_password=True)

    @property
    def username(self: Self) -> str | None:
        """The user name in the URL, if any."""
        return self.engine.url.username

    def globals(self: Self) -> dict[str, Any]:
        return {
            "url": self.url,
            "dialect": self.engine.dialect.name,
            "database": self.engine.url.database or "",
        }

    def is_terminated(self: Self, sql: str, terminator: str) -> bool:
        return statement_is_terminated(sql, terminator)

    def cancel(self: Self) -> None:
        with self._lock:
            if not self._running:
                return

        try:
            raw = self.connection.connection.dbapi_connection
        except sqlalchemy.exc.SQLAlchemyError as e:
            self._log.debug("No DB-API connection to cancel: %s", e)
            return

        for method in ("interrupt", "cancel"):
            if (func := getattr(raw, method, None)) is not None:
                self._log.debug("Cancelling statement with %s()", method)
                # pylint: disable=broad-except
                try:
                    func()
                except Exception as e:
                    self._log.warning("Cancel failed: %s", e)
                return

        self._log.warning("The %s driver does not support cancel", self.engine.dialect.name)

    def commit(self: Self) -> None:
        self.connection.commit()

    def rollback(self: Self) -> None:
        self.connection.rollback()

    def close(self: Self) -> None:
        self.connection.close()
        self.engine.dispose()

    def describe(
        self: Self,
        result: CursorResult,
        first_row: Sequence[Any] | None,
        formatter: DataFormatter,
    ) -> list[ColumnDescription]:
        """
        Build column descriptions for a result. The driver's type codes are
        rarely portable, so the type of each column is taken from the value
        in the first row, falling back on the DB-API type objects.
        """
        # pylint: disable=too-many-locals
        description = result.cursor.description if result.cursor else None
        dbapi = self.engine.dialect.dbapi
        columns = []
        for i, name in enumerate(result.keys()):
            entry = description[i] if description and i < len(description) else None
            type_code = entry[1] if entry else None

            sql_type = SQLType.from_python(first_row[i]) if first_row else None
            if sql_type is None and type_code is not None and dbapi is not None:
                for attr, candidate in DBAPI_TYPE_OBJECTS:
                    type_object = getattr(dbapi, attr, None)
                    if type_object is not None and type_code == type_object:
                        sql_type = candidate
                        break

            display_size, precision, scale = 0, 0, 0
            if entry and len(entry) >= 6:
                display_size = entry[2] or 0
                precision = entry[4] or 0
                scale = entry[5] or 0

            columns.append(
                describe_column(
                    formatter,
                    str(name),
                    sql_type or SQLType.VARCHAR,
                    precision=precision,
                    scale=scale,
                    display_size=display_size,
                    logger=self._log,
                )
            )
        return columns

    def eval_impl(
        self: Self, sql: str, renderer: Renderer, sql_renderer: SQLRenderer
    ) -> None:
        self.run(sql, renderer, sql_renderer)

    def run(
        self: Self,
        sql: str,
        renderer: Renderer,
        sql_renderer: SQLRenderer,
        params: dict[str, Any] | None = None,
    ) -> None:
        """
        Execute one statement and display its results. With params, the
        statement is run through sqlalchemy.text() with those binds;
        otherwise it's passed to the driver untouched.

        :raises sqlalchemy.exc.SQLAlchemyError: on database errors. The
            transaction is rolled back first.
        """
        sql_renderer.start()
        with self._lock:
            self._running = True

        try:
            if params is None:
                result = self.connection.exec_driver_sql(sql)
            else:
                result = self.connection.execute(sqlalchemy.text(sql), params)

            footer = self._display(result, renderer, sql_renderer)
            # Rejected output still ends the statement's transaction.
            if self.autocommit:
                self.connection.commit()
            if footer is None:
                return

            footer += sql_renderer.timing_footer()
            if footer:
                renderer.footer(footer)
        except sqlalchemy.exc.SQLAlchemyError:
            self.connection.rollback()
            raise
        finally:
            with self._lock:
                self._running = False

    def call_procedure(
        self: Self,
        name: str,
        values: Sequence[Any],
        renderer: Renderer,
        sql_renderer: SQLRenderer,
    ) -> None:
        """
        Call a stored procedure through the driver's callproc(), displaying
        the result set it produces, if any.

        :raises sqlalchemy.exc.SQLAlchemyError: on database errors
        :raises NotImplementedError: if the driver can't call procedures
        """
        sql_renderer.start()
        raw = self.connection.connection
        cursor = raw.cursor()
        try:
            if not hasattr(cursor, "callproc"):
                raise NotImplementedError(
                    f"The {self.engine.dialect.name} driver does not support "
                    "stored procedure calls"
                )

            try:
                cursor.callproc(name, list(values))
            except self.engine.dialect.dbapi.Error as e:
                raw.rollback()
                raise sqlalchemy.exc.DBAPIError.instance(
                    f"CALL {name}", values, e, self.engine.dialect.dbapi.Error
                ) from e

            footer = ""
            if cursor.description:
                columns = [
                    describe_column(
                        sql_renderer.formatter,
                        str(entry[0]),
                        SQLType.VARCHAR,
                        logger=self._log,
                    )
                    for entry in cursor.description
                ]
                count = sql_renderer.display_results(renderer, columns, iter(cursor.fetchone, None))
                footer = None if count < 0 else sql_renderer.results_footer(count)
            else:
                footer = sql_renderer.update_footer(cursor.rowcount)

            if self.autocommit:
                raw.commit()
            if footer is None:
                return

            footer += sql_renderer.timing_footer()
            if footer:
                renderer.footer(footer)
        finally:
            cursor.close()

    def _display(
        self: Self,
        result: CursorResult,
        renderer: Renderer,
        sql_renderer: SQLRenderer,
    ) -> str | None:
        with result:
            if not result.returns_rows:
                return sql_renderer.update_footer(result.rowcount)

            first_row = result.fetchone()
            columns = self.describe(result, first_row, sql_renderer.formatter)
            rows: Iterable[Sequence[Any]] = [] if first_row is None else [first_row]
            if (
                sql_renderer.limit_policy == LimitPolicy.DRIVER
                and sql_renderer.max_rows > 0
            ):
                rows = itertools.chain(rows, result.fetchmany(sql_renderer.max_rows - 1))
            elif first_row is not None:
                rows = itertools.chain(rows, result)

            count = sql_renderer.display_results(
                renderer, columns, rows, cancel=self.cancel
            )
            if count < 0:
                return None
            return sql_renderer.results_footer(count)

