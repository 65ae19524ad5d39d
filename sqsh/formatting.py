"""
Value formatting. Every SQL type the shell knows about has one entry in
TYPE_TABLE, which says how columns of that type are aligned, how values are
formatted for display and how text is converted when it's bound as a
statement parameter.
"""

# pylint: disable=too-few-public-methods

import logging
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum, StrEnum
from typing import Any, Callable, Protocol, Self

import sqlalchemy

DEFAULT_NULL = "[NULL]"
DEFAULT_DATE_FORMAT = "%Y-%m-%d"
DEFAULT_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"
DEFAULT_TIME_FORMAT = "%H:%M:%S"
DEFAULT_SCALE = 5
DEFAULT_PRECISION = 20
TRUE_STRINGS = ("true", "t", "yes", "y", "1", "on")
FALSE_STRINGS = ("false", "f", "no", "n", "0", "off")


class Alignment(Enum):
    """Column alignment."""

    LEFT = "left"
    RIGHT = "right"


class Overflow(Enum):
    """What to do with values wider than their column."""

    WRAP = "wrap"
    TRUNCATE = "truncate"


class ColumnKind(Enum):
    """The broad category of a column."""

    NUMBER = "number"
    STRING = "string"


class SQLType(StrEnum):
    """
    The SQL types the shell formats and binds explicitly.
    """

    BIGINT = "BIGINT"
    INTEGER = "INTEGER"
    SMALLINT = "SMALLINT"
    TINYINT = "TINYINT"
    DECIMAL = "DECIMAL"
    NUMERIC = "NUMERIC"
    DOUBLE = "DOUBLE"
    FLOAT = "FLOAT"
    REAL = "REAL"
    BIT = "BIT"
    BOOLEAN = "BOOLEAN"
    CHAR = "CHAR"
    VARCHAR = "VARCHAR"
    CLOB = "CLOB"
    BINARY = "BINARY"
    BLOB = "BLOB"
    DATE = "DATE"
    TIME = "TIME"
    TIMESTAMP = "TIMESTAMP"
    XML = "XML"
    ARRAY = "ARRAY"
    CURSOR = "CURSOR"
    OTHER = "OTHER"

    @classmethod
    def from_python(cls: type[Self], value: Any) -> Self | None:
        """
        Guess the SQL type of a value returned by a driver. Returns None for
        None, since a NULL says nothing about its column.
        """
        # bool is a subclass of int, and datetime of date, so order matters.
        match value:
            case None:
                return None
            case bool():
                return cls.BOOLEAN
            case int():
                return cls.BIGINT
            case float():
                return cls.DOUBLE
            case Decimal():
                return cls.DECIMAL
            case str():
                return cls.VARCHAR
            case bytes() | bytearray() | memoryview():
                return cls.BINARY
            case datetime():
                return cls.TIMESTAMP
            case date():
                return cls.DATE
            case time():
                return cls.TIME
            case list() | tuple():
                return cls.ARRAY
            case _:
                return cls.OTHER

    @classmethod
    def from_sqlalchemy(cls: type[Self], sa_type: Any) -> Self:
        """
        Map a SQLAlchemy type object (e.g., from table reflection) to a
        SQLType.
        """
        checks: tuple[tuple[type, SQLType], ...] = (
            (sqlalchemy.BigInteger, cls.BIGINT),
            (sqlalchemy.SmallInteger, cls.SMALLINT),
            (sqlalchemy.Integer, cls.INTEGER),
            (sqlalchemy.Float, cls.DOUBLE),
            (sqlalchemy.Numeric, cls.DECIMAL),
            (sqlalchemy.Boolean, cls.BOOLEAN),
            (sqlalchemy.DateTime, cls.TIMESTAMP),
            (sqlalchemy.Date, cls.DATE),
            (sqlalchemy.Time, cls.TIME),
            (sqlalchemy.Text, cls.CLOB),
            (sqlalchemy.String, cls.VARCHAR),
            (sqlalchemy.LargeBinary, cls.BLOB),
            (sqlalchemy.BINARY, cls.BINARY),
            (sqlalchemy.VARBINARY, cls.BINARY),
            (sqlalchemy.ARRAY, cls.ARRAY),
        )
        for sa_class, sql_type in checks:
            if isinstance(sa_type, sa_class):
                return sql_type
        return cls.OTHER


class Formatter(Protocol):
    """
    Anything that can turn a non-NULL value into a string.
    """

    max_width: int

    def format(self: Self, value: Any) -> str:
        """Format a value."""


def _is_integral(value: float | Decimal) -> bool:
    if isinstance(value, Decimal):
        return value.is_finite() and value == value.to_integral_value()
    return value.is_integer()


class NumberFormatter:
    """
    Formats numbers, with a fixed number of decimal places when the scale
    is positive.
    """

    def __init__(self: Self, precision: int, scale: int) -> None:
        self.precision = precision
        self.scale = scale
        if precision == 0:
            self.max_width = 21
        elif scale <= 0:
            # Room for the sign.
            self.max_width = precision + 1
        elif scale > precision:
            self.max_width = scale + 2
        else:
            self.max_width = precision + 2

    def format(self: Self, value: Any) -> str:
        """
        Format a number.

        :raises ValueError: if the value isn't a number
        """
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise ValueError(f"Cannot format {type(value).__name__} as a number")

        if self.scale <= 0:
            if isinstance(value, int):
                return str(value)
            # A fraction is never rounded away.
            if not _is_integral(value):
                return str(value)
            return f"{value:.0f}"

        return f"{value:.{self.scale}f}"


class StringFormatter:
    """
    Leaves strings alone.
    """

    def __init__(self: Self, max_width: int) -> None:
        self.max_width = max_width

    def format(self: Self, value: Any) -> str:
        """Format a value as a string."""
        return str(value)


class DateFormatter:
    """
    Formats dates, times and timestamps with strftime. A "%f" at the end of
    the format is cut to milliseconds.
    """

    def __init__(self: Self, fmt: str) -> None:
        self.fmt = fmt
        self.max_width = len(self.format(datetime(2000, 12, 31, 23, 59, 59)))

    def format(self: Self, value: Any) -> str:
        """Format a date or time."""
        if not isinstance(value, (date, time)):
            return str(value)

        s = value.strftime(self.fmt)
        if self.fmt.endswith("%f"):
            s = s[:-3]
        return s


class BooleanFormatter:
    """
    Formats booleans as "true" or "false".
    """

    max_width = 5

    def format(self: Self, value: Any) -> str:
        """Format a boolean."""
        if isinstance(value, str):
            return value
        return "true" if value else "false"


class BitFormatter:
    """
    Formats bits as 1 or 0.
    """

    max_width = 1

    def format(self: Self, value: Any) -> str:
        """Format a bit."""
        return "1" if value else "0"


class ByteFormatter:
    """
    Formats binary data as a hex string.
    """

    def __init__(self: Self, max_bytes: int) -> None:
        self.max_width = 2 + (max_bytes * 2)

    def format(self: Self, value: Any) -> str:
        """Format bytes."""
        if isinstance(value, int):
            value = bytes([value & 0xFF])
        return f"0x{bytes(value).hex()}"


class ArrayFormatter:
    """
    Formats arrays as a bracketed list, NULL elements included.
    """

    max_width = -1

    def __init__(self: Self, null: str) -> None:
        self.null = null

    def format(self: Self, value: Any) -> str:
        """Format an array."""
        elements = [self.null if v is None else str(v) for v in value]
        return f"[{', '.join(elements)}]"


class UnsupportedFormatter:
    """
    Used for types the shell knows nothing about; asks the value to
    convert itself.
    """

    max_width = -1

    def format(self: Self, value: Any) -> str:
        """Format an arbitrary value."""
        return str(value)


@dataclass(frozen=True)
class DataFormatter:
    """
    The display settings used to build formatters.
    """

    null: str = DEFAULT_NULL
    date_format: str = DEFAULT_DATE_FORMAT
    datetime_format: str = DEFAULT_DATETIME_FORMAT
    time_format: str = DEFAULT_TIME_FORMAT
    scale: int = DEFAULT_SCALE
    precision: int = DEFAULT_PRECISION

    @property
    def null_width(self: Self) -> int:
        """The width of a NULL."""
        return len(self.null)

    def decimal_formatter(self: Self, precision: int, scale: int) -> NumberFormatter:
        """
        A formatter for DECIMAL/NUMERIC columns. Some drivers report a
        precision of 0 and a scale of -127 when they don't know; use the
        default settings then.
        """
        if precision <= 0 or scale < 0:
            return NumberFormatter(self.precision, self.scale)
        return NumberFormatter(precision, scale)

    def formatter(
        self: Self,
        sql_type: SQLType,
        precision: int = 0,
        scale: int = 0,
        display_size: int = 0,
    ) -> Formatter:
        """
        Build the formatter for a column of the given type.
        """
        return type_info(sql_type).make_formatter(self, precision, scale, display_size)


def _parse_bool(text: str) -> bool:
    if text.lower() in TRUE_STRINGS:
        return True
    if text.lower() in FALSE_STRINGS:
        return False
    raise ValueError(f'Invalid boolean value "{text}"')


def _parse_int(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        # pylint: disable=raise-missing-from
        raise ValueError("Invalid number format")


def _parse_float(text: str) -> float:
    try:
        return float(text)
    except ValueError:
        # pylint: disable=raise-missing-from
        raise ValueError("Invalid number format")


def _parse_decimal(text: str) -> Decimal:
    try:
        return Decimal(text)
    except InvalidOperation:
        # pylint: disable=raise-missing-from
        raise ValueError("Invalid number format")


MakeFormatter = Callable[[DataFormatter, int, int, int], Formatter]


@dataclass(frozen=True)
class TypeInfo:
    """
    Everything the shell knows about one SQL type.
    """

    kind: ColumnKind
    alignment: Alignment
    make_formatter: MakeFormatter
    bind: Callable[[str], Any] = str


def _numbers(precision: int) -> MakeFormatter:
    return lambda df, p, s, d: NumberFormatter(precision, 0)


def _floats(df: DataFormatter, p: int, s: int, d: int) -> Formatter:
    return NumberFormatter(df.precision, df.scale)


def _strings(df: DataFormatter, p: int, s: int, d: int) -> Formatter:
    return StringFormatter(d if d > 0 else p if p > 0 else -1)


_NUMBER = (ColumnKind.NUMBER, Alignment.RIGHT)
_STRING = (ColumnKind.STRING, Alignment.LEFT)

TYPE_TABLE: dict[SQLType, TypeInfo] = {
    SQLType.BIGINT: TypeInfo(*_NUMBER, _numbers(21), _parse_int),
    SQLType.INTEGER: TypeInfo(*_NUMBER, _numbers(11), _parse_int),
    SQLType.SMALLINT: TypeInfo(*_NUMBER, _numbers(6), _parse_int),
    SQLType.TINYINT: TypeInfo(*_NUMBER, _numbers(3), _parse_int),
    SQLType.DECIMAL: TypeInfo(
        *_NUMBER, lambda df, p, s, d: df.decimal_formatter(p, s), _parse_decimal
    ),
    SQLType.NUMERIC: TypeInfo(
        *_NUMBER, lambda df, p, s, d: df.decimal_formatter(p, s), _parse_decimal
    ),
    SQLType.DOUBLE: TypeInfo(*_NUMBER, _floats, _parse_float),
    SQLType.FLOAT: TypeInfo(*_NUMBER, _floats, _parse_float),
    SQLType.REAL: TypeInfo(*_NUMBER, _floats, _parse_float),
    SQLType.BIT: TypeInfo(
        ColumnKind.STRING, Alignment.RIGHT, lambda df, p, s, d: BitFormatter(), _parse_bool
    ),
    SQLType.BOOLEAN: TypeInfo(
        *_STRING, lambda df, p, s, d: BooleanFormatter(), _parse_bool
    ),
    SQLType.CHAR: TypeInfo(*_STRING, _strings),
    SQLType.VARCHAR: TypeInfo(*_STRING, _strings),
    SQLType.CLOB: TypeInfo(*_STRING, lambda df, p, s, d: StringFormatter(-1)),
    SQLType.XML: TypeInfo(*_STRING, lambda df, p, s, d: StringFormatter(-1)),
    SQLType.BINARY: TypeInfo(
        ColumnKind.STRING,
        Alignment.RIGHT,
        lambda df, p, s, d: ByteFormatter(max(d, p, 16)),
        bytes.fromhex,
    ),
    SQLType.BLOB: TypeInfo(
        *_STRING, lambda df, p, s, d: ByteFormatter(max(d, p, 16)), bytes.fromhex
    ),
    SQLType.DATE: TypeInfo(
        *_STRING, lambda df, p, s, d: DateFormatter(df.date_format), date.fromisoformat
    ),
    SQLType.TIME: TypeInfo(
        *_STRING, lambda df, p, s, d: DateFormatter(df.time_format), time.fromisoformat
    ),
    SQLType.TIMESTAMP: TypeInfo(
        *_STRING,
        lambda df, p, s, d: DateFormatter(df.datetime_format),
        datetime.fromisoformat,
    ),
    SQLType.ARRAY: TypeInfo(
        *_STRING, lambda df, p, s, d: ArrayFormatter(df.null), lambda t: t.split(",")
    ),
    SQLType.CURSOR: TypeInfo(*_STRING, lambda df, p, s, d: UnsupportedFormatter()),
    SQLType.OTHER: TypeInfo(*_STRING, lambda df, p, s, d: UnsupportedFormatter()),
}


def type_info(sql_type: SQLType) -> TypeInfo:
    """
    Look up a type, falling back to OTHER.
    """
    return TYPE_TABLE.get(sql_type, TYPE_TABLE[SQLType.OTHER])


@dataclass(frozen=True)
class ColumnDescription:
    """
    How one result column is displayed.
    """

    name: str
    width: int = -1
    alignment: Alignment = Alignment.LEFT
    overflow: Overflow = Overflow.WRAP
    kind: ColumnKind = ColumnKind.STRING
    formatter: Formatter | None = None
    sql_type: SQLType = SQLType.VARCHAR


def describe_column(
    formatter: DataFormatter,
    name: str,
    sql_type: SQLType,
    precision: int = 0,
    scale: int = 0,
    display_size: int = 0,
    logger: logging.Logger | None = None,
) -> ColumnDescription:
    """
    Build the description of a result column from its type, using
    TYPE_TABLE.

    :param formatter: the display settings
    :param name: the column name
    :param sql_type: the column's type
    :param precision: the precision reported by the driver, or 0
    :param scale: the scale reported by the driver, or 0
    :param display_size: the display size reported by the driver, or 0
    :param logger: where to warn about unsupported types
    """
    # pylint: disable=too-many-arguments,too-many-positional-arguments
    if sql_type not in TYPE_TABLE or sql_type == SQLType.OTHER:
        if logger is not None:
            logger.warning('Column "%s" has an unsupported type %s', name, sql_type)

    info = type_info(sql_type)
    fmt = info.make_formatter(formatter, precision or 0, scale or 0, display_size or 0)
    return ColumnDescription(
        name=name,
        width=-1,
        alignment=info.alignment,
        overflow=Overflow.WRAP,
        kind=info.kind,
        formatter=fmt,
        sql_type=sql_type,
    )
