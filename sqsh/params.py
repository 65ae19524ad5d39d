"""
Statement parameters for the \\call command. Parameters are described with
a small notation: "T:value" binds a literal value of type T, "T:#n" takes
the value from column n of an input row and "T:#" from the column matching
the parameter's position. A description without a type is a string.
"""

import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Self, Sequence

from sqsh.formatting import SQLType, type_info

TYPE_CODES: dict[str, SQLType] = {
    "S": SQLType.VARCHAR,
    "C": SQLType.VARCHAR,
    "Z": SQLType.BOOLEAN,
    "D": SQLType.DOUBLE,
    "F": SQLType.FLOAT,
    "I": SQLType.INTEGER,
    "J": SQLType.BIGINT,
    "R": SQLType.CURSOR,
}

# A "?" outside of quotes.
PLACEHOLDER = re.compile(r"""('(?:[^']|'')*'|"(?:[^"]|"")*")|\?""")


class Direction(IntEnum):
    """Parameter direction."""

    INPUT = 1
    OUTPUT = 2
    INOUT = 3


@dataclass
class CallParameter:
    """
    One statement parameter.
    """

    index: int
    sql_type: SQLType = SQLType.VARCHAR
    direction: Direction = Direction.INPUT
    value: str | None = None
    column: int | None = None
    description: str = ""

    def set_from_row(self: Self, row: Sequence[str]) -> None:
        """
        Take the value from an input row, if this parameter is bound to a
        column.

        :raises IndexError: if the row is too short
        """
        if self.column is not None:
            self.value = row[self.column]


def parse_parameter(description: str, index: int) -> CallParameter:
    """
    Parse a parameter description.

    :param description: e.g., "I:10", "S:#2" or "hello"
    :param index: the 1-based position of the parameter

    :raises ValueError: if the type code or column number is invalid
    """
    type_code = "S"
    value: str | None = description
    if len(description) >= 2 and description[1] == ":":
        type_code = description[0].upper()
        value = description[2:]

    if (sql_type := TYPE_CODES.get(type_code)) is None:
        raise ValueError(f'Unknown parameter type "{type_code}"')

    column: int | None = None
    if value.startswith("#"):
        if value == "#":
            column = index - 1
        else:
            try:
                column = int(value[1:]) - 1
            except ValueError:
                # pylint: disable=raise-missing-from
                raise ValueError(f'Invalid column number "{value[1:]}"')
            if column < 0:
                raise ValueError(f'Invalid column number "{value[1:]}"')
        value = None

    direction = Direction.OUTPUT if sql_type == SQLType.CURSOR else Direction.INPUT
    return CallParameter(
        index=index,
        sql_type=sql_type,
        direction=direction,
        value=value,
        column=column,
        description=description,
    )


def parse_parameters(descriptions: Sequence[str]) -> list[CallParameter]:
    """
    Parse a list of parameter descriptions, numbering them from 1.
    """
    return [parse_parameter(d, i) for i, d in enumerate(descriptions, start=1)]


def bind_value(param: CallParameter) -> Any:
    """
    Convert a parameter's text into the Python value bound to the
    statement. Empty values are bound as NULL.

    :raises ValueError: if the value can't be converted (e.g., "Invalid
        number format")
    """
    if param.value is None or param.value == "":
        return None
    return type_info(param.sql_type).bind(param.value)


def bind_parameters(params: Sequence[CallParameter]) -> dict[str, Any]:
    """
    Build the bind dictionary for a statement rewritten by
    number_placeholders().

    :raises ValueError: if a value can't be converted, or if a parameter
        isn't an input parameter
    """
    binds: dict[str, Any] = {}
    for param in params:
        if param.direction != Direction.INPUT:
            raise ValueError(
                f"Parameter #{param.index}: output parameters are not supported"
            )
        try:
            binds[f"p{param.index}"] = bind_value(param)
        except ValueError as e:
            raise ValueError(f"Parameter #{param.index}: {e}") from e
    return binds


def number_placeholders(sql: str) -> tuple[str, int]:
    """
    Replace each "?" outside of quotes with a named parameter (":p1",
    ":p2", ...), which is what sqlalchemy.text() expects.

    :returns: the rewritten SQL and the number of placeholders
    """
    count = 0

    def replace(m: re.Match) -> str:
        nonlocal count
        if m.group(1) is not None:
            return m.group(1)
        count += 1
        return f":p{count}"

    return PLACEHOLDER.sub(replace, sql), count


def is_call(sql: str) -> bool:
    """
    Whether a statement uses the "{call proc(...)}" escape syntax.
    """
    return sql.lstrip().startswith("{")


CALL_ESCAPE = re.compile(r"^\s*\{\s*(?:\?\s*=\s*)?call\s+([^\s(]+)\s*(?:\((.*)\))?\s*\}\s*$", re.I | re.S)


def parse_call(sql: str) -> str | None:
    """
    Extract the procedure name from "{call proc(?, ?)}".

    :returns: the procedure name, or None if sql isn't a call
    """
    if (m := CALL_ESCAPE.match(sql)) is None:
        return None
    return m.group(1)
