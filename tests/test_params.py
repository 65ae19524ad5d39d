"""tests/test_params.py — Unit tests for statement parameters."""

import pytest

from sqsh.formatting import SQLType
from sqsh.params import (
    Direction,
    bind_parameters,
    is_call,
    number_placeholders,
    parse_call,
    parse_parameter,
    parse_parameters,
)


class TestParseParameter:
    def test_literal(self):
        param = parse_parameter("I:10", 1)
        assert param.sql_type == SQLType.INTEGER
        assert param.value == "10"
        assert param.column is None
        assert param.direction == Direction.INPUT

    def test_untyped_is_string(self):
        param = parse_parameter("hello", 1)
        assert param.sql_type == SQLType.VARCHAR
        assert param.value == "hello"

    def test_column_by_position(self):
        assert parse_parameter("S:#", 3).column == 2

    def test_explicit_column(self):
        assert parse_parameter("J:#5", 1).column == 4

    def test_cursor_is_output(self):
        assert parse_parameter("R:x", 1).direction == Direction.OUTPUT

    @pytest.mark.parametrize("description", ["Q:1", "S:#x", "S:#0"])
    def test_invalid(self, description):
        with pytest.raises(ValueError):
            parse_parameter(description, 1)


class TestBinding:
    def test_bind_from_row(self):
        params = parse_parameters(["I:#", "S:#1", "D:2.5"])
        for param in params:
            param.set_from_row(["7", "x"])
        assert bind_parameters(params) == {"p1": 7, "p2": "7", "p3": 2.5}

    def test_empty_value_is_null(self):
        assert bind_parameters(parse_parameters(["I:"])) == {"p1": None}

    def test_short_row(self):
        param = parse_parameter("S:#3", 1)
        with pytest.raises(IndexError):
            param.set_from_row(["a"])

    def test_bad_number(self):
        with pytest.raises(ValueError, match="Parameter #1: Invalid number format"):
            bind_parameters(parse_parameters(["I:abc"]))

    def test_output_rejected(self):
        with pytest.raises(ValueError, match="output parameters"):
            bind_parameters(parse_parameters(["R:x"]))


class TestStatements:
    def test_number_placeholders(self):
        sql, count = number_placeholders("select ? from t where a = '?' and b = ?")
        assert sql == "select :p1 from t where a = '?' and b = :p2"
        assert count == 2

    def test_parse_call(self):
        assert is_call("{call myproc(?, ?)}")
        assert parse_call("{call myproc(?, ?)}") == "myproc"
        assert parse_call("{? = call schema.fn}") == "schema.fn"
        assert parse_call("select 1") is None
