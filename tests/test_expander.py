"""tests/test_expander.py — Unit tests for variable expansion."""

import pytest

from sqsh.errors import CommandLineSyntaxError
from sqsh.expander import DynamicScope, StringExpander, VariableLookup
from sqsh.shell import ShellError, split_fields, to_field_separator

UNSET = "SQSH_TEST_SURELY_UNSET_VARIABLE"


class TestExpand:
    def test_simple(self):
        expander = StringExpander({"X": "5"})
        assert expander.expand("x=$X, ${X}y") == "x=5, 5y"

    def test_unknown_left_alone(self):
        assert StringExpander().expand(f"${UNSET}") == f"${UNSET}"

    def test_scope_order(self):
        expander = StringExpander({"A": "local"}, {"A": "global", "B": "global"})
        assert expander.expand("$A $B") == "local global"

    def test_extra_wins(self):
        expander = StringExpander({"A": "local"})
        assert expander.expand("$A", {"A": "extra"}) == "extra"

    def test_environment(self, monkeypatch):
        monkeypatch.setenv(UNSET, "from-env")
        assert StringExpander().expand(f"${UNSET}") == "from-env"

    def test_dynamic_scope(self):
        values = {"url": "sqlite://"}
        expander = StringExpander(DynamicScope(lambda: values))
        assert expander.expand("$url") == "sqlite://"
        values["url"] = "other"
        assert expander.expand("$url") == "other"


class TestExpandWithQuotes:
    def test_single_quotes_unaltered(self):
        expander = StringExpander({"X": "5"})
        assert expander.expand_with_quotes("echo '$X' $X") == "echo '$X' 5"

    def test_double_quotes_expanded(self):
        expander = StringExpander({"X": "5"})
        assert expander.expand_with_quotes('echo "$X y"') == 'echo "5 y"'

    def test_escapes_copied(self):
        expander = StringExpander({"X": "5"})
        assert expander.expand_with_quotes("echo \\$X") == "echo \\$X"

    def test_back_ticks(self):
        expander = StringExpander(shell=lambda cmd: "a\nb\n")
        assert expander.expand_with_quotes("x `ls` y") == "x a b y"

    def test_back_tick_command_is_expanded(self):
        seen = []
        expander = StringExpander({"N": "3"}, shell=lambda cmd: seen.append(cmd) or "")
        expander.expand_with_quotes("`head -$N`")
        assert seen == ["head -3"]

    def test_back_tick_failure(self):
        def fail(cmd):
            raise ShellError("cannot start")

        expander = StringExpander(shell=fail)
        with pytest.raises(CommandLineSyntaxError, match="Failed to execute: ls"):
            expander.expand_with_quotes("x `ls`")

    @pytest.mark.parametrize(
        "text, message",
        [
            ("echo 'abc", "Missing closing single quote"),
            ('echo "abc', "Missing closing double-quote"),
            ("echo `abc", "Missing closing back-tick"),
        ],
    )
    def test_unterminated(self, text, message):
        with pytest.raises(CommandLineSyntaxError, match=message):
            StringExpander().expand_with_quotes(text)


class TestLookup:
    def test_missing_raises_key_error(self):
        with pytest.raises(KeyError):
            VariableLookup({"a": 1})["b"]

    def test_iteration_is_distinct(self):
        lookup = VariableLookup({"a": 1}, {"a": 2, "b": 3})
        assert sorted(lookup) == ["a", "b"]
        assert lookup["a"] == "1"


class TestFields:
    def test_default_ifs(self):
        assert split_fields(" a  b\tc\n", to_field_separator(r"\s")) == ["a", "b", "c"]

    def test_custom_ifs(self):
        assert split_fields("a,b,,c\n", to_field_separator(",")) == ["a", "b", "c"]
