"""tests/test_commands.py — Tests for the built-in commands."""

import io
import logging
import os

import pytest

from sqsh.config import load_configuration
from sqsh.context import SqshContext
from sqsh.outcome import FAILED, OK, EndSession, RedrawBuffer, SwitchInput, SwitchSession


@pytest.fixture
def csv_session(sqlite_session):
    sqlite_session.execute("\\set", "style=csv")
    sqlite_session.evaluate("create table t (n integer, s varchar(10));")
    return sqlite_session


def new_sessions(context, count):
    return [
        context.new_session(input=io.StringIO(), out=io.StringIO(), err=io.StringIO())
        for _ in range(count)
    ]


class TestGo:
    def test_display_style(self, sqlite_session, streams):
        sqlite_session.buffers.current().add("select 1 as n, 'a' as s")
        assert sqlite_session.evaluate("\\go -m csv") == OK
        assert streams.out.getvalue() == "n,s\n1,a\n"

    def test_no_headers_or_footers(self, sqlite_session, streams):
        sqlite_session.buffers.current().add("select 1 as n")
        assert sqlite_session.evaluate("\\go -m csv -H -F") == OK
        assert streams.out.getvalue() == "1\n"
        assert streams.err.getvalue() == ""

    def test_repeat(self, sqlite_session, streams):
        sqlite_session.buffers.current().add("select 1 as n")
        assert sqlite_session.evaluate("\\go -m csv -H -n 3") == OK
        assert streams.out.getvalue() == "1\n1\n1\n"

    def test_bad_style(self, sqlite_session, streams):
        sqlite_session.buffers.current().add("select 1")
        assert sqlite_session.evaluate("\\go -m fancy") == FAILED
        assert 'Unknown display style "fancy"' in streams.err.getvalue()

    def test_empty_buffer(self, sqlite_session, streams):
        assert sqlite_session.evaluate("\\go") == OK
        assert streams.out.getvalue() == ""

    def test_non_interactive_clears_buffer(self, context, streams):
        session = context.new_session(
            connection=context.connect("sqlite://"), out=streams.out, err=streams.err
        )
        session.evaluate("select 1;")
        assert len(session.buffers.history()) == 0
        assert session.buffers.current().is_empty()

    def test_maxrows(self, csv_session, streams):
        csv_session.evaluate("insert into t values (1, 'a'), (2, 'b'), (3, 'c');")
        csv_session.execute("\\set", "maxrows=1")
        csv_session.evaluate("select n from t order by n;")
        assert streams.out.getvalue() == "n\n1\n"
        assert "3 rows in results, first 1 rows shown" in streams.err.getvalue()


class TestBuffers:
    def test_reset(self, session):
        session.buffers.current().add("select 1")
        assert session.evaluate("\\reset") == OK
        assert str(session.buffers.history()[-1]) == "select 1\n"
        assert session.buffers.current().is_empty()

    def test_reset_empty_buffer(self, session):
        session.buffers.current()
        before = len(session.buffers.history())
        assert session.evaluate("\\reset") == OK
        assert len(session.buffers.history()) == before + 1

    def test_reset_without_backslash_is_sql(self, sqlite_session, streams):
        assert sqlite_session.evaluate("reset all;") == FAILED
        err = streams.err.getvalue()
        assert "SQL Exception(s) Encountered" in err
        assert "wrong number of arguments" not in err
        assert str(sqlite_session.buffers.history()[-1]) == "reset all"

    def test_copy_to_current(self, sqlite_session):
        sqlite_session.evaluate("select 1 as n;")
        assert sqlite_session.evaluate("\\buf-copy !..") == RedrawBuffer()
        assert str(sqlite_session.buffers.current()) == "select 1 as n\n"

    def test_copy_without_bang(self, sqlite_session):
        sqlite_session.evaluate("select 1 as n;")
        assert sqlite_session.evaluate("\\buf-copy 1") == RedrawBuffer()
        assert str(sqlite_session.buffers.current()) == "select 1 as n\n"

    def test_append(self, sqlite_session):
        sqlite_session.evaluate("select 1 as n;")
        sqlite_session.buffers.current().add("-- first")
        sqlite_session.evaluate("\\buf-append !..")
        assert sqlite_session.buffers.current().lines() == ["-- first", "select 1 as n"]

    def test_missing_source(self, session, streams):
        assert session.evaluate("\\buf-copy !42") == FAILED
        assert "Specified source buffer '!42' does not exist" in streams.err.getvalue()

    def test_save_previous_when_current_is_empty(self, sqlite_session, tmp_path):
        path = tmp_path / "saved.sql"
        sqlite_session.evaluate("select 1 as n;")
        assert sqlite_session.evaluate(f"\\buf-save {path}") == OK
        assert path.read_text() == "select 1 as n"

    def test_save_and_load(self, session, tmp_path):
        path = tmp_path / "saved.sql"
        session.buffers.current().add("select 1\nfrom t")
        session.evaluate(f"\\buf-save {path}")
        session.evaluate(f"\\buf-save -a {path}")
        session.buffers.current().clear()
        assert session.evaluate(f"\\buf-load {path}") == RedrawBuffer()
        assert session.buffers.current().lines() == ["select 1", "from t"] * 2

    def test_load_missing_file(self, session, streams, tmp_path):
        assert session.evaluate(f"\\buf-load {tmp_path / 'nope'}") == FAILED
        assert "Unable to read" in streams.err.getvalue()

    def test_name(self, sqlite_session):
        sqlite_session.evaluate("select 1 as n;")
        assert sqlite_session.evaluate("\\buf-name one") == OK
        assert str(sqlite_session.buffers.resolve("!one")) == "select 1 as n"

    def test_invalid_name(self, session, streams):
        assert session.evaluate("\\buf-name 9lives") == FAILED
        assert 'Invalid buffer name "9lives"' in streams.err.getvalue()

    def test_history(self, sqlite_session, streams):
        sqlite_session.evaluate("select 1 as n;")
        sqlite_session.evaluate("select 2 as n")
        sqlite_session.evaluate("from (select 1);")
        streams.out.truncate(0)
        streams.out.seek(0)
        assert sqlite_session.evaluate("\\history") == OK
        assert streams.out.getvalue() == (
            "(1) select 1 as n\n"
            "(2) select 2 as n\n"
            "    from (select 1)\n"
        )

    def test_long_history_is_cut(self, session, streams):
        session.buffers.current().add("\n".join(f"line {i}" for i in range(12)))
        session.buffers.new_buffer()
        session.evaluate("\\history")
        lines = streams.out.getvalue().splitlines()
        assert len(lines) == 11
        assert lines[-1].strip() == "..."
        streams.out.truncate(0)
        streams.out.seek(0)
        session.evaluate("\\history -a")
        assert len(streams.out.getvalue().splitlines()) == 12


class TestSessions:
    def test_list(self, context, session, streams):
        new_sessions(context, 1)
        assert session.evaluate("\\session") == OK
        out = streams.out.getvalue()
        assert "Username" in out
        assert "*1" in out
        assert "*2" not in out

    def test_switch(self, context, session):
        new_sessions(context, 1)
        assert session.evaluate("\\session 2") == SwitchSession(target=2)
        assert session.evaluate("\\session -") == SwitchSession(previous=True)

    def test_switch_errors(self, session, streams):
        assert session.evaluate("\\session two") == FAILED
        assert session.evaluate("\\session 7") == FAILED
        err = streams.err.getvalue()
        assert "Invalid session id 'two'" in err
        assert "Specified session id '7' does not exist" in err

    def test_end(self, session):
        assert session.evaluate("\\end") == EndSession()

    def test_end_and_switch(self, context):
        first, _, third = new_sessions(context, 3)
        assert first.evaluate("\\end 3") == SwitchSession(target=3, end_current=True)

        first.io.input.write("\\end 3\n")
        first.io.input.seek(0)
        third.io.input.write("\\session\n")
        third.io.input.seek(0)
        assert context.run() == 0
        out = third.out.getvalue()
        assert "Current session: 3 (*no connection*)" in out
        # Session 1 was gone by the time session 3 listed the sessions.
        assert "| 1 " not in out
        assert "*3" in out

    def test_end_missing_session(self, context):
        first, second, _ = new_sessions(context, 3)
        assert first.evaluate("\\end 99") == FAILED
        assert "Specified next session id '99' does not exist" in first.err.getvalue()
        assert [s.id for s in context.sessions()] == [1, 2, 3]
        assert context.current is first
        assert first.fail_count == 1
        assert second.fail_count == 0

    def test_end_invalid_id(self, session, streams):
        assert session.evaluate("\\end x") == FAILED
        assert "Invalid session id 'x'" in streams.err.getvalue()

    @pytest.mark.parametrize("name", ["\\quit", "\\exit", "quit", "exit"])
    def test_quit(self, session, name):
        assert session.evaluate(name) == EndSession(exit_all=True)


class TestVariableCommands:
    def test_set_and_unset(self, context, session):
        assert session.evaluate("\\set greeting=hello world") == OK
        assert context.variables["greeting"] == "hello world"
        assert session.evaluate("\\unset greeting") == OK
        assert "greeting" not in context.variables

    def test_set_local(self, context, session):
        session.evaluate("\\set -l x=1")
        assert session.variables["x"] == "1"
        assert "x" not in context.variables

    def test_set_invalid_setting(self, session, streams):
        assert session.evaluate("\\set maxrows=-3") == FAILED
        assert '"maxrows" must be a number' in streams.err.getvalue()
        assert session.get_variable("maxrows") == "500"

    def test_set_malformed(self, session, streams):
        assert session.evaluate("\\set novalue") == FAILED
        assert 'Expected "name=value"' in streams.err.getvalue()

    def test_set_export(self, session, monkeypatch):
        monkeypatch.setenv("SQSH_TEST_EXPORT", "old")
        session.evaluate("\\set -x SQSH_TEST_EXPORT=new")
        assert os.environ["SQSH_TEST_EXPORT"] == "new"

    def test_list(self, session, streams):
        session.evaluate("\\set -l mine=1")
        session.evaluate("\\set")
        out = streams.out.getvalue()
        assert "mine" in out
        assert "terminator" in out

    def test_globals(self, session, streams):
        session.evaluate("\\set -l mine=1")
        session.evaluate("\\globals")
        out = streams.out.getvalue()
        assert "terminator" in out
        assert "mine" not in out

    def test_unset_missing(self, session, streams):
        assert session.evaluate("\\unset nope") == FAILED
        assert 'No such variable "nope"' in streams.err.getvalue()


class TestAliasCommand:
    def test_define_and_use(self, session, streams):
        assert session.evaluate("\\alias ll='\\echo listed'") == OK
        session.evaluate("ll")
        assert streams.out.getvalue() == "listed\n"

    def test_global_and_remove(self, context, session, streams):
        session.evaluate("\\alias -g @t=my_table")
        assert context.aliases.process("select * from @t") == "select * from my_table"
        session.evaluate("\\alias")
        assert "my_table" in streams.out.getvalue()
        # Global aliases apply to command lines too.
        session.evaluate("\\echo @t")
        assert streams.out.getvalue().endswith("my_table\n")

    def test_remove(self, context, session, streams):
        session.evaluate("\\alias sp=select")
        assert "sp" in context.aliases
        assert session.evaluate("\\alias -r sp") == OK
        assert session.evaluate("\\alias -r sp") == FAILED
        assert 'No such alias "sp"' in streams.err.getvalue()


class TestConnect:
    def test_connect(self, session):
        assert session.evaluate("\\connect sqlite://") == OK
        assert session.connection.connected
        assert session.connection.url == "sqlite://"

    def test_new_session(self, context, session):
        assert session.evaluate("\\connect -n sqlite://") == SwitchSession(target=2)
        assert not session.connection.connected
        assert context.get_session(2).connection.connected

    def test_bad_url(self, session, streams):
        assert session.evaluate("\\connect nosuchdialect://") == FAILED
        assert "Unable to connect to nosuchdialect://" in streams.err.getvalue()

    def test_save_and_list(self, streams, tmp_path):
        path = tmp_path / "sqsh.toml"
        context = SqshContext(configuration=load_configuration(path))
        try:
            session = context.new_session(out=streams.out, err=streams.err)
            assert session.evaluate("\\connect -a mem sqlite://") == OK
            assert load_configuration(path).get("mem").url == "sqlite://"

            session.evaluate("\\connect -l")
            assert "mem" in streams.out.getvalue()

            assert session.evaluate("\\connect mem") == OK
            assert session.evaluate("\\connect -r mem") == OK
            assert load_configuration(path).names() == []
        finally:
            context.close()


class TestCall:
    def test_parameters(self, csv_session, streams):
        csv_session.evaluate("insert into t values (?, ?)")
        assert csv_session.evaluate("\\call I:1 S:one") == OK
        csv_session.evaluate("select n, s from t;")
        assert streams.out.getvalue().endswith("n,s\n1,one\n")

    def test_file(self, csv_session, streams, tmp_path):
        path = tmp_path / "rows.csv"
        path.write_text("n,s\n2,two\n3,three\n")
        csv_session.evaluate("insert into t values (?, ?)")
        assert csv_session.evaluate(f"\\call -i -f {path}") == OK
        csv_session.evaluate("select n, s from t order by n;")
        assert streams.out.getvalue().endswith("n,s\n2,two\n3,three\n")

    def test_column_references(self, csv_session, streams, tmp_path):
        path = tmp_path / "rows.csv"
        path.write_text("x,4\n")
        csv_session.evaluate("insert into t values (?, ?)")
        assert csv_session.evaluate(f"\\call -f {path} I:#2 S:#1") == OK
        csv_session.evaluate("select n, s from t;")
        assert streams.out.getvalue().endswith("n,s\n4,x\n")

    def test_short_line(self, csv_session, streams, tmp_path):
        path = tmp_path / "rows.csv"
        path.write_text("1\n")
        csv_session.evaluate("insert into t values (?, ?)")
        assert csv_session.evaluate(f"\\call -f {path} I:#1 S:#2") == FAILED
        assert "Line #1 does not contain requested column #2" in streams.err.getvalue()

    def test_marker_count(self, csv_session, streams):
        csv_session.evaluate("insert into t values (?, ?)")
        assert csv_session.evaluate("\\call I:1") == FAILED
        assert (
            "The statement has 2 parameter marker(s), but 1 parameter(s) were supplied"
            in streams.err.getvalue()
        )

    def test_bad_value(self, csv_session, streams):
        csv_session.evaluate("insert into t values (?, ?)")
        assert csv_session.evaluate("\\call I:abc S:x") == FAILED
        assert "Parameter #1" in streams.err.getvalue()

    def test_empty_buffer(self, csv_session, streams):
        assert csv_session.evaluate("\\call") == FAILED
        assert "The current buffer is empty" in streams.err.getvalue()

    def test_not_connected(self, session, streams):
        session.buffers.current().add("select ?")
        assert session.evaluate("\\call S:x") == FAILED
        assert "not currently connected" in streams.err.getvalue()


class TestMisc:
    def test_echo_no_newline(self, session, streams):
        session.evaluate("\\echo -n a b")
        assert streams.out.getvalue() == "a b"

    def test_eval_outcome(self, session, tmp_path):
        path = tmp_path / "x.sql"
        path.write_text("select 1;\n")
        outcome = session.evaluate(f"\\eval {path}")
        assert isinstance(outcome, SwitchInput)
        assert outcome.source.read() == "select 1;\n"
        outcome.source.close()

    def test_help(self, session, streams):
        assert session.evaluate("\\help") == OK
        out = streams.out.getvalue()
        assert "\\go [-m style]" in out
        assert "\\quit" in out

    def test_help_one_command(self, session, streams):
        assert session.evaluate("\\help go") == OK
        assert streams.out.getvalue().startswith("\\go ")
        assert "\\quit" not in streams.out.getvalue()

    def test_help_unknown(self, session, streams):
        assert session.evaluate("\\help nope") == FAILED
        assert 'Unknown command "nope".' in streams.err.getvalue()

    def test_debug(self, session):
        logger = logging.getLogger("sqsh.render")
        try:
            assert session.evaluate("\\debug -l info render") == OK
            assert logger.level == logging.INFO
        finally:
            logger.setLevel(logging.NOTSET)

    def test_debug_bad_level(self, session, streams):
        assert session.evaluate("\\debug -l chatty") == FAILED
