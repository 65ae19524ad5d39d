"""tests/test_session.py — Tests for the read-eval-print loop and command dispatch."""

import io
from types import SimpleNamespace

import pytest

from sqsh.aliases import Alias
from sqsh.connection import NOT_CONNECTED_MESSAGE
from sqsh.outcome import FAILED, OK, Completed, RedrawBuffer
from sqsh.registry import Command


class CaptureCommand(Command):
    """Writes to both streams, remembers them, and optionally fails."""

    name = "\\capture"
    options = ()

    def __init__(self, fail=False):
        self.fail = fail
        self.seen = []

    def execute(self, session, opts):
        self.seen.append(SimpleNamespace(out=session.out, err=session.err))
        print("to out", file=session.out)
        print("to err", file=session.err)
        if self.fail:
            raise RuntimeError("boom")
        return OK


class TestStatements:
    def test_terminated_statement_runs_and_retires_buffer(self, sqlite_session, streams):
        before = len(sqlite_session.buffers.history())
        assert sqlite_session.evaluate("select 1 as n;") == OK
        assert len(sqlite_session.buffers.history()) == before + 1
        assert sqlite_session.buffers.current().is_empty()
        assert str(sqlite_session.buffers.history()[-1]) == "select 1 as n"
        assert "| n |" in streams.out.getvalue()
        assert "1 row in results" in streams.err.getvalue()

    def test_multi_line_statement(self, sqlite_session, streams):
        assert sqlite_session.evaluate("select 1 as n") is None
        assert sqlite_session.evaluate("union all select 2") is None
        assert sqlite_session.evaluate(";") == OK
        assert "2 rows in results" in streams.err.getvalue()

    def test_terminator_in_quotes(self, sqlite_session):
        assert sqlite_session.evaluate("select ';' as x") is None
        assert not sqlite_session.buffers.current().is_empty()

    def test_go_options_after_terminator(self, sqlite_session, streams):
        assert sqlite_session.evaluate("select 42 as answer; -m csv") == OK
        assert streams.out.getvalue() == "answer\n42\n"
        assert str(sqlite_session.buffers.history()[-1]) == "select 42 as answer"

    def test_redirect_after_terminator(self, sqlite_session, streams, tmp_path):
        path = tmp_path / "out.txt"
        assert sqlite_session.evaluate(f"select 42 as answer; > {path}") == OK
        text = path.read_text()
        assert "answer" in text and "42" in text
        assert streams.out.getvalue() == ""
        assert sqlite_session.buffers.current().is_empty()

    def test_pipe_after_terminator(self, sqlite_session, tmp_path):
        path = tmp_path / "piped.txt"
        line = f"select 'quiet' as word; -m csv | tr a-z A-Z > {path}"
        assert sqlite_session.evaluate(line) == OK
        assert path.read_text() == "WORD\nQUIET\n"

    def test_other_text_after_terminator(self, sqlite_session):
        assert sqlite_session.evaluate("select 1; x") is None
        assert str(sqlite_session.buffers.current()) == "select 1; x\n"

    def test_not_connected(self, session, streams):
        assert session.evaluate("select 1;") == FAILED
        assert NOT_CONNECTED_MESSAGE in streams.err.getvalue()
        assert session.fail_count == 1
        assert str(session.buffers.current()) == "select 1"

    def test_sql_error(self, sqlite_session, streams):
        assert sqlite_session.evaluate("select * from missing;") == FAILED
        assert "SQL Exception(s) Encountered" in streams.err.getvalue()

    def test_terminator_can_be_disabled(self, sqlite_session):
        sqlite_session.execute("\\set", "terminator=")
        assert sqlite_session.evaluate("select 1;") is None
        assert sqlite_session.evaluate("go") == OK

    def test_comment(self, session):
        assert session.evaluate("## a comment") is None
        assert session.buffers.current().is_empty()

    def test_buffer_recall(self, sqlite_session):
        sqlite_session.evaluate("select 1 as n;")
        assert sqlite_session.evaluate("!..") == RedrawBuffer()
        assert str(sqlite_session.buffers.current()) == "select 1 as n\n"

    def test_redraw(self, sqlite_session, streams):
        sqlite_session.buffers.current().add("select 1\nfrom t\n")
        sqlite_session.redraw_buffer()
        assert "select 1\n" in streams.out.getvalue()
        assert sqlite_session.buffers.current().line_count == 2

    def test_expand_setting(self, sqlite_session, streams):
        sqlite_session.execute("\\set", "tbl=sqlite_master")
        sqlite_session.execute("\\set", "expand=true")
        assert sqlite_session.evaluate("select count(*) as c from $tbl;") == OK


class TestCommands:
    def test_echo_with_variables(self, session, streams):
        session.evaluate("\\set x=5")
        session.evaluate("\\echo $x '$x' \"$x\"")
        assert streams.out.getvalue() == "5 $x 5\n"

    def test_programmatic_execute(self, session, streams):
        assert session.execute("\\echo", "a  b", "c") == OK
        assert streams.out.getvalue() == "a  b c\n"

    def test_unknown_command(self, session):
        with pytest.raises(KeyError):
            session.execute("\\nope")

    def test_usage_error(self, session, streams):
        assert session.evaluate("\\end 1 2") == FAILED
        err = streams.err.getvalue()
        assert "\\end: wrong number of arguments" in err
        assert "Use: \\end [next-session-id]" in err

    def test_bad_option(self, session, streams):
        assert session.evaluate("\\go -Z") == FAILED
        assert "No such option" in streams.err.getvalue()

    def test_help_option(self, session, streams):
        assert session.evaluate("\\echo --help") == FAILED
        assert "Print the arguments" in streams.err.getvalue()

    def test_syntax_error(self, session, streams):
        assert session.evaluate("\\echo 'abc") == FAILED
        assert "Missing closing single quote" in streams.err.getvalue()

    def test_input_after_terminator(self, session, streams):
        assert session.evaluate("\\echo a; b") == FAILED
        assert "Input is not allowed after the command terminator" in streams.err.getvalue()

    def test_trailing_terminator_is_ignored(self, session, streams):
        assert session.evaluate("\\echo a;") == OK
        assert streams.out.getvalue() == "a\n"

    def test_alias(self, context, session, streams):
        context.aliases.add(Alias("hi", "\\echo hello"))
        session.evaluate("hi there")
        assert streams.out.getvalue() == "hello there\n"

    def test_unexpected_exception_is_reported(self, context, session, streams):
        context.commands.register(CaptureCommand(fail=True))
        assert session.evaluate("\\capture") == FAILED
        assert "RuntimeError: boom" in streams.err.getvalue()
        assert session.fail_count == 1


class TestRedirection:
    def test_redirect_out(self, session, streams, tmp_path):
        path = tmp_path / "out.txt"
        assert session.evaluate(f"\\echo hello > {path}") == OK
        assert path.read_text() == "hello\n"
        assert streams.out.getvalue() == ""
        assert session.out is streams.out

    def test_append(self, session, tmp_path):
        path = tmp_path / "out.txt"
        session.evaluate(f"\\echo one > {path}")
        session.evaluate(f"\\echo two >> {path}")
        assert path.read_text() == "one\ntwo\n"

    def test_redirect_err(self, context, session, streams, tmp_path):
        context.commands.register(CaptureCommand())
        path = tmp_path / "err.txt"
        session.evaluate(f"\\capture 2> {path}")
        assert path.read_text() == "to err\n"
        assert streams.out.getvalue() == "to out\n"
        assert session.err is streams.err

    def test_dup(self, context, session, streams):
        context.commands.register(CaptureCommand())
        session.evaluate("\\capture 2>&1")
        assert streams.out.getvalue() == "to out\nto err\n"
        assert streams.err.getvalue() == ""

    def test_restored_after_exception(self, context, session, streams, tmp_path):
        command = CaptureCommand(fail=True)
        context.commands.register(command)
        path = tmp_path / "out.txt"
        assert session.evaluate(f"\\capture > {path}") == FAILED
        assert session.out is streams.out
        assert command.seen[0].out is not streams.out
        assert command.seen[0].out.closed
        assert path.read_text() == "to out\n"
        assert session.io.depth == 1

    def test_bad_descriptor(self, session, streams, tmp_path):
        assert session.evaluate(f"\\echo x 3> {tmp_path / 'x'}") == FAILED
        assert "file descriptors 1 (stdout) and 2 (stderr)" in streams.err.getvalue()

    def test_pipe(self, session, tmp_path):
        path = tmp_path / "piped.txt"
        assert session.evaluate(f"\\echo hello | tr a-z A-Z > {path}") == OK
        assert path.read_text() == "HELLO\n"
        assert session.io.depth == 1


class TestLoop:
    def test_script(self, context):
        out = io.StringIO()
        session = context.new_session(
            input=io.StringIO("\\echo one\n## skip\n\\echo two\n"),
            out=out,
            err=io.StringIO(),
        )
        assert session.read_eval_print() is None
        assert out.getvalue() == "one\ntwo\n"

    def test_nested_input(self, context, tmp_path):
        script = tmp_path / "inner.sql"
        script.write_text("\\echo inner\n")
        out = io.StringIO()
        session = context.new_session(
            input=io.StringIO(f"\\eval {script}\n\\echo outer\n"),
            out=out,
            err=io.StringIO(),
        )
        assert session.read_eval_print() is None
        assert out.getvalue() == "inner\nouter\n"
        assert session.io.depth == 1

    def test_eval_missing_file(self, session, streams, tmp_path):
        assert session.evaluate(f"\\eval {tmp_path / 'nope.sql'}") == FAILED
        assert "Unable to open" in streams.err.getvalue()

    def test_interrupt_ends_non_interactive_loop(self, context):
        out = io.StringIO()
        session = context.new_session(
            input=io.StringIO("\\echo never\n"), out=out, err=io.StringIO()
        )
        session.interrupted = True
        assert session.read_eval_print() is None
        assert out.getvalue() == ""

    def test_end_request_returned(self, context):
        session = context.new_session(
            input=io.StringIO("\\echo a\n\\quit\n\\echo b\n"),
            out=io.StringIO(),
            err=io.StringIO(),
        )
        request = session.read_eval_print()
        assert request is not None
        assert request.exit_all
        assert session.out.getvalue() == "a\n"


class TestVariables:
    def test_local_shadows_global(self, context, session):
        session.set_variable("x", "global")
        session.set_variable("x", "local", local=True)
        assert session.get_variable("x") == "local"
        assert context.variables["x"] == "global"
        # An existing local is updated in place.
        session.set_variable("x", "again")
        assert session.variables["x"] == "again"
        assert context.variables["x"] == "global"

    def test_unset(self, session):
        session.set_variable("x", "1", local=True)
        assert session.unset_variable("x")
        assert not session.unset_variable("x")

    def test_settings_are_validated(self, session):
        with pytest.raises(ValueError):
            session.set_variable("maxrows", "lots")
        with pytest.raises(ValueError):
            session.set_variable("maxrows_method", "truncate")
        with pytest.raises(ValueError):
            session.set_variable("terminator", "go")

    def test_histsize_applies(self, session):
        session.set_variable("histsize", "3")
        assert session.buffers.max_buffers == 3

    def test_connection_globals_expand(self, sqlite_session):
        assert sqlite_session.expand("$dialect") == "sqlite"

    def test_exit_code(self):
        assert Completed(3).exit_code == 3
