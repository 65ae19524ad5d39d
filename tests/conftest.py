"""tests/conftest.py — Shared fixtures."""

import io

import pytest

from sqsh.context import SqshContext


class Streams:
    """In-memory input, output and error streams for a session."""

    def __init__(self, text=""):
        self.input = io.StringIO(text)
        self.out = io.StringIO()
        self.err = io.StringIO()


@pytest.fixture
def context():
    ctx = SqshContext()
    ctx.variables["timer"] = "false"
    yield ctx
    ctx.close()


@pytest.fixture
def streams():
    return Streams()


@pytest.fixture
def session(context, streams):
    return context.new_session(
        input=streams.input, out=streams.out, err=streams.err, interactive=False
    )


@pytest.fixture
def sqlite_session(context, streams):
    return context.new_session(
        connection=context.connect("sqlite://"),
        input=streams.input,
        out=streams.out,
        err=streams.err,
        interactive=True,
    )
