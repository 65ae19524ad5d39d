"""tests/test_aliases.py — Unit tests for aliases."""

from sqsh.aliases import Alias, AliasManager


def manager(*aliases):
    m = AliasManager()
    for alias in aliases:
        m.add(alias)
    return m


class TestAliases:
    def test_leading_alias(self):
        m = manager(Alias("sp", "select * from"))
        assert m.process("sp users") == "select * from users"

    def test_leading_white_space(self):
        m = manager(Alias("sp", "select * from"))
        assert m.process("  sp users") == "  select * from users"

    def test_non_global_only_at_start(self):
        m = manager(Alias("sp", "select"))
        assert m.process("x sp") == "x sp"

    def test_must_end_at_word_boundary(self):
        m = manager(Alias("sp", "select"))
        assert m.process("spx") == "spx"

    def test_global(self):
        m = manager(Alias("@t", "my_table", is_global=True))
        assert m.process("select * from @t join @t") == (
            "select * from my_table join my_table"
        )

    def test_no_aliases(self):
        assert manager().process("select 1") == "select 1"

    def test_remove(self):
        m = manager(Alias("sp", "select"))
        assert "sp" in m
        assert m.remove("sp")
        assert not m.remove("sp")
        assert len(m) == 0
