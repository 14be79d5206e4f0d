"""Tests for cfg expressions and platform matching."""

import pytest

from debstatus.target import CfgExpr, Platform
from debstatus.version_parser import ParseError

RUSTC_CFG = """\
debug_assertions
panic="unwind"
target_arch="x86_64"
target_endian="little"
target_family="unix"
target_os="linux"
target_pointer_width="64"
unix
"""


@pytest.fixture
def linux():
    return Platform.from_rustc_cfg("x86_64-unknown-linux-gnu", RUSTC_CFG)


class TestCfgExpr:
    """Tests for parsing and evaluating cfg(...) predicates."""

    @pytest.mark.parametrize("expression,expected", [
        ("cfg(unix)", True),
        ("cfg(windows)", False),
        ('cfg(target_os = "linux")', True),
        ('cfg(target_os="macos")', False),
        ("cfg(not(windows))", True),
        ('cfg(all(unix, target_pointer_width = "64"))', True),
        ('cfg(all(unix, target_arch = "arm"))', False),
        ('cfg(any(windows, target_os = "linux"))', True),
        ("cfg(any())", False),
        ("cfg(all())", True),
        ('cfg(all(not(windows), any(target_os = "linux", target_os = "android")))', True),
    ])
    def test_evaluate(self, linux, expression, expected):
        """Test predicates against a Linux host."""
        assert linux.matches(expression) is expected

    def test_parse_tree(self):
        """Test the parsed structure of a nested predicate."""
        expr = CfgExpr.parse('cfg(all(unix, target_os = "linux"))')

        assert expr.op == "all"
        assert [arg.op for arg in expr.args] == ["name", "pair"]
        assert expr.args[1].args == ("target_os", "linux")

    @pytest.mark.parametrize("expression", [
        "cfg(all(unix",
        "cfg()",
        "cfg(not(unix, windows))",
        "cfg(unix) extra",
        "cfg(target_os = linux)",
        "cfg(unix windows)",
        "unix",
        "cfg($)",
    ])
    def test_malformed(self, expression):
        """Test that malformed predicates raise ParseError."""
        with pytest.raises(ParseError):
            CfgExpr.parse(expression)


class TestPlatform:
    """Tests for Platform.matches."""

    def test_no_expression_always_matches(self, linux):
        """Test unconditional dependencies."""
        assert linux.matches(None)
        assert linux.matches("")

    def test_target_triple(self, linux):
        """Test plain target triples."""
        assert linux.matches("x86_64-unknown-linux-gnu")
        assert not linux.matches("x86_64-pc-windows-msvc")

    def test_cfg_values(self, linux):
        """Test that rustc output is split into names and key/value pairs."""
        assert "unix" in linux.names
        assert ("target_family", "unix") in linux.pairs
        assert ("panic", "unwind") in linux.pairs
