"""Tests for the command line interface."""

import json
import logging
import threading
from unittest.mock import MagicMock, patch

import pytest

from debstatus.__main__ import build_parser, log_level_for, main, normalize_argv, split_list
from debstatus.oracle import ArchiveOracle

from helpers import FakeIndex, sample_metadata, wait_for

ARCHIVE = {
    "rust-serde-json": ["1.0.100-1"],
    "rust-rand": ["0.8.5-1"],
    "rust-cc": ["1.0.83-1"],
}


@pytest.fixture
def metadata_file(tmp_path):
    path = tmp_path / "metadata.json"
    path.write_text(json.dumps(sample_metadata()))
    return str(path)


@pytest.fixture
def fake_archive():
    index = FakeIndex(suite=ARCHIVE)
    with patch('debstatus.__main__.create_oracle') as mock_create:
        mock_create.return_value = (ArchiveOracle(index, concurrency=4), MagicMock())
        yield index


class TestArguments:
    """Tests for argument normalization."""

    @pytest.mark.parametrize("argv,expected", [
        ([], ["tree"]),
        (["debstatus"], ["tree"]),
        (["debstatus", "--json"], ["tree", "--json"]),
        (["-i", "-p", "foo"], ["tree", "-i", "-p", "foo"]),
        (["stats"], ["stats"]),
        (["debstatus", "stats", "-v"], ["stats", "-v"]),
        (["--version"], ["--version"]),
    ])
    def test_normalize_argv(self, argv, expected):
        """Test cargo subcommand invocation and the default subcommand."""
        assert normalize_argv(argv) == expected

    def test_split_list(self):
        """Test repeated, comma and space separated values."""
        assert split_list(["a,b", "c d", ""]) == ["a", "b", "c", "d"]
        assert split_list(None) == []

    @pytest.mark.parametrize("verbose,log_level,quiet,expected", [
        (0, None, False, logging.WARNING),
        (1, None, False, logging.INFO),
        (2, None, False, logging.DEBUG),
        (0, None, True, logging.ERROR),
        (0, "TRACE", False, logging.DEBUG),
        (0, "WARN", False, logging.WARNING),
        (2, "error", True, logging.ERROR),
    ])
    def test_log_level(self, verbose, log_level, quiet, expected):
        """Test that --loglevel wins over -q and the -v count."""
        assert log_level_for(verbose, log_level, quiet) == expected

    def test_verbosity_flags(self):
        """Test the -v count and -q."""
        args = build_parser().parse_args(["tree", "-vv", "-q"])

        assert args.verbose == 2
        assert args.quiet
        assert build_parser().parse_args(["stats"]).verbose == 0

    @pytest.mark.parametrize("flags,expected", [
        ([], "indent"),
        (["--no-indent"], "none"),
        (["--prefix-depth"], "depth"),
        (["--prefix", "depth"], "depth"),
    ])
    def test_prefix_flags(self, flags, expected):
        """Test --no-indent and --prefix-depth as spellings of --prefix."""
        assert build_parser().parse_args(["tree"] + flags).prefix == expected


class TestTreeCommand:
    """Tests for the tree subcommand."""

    def test_human_output(self, metadata_file, fake_archive, capsys):
        """Test the annotated tree for a small project."""
        result = main(["--metadata", metadata_file, "--all-targets", "--color", "never"])

        assert result == 0
        lines = [line.rstrip() for line in capsys.readouterr().out.splitlines()]
        assert lines == [
            " 🔴 app v0.1.0 (/tmp/app)",
            "    ├── serde_json v1.0.100 (in debian)",
            "    ├── rand v0.8.5 (in debian)",
            " 🔴 ├── winapi v0.3.9",
            "    ├── cc v1.0.83 (in debian) [build]",
            " 🔴 └── mylib v0.2.0 (git+https://example.com/mylib#abc123) (not on crates.io) [dev]",
        ]

    def test_no_mylib_lookup(self, metadata_file, fake_archive):
        """Test that only registry packages are sent to the archive."""
        main(["--metadata", metadata_file, "--all-targets", "--json"])

        queried = sorted(call[0] for call in fake_archive.calls)
        assert queried == ["rust-cc", "rust-rand", "rust-serde-json", "rust-winapi"]
        assert fake_archive.new_queue_calls == 1

    def test_json_output(self, metadata_file, fake_archive, capsys):
        """Test one JSON record per rendered line."""
        result = main(["--metadata", metadata_file, "--all-targets", "--json"])

        records = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
        assert result == 0
        assert len(records) == 6
        assert records[0]["name"] == "app"
        assert records[0]["blocked_by"] == "winapi v0.3.9"
        assert records[3]["purl"] == "pkg:cargo/winapi@0.3.9"
        assert records[5]["blocking_reason"] == "unregistered-source"

    def test_why(self, metadata_file, fake_archive, capsys):
        """Test the blocked-by annotation."""
        main(["--metadata", metadata_file, "--all-targets", "--color", "never", "--why"])

        first = capsys.readouterr().out.splitlines()[0]
        assert first.rstrip().endswith("(blocked by winapi v0.3.9)")

    def test_filter_and_no_dev(self, metadata_file, fake_archive, capsys):
        """Test that only blocking lines are printed."""
        main(["--metadata", metadata_file, "--all-targets", "--color", "never",
              "--filter", "missing", "--no-dev-dependencies"])

        lines = [line.rstrip() for line in capsys.readouterr().out.splitlines()]
        assert lines == [" 🔴 app v0.1.0 (/tmp/app)", " 🔴 └── winapi v0.3.9"]

    def test_no_default_features(self, metadata_file, fake_archive, capsys):
        """Test that feature flags reach the graph builder."""
        main(["--metadata", metadata_file, "--all-targets", "--json", "--no-default-features"])

        names = [json.loads(line)["name"] for line in capsys.readouterr().out.splitlines()]
        assert "serde_json" not in names

    def test_unknown_package(self, metadata_file, fake_archive, capsys):
        """Test that an unknown -p spec is reported."""
        result = main(["--metadata", metadata_file, "--all-targets", "-p", "nothing"])

        assert result == 1
        assert "Error: no crates found for package `nothing`" in capsys.readouterr().err

    def test_bad_format(self, metadata_file, fake_archive, capsys):
        """Test that an invalid format pattern is reported."""
        result = main(["--metadata", metadata_file, "--all-targets", "-f", "{x}"])

        assert result == 1
        assert "Error:" in capsys.readouterr().err

    def test_missing_metadata_file(self, tmp_path, fake_archive, capsys):
        """Test that an unreadable metadata file is reported."""
        result = main(["--metadata", str(tmp_path / "missing.json"), "--all-targets"])

        assert result == 1
        assert "Error:" in capsys.readouterr().err

    def test_interrupt(self, capsys):
        """Test that an interrupt exits with 130 and prints nothing."""
        with patch('debstatus.__main__.load_graph', side_effect=KeyboardInterrupt), \
                patch('debstatus.__main__.os._exit') as mock_exit:
            main(["--all-targets"])

        mock_exit.assert_called_once_with(130)
        assert capsys.readouterr().out == ""

    def test_interrupt_during_lookups(self, metadata_file, capsys):
        """Test that an interrupt while archive queries hang exits without waiting for them."""
        gate = threading.Event()
        index = FakeIndex(suite=ARCHIVE, gate=gate)

        def interrupted(futures):
            wait_for(lambda: len(index.calls) == 2)
            raise KeyboardInterrupt

        try:
            with patch('debstatus.__main__.create_oracle',
                       return_value=(ArchiveOracle(index, concurrency=2), MagicMock())), \
                    patch('debstatus.oracle.as_completed', side_effect=interrupted), \
                    patch('debstatus.__main__.os._exit') as mock_exit:
                main(["--metadata", metadata_file, "--all-targets"])

            mock_exit.assert_called_once_with(130)
            assert len(index.calls) == 2
            assert capsys.readouterr().out == ""
        finally:
            gate.set()


class TestStatsCommand:
    """Tests for the stats subcommand."""

    def test_stats(self, metadata_file, fake_archive, capsys):
        """Test the counts and the blocking chain of the root."""
        result = main(["stats", "--metadata", metadata_file, "--all-targets"])

        out = capsys.readouterr().out
        assert result == 0
        assert "Packaging Status:" in out
        assert "  Total Packages: 6" in out
        assert "  Workspace Members: 1" in out
        assert "  In Debian: 3" in out
        assert "  Missing: 2" in out
        assert "  Blocking: 2" in out
        assert "app v0.1.0 is blocked:" in out
        assert "  app v0.1.0 -> winapi v0.3.9" in out
