"""Tests for the mako-find command line."""

import os
from unittest.mock import MagicMock, patch

import pytest
from pika.exceptions import AMQPConnectionError

from mako_find.cli import main


@pytest.fixture
def roots(tmp_path):
    first = tmp_path / "first"
    first.mkdir()
    (first / "a.txt").write_text("aaaa")
    (first / "sub").mkdir()
    (first / "sub" / "b.txt").write_text("bb")

    second = tmp_path / "second"
    second.mkdir()
    (second / "c.txt").write_text("c")
    return first, second


def output_paths(out):
    return sorted(line.split("\t")[0] for line in out.splitlines())


class TestMain:
    """Tests for main entry point."""

    def test_no_roots_prints_usage(self, capsys):
        """Test that running without directories is a usage error."""
        assert main([], prog="mako-find") == 1

        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err == "usage: mako-find dir1 dir2 ... dirN\n"

    def test_scans_all_roots(self, roots, capsys):
        first, second = roots

        assert main([str(first), str(second)], prog="mako-find") == 0

        captured = capsys.readouterr()
        assert captured.err == ""
        assert output_paths(captured.out) == [
            str(first / "a.txt"),
            str(first / "sub" / "b.txt"),
            str(second / "c.txt"),
        ]

    def test_missing_root_sets_exit_status(self, roots, tmp_path, capsys):
        """Test that a bad root is reported once and the other roots still run."""
        first, second = roots
        missing = tmp_path / "missing"

        status = main([str(first), str(missing), str(second)], prog="mako-find")

        assert status == 1
        captured = capsys.readouterr()
        assert captured.err == f"mako-find: {missing}: encountered an error\n"
        assert len(captured.out.splitlines()) == 3

    def test_max_descriptors_option(self, roots, capsys):
        first, _ = roots

        assert main(["--max-descriptors", "1", str(first)], prog="mako-find") == 0
        assert len(capsys.readouterr().out.splitlines()) == 2

    def test_rejects_zero_descriptors(self, roots, capsys):
        first, _ = roots

        assert main(["--max-descriptors", "0", str(first)], prog="mako-find") == 1

        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err.endswith("usage: mako-find dir1 dir2 ... dirN\n")

    def test_malformed_option_value_exits_1(self, roots, capsys):
        first, _ = roots

        assert main(["--max-descriptors", "many", str(first)], prog="mako-find") == 1
        assert capsys.readouterr().out == ""

    def test_dash_prefixed_root_is_scanned(self, tmp_path, monkeypatch, capsys):
        """Test that a directory whose name starts with a dash is a root, not an option."""
        monkeypatch.chdir(tmp_path)
        (tmp_path / "-data").mkdir()
        (tmp_path / "-data" / "x.txt").write_text("x")
        (tmp_path / "plain").mkdir()
        (tmp_path / "plain" / "y.txt").write_text("y")

        assert main(["plain", "-data"], prog="mako-find") == 0

        lines = capsys.readouterr().out.splitlines()
        assert [line.split("\t")[0] for line in lines] == [
            os.path.join("plain", "y.txt"),
            os.path.join("-data", "x.txt"),
        ]

    def test_roots_keep_command_line_order(self, roots, capsys):
        first, second = roots

        assert main([str(second), "--max-descriptors", "2", str(first)], prog="mako-find") == 0

        paths = [line.split("\t")[0] for line in capsys.readouterr().out.splitlines()]
        assert paths[0] == str(second / "c.txt")
        assert sorted(paths[1:]) == [str(first / "a.txt"), str(first / "sub" / "b.txt")]

    def test_double_dash_ends_options(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "--publish").mkdir()
        (tmp_path / "--publish" / "z.txt").write_text("z")

        assert main(["--", "--publish"], prog="mako-find") == 0
        assert capsys.readouterr().out.startswith(os.path.join("--publish", "z.txt") + "\t")

    def test_closed_stdout_stops_quietly(self, roots, monkeypatch):
        """Test that a reader closing the pipe early ends the run with status 1."""
        first, _ = roots
        read_fd, write_fd = os.pipe()
        os.close(read_fd)
        stdout = open(write_fd, "w", buffering=1)
        monkeypatch.setattr("sys.stdout", stdout)

        try:
            assert main([str(first)], prog="mako-find") == 1
        finally:
            stdout.close()


class TestPublish:
    """Tests for publishing records with --publish."""

    @patch("mako_find.cli.RabbitClient")
    def test_publishes_each_record(self, mock_client_class, roots, capsys):
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client
        first, _ = roots

        assert main(["--publish", "--queue", "scan_q", str(first)], prog="mako-find") == 0

        config = mock_client_class.call_args[0][0]
        assert config.queue == "scan_q"
        mock_client.connect.assert_called_once()
        assert mock_client.publish_record.call_count == 2
        published = sorted(c[0][0].path for c in mock_client.publish_record.call_args_list)
        assert published == output_paths(capsys.readouterr().out)
        mock_client.close.assert_called_once()

    @patch("mako_find.cli.RabbitClient")
    def test_connect_failure_skips_scan(self, mock_client_class, roots, capsys):
        mock_client = MagicMock()
        mock_client.connect.side_effect = AMQPConnectionError("refused")
        mock_client_class.return_value = mock_client
        first, _ = roots

        assert main(["--publish", str(first)], prog="mako-find") == 1
        assert capsys.readouterr().out == ""
        mock_client.publish_record.assert_not_called()

    @patch("mako_find.cli.RabbitClient")
    def test_publish_failure_sets_exit_status(self, mock_client_class, roots, capsys):
        """Test that records are still printed when publishing fails."""
        mock_client = MagicMock()
        mock_client.publish_record.side_effect = AMQPConnectionError("gone")
        mock_client_class.return_value = mock_client
        first, _ = roots

        assert main(["--publish", str(first)], prog="mako-find") == 1
        assert len(capsys.readouterr().out.splitlines()) == 2
