"""Tests for command execution helpers."""
import subprocess
from unittest.mock import Mock

import pytest

from romvault.storage.commands import run_checked_command, run_command_status


class TestRunCheckedCommand:
    """Tests for run_checked_command function."""

    def test_successful_command(self, mock_subprocess_run):
        """Test successful command execution."""
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="output", stderr="")

        result = run_checked_command(["echo", "test"])

        assert result == "output"
        mock_subprocess_run.assert_called_once_with(
            ["echo", "test"],
            input=None,
            text=True,
            capture_output=True,
            timeout=None,
        )

    def test_command_with_input(self, mock_subprocess_run):
        """Test command execution with input text."""
        mock_subprocess_run.return_value = Mock(returncode=0, stdout="output", stderr="")

        run_checked_command(["cat"], input_text="input data", timeout=5)

        assert mock_subprocess_run.call_args.kwargs["input"] == "input data"
        assert mock_subprocess_run.call_args.kwargs["timeout"] == 5

    def test_command_failure_with_stderr(self, mock_subprocess_run):
        """Test command failure with stderr message."""
        mock_subprocess_run.return_value = Mock(returncode=1, stdout="", stderr="error message")

        with pytest.raises(RuntimeError, match="Command failed.*error message"):
            run_checked_command(["false"])

    def test_command_failure_with_stdout(self, mock_subprocess_run):
        """Test command failure with stdout message (no stderr)."""
        mock_subprocess_run.return_value = Mock(returncode=1, stdout="stdout error", stderr="")

        with pytest.raises(RuntimeError, match="stdout error"):
            run_checked_command(["false"])

    def test_command_not_found(self, mock_subprocess_run):
        """Test a missing executable becomes RuntimeError."""
        mock_subprocess_run.side_effect = FileNotFoundError("mke2fs")

        with pytest.raises(RuntimeError, match="Command not found: mke2fs"):
            run_checked_command(["mke2fs", "/x.img"])

    def test_command_timeout(self, mock_subprocess_run):
        mock_subprocess_run.side_effect = subprocess.TimeoutExpired(["e2fsck"], 3)

        with pytest.raises(RuntimeError, match="timed out"):
            run_checked_command(["e2fsck"], timeout=3)


class TestRunCommandStatus:
    """Tests for run_command_status function."""

    def test_returns_code_and_combined_output(self, mock_subprocess_run):
        mock_subprocess_run.return_value = Mock(
            returncode=1, stdout="Pass 1\n", stderr="fixed inode\n"
        )

        assert run_command_status(["e2fsck", "-f", "-y", "x.img"]) == (
            1,
            "Pass 1\nfixed inode",
        )

    def test_missing_command(self, mock_subprocess_run):
        mock_subprocess_run.side_effect = FileNotFoundError()

        code, output = run_command_status(["e2fsck"])

        assert code == 127
        assert "not found" in output

    def test_timeout(self, mock_subprocess_run):
        mock_subprocess_run.side_effect = subprocess.TimeoutExpired(["e2fsck"], 1)

        code, _ = run_command_status(["e2fsck"], timeout=1)

        assert code == -1
