"""Tests for azure_cli_executor module.

Tests the run_az_command helper that wraps subprocess.run with retry logic
for Azure CLI calls, and run_streaming used for azcopy.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from vmdeploy.azure_cli_executor import is_transient_failure, run_az_command, run_streaming


class TestRunAzCommand:
    """Test run_az_command helper function."""

    @patch("vmdeploy.azure_cli_executor.subprocess.run")
    def test_success_returns_completed_process(self, mock_run: MagicMock) -> None:
        mock_run.return_value = subprocess.CompletedProcess(
            args=["az", "group", "list"], returncode=0, stdout="[]", stderr=""
        )

        result = run_az_command(["az", "group", "list"])

        assert result.stdout == "[]"
        mock_run.assert_called_once()

    @patch("vmdeploy.azure_cli_executor.subprocess.run")
    def test_passes_kwargs(self, mock_run: MagicMock) -> None:
        """capture_output, text, check, timeout and stdin are forwarded."""
        mock_run.return_value = subprocess.CompletedProcess(
            args=["az"], returncode=0, stdout="", stderr=""
        )

        run_az_command(
            ["az", "role", "definition", "create"], timeout=300, check=False, input_text="{}"
        )

        _, kwargs = mock_run.call_args
        assert kwargs["capture_output"] is True
        assert kwargs["text"] is True
        assert kwargs["check"] is False
        assert kwargs["timeout"] == 300
        assert kwargs["input"] == "{}"

    @patch("vmdeploy.retry_handler.time.sleep")
    @patch("vmdeploy.azure_cli_executor.subprocess.run")
    def test_retries_on_called_process_error(self, mock_run: MagicMock, _sleep) -> None:
        mock_run.side_effect = [
            subprocess.CalledProcessError(1, "az", stderr="ServiceUnavailable"),
            subprocess.CompletedProcess(args=["az"], returncode=0, stdout="{}", stderr=""),
        ]

        result = run_az_command(["az", "group", "show", "-n", "rg"], max_attempts=3)

        assert result.returncode == 0
        assert mock_run.call_count == 2

    @patch("vmdeploy.retry_handler.time.sleep")
    @patch("vmdeploy.azure_cli_executor.subprocess.run")
    def test_single_attempt_for_mutations(self, mock_run: MagicMock, mock_sleep) -> None:
        mock_run.side_effect = subprocess.TimeoutExpired("az", 60)

        with pytest.raises(subprocess.TimeoutExpired):
            run_az_command(["az", "group", "create"], max_attempts=1)

        assert mock_run.call_count == 1
        mock_sleep.assert_not_called()

    @patch("vmdeploy.retry_handler.time.sleep")
    @patch("vmdeploy.azure_cli_executor.subprocess.run")
    def test_unchecked_throttling_is_retried(self, mock_run: MagicMock, _sleep) -> None:
        mock_run.side_effect = [
            subprocess.CompletedProcess(
                args=["az"], returncode=1, stdout="", stderr="ERROR: (TooManyRequests) slow down"
            ),
            subprocess.CompletedProcess(args=["az"], returncode=0, stdout="{}", stderr=""),
        ]

        result = run_az_command(["az", "vm", "show"], max_attempts=3, check=False)

        assert result.returncode == 0
        assert mock_run.call_count == 2

    @patch("vmdeploy.retry_handler.time.sleep")
    @patch("vmdeploy.azure_cli_executor.subprocess.run")
    def test_unchecked_not_found_returned_once(self, mock_run: MagicMock, mock_sleep) -> None:
        mock_run.return_value = subprocess.CompletedProcess(
            args=["az"], returncode=3, stdout="", stderr="ERROR: (ResourceGroupNotFound) gone"
        )

        result = run_az_command(["az", "group", "show"], max_attempts=3, check=False)

        assert result.returncode == 3
        assert mock_run.call_count == 1
        mock_sleep.assert_not_called()

    @patch("vmdeploy.retry_handler.time.sleep")
    @patch("vmdeploy.azure_cli_executor.subprocess.run")
    def test_unchecked_transient_exhausted_returns_last_result(
        self, mock_run: MagicMock, _sleep
    ) -> None:
        mock_run.return_value = subprocess.CompletedProcess(
            args=["az"], returncode=1, stdout="", stderr="ERROR: (ServiceUnavailable) busy"
        )

        result = run_az_command(["az", "vm", "show"], max_attempts=2, check=False)

        assert result.returncode == 1
        assert "ServiceUnavailable" in result.stderr
        assert mock_run.call_count == 2

    @patch("vmdeploy.retry_handler.time.sleep")
    @patch("vmdeploy.azure_cli_executor.subprocess.run")
    def test_unchecked_mutation_not_retried(self, mock_run: MagicMock, mock_sleep) -> None:
        mock_run.return_value = subprocess.CompletedProcess(
            args=["az"], returncode=1, stdout="", stderr="ERROR: (InternalServerError) oops"
        )

        result = run_az_command(["az", "group", "create"], max_attempts=1, check=False)

        assert result.returncode == 1
        assert mock_run.call_count == 1
        mock_sleep.assert_not_called()

    @patch("vmdeploy.azure_cli_executor.subprocess.run")
    def test_file_not_found_not_retried(self, mock_run: MagicMock) -> None:
        mock_run.side_effect = FileNotFoundError("az")

        with pytest.raises(FileNotFoundError):
            run_az_command(["az", "version"], max_attempts=3)
        assert mock_run.call_count == 1


class TestRunStreaming:
    @patch("vmdeploy.azure_cli_executor.subprocess.run")
    def test_returns_exit_code(self, mock_run: MagicMock) -> None:
        mock_run.return_value = subprocess.CompletedProcess(args=["azcopy"], returncode=1)

        assert run_streaming(["azcopy", "copy", "a", "b"], env={"COLUMNS": "120"}) == 1
        _, kwargs = mock_run.call_args
        assert kwargs["check"] is False
        assert kwargs["env"] == {"COLUMNS": "120"}


class TestIsTransientFailure:
    @pytest.mark.parametrize(
        "stderr",
        [
            "ERROR: (TooManyRequests) Too many requests",
            "ERROR: Operation returned an invalid status (ServiceUnavailable)",
            "ERROR: ('Connection aborted.', RemoteDisconnected())",
            "Subscription was throttled",
        ],
    )
    def test_transient(self, stderr):
        assert is_transient_failure(stderr)

    @pytest.mark.parametrize(
        "stderr", ["", None, "ERROR: (ResourceNotFound) vm1 not found", "AADSTS70043 expired"]
    )
    def test_not_transient(self, stderr):
        assert not is_transient_failure(stderr)
