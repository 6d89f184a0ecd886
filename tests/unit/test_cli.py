# Command line entry points
import json
from unittest.mock import AsyncMock

from click.testing import CliRunner

from stocksync.cli.reconcile import reconcile
from stocksync.core.exceptions import ValidationError


def finished_job(status="completed", error=None):
    return {
        "id": "job_1",
        "status": status,
        "progress": {"scanned": 12, "resolved": 10, "skipped": 2, "total_estimate": 12, "percentage": 100},
        "error": error,
    }


def test_reconcile_builds_request_and_prints_summary(mocker):
    run = mocker.patch("stocksync.cli.reconcile.run_reconciliation", new=AsyncMock(return_value=finished_job()))
    mocker.patch("stocksync.cli.reconcile.configure_logging")

    result = CliRunner().invoke(reconcile, ["--batch-size", "25", "--only-missing", "--sku", "A-1", "--sku", "B-2"])

    assert result.exit_code == 0
    assert "Job job_1: completed" in result.output
    assert "resolved: 10" in result.output
    request = run.call_args.args[0]
    assert request["batch_size"] == 25
    assert request["only_missing_identifiers"] is True
    assert request["variant_keys"] == ["A-1", "B-2"]
    assert request["update_out_of_stock"] is True


def test_reconcile_json_output(mocker):
    mocker.patch("stocksync.cli.reconcile.run_reconciliation", new=AsyncMock(return_value=finished_job()))
    mocker.patch("stocksync.cli.reconcile.configure_logging")

    result = CliRunner().invoke(reconcile, ["--json"])

    assert json.loads(result.output)["id"] == "job_1"


def test_reconcile_exits_non_zero_when_job_failed(mocker):
    mocker.patch("stocksync.cli.reconcile.run_reconciliation",
                 new=AsyncMock(return_value=finished_job("failed", error="TransientExternalError: 503")))
    mocker.patch("stocksync.cli.reconcile.configure_logging")

    result = CliRunner().invoke(reconcile, [])

    assert result.exit_code == 1
    assert "error:    TransientExternalError: 503" in result.output


def test_reconcile_reports_rejected_request(mocker):
    mocker.patch("stocksync.cli.reconcile.run_reconciliation",
                 new=AsyncMock(side_effect=ValidationError("Invalid sync job request")))
    mocker.patch("stocksync.cli.reconcile.configure_logging")

    result = CliRunner().invoke(reconcile, ["--priority", "11"])

    assert result.exit_code == 1
    assert "Invalid sync job request" in result.output
