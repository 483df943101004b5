import pytest
from click.testing import CliRunner

from rollouts.cli import (
    EXIT_COMPLETE,
    EXIT_CONFLICT,
    EXIT_HALTED,
    EXIT_PROVISION_FAILED,
    EXIT_ROLLED_BACK,
    cli,
    exit_code_for,
)
from rollouts.ledger import DeploymentLedger
from rollouts.models import LedgerEntry, RolloutState
from rollouts.settings import get_settings


@pytest.fixture
def ledger_path(tmp_path, monkeypatch):
    path = str(tmp_path / "cli.db")
    monkeypatch.setenv("DEPLOYMENT_MODE", "local-dev")
    monkeypatch.setenv("LEDGER_DB_PATH", path)
    monkeypatch.setenv("PROBE_INTERVAL_SECONDS", "0.01")
    monkeypatch.setenv("CONTROL_POLL_INTERVAL_SECONDS", "0.01")
    monkeypatch.setenv("SPLIT_POLL_INTERVAL_SECONDS", "0.01")
    monkeypatch.setenv("STEP_BAKE_SECONDS", "0")
    get_settings.cache_clear()
    yield path
    get_settings.cache_clear()


@pytest.fixture
def runner():
    return CliRunner()


def start_rollout(runner, unit_id="svc-a", artifact_ref="v1"):
    return runner.invoke(cli, ["start", "--unit", unit_id, "--artifact", artifact_ref])


def rollout_id_from(result):
    return next(line for line in result.output.splitlines() if line.startswith("ro-"))


def test_start_drives_rollout_to_completion(runner, ledger_path):
    result = start_rollout(runner)

    assert result.exit_code == EXIT_COMPLETE, result.output
    assert rollout_id_from(result)
    assert "COMPLETE" in result.output.splitlines()


def test_second_start_for_a_unit_replaces_its_active_group(runner, ledger_path):
    first = start_rollout(runner, artifact_ref="v1")
    second = start_rollout(runner, artifact_ref="v2")

    assert first.exit_code == EXIT_COMPLETE, first.output
    assert second.exit_code == EXIT_COMPLETE, second.output

    ledger = DeploymentLedger(ledger_path)
    completed = ledger.last_completed("svc-a")
    assert completed.rollout_id == rollout_id_from(second)
    assert completed.detail["new_active_group"]["artifact_ref"] == "v2"
    assert completed.detail["destroyed_group_id"] is not None
    assert ledger.unfinished() == []


def test_start_conflict_exits_with_conflict_code(runner, ledger_path):
    DeploymentLedger(ledger_path).append(
        LedgerEntry("ro-elsewhere", "svc-a", None, RolloutState.REQUESTED, detail={"artifact_ref": "v0"})
    )

    result = start_rollout(runner)

    assert result.exit_code == EXIT_CONFLICT


def test_start_with_bad_size_is_a_usage_error(runner, ledger_path):
    result = runner.invoke(cli, ["start", "--unit", "svc-a", "--artifact", "v1", "--size", "0"])

    assert result.exit_code == 2
    assert "Invalid value" in result.output


def test_status_and_history_read_the_ledger(runner, ledger_path):
    rollout_id = rollout_id_from(start_rollout(runner))

    status = runner.invoke(cli, ["status", "--id", rollout_id])
    history = runner.invoke(cli, ["history", "--id", rollout_id])

    assert status.exit_code == 0
    assert "COMPLETE" in status.output
    assert "100%" in status.output
    assert history.exit_code == 0
    assert "- -> REQUESTED" in history.output
    assert "DRAINING -> COMPLETE" in history.output


def test_status_of_unknown_rollout_fails(runner, ledger_path):
    result = runner.invoke(cli, ["status", "--id", "ro-missing"])

    assert result.exit_code == 1


def test_cancel_of_finished_rollout_is_refused(runner, ledger_path):
    rollout_id = rollout_id_from(start_rollout(runner))

    result = runner.invoke(cli, ["cancel", "--id", rollout_id])

    assert result.exit_code == 1
    assert "can no longer be cancelled" in result.output


def test_cancel_persists_request_for_in_flight_rollout(runner, ledger_path):
    DeploymentLedger(ledger_path).append(
        LedgerEntry("ro-elsewhere", "svc-a", None, RolloutState.REQUESTED, detail={"artifact_ref": "v0"})
    )

    result = runner.invoke(cli, ["cancel", "--id", "ro-elsewhere"])

    assert result.exit_code == 0
    assert DeploymentLedger(ledger_path).cancel_requested("ro-elsewhere")


def test_resume_finishes_unfinished_rollouts(runner, ledger_path):
    DeploymentLedger(ledger_path).append(LedgerEntry(
        "ro-elsewhere", "svc-a", None, RolloutState.REQUESTED,
        detail={"artifact_ref": "v0", "target_count": 1},
    ))

    result = runner.invoke(cli, ["resume"])

    assert result.exit_code == EXIT_COMPLETE, result.output
    assert "ro-elsewhere svc-a COMPLETE" in result.output


def test_exit_codes_follow_terminal_state():
    assert exit_code_for(RolloutState.COMPLETE) == EXIT_COMPLETE
    assert exit_code_for(RolloutState.PROVISION_FAILED) == EXIT_PROVISION_FAILED
    assert exit_code_for(RolloutState.ROLLED_BACK) == EXIT_ROLLED_BACK
    assert exit_code_for(RolloutState.SHIFTING) == EXIT_HALTED


def test_show_config(runner, ledger_path):
    result = runner.invoke(cli, ["show-config"])

    assert result.exit_code == 0
    assert "Deployment Mode: local-dev" in result.output
    assert ledger_path in result.output
