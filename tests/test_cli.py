import json
import os
import tempfile
import pytest
from rollout_control.cli import build_parser, load_state, main, pipeline_options, save_state
from rollout_control.inmemory import InMemoryClusterGateway

FAST_OPTIONS = {
    "blue_green": {"settle_delay_s": 0, "observation_window_s": 0, "poll_interval_s": 0.01, "ready_timeout_s": 1.0},
}


@pytest.fixture
def workspace():
    """Cluster snapshot, options file and history path in a temporary directory"""
    with tempfile.TemporaryDirectory() as tmp:
        gateway = InMemoryClusterGateway()
        gateway.seed_blue_green("checkout", "staging", image="registry.local/checkout:1.4.0")
        state = os.path.join(tmp, "cluster.json")
        save_state(state, gateway)
        options = os.path.join(tmp, "options.json")
        with open(options, "w") as f:
            json.dump(FAST_OPTIONS, f)
        yield {"dir": tmp, "state": state, "options": options, "history": os.path.join(tmp, "history.json")}


def run_cli(workspace, *argv):
    return main(["--backend", "memory", "--state", workspace["state"], "--history", workspace["history"],
                 *argv])


def deploy_args(workspace, *extra):
    return ("deploy", "--service", "checkout", "--namespace", "staging", "--image",
            "registry.local/checkout:1.5.0", "--options", workspace["options"], "--no-rollback-automation", *extra)


class TestStateFiles:
    """Cluster snapshot files."""

    def test_save_and_load_state(self):
        gateway = InMemoryClusterGateway()
        gateway.seed_blue_green("checkout")
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            path = f.name
        try:
            save_state(path, gateway)
            loaded = load_state(path)
        finally:
            os.unlink(path)

        assert loaded.selector_of("checkout-service") == "blue"
        assert loaded.replicas_of("checkout-blue") == 3

    def test_load_state_invalid_json(self):
        with tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
            f.write("{ invalid json }")
            path = f.name
        try:
            with pytest.raises(json.JSONDecodeError):
                load_state(path)
        finally:
            os.unlink(path)


class TestArguments:
    """Parsing and option merging."""

    def test_flags_merge_into_options(self, workspace):
        args = build_parser().parse_args(list(deploy_args(workspace, "--keep-blue", "--skip-tests",
                                                          "--version", "1.5.0")))

        options = pipeline_options(args)

        assert options["blue_green"]["keep_blue"] is True
        assert options["blue_green"]["skip_tests"] is True
        assert options["blue_green"]["settle_delay_s"] == 0
        assert options["version"] == "1.5.0"
        assert options["enable_rollback_automation"] is False

    def test_unknown_strategy_is_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["deploy", "--service", "checkout", "--strategy", "shadow"])


class TestCommands:
    """End-to-end commands against the memory backend."""

    def test_deploy_switches_traffic_and_saves_state(self, workspace, capsys):
        run_cli(workspace, *deploy_args(workspace))

        output = json.loads(capsys.readouterr().out)
        assert output["success"] is True
        assert output["run"]["status"] == "succeeded"
        gateway = load_state(workspace["state"])
        assert gateway.selector_of("checkout-service", "staging") == "green"
        assert gateway.image_of("checkout-green", "staging") == "registry.local/checkout:1.5.0"

    def test_deploy_writes_report(self, workspace, capsys):
        report = os.path.join(workspace["dir"], "report.json")

        run_cli(workspace, *deploy_args(workspace, "--report", report))

        with open(report) as f:
            data = json.load(f)
        assert data["status"] == "succeeded"
        assert data["summary"]["deployment_strategy"] == "blue-green"

    def test_failed_deploy_exits_non_zero(self, workspace, capsys):
        with pytest.raises(SystemExit) as excinfo:
            run_cli(workspace, "deploy", "--service", "ghost", "--namespace", "staging", "--image", "app:v2",
                    "--options", workspace["options"], "--no-rollback-automation")

        assert excinfo.value.code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["success"] is False
        assert output["error_kind"] == "NotFound"

    def test_rollback_after_deploy(self, workspace, capsys):
        run_cli(workspace, *deploy_args(workspace))
        capsys.readouterr()

        run_cli(workspace, "rollback", "--service", "checkout", "--namespace", "staging")

        output = json.loads(capsys.readouterr().out)
        assert output["success"] is True
        assert output["strategy"] == "blue-green"
        assert load_state(workspace["state"]).selector_of("checkout-service", "staging") == "blue"

    def test_status_reads_persisted_history(self, workspace, capsys):
        run_cli(workspace, *deploy_args(workspace))
        capsys.readouterr()

        run_cli(workspace, "status", "--service", "checkout")

        output = json.loads(capsys.readouterr().out)
        assert output["statistics"]["total_pipelines"] == 1
        assert len(output["recent_runs"]) == 1
        assert output["recent_runs"][0]["target"] == {"service_name": "checkout", "namespace": "staging"}

    def test_monitor_enables_and_disables(self, workspace, capsys):
        run_cli(workspace, "monitor", "--service", "checkout", "--namespace", "staging", "--duration", "0")

        output = json.loads(capsys.readouterr().out)
        assert output["success"] is True
        assert output["detail"]["strategy"] == "blue-green"
        assert output["detail"]["rollbacks"] == []

    def test_invalid_settings_file_exits(self, workspace, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["--settings", os.path.join(workspace["dir"], "missing.json"), "status"])

        assert excinfo.value.code == 1
        assert "Error:" in capsys.readouterr().out
