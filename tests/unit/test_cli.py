"""
Unit tests for the command line interface
"""
import json
import logging

import pytest

from distrisim import __version__
from distrisim.cli import build_parser, main


@pytest.fixture(autouse=True)
def restore_root_logger():
    """``main`` reconfigures the root logger"""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def fast_delivery(monkeypatch):
    monkeypatch.setenv("DISTRISIM_DELIVERY_DELAY_TICKS", "0")
    monkeypatch.setenv("DISTRISIM_BASE_INTERVAL_MS", "1")
    monkeypatch.delenv("DISTRISIM_SCENARIO_DIR", raising=False)


@pytest.mark.unit
class TestParser:

    def test_run_arguments(self):
        args = build_parser().parse_args(["run", "basic-election", "-c", "raft", "--speed", "2", "--json"])
        assert args.scenario == "basic-election"
        assert args.concept == "raft"
        assert args.speed == 2.0
        assert args.json
        assert not args.realtime

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_version(self, capsys):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--version"])
        assert __version__ in capsys.readouterr().out


@pytest.mark.unit
class TestCommands:

    def test_list(self, capsys):
        assert main(["list", "--concept", "raft"]) == 0
        out = capsys.readouterr().out
        assert "basic-election" in out
        assert "leader-failure" in out
        assert "quorum" not in out

    def test_list_empty_directory(self, tmp_path, capsys):
        assert main(["--scenario-dir", str(tmp_path), "list"]) == 0
        assert "No scenarios found" in capsys.readouterr().out

    def test_run_json(self, capsys):
        assert main(["run", "basic-election", "--concept", "raft", "--json"]) == 0

        result = json.loads(capsys.readouterr().out)
        assert result["scenario"] == "basic-election"
        assert result["concept"] == "raft"
        assert result["stats"]["leader_id"] == "node-0"
        assert result["stats"]["messages"]["in_flight"] == 0

    def test_run_prints_steps_and_outcome(self, capsys):
        assert main(["--log-level", "WARNING", "run", "basic-election", "-c", "raft"]) == 0

        out = capsys.readouterr().out
        assert "#0 start_election" in out
        assert "Basic Leader Election:" in out
        assert "leader_id: node-0" in out

    def test_run_realtime_with_metrics(self, capsys):
        argv = ["--log-level", "WARNING", "run", "basic-election", "-c", "raft", "--realtime", "--speed", "10", "--metrics"]
        assert main(argv) == 0

        out = capsys.readouterr().out
        assert 'distrisim_events_applied_total{concept="raft"} 2.0' in out

    def test_unknown_scenario(self, capsys):
        assert main(["run", "no-such-scenario"]) == 1
        assert "Error: Scenario not found: no-such-scenario" in capsys.readouterr().err
