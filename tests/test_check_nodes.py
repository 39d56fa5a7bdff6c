"""Tests for the command line entry point."""

import json
import signal
import threading

import pytest
import yaml

import check_nodes
from node_checker import CheckReport, ChainOutcome, FailureRecord, NodeOutcome


def passing_report():
    node = NodeOutcome(id="a", chain="eth", address="http://a", network_id=1, height=10, trace_capable=True)
    chain = ChainOutcome(chain="eth", nodes=[node], expected_network_id=1, max_height=10,
                         failed_nodes=[], passed=True)
    return CheckReport(chains=[chain], all_failures=[], passed=True)


def failing_report():
    record = FailureRecord("a", "eth", "http://a", "diagnostic trace capability unavailable")
    node = NodeOutcome(id="a", chain="eth", address="http://a", network_id=1, height=10)
    chain = ChainOutcome(chain="eth", nodes=[node], expected_network_id=1, max_height=10,
                         failed_nodes=[record], passed=False)
    return CheckReport(chains=[chain], all_failures=[record], passed=False)


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "nodes.yaml"
    path.write_text(yaml.safe_dump({"upstream-config": {"upstreams": [
        {"id": "a", "chain": "eth", "connectors": [{"type": "json-rpc", "url": "http://a"}]},
    ]}}))
    return str(path)


@pytest.fixture
def captured_run(monkeypatch):
    calls = {}

    def install(report):
        def fake_run_check(nodes_by_chain, options, logger, cancel):
            calls.update(nodes_by_chain=nodes_by_chain, options=options, cancel=cancel)
            return report

        monkeypatch.setattr(check_nodes, "run_check", fake_run_check)
        return calls

    return install


class TestMain:
    def test_passing_run_exits_zero(self, config_path, captured_run) -> None:
        calls = captured_run(passing_report())

        assert check_nodes.main(["-c", config_path, "-g", "3", "-b", "2", "-s", "--rpc-timeout", "7"]) == 0

        options = calls["options"]
        assert (options.max_block_gap, options.block_hash_count, options.check_trace, options.rpc_timeout) == (3, 2, False, 7.0)
        assert [node.id for node in calls["nodes_by_chain"]["eth"]] == ["a"]
        assert not calls["cancel"].is_set()

    def test_defaults(self, config_path, captured_run) -> None:
        calls = captured_run(passing_report())

        check_nodes.main(["--config", config_path])

        options = calls["options"]
        assert (options.max_block_gap, options.block_hash_count, options.check_trace) == (10, 5, True)
        assert options.rpc_timeout == check_nodes.DEFAULT_RPC_TIMEOUT

    def test_failing_run_exits_one(self, config_path, captured_run, capsys) -> None:
        captured_run(failing_report())

        assert check_nodes.main(["-c", config_path]) == 1
        assert "some nodes failed checks" in capsys.readouterr().err

    def test_config_error_exits_one(self, tmp_path, capsys) -> None:
        assert check_nodes.main(["-c", str(tmp_path / "missing.yaml")]) == 1
        assert capsys.readouterr().err.startswith("Error: failed to read config file")

    def test_writes_json_report(self, config_path, captured_run, tmp_path) -> None:
        captured_run(failing_report())
        output = tmp_path / "report.json"

        check_nodes.main(["-c", config_path, "--output-json", str(output)])

        saved = json.loads(output.read_text())
        assert saved["passed"] is False
        assert saved["failed_nodes"][0]["reason"] == "diagnostic trace capability unavailable"


class TestPrintResults:
    def test_logs_ok_and_failed_nodes(self, caplog) -> None:
        with caplog.at_level("INFO", logger="check_nodes"):
            check_nodes.print_results(passing_report())
            check_nodes.print_results(failing_report())

        assert "node OK id=a chain=eth block_number=10 debug_ok=True" in caplog.text
        assert "node FAILED id=a chain=eth address=http://a reason=diagnostic trace capability unavailable" in caplog.text


class TestInterruptHandler:
    @pytest.fixture
    def handler(self):
        cancel = threading.Event()
        previous = check_nodes.install_interrupt_handler(cancel)
        try:
            yield cancel, signal.getsignal(signal.SIGINT)
        finally:
            signal.signal(signal.SIGINT, previous)

    def test_first_interrupt_cancels(self, handler, monkeypatch) -> None:
        cancel, on_sigint = handler
        exits = []
        monkeypatch.setattr(check_nodes.os, "_exit", exits.append)

        on_sigint(signal.SIGINT, None)

        assert cancel.is_set()
        assert exits == []

    def test_second_interrupt_exits_without_joining_workers(self, handler, monkeypatch) -> None:
        cancel, on_sigint = handler
        exits = []
        monkeypatch.setattr(check_nodes.os, "_exit", exits.append)

        on_sigint(signal.SIGINT, None)
        on_sigint(signal.SIGINT, None)

        assert exits == [1]


class TestReportOutput:
    def test_unwritable_json_path_exits_one(self, config_path, captured_run, tmp_path, capsys) -> None:
        captured_run(passing_report())
        output = tmp_path / "missing-dir" / "report.json"

        assert check_nodes.main(["-c", config_path, "--output-json", str(output)]) == 1
        assert "Error: failed to write report" in capsys.readouterr().err
