from unittest.mock import AsyncMock, MagicMock, patch

from miniternet.cli.main import build_parser, main


def test_no_command_prints_help(capsys):
    assert main([]) == 2
    assert "usage" in capsys.readouterr().out


def test_parser_overrides():
    args = build_parser().parse_args(["run", "--selector", "tag:dnssec", "--max-fail", "3", "--launcher", "docker"])
    assert args.selector == "tag:dnssec"
    assert args.max_fail == 3
    assert args.launcher == "docker"


def test_plan_prints_services_and_addresses(capsys, monkeypatch, tmp_path):
    monkeypatch.setenv("NUM_BROWSER_NODES", "1")
    assert main(["plan", "--report-dir", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "submaster" in out
    assert "selenium-firefox-1" in out
    assert "ROOT_IP=172.16.238." in out
    assert "TARGETTLS13ONLYIPV4ONLY_IPV6" not in out


def test_invalid_configuration_exits_with_config_code(monkeypatch, capsys):
    monkeypatch.setenv("SUBNETV4", "10.0.0.0/30")
    assert main(["plan"]) == 2
    assert "CONFIG_001" in capsys.readouterr().err


def test_run_returns_report_exit_code(tmp_path):
    report = MagicMock(status="tests_failed", counts={"failed": 1}, exit_code=1)
    with patch("miniternet.cli.main.TestbedOrchestrator") as orchestrator, \
            patch("miniternet.cli.main.setup_logging") as setup_logging:
        orchestrator.return_value.run = AsyncMock(return_value=report)
        code = main(["run", "--report-dir", str(tmp_path), "--selector", "home", "--launcher", "inprocess"])
    assert code == 1
    config = orchestrator.call_args.args[0]
    assert config.runner.selector == "home"
    assert config.network.launcher == "inprocess"
    assert config.storage.report_dir == tmp_path
    setup_logging.assert_called_once()
