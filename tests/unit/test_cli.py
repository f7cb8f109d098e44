"""Tests for the command-line entry point."""

import json
from unittest.mock import patch

import pytest

from oplog_sync.cli import build_parser, main


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "oplog-sync.json"
    path.write_text(json.dumps({
        "src": "mongodb://localhost:27017/shop",
        "dist": "sqlite://",
        "collections": {"users": {"_id": "string"}},
        "log_json": False,
    }), encoding="utf-8")
    return str(path)


@pytest.fixture
def cli_env():
    with patch("oplog_sync.cli.SyncOrchestrator") as orchestrator, \
            patch("oplog_sync.cli.configure_logging") as configure_logging, \
            patch("oplog_sync.cli.signal.signal") as set_signal, \
            patch("oplog_sync.cli.start_http_server") as start_http_server:
        yield orchestrator, configure_logging, set_signal, start_http_server


class TestParser:
    """Test argument parsing."""

    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.config == "oplog-sync.json"
        assert args.import_first is False
        assert args.forever is True

    def test_flags(self):
        args = build_parser().parse_args(["--config", "x.json", "--import", "--no-forever"])
        assert args.config == "x.json"
        assert args.import_first is True
        assert args.forever is False


class TestMain:
    """Test main()."""

    def test_start(self, config_path, cli_env):
        orchestrator, configure_logging, set_signal, start_http_server = cli_env
        main(["--config", config_path])
        orchestrator.assert_called_once()
        assert orchestrator.call_args.kwargs["cli_mode"] is True
        orchestrator.return_value.start.assert_called_once_with(forever=True)
        orchestrator.return_value.import_and_start.assert_not_called()
        configure_logging.assert_called_once_with("INFO", False)
        assert set_signal.call_count == 2
        start_http_server.assert_not_called()

    def test_import_once(self, config_path, cli_env):
        orchestrator = cli_env[0]
        main(["--config", config_path, "--import", "--no-forever"])
        orchestrator.return_value.import_and_start.assert_called_once_with(forever=False)

    def test_signal_requests_stop(self, config_path, cli_env):
        orchestrator, _, set_signal, _ = cli_env
        main(["--config", config_path])
        handler = set_signal.call_args_list[0].args[1]
        handler(15, None)
        orchestrator.return_value.request_stop.assert_called_once()

    def test_metrics_port(self, tmp_path, cli_env):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({"metricsPort": 9108, "collections": {"a": {"_id": "string"}}}), encoding="utf-8")
        main(["--config", str(path)])
        cli_env[3].assert_called_once_with(9108)

    def test_missing_config_exits(self, tmp_path, cli_env):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "nope.json")])
        assert exc_info.value.code == 1
        cli_env[0].assert_not_called()

    def test_invalid_definitions_exit(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({"src": "mongodb://localhost:27017/shop", "dist": "sqlite://"}), encoding="utf-8")
        with patch("oplog_sync.cli.configure_logging"):
            with pytest.raises(SystemExit) as exc_info:
                main(["--config", str(path)])
        assert exc_info.value.code == 1

    def test_unparseable_target_url_exits(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text(json.dumps({
            "src": "mongodb://localhost:27017/shop",
            "dist": "not a url",
            "collections": {"users": {"_id": "string"}},
        }), encoding="utf-8")
        with patch("oplog_sync.cli.configure_logging"):
            with pytest.raises(SystemExit) as exc_info:
                main(["--config", str(path)])
        assert exc_info.value.code == 1
