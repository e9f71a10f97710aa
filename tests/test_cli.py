import json
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from dnsbridge.cli import main
from dnsbridge.config import Config, load_config, save_config
from dnsbridge.query_db import QueryLogDB
from dnsbridge.resolver import CommandResult, UnboundControl

CONTROL_OUTPUT = """\
total.num.queries=1000
total.num.cachehits=700
total.num.cachemiss=300
total.recursion.time.avg=0.045000
time.elapsed=7200
num.query.type.A=800
num.query.type.AAAA=200
num.answer.rcode.REFUSED=100
"""
EPOCH_LINE = "[1771467389] unbound[58080:2] info: 127.0.0.1 google.com. A IN"
BLOCKED_LINE = (
    "[1771467409] unbound[58080:1] info: ads.example.com. always_refuse "
    "127.0.0.1@59952 ads.example.com. A IN"
)


class FakeExecutor:
    def __init__(self, control=None):
        self.control = control or {}
        self.calls = []

    def run(self, argv, timeout=5.0):
        self.calls.append(list(argv))
        if argv[0] == "sudo":
            argv = argv[2:]
        return self.control.get(argv[1], CommandResult(0, "ok", ""))


class TestCLI:
    @pytest.fixture(autouse=True)
    def _workspace(self, tmp_path):
        self.runner = CliRunner()
        self.tmp_path = tmp_path
        self.config_file = tmp_path / "config.toml"
        save_config(Config(
            log_file=str(tmp_path / "unbound.log"),
            rules_file=str(tmp_path / "local.d" / "dnsguard-blacklist.conf"),
            db_path=str(tmp_path / "dnsguard.db"),
            settings_file=str(tmp_path / "settings.json"),
            upstream_servers=["1.1.1.1"],
        ), self.config_file)
        self.executor = FakeExecutor()
        self._control_patcher = patch(
            "dnsbridge.cli.make_control",
            side_effect=lambda config: UnboundControl(self.executor, sudo_fallback=False),
        )
        self._control_patcher.start()
        yield
        self._control_patcher.stop()

    def invoke(self, *args, json_mode=False):
        argv = ["--config", str(self.config_file)]
        if json_mode:
            argv.append("--json")
        return self.runner.invoke(main, argv + list(args))

    def test_help(self):
        result = self.runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Unbound" in result.output
        assert "apply-rules" in result.output

    def test_status(self):
        result = self.invoke("status")
        assert result.exit_code == 0
        assert "Unbound is running." in result.output

    def test_status_stopped_json(self):
        self.executor.control["status"] = CommandResult(1, "", "unbound is not running")
        result = self.invoke("status", json_mode=True)
        assert json.loads(result.stdout) == {"status": "ok", "resolver": "stopped"}

    def test_stats(self):
        self.executor.control["stats_noreset"] = CommandResult(0, CONTROL_OUTPUT, "")
        result = self.invoke("stats", json_mode=True)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["total_queries"] == 1000
        assert data["blocked_queries"] == 100
        assert data["allowed_queries"] == 900
        assert data["query_types"] == {"A": 800, "AAAA": 200}

    def test_stats_human(self):
        self.executor.control["stats_noreset"] = CommandResult(0, CONTROL_OUTPUT, "")
        result = self.invoke("stats")
        assert "Total queries:   1,000" in result.output
        assert "AAAA" in result.output

    def test_stats_raw(self):
        self.executor.control["stats_noreset"] = CommandResult(0, CONTROL_OUTPUT, "")
        result = self.invoke("stats", "--raw", json_mode=True)
        assert json.loads(result.stdout)["total.num.cachehits"] == "700"

    def test_stats_unavailable(self):
        fail = CommandResult(1, "", "error: connect: Connection refused")
        self.executor.control["stats_noreset"] = fail
        result = self.invoke("stats", json_mode=True)
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["status"] == "error"
        assert "Connection refused" in data["message"]

    def test_logs(self):
        (self.tmp_path / "unbound.log").write_text(f"{EPOCH_LINE}\n{BLOCKED_LINE}\n")
        result = self.invoke("logs", "-n", "1", json_mode=True)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert len(data) == 1
        assert data[0]["domain"] == "ads.example.com"
        assert data[0]["status"] == "blocked"

    def test_logs_empty(self):
        result = self.invoke("logs")
        assert result.exit_code == 0
        assert "No query events found." in result.output

    def test_summary(self):
        result = self.invoke("summary", json_mode=True)
        assert result.exit_code == 0
        assert len(json.loads(result.stdout)["hourly"]) == 24

    def test_debug_logs_missing_file(self):
        result = self.invoke("debug-logs")
        assert result.exit_code == 1
        assert "Log file not found" in result.output

    def test_apply_rules(self):
        bundle = self.tmp_path / "bundle.json"
        bundle.write_text(json.dumps({
            "blacklist": [{"domain": "ads.com"}, {"domain": "*.tracker.net"}],
            "whitelist": [{"domain": "ads.com"}],
        }))
        result = self.invoke("apply-rules", str(bundle))
        assert result.exit_code == 0
        assert "Applied 1 blocked domains" in result.output
        text = (self.tmp_path / "local.d" / "dnsguard-blacklist.conf").read_text()
        assert 'local-zone: "tracker.net" always_refuse' in text
        assert "ads.com" not in text
        assert ["unbound-control", "reload"] in self.executor.calls

    def test_apply_rules_invalid_bundle(self):
        bundle = self.tmp_path / "bundle.json"
        bundle.write_text('{"blacklist": {"domain": "ads.com"}}')
        result = self.invoke("apply-rules", str(bundle))
        assert result.exit_code == 1
        assert "Invalid rule bundle" in result.output

    def test_apply_rules_reload_failure(self):
        self.executor.control["reload"] = CommandResult(1, "", "error: connect")
        bundle = self.tmp_path / "bundle.json"
        bundle.write_text('{"blacklist": [{"domain": "ads.com"}]}')
        result = self.invoke("apply-rules", str(bundle), json_mode=True)
        assert result.exit_code == 1
        assert json.loads(result.stdout)["ok"] is False

    def test_flush_cache(self):
        result = self.invoke("flush-cache")
        assert result.exit_code == 0
        assert "Cache flushed successfully" in result.output

    def test_flush_cache_failure(self):
        self.executor.control["flush_zone"] = CommandResult(1, "", "error: connect")
        result = self.invoke("flush-cache")
        assert result.exit_code == 1

    @patch("dnsbridge.cli.dns_query")
    def test_query(self, mock_query):
        mock_query.return_value = {
            "domain": "example.com", "type": "A", "status": "NOERROR", "responseTime": 4,
            "blocked": False,
            "answers": [{"name": "example.com.", "type": "A", "ttl": 60, "data": "93.184.216.34"}],
        }
        result = self.invoke("query", "example.com", "--server", "9.9.9.9")
        assert result.exit_code == 0
        assert "NOERROR" in result.output
        assert "93.184.216.34" in result.output
        assert mock_query.call_args[1]["server"] == "9.9.9.9"

    def test_query_invalid_domain(self):
        result = self.invoke("query", "not a domain", json_mode=True)
        assert result.exit_code == 1
        assert "Invalid domain" in json.loads(result.stdout)["message"]

    @patch("dnsbridge.cli.ping_upstreams")
    def test_ping(self, mock_ping):
        mock_ping.return_value = [{"server": "1.1.1.1", "latency": None, "status": "timeout"}]
        result = self.invoke("ping")
        assert result.exit_code == 0
        assert "timeout" in result.output
        assert mock_ping.call_args[0][0] == ["1.1.1.1"]

    def test_settings_set_and_get(self):
        assert self.invoke("settings", "set", "theme", "dark").exit_code == 0
        assert self.invoke("settings", "set", "servers", '["1.1.1.1"]').exit_code == 0
        result = self.invoke("settings", "get", json_mode=True)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["backend"] == "sqlite"
        assert data["settings"] == {"theme": "dark", "servers": ["1.1.1.1"]}

    def test_settings_get_one_key(self):
        self.invoke("settings", "set", "n", "5")
        result = self.invoke("settings", "get", "n")
        assert result.exit_code == 0
        assert "n = 5" in result.output

    def test_settings_get_missing_key(self):
        result = self.invoke("settings", "get", "absent")
        assert result.exit_code == 1
        assert "No setting named 'absent'" in result.output

    @patch("dnsbridge.settings_store.asyncpg.connect", new_callable=AsyncMock)
    def test_settings_remote_unreachable(self, mock_connect):
        mock_connect.side_effect = OSError("Connect call failed")
        result = self.invoke("settings", "get", "--db-host", "10.0.0.9", json_mode=True)
        assert result.exit_code == 1
        assert json.loads(result.stdout)["status"] == "error"

    def test_db_ping_local(self):
        result = self.invoke("db-ping", json_mode=True)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["ok"] is True
        assert data["type"] == "local"

    @patch("dnsbridge.cli.setup_logging")
    def test_ingest(self, mock_logging):
        (self.tmp_path / "unbound.log").write_text(f"{EPOCH_LINE}\n{BLOCKED_LINE}\n")
        result = self.invoke("ingest", json_mode=True)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["status"] == "ok"
        assert data["parsed"] == 2
        assert data["inserted"] == 2
        # fixture lines are from February, outside the retention window
        assert data["pruned"] == 2
        assert QueryLogDB(self.tmp_path / "dnsguard.db").count() == 0

    def test_init_config(self):
        target = self.tmp_path / "new" / "config.toml"
        result = self.runner.invoke(main, ["--config", str(target), "init-config"])
        assert result.exit_code == 0
        assert load_config(target).api_port == 8080

    def test_init_config_refuses_overwrite(self):
        result = self.invoke("init-config")
        assert result.exit_code == 1
        assert "already exists" in result.output
        result = self.invoke("init-config", "--force")
        assert result.exit_code == 0
