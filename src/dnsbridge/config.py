import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

CONFIG_DIR = Path("/etc/dnsbridge")
CONFIG_FILE = CONFIG_DIR / "config.toml"
DATA_DIR = Path("/var/lib/dnsguard")
DB_FILE = DATA_DIR / "dnsguard.db"
SETTINGS_FILE = DATA_DIR / "settings.json"
UNBOUND_LOG_FILE = Path("/var/log/unbound/unbound.log")
UNBOUND_CONF = Path("/etc/unbound/unbound.conf")
RULES_FILE = Path("/etc/unbound/local.d/dnsguard-blacklist.conf")

DEFAULT_UPSTREAM_SERVERS = [
    "1.1.1.1",
    "1.0.0.1",
    "8.8.8.8",
    "8.8.4.4",
    "9.9.9.9",
    "208.67.222.222",
]


@dataclass
class Config:
    # Control API
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_token: str = ""  # empty = auth disabled (private networks only)

    # Resolver log source
    log_file: str = str(UNBOUND_LOG_FILE)
    use_journald: bool = False
    journald_unit: str = "unbound"
    log_tail_lines: int = 5000
    journald_lines: int = 1000
    summary_journald_lines: int = 10000
    log_read_timeout: float = 5.0

    # Resolver control
    control_command: str = "unbound-control"
    control_timeout: float = 5.0
    sudo_fallback: bool = True
    unbound_binary: str = "unbound"
    unbound_conf: str = str(UNBOUND_CONF)
    rules_file: str = str(RULES_FILE)
    query_server: str = "127.0.0.1"
    query_timeout: float = 5.0

    # Upstream probing
    upstream_servers: list = field(default_factory=lambda: list(DEFAULT_UPSTREAM_SERVERS))
    probe_domain: str = "google.com"
    probe_timeout: float = 3.0
    public_ip_url: str = "https://api.ipify.org"

    # Storage
    db_path: str = str(DB_FILE)
    settings_file: str = str(SETTINGS_FILE)
    remote_connect_timeout: float = 7.0
    retention_days: int = 7

    # Bridge process logging
    bridge_log: str = ""
    log_level: str = "INFO"
    log_max_size_mb: int = 10


def config_path() -> Path:
    """Config file location, honouring DNSBRIDGE_CONFIG."""
    env = os.environ.get("DNSBRIDGE_CONFIG")
    return Path(env) if env else CONFIG_FILE


def _config_to_dict(config: Config) -> dict[str, Any]:
    return {
        "api": {
            "host": config.api_host,
            "port": config.api_port,
            "token": config.api_token,
        },
        "logs": {
            "log_file": config.log_file,
            "use_journald": config.use_journald,
            "journald_unit": config.journald_unit,
            "tail_lines": config.log_tail_lines,
            "journald_lines": config.journald_lines,
            "summary_journald_lines": config.summary_journald_lines,
            "read_timeout": config.log_read_timeout,
        },
        "resolver": {
            "control_command": config.control_command,
            "control_timeout": config.control_timeout,
            "sudo_fallback": config.sudo_fallback,
            "unbound_binary": config.unbound_binary,
            "unbound_conf": config.unbound_conf,
            "rules_file": config.rules_file,
            "query_server": config.query_server,
            "query_timeout": config.query_timeout,
        },
        "probe": {
            "upstream_servers": config.upstream_servers,
            "probe_domain": config.probe_domain,
            "timeout": config.probe_timeout,
            "public_ip_url": config.public_ip_url,
        },
        "storage": {
            "db_path": config.db_path,
            "settings_file": config.settings_file,
            "remote_connect_timeout": config.remote_connect_timeout,
            "retention_days": config.retention_days,
        },
        "logging": {
            "bridge_log": config.bridge_log,
            "level": config.log_level,
            "max_size_mb": config.log_max_size_mb,
        },
    }


def _dict_to_config(data: dict[str, Any]) -> Config:
    config = Config()
    if "api" in data:
        a = data["api"]
        config.api_host = a.get("host", config.api_host)
        config.api_port = a.get("port", config.api_port)
        config.api_token = a.get("token", config.api_token)
    if "logs" in data:
        lg = data["logs"]
        config.log_file = lg.get("log_file", config.log_file)
        config.use_journald = lg.get("use_journald", config.use_journald)
        config.journald_unit = lg.get("journald_unit", config.journald_unit)
        config.log_tail_lines = lg.get("tail_lines", config.log_tail_lines)
        config.journald_lines = lg.get("journald_lines", config.journald_lines)
        config.summary_journald_lines = lg.get(
            "summary_journald_lines", config.summary_journald_lines
        )
        config.log_read_timeout = lg.get("read_timeout", config.log_read_timeout)
    if "resolver" in data:
        r = data["resolver"]
        config.control_command = r.get("control_command", config.control_command)
        config.control_timeout = r.get("control_timeout", config.control_timeout)
        config.sudo_fallback = r.get("sudo_fallback", config.sudo_fallback)
        config.unbound_binary = r.get("unbound_binary", config.unbound_binary)
        config.unbound_conf = r.get("unbound_conf", config.unbound_conf)
        config.rules_file = r.get("rules_file", config.rules_file)
        config.query_server = r.get("query_server", config.query_server)
        config.query_timeout = r.get("query_timeout", config.query_timeout)
    if "probe" in data:
        p = data["probe"]
        config.upstream_servers = p.get("upstream_servers", config.upstream_servers)
        config.probe_domain = p.get("probe_domain", config.probe_domain)
        config.probe_timeout = p.get("timeout", config.probe_timeout)
        config.public_ip_url = p.get("public_ip_url", config.public_ip_url)
    if "storage" in data:
        s = data["storage"]
        config.db_path = s.get("db_path", config.db_path)
        config.settings_file = s.get("settings_file", config.settings_file)
        config.remote_connect_timeout = s.get(
            "remote_connect_timeout", config.remote_connect_timeout
        )
        config.retention_days = s.get("retention_days", config.retention_days)
    if "logging" in data:
        lo = data["logging"]
        config.bridge_log = lo.get("bridge_log", config.bridge_log)
        config.log_level = lo.get("level", config.log_level)
        config.log_max_size_mb = lo.get("max_size_mb", config.log_max_size_mb)
    return config


def _apply_env_overrides(config: Config) -> Config:
    """Environment variables win over the file for secrets and storage paths."""
    token = os.environ.get("BRIDGE_API_KEY")
    if token:
        config.api_token = token
    db_path = os.environ.get("DB_PATH")
    if db_path:
        config.db_path = db_path
    settings_file = os.environ.get("SETTINGS_FILE")
    if settings_file:
        config.settings_file = settings_file
    return config


def load_config(path: Path | None = None) -> Config:
    """Load config from disk. A missing file yields the defaults."""
    path = path or config_path()
    if not path.exists():
        return _apply_env_overrides(Config())
    data = tomllib.loads(path.read_text())
    return _apply_env_overrides(_dict_to_config(data))


def save_config(config: Config, path: Path | None = None) -> None:
    """Save config to disk."""
    path = path or config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(tomli_w.dumps(_config_to_dict(config)).encode())
