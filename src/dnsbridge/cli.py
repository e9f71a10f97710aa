import json
import signal
import sys
from pathlib import Path

import click

from dnsbridge.api import create_server, make_control, make_log_reader, make_store
from dnsbridge.config import Config, config_path, load_config, save_config
from dnsbridge.logging_config import setup_logging
from dnsbridge.probe import dns_query, ping_upstreams
from dnsbridge.query_db import QueryLogDB
from dnsbridge.rules import RuleBundle, RuleCompiler
from dnsbridge.settings_store import (
    BackendSpec,
    SettingsBackendError,
    backend_from_descriptor,
)
from dnsbridge.stats import CONTROL_ERROR_KEY, derive_live_stats, get_point_stats, summarize


@click.group()
@click.version_option(package_name="dnsbridge")
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option(
    "--config", "config_file", type=click.Path(dir_okay=False, path_type=Path),
    default=None, help="Config file (default: $DNSBRIDGE_CONFIG or /etc/dnsbridge/config.toml)",
)
@click.pass_context
def main(ctx, json_mode, config_file):
    """dnsbridge - HTTP control bridge for the Unbound DNS resolver."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_mode
    ctx.obj["config_path"] = config_file


def _config(ctx) -> Config:
    return load_config(ctx.obj.get("config_path"))


def _emit(ctx, data, human_lines):
    """Output JSON or human-readable text based on mode."""
    if ctx.obj.get("json"):
        click.echo(json.dumps(data))
    else:
        for line in human_lines:
            click.echo(line)


def _fail(ctx, message):
    _emit(ctx, {"status": "error", "message": message}, [f"Error: {message}"])
    ctx.exit(1)


def _db_options(fn):
    """Shared options selecting the settings backend for one command."""
    options = [
        click.option("--db-host", default=None, help="PostgreSQL host (omit for the local database)"),
        click.option("--db-port", default=5432, show_default=True, help="PostgreSQL port"),
        click.option("--db-name", default="dnsguard", show_default=True, help="PostgreSQL database"),
        click.option("--db-user", default=None, help="PostgreSQL user"),
        click.option("--db-password", default=None, envvar="DNSBRIDGE_DB_PASSWORD", help="PostgreSQL password"),
        click.option("--db-sslmode", default=None, help="disable, require or verify-full"),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _backend(db_host, db_port, db_name, db_user, db_password, db_sslmode) -> BackendSpec:
    return backend_from_descriptor({
        "type": "remote" if db_host else "local",
        "host": db_host,
        "port": db_port,
        "database": db_name,
        "user": db_user,
        "password": db_password,
        "sslmode": db_sslmode,
    })


@main.command()
@click.option("--host", default=None, help="Bind address (overrides config)")
@click.option("--port", type=int, default=None, help="Listen port (overrides config)")
@click.pass_context
def serve(ctx, host, port):
    """Run the control API in the foreground."""
    config = _config(ctx)
    if host:
        config.api_host = host
    if port is not None:
        config.api_port = port

    setup_logging(
        Path(config.bridge_log) if config.bridge_log else None,
        foreground=True,
        level=config.log_level,
        max_bytes=config.log_max_size_mb * 1024 * 1024,
    )

    try:
        server = create_server(config)
    except OSError as e:
        _fail(ctx, f"Could not bind {config.api_host}:{config.api_port}: {e}")

    def _handle_sigterm(signum, frame):
        sys.exit(0)

    signal.signal(signal.SIGTERM, _handle_sigterm)

    log_source = "journald" if config.use_journald else config.log_file
    auth = "enabled" if config.api_token else "DISABLED (set BRIDGE_API_KEY to secure)"
    _emit(ctx,
        {"status": "ok", "host": config.api_host, "port": server.server_address[1],
         "log_source": log_source, "auth": bool(config.api_token)},
        [f"dnsbridge listening on http://{config.api_host}:{server.server_address[1]}",
         f"Log source: {log_source}",
         f"Auth: {auth}"])
    try:
        server.serve_forever()
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        server.server_close()


@main.command()
@click.pass_context
def status(ctx):
    """Show whether the resolver is running."""
    config = _config(ctx)
    state = make_control(config).status()
    _emit(ctx,
        {"status": "ok", "resolver": state.value},
        [f"Unbound is {state.value}."])


@main.command()
@click.option("--raw", is_flag=True, help="Print every raw counter")
@click.pass_context
def stats(ctx, raw):
    """Show resolver counters."""
    config = _config(ctx)
    counters = get_point_stats(make_control(config))
    if CONTROL_ERROR_KEY in counters:
        _fail(ctx, f"unbound-control unavailable: {counters[CONTROL_ERROR_KEY]}")

    if raw:
        _emit(ctx, counters, [f"{k}={v}" for k, v in sorted(counters.items())])
        return

    live = derive_live_stats(counters)
    lines = [
        f"  Total queries:   {live['total_queries']:,}",
        f"  Allowed:         {live['allowed_queries']:,}",
        f"  Blocked:         {live['blocked_queries']:,}",
        f"  Cache hits:      {live['cache_hits']:,}",
        f"  Cache misses:    {live['cache_misses']:,}",
        f"  Avg recursion:   {live['avg_response_ms']} ms",
        f"  Uptime:          {live['uptime_hours']} h",
    ]
    if live["query_types"]:
        lines.append("")
        lines.append("  Query types:")
        for qtype, count in sorted(live["query_types"].items(), key=lambda kv: -kv[1]):
            lines.append(f"    {count:>8,}  {qtype}")
    _emit(ctx, live, lines)


@main.command()
@click.option("--lines", "-n", default=20, help="Number of events to show")
@click.pass_context
def logs(ctx, lines):
    """Show the most recent resolver queries, newest first."""
    config = _config(ctx)
    events = make_log_reader(config).recent(lines)
    data = [e.to_dict() for e in events]
    human = [
        f"{d['timestamp']}  {d['status'].upper():<7}  {d['type']:<6}  {d['domain']}  {d['clientIp']}"
        for d in data
    ] or ["No query events found."]
    _emit(ctx, data, human)


@main.command()
@click.pass_context
def summary(ctx):
    """Show the 24-hour rollup and the top blocked domains."""
    config = _config(ctx)
    rollup = summarize(make_log_reader(config).history())
    lines = [
        f"Allowed: {rollup['totalAllowed']:,}  Blocked: {rollup['totalBlocked']:,}",
        "",
    ]
    for bucket in rollup["hourly"]:
        lines.append(f"  {bucket['hour']}  allowed {bucket['allowed']:>6,}  blocked {bucket['blocked']:>6,}")
    if rollup["topBlocked"]:
        lines.append("")
        lines.append("Top blocked domains:")
        for entry in rollup["topBlocked"]:
            lines.append(f"  {entry['count']:>6,}  {entry['domain']}")
    _emit(ctx, rollup, lines)


@main.command("debug-logs")
@click.pass_context
def debug_logs(ctx):
    """Show the last log lines and whether each one parses."""
    config = _config(ctx)
    report = make_log_reader(config).debug()
    if "error" in report:
        _emit(ctx, report, [f"Error: {report['error']}"])
        ctx.exit(1)
    lines = [f"Parsed {report['parsedInLast200']} of the last lines (ratio {report['parseRatio']})", ""]
    for entry in report["last20Lines"]:
        marker = click.style("ok ", fg="green") if entry["parsed"] else click.style("-- ", fg="red")
        lines.append(f"{marker} {entry['line']}")
    _emit(ctx, report, lines)


@main.command("apply-rules")
@click.argument("bundle_file", type=click.File("r"))
@click.pass_context
def apply_rules(ctx, bundle_file):
    """Compile a JSON rule bundle into the resolver and reload it."""
    config = _config(ctx)
    try:
        bundle = RuleBundle.from_dict(json.load(bundle_file))
    except ValueError as e:
        _fail(ctx, f"Invalid rule bundle: {e}")
    compiler = RuleCompiler(Path(config.rules_file), make_control(config))
    result = compiler.apply(bundle)
    _emit(ctx, result, [result["message"]])
    if not result["ok"]:
        ctx.exit(1)


@main.command("flush-cache")
@click.pass_context
def flush_cache(ctx):
    """Flush the resolver cache."""
    config = _config(ctx)
    result = make_control(config).flush_cache()
    _emit(ctx, result, [result["message"]])
    if not result["ok"]:
        ctx.exit(1)


@main.command()
@click.argument("domain", default="google.com")
@click.option("--type", "qtype", default="A", help="Record type")
@click.option("--server", default=None, help="Resolver to ask (default: config query_server)")
@click.pass_context
def query(ctx, domain, qtype, server):
    """Resolve DOMAIN through the local resolver."""
    config = _config(ctx)
    try:
        result = dns_query(
            domain, qtype,
            server=server or config.query_server,
            timeout=config.query_timeout,
        )
    except ValueError as e:
        _fail(ctx, str(e))
    lines = [f"{result['domain']} {result['type']}: {result['status']} in {result['responseTime']} ms"]
    if result["blocked"]:
        lines.append("  (blocked)")
    for answer in result["answers"]:
        lines.append(f"  {answer['name']}  {answer['ttl']}  {answer['type']}  {answer['data']}")
    _emit(ctx, result, lines)


@main.command()
@click.pass_context
def ping(ctx):
    """Measure latency to the configured upstream resolvers."""
    config = _config(ctx)
    results = ping_upstreams(config.upstream_servers, config.probe_domain, config.probe_timeout)
    lines = []
    for r in results:
        latency = f"{r['latency']} ms" if r["latency"] is not None else "timeout"
        lines.append(f"  {r['server']:<16} {latency}")
    _emit(ctx, results, lines)


@main.group()
def settings():
    """Read and write persisted dashboard settings."""


@settings.command("get")
@click.argument("key", required=False)
@_db_options
@click.pass_context
def settings_get(ctx, key, **db):
    """Show all settings, or one KEY."""
    config = _config(ctx)
    try:
        values, backend_name = make_store(config).read_all(_backend(**db))
    except SettingsBackendError as e:
        _fail(ctx, str(e))
    if key is not None:
        if key not in values:
            _fail(ctx, f"No setting named '{key}'")
        values = {key: values[key]}
    _emit(ctx,
        {"status": "ok", "backend": backend_name, "settings": values},
        [f"{k} = {json.dumps(v)}" for k, v in sorted(values.items())]
        + [f"(backend: {backend_name})"])


@settings.command("set")
@click.argument("key")
@click.argument("value")
@_db_options
@click.pass_context
def settings_set(ctx, key, value, **db):
    """Store VALUE under KEY. VALUE is parsed as JSON when possible."""
    config = _config(ctx)
    try:
        parsed = json.loads(value)
    except ValueError:
        parsed = value
    try:
        result = make_store(config).write(_backend(**db), {key: parsed})
    except SettingsBackendError as e:
        _fail(ctx, str(e))
    _emit(ctx, result, [f"Saved {key} (backend: {result['backend']})"])


@main.command("db-ping")
@_db_options
@click.pass_context
def db_ping(ctx, **db):
    """Check that the settings database answers."""
    config = _config(ctx)
    result = make_store(config).ping(_backend(**db))
    if not result["ok"]:
        _emit(ctx, result, [f"Error: {result['type']} database unreachable: {result['error']}"])
        ctx.exit(1)
    where = result.get("path") or f"{result.get('host')}:{result.get('port')}"
    lines = [f"{result['type']} database OK ({where}) in {result['latencyMs']} ms"]
    if result.get("version"):
        lines.append(f"  {result['version']}")
    _emit(ctx, result, lines)


@main.command()
@click.pass_context
def ingest(ctx):
    """Copy parsed resolver log events into the local query_log table."""
    config = _config(ctx)
    setup_logging(
        Path(config.bridge_log) if config.bridge_log else None,
        foreground=not ctx.obj.get("json"),
        level=config.log_level,
        max_bytes=config.log_max_size_mb * 1024 * 1024,
    )
    events = make_log_reader(config).history()
    result = QueryLogDB(Path(config.db_path)).ingest(events, config.retention_days)
    _emit(ctx,
        {"status": "ok", **result},
        [f"Parsed {result['parsed']:,} events, inserted {result['inserted']:,}, "
         f"pruned {result['pruned']:,} older than {config.retention_days} days."])


@main.command("init-config")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@click.pass_context
def init_config(ctx, force):
    """Write a config file with the default values."""
    path = ctx.obj.get("config_path") or config_path()
    if path.exists() and not force:
        _fail(ctx, f"{path} already exists (use --force to overwrite)")
    try:
        save_config(Config(), path)
    except OSError as e:
        _fail(ctx, f"Could not write {path}: {e}")
    _emit(ctx, {"status": "ok", "path": str(path)}, [f"Wrote {path}"])
