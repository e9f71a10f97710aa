"""HTTP control API consumed by the dashboard."""

import hmac
import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from socketserver import ThreadingMixIn
from urllib.parse import parse_qs, urlparse

from dnsbridge.config import Config
from dnsbridge.logparser import LogReader
from dnsbridge.probe import dns_query, ping_upstreams
from dnsbridge.query_db import QueryLogDB
from dnsbridge.resolver import CommandExecutor, UnboundControl
from dnsbridge.rules import RuleBundle, RuleCompiler
from dnsbridge.settings_store import (
    RemoteBackend,
    SettingsBackendError,
    SettingsStore,
    backend_from_descriptor,
    backend_from_headers,
)
from dnsbridge.stats import get_point_stats, summarize
from dnsbridge.sysinfo import collect_info

logger = logging.getLogger("dnsbridge.api")

DEFAULT_LOG_LIMIT = 50
MAX_LOG_LIMIT = 1000
AUTH_REALM = "dnsbridge"

_ALLOWED_HEADERS = (
    "Content-Type, Authorization, X-DB-Type, X-DB-Host, X-DB-Port, "
    "X-DB-Name, X-DB-User, X-DB-Password, X-DB-SSLMode"
)
_EXPOSED_HEADERS = "X-Settings-Backend, X-Log-Source"


class BridgeHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the resolver bridge."""

    config: Config = None
    control: UnboundControl = None
    log_reader: LogReader = None
    compiler: RuleCompiler = None
    store: SettingsStore = None
    query_db: QueryLogDB = None
    token: str = ""

    def do_GET(self):
        self._dispatch({
            "/stats": self._serve_stats,
            "/info": self._serve_info,
            "/logs": self._serve_logs,
            "/logs/debug": self._serve_logs_debug,
            "/logs/summary": self._serve_logs_summary,
            "/query": self._serve_query,
            "/ping": self._serve_ping,
            "/settings": self._serve_settings,
        })

    def do_POST(self):
        self._dispatch({
            "/cache/flush": self._handle_cache_flush,
            "/rules": self._handle_rules,
            "/db/ping": self._handle_db_ping,
            "/settings": self._handle_settings,
        })

    # No routes take these methods; they still get auth and a JSON 404
    def do_PUT(self):
        self._dispatch({})

    def do_DELETE(self):
        self._dispatch({})

    def do_PATCH(self):
        self._dispatch({})

    def do_OPTIONS(self):
        self.send_response(204)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", _ALLOWED_HEADERS)
        self.send_header("Access-Control-Max-Age", "86400")
        self.end_headers()

    def _dispatch(self, routes: dict) -> None:
        parsed = urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"
        params = parse_qs(parsed.query)

        if not self._check_auth():
            return
        handler = routes.get(path)
        if handler is None:
            self._json_response({"error": "Not found"}, status=404)
            return
        logger.debug("%s %s from %s", self.command, path, self.client_address[0])
        try:
            handler(params)
        except ValueError as e:
            self._json_response({"error": str(e)}, status=400)
        except SettingsBackendError as e:
            self._json_response({"error": str(e)}, status=502)
        except Exception as e:
            logger.exception("Unhandled error serving %s %s", self.command, path)
            self._json_response({"error": str(e) or e.__class__.__name__}, status=500)

    # --- Auth ---

    def _check_auth(self) -> bool:
        """Verify Bearer token. Sends 401 and returns False if invalid."""
        if not self.token:
            return True
        auth = self.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            provided = auth[7:]
            if hmac.compare_digest(provided.encode(), self.token.encode()):
                return True
        self._json_response(
            {"error": "Unauthorized - set Authorization: Bearer <token>"},
            status=401,
            headers={"WWW-Authenticate": f'Bearer realm="{AUTH_REALM}"'},
        )
        return False

    def _read_json_body(self) -> dict | None:
        """Read and parse JSON request body. Returns None and sends 400 on failure."""
        try:
            length = int(self.headers.get("Content-Length", 0))
            raw = self.rfile.read(length) if length > 0 else b"{}"
            data = json.loads(raw)
        except (json.JSONDecodeError, ValueError) as e:
            self._json_response({"error": f"Invalid JSON body: {e}"}, status=400)
            return None
        if not isinstance(data, dict):
            self._json_response({"error": "JSON body must be an object"}, status=400)
            return None
        return data

    # --- JSON response ---

    def _json_response(self, data: dict | list, status: int = 200, headers: dict | None = None) -> None:
        body = json.dumps(data).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Expose-Headers", _EXPOSED_HEADERS)
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)

    # --- GET handlers ---

    def _serve_stats(self, params: dict) -> None:
        self._json_response(get_point_stats(self.control))

    def _serve_info(self, params: dict) -> None:
        self._json_response(collect_info(self.config, self.control))

    def _serve_logs(self, params: dict) -> None:
        try:
            limit = int(params.get("limit", [DEFAULT_LOG_LIMIT])[0])
        except ValueError:
            raise ValueError("limit must be an integer") from None
        limit = max(1, min(limit, MAX_LOG_LIMIT))

        events = [e.to_dict() for e in self.log_reader.recent(limit)]
        source = self.log_reader.source
        if not events:
            events, source = self._stored_events(limit)
        self._json_response(events, headers={"X-Log-Source": source})

    def _stored_events(self, limit: int) -> tuple[list[dict], str]:
        """Previously ingested events, from whichever database the caller selected."""
        backend = backend_from_headers(self.headers)
        if isinstance(backend, RemoteBackend):
            try:
                events = self.store.recent_remote_events(backend, limit)
            except SettingsBackendError as e:
                logger.warning("Remote query_log unavailable: %s", e)
                events = []
        else:
            events = self.query_db.recent_events(limit)
        return events, "query_log" if events else "none"

    def _serve_logs_debug(self, params: dict) -> None:
        self._json_response(self.log_reader.debug())

    def _serve_logs_summary(self, params: dict) -> None:
        self._json_response(summarize(self.log_reader.history()))

    def _serve_query(self, params: dict) -> None:
        domain = params.get("domain", ["google.com"])[0]
        qtype = params.get("type", ["A"])[0]
        result = dns_query(
            domain,
            qtype,
            server=self.config.query_server,
            timeout=self.config.query_timeout,
        )
        self._json_response(result)

    def _serve_ping(self, params: dict) -> None:
        results = ping_upstreams(
            self.config.upstream_servers,
            probe_domain=self.config.probe_domain,
            timeout=self.config.probe_timeout,
        )
        self._json_response(results)

    def _serve_settings(self, params: dict) -> None:
        settings, backend_name = self.store.read_all(backend_from_headers(self.headers))
        self._json_response(settings, headers={"X-Settings-Backend": backend_name})

    # --- POST handlers ---

    def _handle_cache_flush(self, params: dict) -> None:
        self._json_response(self.control.flush_cache())

    def _handle_rules(self, params: dict) -> None:
        data = self._read_json_body()
        if data is None:
            return
        bundle = RuleBundle.from_dict(data)
        self._json_response(self.compiler.apply(bundle))

    def _handle_db_ping(self, params: dict) -> None:
        data = self._read_json_body()
        if data is None:
            return
        result = self.store.ping(backend_from_descriptor(data))
        self._json_response(result, status=200 if result["ok"] else 502)

    def _handle_settings(self, params: dict) -> None:
        data = self._read_json_body()
        if data is None:
            return
        result = self.store.write(backend_from_headers(self.headers), data)
        self._json_response(result)

    def log_message(self, format, *args):
        # Suppress default stderr logging from http.server
        pass


class _ThreadedHTTPServer(ThreadingMixIn, HTTPServer):
    """HTTPServer that handles each request in a new thread."""
    daemon_threads = True


def make_control(config: Config, executor: CommandExecutor | None = None) -> UnboundControl:
    return UnboundControl(
        executor=executor or CommandExecutor(),
        command=config.control_command,
        timeout=config.control_timeout,
        sudo_fallback=config.sudo_fallback,
    )


def make_log_reader(config: Config, executor: CommandExecutor | None = None) -> LogReader:
    return LogReader(
        Path(config.log_file),
        use_journald=config.use_journald,
        journald_unit=config.journald_unit,
        tail_lines=config.log_tail_lines,
        journald_lines=config.journald_lines,
        summary_journald_lines=config.summary_journald_lines,
        timeout=config.log_read_timeout,
        executor=executor,
    )


def make_store(config: Config) -> SettingsStore:
    return SettingsStore(
        Path(config.db_path),
        Path(config.settings_file),
        connect_timeout=config.remote_connect_timeout,
    )


def configure_handler(config: Config, executor: CommandExecutor | None = None) -> type[BridgeHandler]:
    """Wire the collaborators for ``config`` onto the handler class."""
    executor = executor or CommandExecutor()
    control = make_control(config, executor)
    BridgeHandler.config = config
    BridgeHandler.control = control
    BridgeHandler.log_reader = make_log_reader(config, executor)
    BridgeHandler.compiler = RuleCompiler(Path(config.rules_file), control)
    BridgeHandler.store = make_store(config)
    BridgeHandler.query_db = QueryLogDB(Path(config.db_path))
    BridgeHandler.token = config.api_token
    return BridgeHandler


def create_server(config: Config, executor: CommandExecutor | None = None) -> HTTPServer:
    """Bind the API server. Raises OSError if the address is unavailable."""
    handler = configure_handler(config, executor)
    return _ThreadedHTTPServer((config.api_host, config.api_port), handler)


def start_api(config: Config, executor: CommandExecutor | None = None) -> HTTPServer | None:
    """Start the API server in a background thread.

    Returns the server instance, or None if the port could not be bound.
    """
    try:
        server = create_server(config, executor)
    except OSError as e:
        logger.warning("Could not start API on %s:%d: %s", config.api_host, config.api_port, e)
        return None

    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    logger.info("Control API listening on http://%s:%d", host, port)
    return server
