"""Operator settings persistence with per-call backend selection.

The caller names the backend on every call with a :class:`LocalBackend`
or :class:`RemoteBackend` value; nothing about the choice is remembered
between calls. The local backend is an SQLite file. When SQLite cannot
be used at all, reads and writes fall back to a flat JSON file, and the
backend name returned alongside each result says which path served it.
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Union

import asyncpg

logger = logging.getLogger("dnsbridge.settings_store")

BACKEND_SQLITE = "sqlite"
BACKEND_JSON = "json-file"
BACKEND_POSTGRES = "postgres"

DEFAULT_PG_PORT = 5432
DEFAULT_PG_DATABASE = "dnsguard"

_CREATE_TABLE = "CREATE TABLE IF NOT EXISTS app_settings (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
_SQLITE_UPSERT = (
    "INSERT INTO app_settings (key, value) VALUES (?, ?) "
    "ON CONFLICT (key) DO UPDATE SET value = excluded.value"
)
_PG_UPSERT = (
    "INSERT INTO app_settings (key, value) VALUES ($1, $2) "
    "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value"
)
_PG_RECENT_EVENTS = (
    "SELECT id::text AS id, timestamp, client_ip, domain, type, status, response_time "
    "FROM query_log ORDER BY timestamp DESC LIMIT $1"
)


class SettingsBackendError(Exception):
    """A settings backend was reachable in principle but the operation failed."""


class BackendUnavailable(Exception):
    """The embedded database cannot be used at all (no driver, unopenable file)."""


@dataclass(frozen=True)
class LocalBackend:
    pass


@dataclass(frozen=True)
class RemoteBackend:
    host: str
    port: int = DEFAULT_PG_PORT
    database: str = DEFAULT_PG_DATABASE
    user: str | None = None
    password: str | None = None
    sslmode: str | None = None


BackendSpec = Union[LocalBackend, RemoteBackend]


def _port(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return DEFAULT_PG_PORT


def backend_from_descriptor(data: Mapping[str, Any]) -> BackendSpec:
    """Build a backend spec from a ``/db/ping`` style connection descriptor."""
    if data.get("type") == "local" or not data.get("host"):
        return LocalBackend()
    return RemoteBackend(
        host=str(data["host"]),
        port=_port(data.get("port")),
        database=data.get("database") or DEFAULT_PG_DATABASE,
        user=data.get("user"),
        password=data.get("password"),
        sslmode=data.get("sslmode"),
    )


def backend_from_headers(headers: Mapping[str, str]) -> BackendSpec:
    """Build a backend spec from the dashboard's ``X-DB-*`` request headers."""
    if (headers.get("X-DB-Type") or "local") != "remote" or not headers.get("X-DB-Host"):
        return LocalBackend()
    return RemoteBackend(
        host=headers["X-DB-Host"],
        port=_port(headers.get("X-DB-Port")),
        database=headers.get("X-DB-Name") or DEFAULT_PG_DATABASE,
        user=headers.get("X-DB-User"),
        password=headers.get("X-DB-Password"),
        sslmode=headers.get("X-DB-SSLMode"),
    )


def _decode(value: str) -> Any:
    """Stored values are JSON text; anything unparsable comes back raw."""
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return value


def _ssl_option(sslmode: str | None):
    if not sslmode or sslmode == "disable":
        return False
    if sslmode == "verify-full":
        return "verify-full"
    return "require"


class SettingsStore:
    """Key/value settings over SQLite, PostgreSQL or a JSON file."""

    def __init__(self, db_path: Path, fallback_file: Path, connect_timeout: float = 7.0) -> None:
        self.db_path = Path(db_path)
        self.fallback_file = Path(fallback_file)
        self.connect_timeout = connect_timeout

    # --- public API ---

    def read_all(self, backend: BackendSpec) -> tuple[dict[str, Any], str]:
        """Return (settings, backend_name)."""
        if isinstance(backend, RemoteBackend):
            return self._run_remote(self._pg_read_all(backend)), BACKEND_POSTGRES
        try:
            return self._sqlite_read_all(), BACKEND_SQLITE
        except BackendUnavailable as e:
            logger.warning("Embedded database unavailable (%s), reading %s", e, self.fallback_file)
            return self._json_read_all(), BACKEND_JSON

    def write(self, backend: BackendSpec, patch: Mapping[str, Any]) -> dict:
        """Merge ``patch`` into the stored settings. Untouched keys survive."""
        if isinstance(backend, RemoteBackend):
            self._run_remote(self._pg_write(backend, dict(patch)))
            return {"ok": True, "backend": BACKEND_POSTGRES}
        try:
            self._sqlite_write(patch)
            return {"ok": True, "backend": BACKEND_SQLITE}
        except BackendUnavailable as e:
            logger.warning("Embedded database unavailable (%s), writing %s", e, self.fallback_file)
            self._json_write(patch)
            return {"ok": True, "backend": BACKEND_JSON}

    def ping(self, backend: BackendSpec) -> dict:
        """Liveness check. Never raises; failures come back as ``ok: False``."""
        start = time.monotonic()
        if isinstance(backend, RemoteBackend):
            try:
                version = self._run_remote(self._pg_version(backend))
            except SettingsBackendError as e:
                return {"ok": False, "type": "remote", "error": str(e)}
            return {
                "ok": True,
                "type": "remote",
                "latencyMs": int((time.monotonic() - start) * 1000),
                "host": backend.host,
                "port": backend.port,
                "version": version,
            }
        try:
            self._sqlite_ping()
        except (BackendUnavailable, SettingsBackendError) as e:
            return {"ok": False, "type": "local", "error": str(e)}
        return {
            "ok": True,
            "type": "local",
            "latencyMs": int((time.monotonic() - start) * 1000),
            "path": str(self.db_path),
        }

    def recent_remote_events(self, backend: RemoteBackend, limit: int) -> list[dict]:
        """Newest rows of the remote ``query_log`` table, as API dicts."""
        return self._run_remote(self._pg_recent_events(backend, limit))

    # --- SQLite ---

    def _sqlite_connect(self):
        """Open the settings database; returns (module, connection)."""
        try:
            import sqlite3
        except ImportError as e:
            raise BackendUnavailable(f"sqlite3 driver not available: {e}") from e
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        except (sqlite3.Error, OSError) as e:
            raise BackendUnavailable(f"cannot open {self.db_path}: {e}") from e
        try:
            conn.execute(_CREATE_TABLE)
            conn.commit()
        except sqlite3.Error as e:
            conn.close()
            raise BackendUnavailable(f"cannot open {self.db_path}: {e}") from e
        return sqlite3, conn

    def _sqlite_read_all(self) -> dict[str, Any]:
        sqlite3, conn = self._sqlite_connect()
        with closing(conn):
            try:
                rows = conn.execute("SELECT key, value FROM app_settings").fetchall()
            except sqlite3.Error as e:
                raise SettingsBackendError(str(e)) from e
        return {key: _decode(value) for key, value in rows}

    def _sqlite_write(self, patch: Mapping[str, Any]) -> None:
        sqlite3, conn = self._sqlite_connect()
        with closing(conn):
            try:
                with conn:
                    conn.executemany(
                        _SQLITE_UPSERT,
                        [(key, json.dumps(value)) for key, value in patch.items()],
                    )
            except sqlite3.Error as e:
                raise SettingsBackendError(str(e)) from e

    def _sqlite_ping(self) -> None:
        sqlite3, conn = self._sqlite_connect()
        with closing(conn):
            try:
                conn.execute("SELECT 1").fetchone()
            except sqlite3.Error as e:
                raise SettingsBackendError(str(e)) from e

    # --- JSON file fallback ---

    def _json_read_all(self) -> dict[str, Any]:
        try:
            data = json.loads(self.fallback_file.read_text())
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _json_write(self, patch: Mapping[str, Any]) -> None:
        existing = self._json_read_all()
        existing.update(patch)
        try:
            self.fallback_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.fallback_file.parent), prefix=f".{self.fallback_file.name}."
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(existing, f, indent=2)
                os.replace(tmp_path, self.fallback_file)
            finally:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
        except OSError as e:
            raise SettingsBackendError(f"Settings write failed: {e}") from e

    # --- PostgreSQL ---

    def _run_remote(self, coro):
        """Run one remote operation to completion on a private event loop."""
        try:
            return asyncio.run(coro)
        except SettingsBackendError:
            raise
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.warning("Remote settings database error: %s", e)
            raise SettingsBackendError(str(e) or e.__class__.__name__) from e

    async def _pg_connect(self, backend: RemoteBackend):
        return await asyncpg.connect(
            host=backend.host,
            port=backend.port,
            database=backend.database,
            user=backend.user,
            password=backend.password,
            ssl=_ssl_option(backend.sslmode),
            timeout=self.connect_timeout,
            command_timeout=self.connect_timeout,
        )

    async def _pg_read_all(self, backend: RemoteBackend) -> dict[str, Any]:
        conn = await self._pg_connect(backend)
        try:
            await conn.execute(_CREATE_TABLE)
            rows = await conn.fetch("SELECT key, value FROM app_settings")
        finally:
            await conn.close()
        return {row["key"]: _decode(row["value"]) for row in rows}

    async def _pg_write(self, backend: RemoteBackend, patch: dict[str, Any]) -> None:
        conn = await self._pg_connect(backend)
        try:
            await conn.execute(_CREATE_TABLE)
            async with conn.transaction():
                await conn.executemany(
                    _PG_UPSERT,
                    [(key, json.dumps(value)) for key, value in patch.items()],
                )
        finally:
            await conn.close()

    async def _pg_version(self, backend: RemoteBackend) -> str:
        conn = await self._pg_connect(backend)
        try:
            version = await conn.fetchval("SELECT version()")
        finally:
            await conn.close()
        return version or "unknown"

    async def _pg_recent_events(self, backend: RemoteBackend, limit: int) -> list[dict]:
        conn = await self._pg_connect(backend)
        try:
            rows = await conn.fetch(_PG_RECENT_EVENTS, limit)
        finally:
            await conn.close()
        events = []
        for row in rows:
            ts = row["timestamp"]
            events.append({
                "id": row["id"],
                "timestamp": ts.isoformat() if hasattr(ts, "isoformat") else str(ts),
                "clientIp": row["client_ip"],
                "domain": row["domain"],
                "type": row["type"],
                "status": row["status"],
                "responseTime": row["response_time"] or 0,
            })
        return events
