"""Resolver log normalization.

Unbound writes query lines in several layouts depending on its
``log-time-ascii`` / ``use-syslog`` / ``log-replies`` settings. Each
layout is a :class:`LineFormat`; :func:`parse_line` tries them in
``LINE_FORMATS`` order and the first match wins, so the most specific
formats come first.
"""

import itertools
import logging
import re
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from dnsbridge.resolver import CommandExecutor

logger = logging.getLogger("dnsbridge.logparser")

QUERY_TYPES = (
    "A", "AAAA", "CNAME", "MX", "TXT", "SRV", "PTR", "NS", "NULL", "HTTPS",
    "SVCB", "CAA", "NAPTR", "SOA", "DS", "DNSKEY", "TLSA", "ANY",
)
REFUSED_RCODE = "REFUSED"

DEBUG_TAIL_LINES = 20
DEBUG_SAMPLE_LINES = 200

_TYPES = "|".join(QUERY_TYPES)
_CLIENT = r"[\d.:a-fA-F]+"

# [1771467409] unbound[58080:1] info: facebook.com. always_refuse 127.0.0.1@59952 facebook.com. A IN
_BLOCKED_RE = re.compile(
    rf"^\[(\d+)\]\s+unbound\[\d+:\d+\]\s+info:\s+\S+\.?\s+always_refuse\s+"
    rf"({_CLIENT})@\d+\s+(\S+?)\.?\s+({_TYPES})\s+IN\b"
)
# [1771467389] unbound[58080:2] info: 127.0.0.1 google.com. A IN
_EPOCH_RE = re.compile(
    rf"^\[(\d+)\]\s+unbound\[\d+:\d+\]\s+info:\s+({_CLIENT})\s+(\S+?)\.?\s+({_TYPES})\s+IN\b"
)
# 2024-01-15T13:54:37 unbound[58080:2] info: 127.0.0.1 google.com. A IN
_ISO_RE = re.compile(
    rf"^(\d{{4}}-\d{{2}}-\d{{2}}T[\d:.]+(?:Z|[+-]\d{{2}}:?\d{{2}})?)\s+unbound\[\d+:\d+\]\s+info:\s+"
    rf"({_CLIENT})\s+(\S+?)\.?\s+({_TYPES})\s+IN\b"
)
# Feb 21 06:13:04 host unbound[812]: [812:0] info: 10.0.0.5 example.com. A IN NOERROR 0.012 0 56
_SYSLOG_RE = re.compile(
    rf"^(\w{{3}}\s+\d+\s+[\d:]+)\s+\S+\s+unbound(?:\[\d+\])?:\s+\[\d+:\d+\]\s+info:\s+"
    rf"({_CLIENT})\s+(\S+?)\.?\s+({_TYPES})\s+IN"
    rf"(?:\s+(\w+)\s+([\d.]+)\s+(\d+)\s+(\d+))?\s*$"
)


@dataclass(frozen=True)
class QueryEvent:
    """One resolved or blocked DNS lookup."""

    id: str
    timestamp: datetime
    client_ip: str
    domain: str
    type: str
    status: str  # "allowed" | "blocked"
    response_time_ms: int = 0

    @property
    def blocked(self) -> bool:
        return self.status == "blocked"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "clientIp": self.client_ip,
            "domain": self.domain,
            "type": self.type,
            "status": self.status,
            "responseTime": self.response_time_ms,
        }


def _iso(ts: datetime) -> str:
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


class _Sequence:
    """Process-wide monotonic counter for event ids."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count()

    def next(self) -> int:
        with self._lock:
            return next(self._counter)


_sequence = _Sequence()


def _make_id(ts: datetime) -> str:
    millis = int(ts.timestamp() * 1000)
    return f"{millis}-{_sequence.next()}"


def _epoch_time(raw: str, now: datetime) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def _iso_time(raw: str, now: datetime) -> datetime | None:
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _syslog_time(raw: str, now: datetime) -> datetime | None:
    """Syslog stamps carry no year or zone: assume local time, current year.

    A stamp that would land in the future belongs to the previous year
    (a December line read in January).
    """
    stamp = " ".join(raw.split())
    local_now = now.astimezone()
    try:
        ts = datetime.strptime(f"{stamp} {local_now.year}", "%b %d %H:%M:%S %Y")
    except ValueError:
        return None
    ts = ts.replace(tzinfo=local_now.tzinfo)
    if ts > local_now.replace(microsecond=0) and ts.month > local_now.month:
        ts = ts.replace(year=ts.year - 1)
    return ts.astimezone(timezone.utc)


@dataclass(frozen=True)
class LineFormat:
    """One resolver log layout.

    The pattern's first four groups are timestamp, client, domain and
    record type; groups 5 and 6, when present, are the response code and
    elapsed seconds.
    """

    name: str
    pattern: re.Pattern
    parse_time: Callable[[str, datetime], datetime | None]
    always_blocked: bool = False

    def parse(self, line: str, now: datetime) -> QueryEvent | None:
        m = self.pattern.match(line)
        if not m:
            return None
        ts = self.parse_time(m.group(1), now)
        if ts is None:
            return None
        status = "blocked" if self.always_blocked else "allowed"
        response_ms = 0
        if m.re.groups >= 6 and m.group(5):
            if m.group(5) == REFUSED_RCODE:
                status = "blocked"
            response_ms = int(round(float(m.group(6)) * 1000))
        return QueryEvent(
            id=_make_id(ts),
            timestamp=ts,
            client_ip=m.group(2),
            domain=m.group(3).rstrip("."),
            type=m.group(4),
            status=status,
            response_time_ms=response_ms,
        )


LINE_FORMATS: list[LineFormat] = [
    LineFormat("always_refuse", _BLOCKED_RE, _epoch_time, always_blocked=True),
    LineFormat("epoch", _EPOCH_RE, _epoch_time),
    LineFormat("iso8601", _ISO_RE, _iso_time),
    LineFormat("syslog", _SYSLOG_RE, _syslog_time),
]


def parse_line(line: str, now: datetime | None = None) -> QueryEvent | None:
    """Parse one raw log line, or return None for non-query lines."""
    line = line.strip()
    if not line:
        return None
    now = now or datetime.now(timezone.utc)
    for fmt in LINE_FORMATS:
        event = fmt.parse(line, now)
        if event is not None:
            return event
    return None


def parse_lines(lines: Iterable[str], now: datetime | None = None) -> list[QueryEvent]:
    """Parse lines in order, dropping the ones no format recognizes."""
    now = now or datetime.now(timezone.utc)
    events = []
    for line in lines:
        event = parse_line(line, now)
        if event is not None:
            events.append(event)
    return events


class LogReader:
    """Reads query events from exactly one source: a log file or journald."""

    def __init__(
        self,
        log_file: Path,
        use_journald: bool = False,
        journald_unit: str = "unbound",
        tail_lines: int = 5000,
        journald_lines: int = 1000,
        summary_journald_lines: int = 10000,
        timeout: float = 5.0,
        executor: CommandExecutor | None = None,
    ) -> None:
        self.log_file = Path(log_file)
        self.use_journald = use_journald
        self.journald_unit = journald_unit
        self.tail_lines = tail_lines
        self.journald_lines = journald_lines
        self.summary_journald_lines = summary_journald_lines
        self.timeout = timeout
        self.executor = executor or CommandExecutor()

    @property
    def source(self) -> str:
        return "journald" if self.use_journald else "file"

    def _file_lines(self, tail: int | None) -> list[str]:
        if not self.log_file.exists():
            return []
        try:
            with open(self.log_file, "r", errors="replace") as f:
                if tail is None:
                    return f.read().splitlines()
                return [line.rstrip("\n") for line in deque(f, maxlen=tail)]
        except OSError as e:
            logger.warning("Failed to read %s: %s", self.log_file, e)
            return []

    def _journald_lines(self, count: int) -> list[str]:
        result = self.executor.run(
            [
                "journalctl", "-u", self.journald_unit, "-n", str(count),
                "--no-pager", "--output=short",
            ],
            timeout=self.timeout,
        )
        if not result.ok:
            logger.warning("journalctl failed: %s", result.error_message)
            return []
        return result.stdout.splitlines()

    def raw_lines(self, full: bool = False) -> list[str]:
        """Raw lines from the active source, oldest first."""
        if self.use_journald:
            count = self.summary_journald_lines if full else self.journald_lines
            return self._journald_lines(count)
        return self._file_lines(None if full else self.tail_lines)

    def recent(self, limit: int = 50) -> list[QueryEvent]:
        """Up to ``limit`` most recent events, newest first."""
        events = parse_lines(self.raw_lines())
        events.reverse()
        return events[:limit]

    def history(self) -> list[QueryEvent]:
        """Every event the source still holds, oldest first."""
        return parse_lines(self.raw_lines(full=True))

    def debug(self) -> dict:
        """Last raw lines paired with their parse result, for troubleshooting."""
        report: dict = {
            "logFile": str(self.log_file),
            "useJournald": self.use_journald,
        }
        if self.use_journald:
            lines = self._journald_lines(DEBUG_SAMPLE_LINES)
            report["journaldUnit"] = self.journald_unit
        else:
            if not self.log_file.exists():
                report["exists"] = False
                report["error"] = f"Log file not found: {self.log_file}"
                return report
            try:
                report["sizeBytes"] = self.log_file.stat().st_size
            except OSError as e:
                report["error"] = str(e)
                return report
            report["exists"] = True
            lines = self._file_lines(None)
            report["totalLines"] = len(lines)

        now = datetime.now(timezone.utc)
        sample = lines[-DEBUG_SAMPLE_LINES:]
        parsed_count = sum(1 for line in sample if parse_line(line, now) is not None)
        report["parsedInLast200"] = parsed_count
        report["parseRatio"] = round(parsed_count / len(sample), 3) if sample else 0.0
        report["last20Lines"] = []
        for line in lines[-DEBUG_TAIL_LINES:]:
            event = parse_line(line, now)
            report["last20Lines"].append({
                "line": line,
                "parsed": event.to_dict() if event else None,
            })
        return report
