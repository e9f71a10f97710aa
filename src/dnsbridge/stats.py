import logging
import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Iterable

from dnsbridge.logparser import QueryEvent
from dnsbridge.resolver import UnboundControl

logger = logging.getLogger("dnsbridge.stats")

CONTROL_ERROR_KEY = "_unbound_control_error"
SUMMARY_HOURS = 24
TOP_BLOCKED_LIMIT = 10

_QUERY_TYPE_KEY = re.compile(r"^num\.query\.type\.(.+)$")
_RCODE_KEY = re.compile(r"^num\.answer\.rcode\.(.+)$")


def parse_control_stats(output: str) -> dict[str, str]:
    """Turn ``unbound-control stats`` output (key=value lines) into a map."""
    raw: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            raw[key.strip()] = value.strip()
    return raw


def get_point_stats(control: UnboundControl) -> dict[str, str]:
    """Raw resolver counters, or a single diagnostic key when unreachable."""
    result = control.stats()
    if not result.ok or not result.stdout.strip():
        reason = result.error_message if not result.ok else "empty output"
        logger.warning("Resolver stats unavailable: %s", reason)
        return {CONTROL_ERROR_KEY: reason}
    return parse_control_stats(result.stdout)


def _int(value: str | None) -> int:
    try:
        return int(value) if value else 0
    except ValueError:
        return 0


def _float(value: str | None) -> float:
    try:
        return float(value) if value else 0.0
    except ValueError:
        return 0.0


def derive_live_stats(raw: dict[str, str]) -> dict:
    """Headline numbers derived from the raw control counters."""
    total = _int(raw.get("total.num.queries"))
    blocked = _int(raw.get("num.answer.rcode.REFUSED"))
    query_types = {}
    return_codes = {}
    for key, value in raw.items():
        m = _QUERY_TYPE_KEY.match(key)
        if m:
            query_types[m.group(1)] = _int(value)
            continue
        m = _RCODE_KEY.match(key)
        if m:
            return_codes[m.group(1)] = _int(value)
    recursion_avg = _float(raw.get("total.recursion.time.avg"))
    return {
        "total_queries": total,
        "allowed_queries": max(0, total - blocked),
        "blocked_queries": blocked,
        "cache_hits": _int(raw.get("total.num.cachehits")),
        "cache_misses": _int(raw.get("total.num.cachemiss")),
        "prefetch": _int(raw.get("total.num.prefetch")),
        "avg_response_ms": round(recursion_avg * 1000, 1),
        "uptime_hours": round(_float(raw.get("time.elapsed")) / 3600, 2),
        "query_types": query_types,
        "return_codes": return_codes,
    }


def summarize(events: Iterable[QueryEvent], now: datetime | None = None) -> dict:
    """Rollup of the trailing 24 hours: hourly buckets, totals, top blocked.

    Buckets are whole UTC hours ending with the current one, all present
    even when empty. Only events older than 24 hours are ignored; those in
    the partial hour before the first bucket share the current hour's label
    and are counted there.
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    cutoff = now - timedelta(hours=SUMMARY_HOURS)
    current_hour = now.replace(minute=0, second=0, microsecond=0)
    start = current_hour - timedelta(hours=SUMMARY_HOURS - 1)

    buckets = []
    for i in range(SUMMARY_HOURS):
        t = start + timedelta(hours=i)
        buckets.append({"hour": t.strftime("%H:00"), "allowed": 0, "blocked": 0})

    top_blocked: Counter[str] = Counter()
    total_allowed = 0
    total_blocked = 0
    for event in events:
        ts = event.timestamp.astimezone(timezone.utc)
        if ts < cutoff or ts > now:
            continue
        idx = int((ts - start) // timedelta(hours=1)) % SUMMARY_HOURS
        if event.blocked:
            buckets[idx]["blocked"] += 1
            total_blocked += 1
            top_blocked[event.domain] += 1
        else:
            buckets[idx]["allowed"] += 1
            total_allowed += 1

    return {
        "hourly": buckets,
        "topBlocked": [
            {"domain": domain, "count": count}
            for domain, count in top_blocked.most_common(TOP_BLOCKED_LIMIT)
        ],
        "totalAllowed": total_allowed,
        "totalBlocked": total_blocked,
    }
