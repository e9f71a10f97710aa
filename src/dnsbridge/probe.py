import logging
import re
import socket
import time
from concurrent.futures import ThreadPoolExecutor

from dnslib import QTYPE, RCODE, DNSRecord
from dnslib.dns import DNSError

logger = logging.getLogger("dnsbridge.probe")

BLOCK_SIGNATURES = ("NXDOMAIN", "REFUSED")
_HEADER_FLAGS = ("qr", "aa", "tc", "rd", "ra", "ad", "cd")
_DOMAIN_RE = re.compile(r"^[a-z0-9_]([a-z0-9_.\-]*[a-z0-9])?$")


def validate_domain(domain: str) -> str | None:
    """Normalize and validate a domain. Returns normalized domain or None."""
    domain = domain.lower().strip().strip(".")
    if not domain or len(domain) > 253 or not _DOMAIN_RE.match(domain):
        return None
    return domain


def validate_qtype(qtype: str) -> str | None:
    qtype = qtype.upper().strip()
    return qtype if qtype in QTYPE.reverse else None


def resolve_plain(request_data: bytes, server: str, port: int = 53, timeout: float = 5.0) -> bytes:
    """Send a DNS query via plain UDP and return the raw response."""
    family = socket.AF_INET6 if ":" in server else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_DGRAM)
    sock.settimeout(timeout)
    try:
        sock.sendto(request_data, (server, port))
        response_data, _ = sock.recvfrom(4096)
        return response_data
    finally:
        sock.close()


def dns_query(
    domain: str,
    qtype: str = "A",
    server: str = "127.0.0.1",
    port: int = 53,
    timeout: float = 5.0,
) -> dict:
    """Resolve one name against the local resolver and describe the answer.

    Raises ValueError for an invalid domain or record type.
    """
    name = validate_domain(domain)
    if name is None:
        raise ValueError(f"Invalid domain: {domain!r}")
    rtype = validate_qtype(qtype)
    if rtype is None:
        raise ValueError(f"Invalid record type: {qtype!r}")

    request = DNSRecord.question(name, rtype)
    start = time.monotonic()
    try:
        raw = resolve_plain(request.pack(), server, port, timeout)
        response = DNSRecord.parse(raw)
    except (socket.timeout, OSError, DNSError) as e:
        elapsed = int((time.monotonic() - start) * 1000)
        logger.debug("Query %s %s via %s failed: %s", name, rtype, server, e)
        return {
            "domain": name,
            "type": rtype,
            "status": "TIMEOUT" if isinstance(e, socket.timeout) else "ERROR",
            "answers": [],
            "responseTime": elapsed,
            "server": server,
            "flags": [],
            "blocked": False,
            "error": str(e) or e.__class__.__name__,
        }
    elapsed = int((time.monotonic() - start) * 1000)

    status = RCODE.get(response.header.rcode, str(response.header.rcode))
    answers = [
        {
            "name": str(rr.rname),
            "type": QTYPE.get(rr.rtype, str(rr.rtype)),
            "ttl": rr.ttl,
            "data": str(rr.rdata),
        }
        for rr in response.rr
    ]
    flags = [f for f in _HEADER_FLAGS if getattr(response.header, f)]
    return {
        "domain": name,
        "type": rtype,
        "status": status,
        "answers": answers,
        "responseTime": elapsed,
        "server": server,
        "flags": flags,
        "blocked": status in BLOCK_SIGNATURES,
    }


def _probe_one(server: str, probe_domain: str, timeout: float) -> dict:
    request = DNSRecord.question(probe_domain, "A").pack()
    start = time.monotonic()
    try:
        raw = resolve_plain(request, server, timeout=timeout)
        DNSRecord.parse(raw)
    except (OSError, DNSError) as e:
        logger.debug("Upstream %s did not answer: %s", server, e)
        return {"server": server, "latency": None, "status": "timeout"}
    return {
        "server": server,
        "latency": int((time.monotonic() - start) * 1000),
        "status": "ok",
    }


def ping_upstreams(servers: list[str], probe_domain: str = "google.com", timeout: float = 3.0) -> list[dict]:
    """Probe every upstream concurrently; results keep the input order."""
    if not servers:
        return []
    with ThreadPoolExecutor(max_workers=len(servers)) as pool:
        futures = [pool.submit(_probe_one, s, probe_domain, timeout) for s in servers]
        return [f.result() for f in futures]
