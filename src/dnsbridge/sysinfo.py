"""Host telemetry snapshot for the ``/info`` endpoint.

Every probe is best-effort: a failing lookup leaves its field at a
neutral value instead of failing the whole snapshot.
"""

import ipaddress
import logging
import platform
import re
import socket
import time
from pathlib import Path

import httpx
import psutil

from dnsbridge.config import Config
from dnsbridge.resolver import CommandExecutor, UnboundControl

logger = logging.getLogger("dnsbridge.sysinfo")

DEFAULT_DNS_PORT = 53
PUBLIC_IP_TIMEOUT = 3.0

_PORT_RE = re.compile(r"^\s*port:\s*(\d+)", re.MULTILINE)
_VERSION_RE = re.compile(r"Version\s+(\S+)")
_GATEWAY_RE = re.compile(r"default via (\S+)")


def dns_port_from_conf(conf_path: Path) -> int:
    """First ``port:`` directive in the resolver config, or 53."""
    try:
        m = _PORT_RE.search(Path(conf_path).read_text())
    except OSError:
        return DEFAULT_DNS_PORT
    return int(m.group(1)) if m else DEFAULT_DNS_PORT


def resolver_version(executor: CommandExecutor, binary: str = "unbound") -> str:
    result = executor.run([binary, "-V"], timeout=3.0)
    m = _VERSION_RE.search(result.stdout or result.stderr)
    return m.group(1) if m else "unknown"


def default_gateway(executor: CommandExecutor) -> str:
    result = executor.run(["ip", "route", "show", "default"], timeout=3.0)
    if not result.ok:
        return ""
    m = _GATEWAY_RE.search(result.stdout)
    return m.group(1) if m else ""


def public_ip(url: str, timeout: float = PUBLIC_IP_TIMEOUT) -> str:
    try:
        resp = httpx.get(url, timeout=timeout)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.debug("Public IP lookup failed: %s", e)
        return ""
    return resp.text.strip()


def primary_interface() -> dict:
    """First non-loopback interface with an IPv4 address."""
    info = {"dnsInterface": "", "ipAddress": "", "netmask": "", "macAddress": ""}
    for name, addrs in psutil.net_if_addrs().items():
        if name == "lo":
            continue
        ipv4 = next((a for a in addrs if a.family == socket.AF_INET), None)
        if ipv4 is None or ipaddress.ip_address(ipv4.address).is_loopback:
            continue
        mac = next((a.address for a in addrs if a.family == psutil.AF_LINK), "")
        info.update(
            dnsInterface=name,
            ipAddress=ipv4.address,
            netmask=ipv4.netmask or "",
            macAddress=mac,
        )
        break
    return info


def network_throughput() -> tuple[float, float]:
    """Average (in, out) MB/s since boot across non-loopback interfaces."""
    uptime = max(time.time() - psutil.boot_time(), 1.0)
    received = sent = 0
    for name, counters in psutil.net_io_counters(pernic=True).items():
        if name == "lo":
            continue
        received += counters.bytes_recv
        sent += counters.bytes_sent
    mb = 1024 * 1024
    return round(received / uptime / mb, 3), round(sent / uptime / mb, 3)


def collect_info(config: Config, control: UnboundControl) -> dict:
    """Assemble the full ``/info`` payload."""
    executor = control.executor
    network_in, network_out = network_throughput()
    try:
        disk = psutil.disk_usage("/").percent
    except OSError:
        disk = 0.0
    info = {
        "status": control.status().value,
        "hostname": socket.gethostname(),
        "version": resolver_version(executor, config.unbound_binary),
        "resolver": "Unbound",
        "os": f"{platform.system()} {platform.release()}",
        "cpu": psutil.cpu_percent(interval=0.1),
        "memory": psutil.virtual_memory().percent,
        "disk": disk,
        "networkIn": network_in,
        "networkOut": network_out,
        "publicIp": public_ip(config.public_ip_url),
        "gateway": default_gateway(executor),
        "dnsPort": dns_port_from_conf(Path(config.unbound_conf)),
        "apiPort": config.api_port,
    }
    info.update(primary_interface())
    return info
