"""Compile user filtering intent into Unbound ``local-zone`` directives."""

import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from dnsbridge.resolver import UnboundControl

logger = logging.getLogger("dnsbridge.rules")

ZONE_ACTION = "always_refuse"
_DOMAIN_RE = re.compile(r"^[a-z0-9_]([a-z0-9_.\-]*[a-z0-9])?$")


class RuleBundleError(ValueError):
    """Raised when a rule bundle does not have the expected shape."""


@dataclass
class BlockRule:
    domain: str
    enabled: bool = True
    category: str | None = None


@dataclass
class WhitelistEntry:
    domain: str
    enabled: bool = True


@dataclass
class CategorySet:
    name: str
    enabled: bool = True
    domains: list[str] = field(default_factory=list)


@dataclass
class RuleBundle:
    blacklist: list[BlockRule] = field(default_factory=list)
    whitelist: list[WhitelistEntry] = field(default_factory=list)
    categories: list[CategorySet] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "RuleBundle":
        if not isinstance(data, dict):
            raise RuleBundleError("Rule bundle must be a JSON object")
        try:
            blacklist = [
                BlockRule(
                    domain=str(r["domain"]),
                    enabled=bool(r.get("enabled", True)),
                    category=r.get("category"),
                )
                for r in _as_list(data, "blacklist")
            ]
            whitelist = [
                WhitelistEntry(domain=str(r["domain"]), enabled=bool(r.get("enabled", True)))
                for r in _as_list(data, "whitelist")
            ]
            categories = [
                CategorySet(
                    name=str(c.get("name", "")),
                    enabled=bool(c.get("enabled", True)),
                    domains=[str(d) for d in c.get("domains") or []],
                )
                for c in _as_list(data, "categories")
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise RuleBundleError(f"Malformed rule entry: {e}") from e
        return cls(blacklist=blacklist, whitelist=whitelist, categories=categories)


def _as_list(data: dict, key: str) -> list:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise RuleBundleError(f"'{key}' must be a list")
    return value


def normalize_domain(pattern: str) -> str:
    """Strip one leading ``*.`` wildcard marker and the root dot, then lowercase."""
    pattern = pattern.strip()
    if pattern.startswith("*."):
        pattern = pattern[2:]
    return pattern.rstrip(".").lower()


def compile_rules(bundle: RuleBundle) -> tuple[set[str], list[str]]:
    """Merge blacklist and enabled categories, minus the whitelist.

    Returns (blocked_domains, rejected_patterns). Patterns that are not
    valid domain names are rejected rather than written into the
    resolver config.
    """
    allowed = {normalize_domain(w.domain) for w in bundle.whitelist if w.enabled}

    candidates: list[str] = [r.domain for r in bundle.blacklist if r.enabled]
    for category in bundle.categories:
        if category.enabled:
            candidates.extend(category.domains)

    blocked: set[str] = set()
    rejected: list[str] = []
    for pattern in candidates:
        domain = normalize_domain(pattern)
        if not domain:
            continue
        if domain in allowed:
            continue
        if not _DOMAIN_RE.match(domain):
            rejected.append(pattern)
            continue
        blocked.add(domain)
    return blocked, rejected


def render_rule_file(domains: set[str], generated_at: datetime | None = None) -> str:
    generated_at = generated_at or datetime.now(timezone.utc)
    lines = [
        "# dnsbridge managed rules - do not edit manually",
        f"# Generated: {generated_at.strftime('%Y-%m-%dT%H:%M:%SZ')}",
        "",
    ]
    for domain in sorted(domains):
        lines.append(f'local-zone: "{domain}" {ZONE_ACTION}')
    return "\n".join(lines) + "\n"


def _atomic_write_text(path: Path, content: str) -> None:
    """Write via a temp file in the same directory, then rename over."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)


class RuleCompiler:
    """Writes the managed directive file and hot-reloads the resolver.

    Applies are serialized so two concurrent bundles never interleave
    their writes or reloads.
    """

    def __init__(self, rules_file: Path, control: UnboundControl) -> None:
        self.rules_file = Path(rules_file)
        self.control = control
        self._lock = threading.Lock()

    def apply(self, bundle: RuleBundle) -> dict:
        blocked, rejected = compile_rules(bundle)
        if rejected:
            logger.warning("Skipping %d invalid domain patterns: %s", len(rejected), rejected[:5])
        count = len(blocked)

        with self._lock:
            try:
                _atomic_write_text(self.rules_file, render_rule_file(blocked))
            except OSError as e:
                logger.warning("Failed to write %s: %s", self.rules_file, e)
                return {"ok": False, "message": f"Rules error: {e}"}

            result = self.control.reload()
            if not result.ok:
                logger.warning(
                    "Rules written (%d domains) but reload failed: %s",
                    count, result.error_message,
                )
                return {
                    "ok": False,
                    "message": (
                        f"Rules written ({count} domains) but reload failed: "
                        f"{result.error_message}"
                    ),
                }

        logger.info("Applied %d blocked domains to %s", count, self.rules_file)
        message = f"Applied {count} blocked domains, Unbound reloaded"
        if rejected:
            message += f" ({len(rejected)} invalid patterns skipped)"
        return {"ok": True, "message": message}
