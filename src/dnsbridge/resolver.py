"""Command execution and the Unbound control interface.

Every external process the bridge starts goes through a
:class:`CommandExecutor`, which never raises: timeouts and missing
binaries come back as a failed :class:`CommandResult`. Tests substitute
a fake executor to make control-plane behaviour deterministic.
"""

import enum
import logging
import subprocess
from typing import NamedTuple, Sequence

logger = logging.getLogger("dnsbridge.resolver")

SUBPROCESS_TIMEOUT = 5.0  # seconds


class CommandResult(NamedTuple):
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error_message(self) -> str:
        """Best human-readable reason for a failed command."""
        detail = (self.stderr or self.stdout).strip()
        if detail:
            return detail.splitlines()[-1]
        return f"exit status {self.returncode}"


class CommandExecutor:
    """Runs external commands with an explicit timeout."""

    def run(self, argv: Sequence[str], timeout: float = SUBPROCESS_TIMEOUT) -> CommandResult:
        try:
            proc = subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Command timed out after %.1fs: %s", timeout, " ".join(argv))
            return CommandResult(-1, "", f"Command timed out after {timeout}s")
        except OSError as e:
            logger.debug("Command failed to start: %s: %s", " ".join(argv), e)
            return CommandResult(-1, "", str(e))
        return CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")


class ServiceStatus(str, enum.Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


_NOT_RUNNING_MARKERS = ("is not running", "connection refused", "no such file")


class UnboundControl:
    """Thin wrapper around ``unbound-control``.

    When a command fails and ``sudo_fallback`` is set, it is retried once
    through non-interactive sudo, since the control keys are usually only
    readable by root.
    """

    def __init__(
        self,
        executor: CommandExecutor | None = None,
        command: str = "unbound-control",
        timeout: float = SUBPROCESS_TIMEOUT,
        sudo_fallback: bool = True,
    ) -> None:
        self.executor = executor or CommandExecutor()
        self.command = command
        self.timeout = timeout
        self.sudo_fallback = sudo_fallback

    def run(self, *args: str) -> CommandResult:
        argv = [self.command, *args]
        result = self.executor.run(argv, timeout=self.timeout)
        if result.ok or not self.sudo_fallback:
            return result
        retry = self.executor.run(["sudo", "-n", *argv], timeout=self.timeout)
        if not retry.ok:
            logger.debug("%s failed (also via sudo): %s", " ".join(argv), retry.error_message)
        return retry

    def stats(self) -> CommandResult:
        return self.run("stats_noreset")

    def reload(self) -> CommandResult:
        return self.run("reload")

    def flush_cache(self) -> dict:
        result = self.run("flush_zone", ".")
        if not result.ok:
            logger.warning("Cache flush failed: %s", result.error_message)
            return {
                "ok": False,
                "message": (
                    f"flush_zone failed: {result.error_message}. Run: "
                    "sudo unbound-control-setup && sudo systemctl restart unbound"
                ),
            }
        logger.info("Resolver cache flushed")
        return {"ok": True, "message": "Cache flushed successfully"}

    def status(self) -> ServiceStatus:
        """Map ``unbound-control status`` onto running/stopped/unknown."""
        result = self.run("status")
        if result.ok:
            return ServiceStatus.RUNNING
        text = f"{result.stdout}\n{result.stderr}".lower()
        if result.returncode > 0 and any(m in text for m in _NOT_RUNNING_MARKERS):
            return ServiceStatus.STOPPED
        return ServiceStatus.UNKNOWN
