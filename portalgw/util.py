"""Shell execution, connectivity tracking, interface detection and status text."""

from __future__ import annotations

import logging
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

log = logging.getLogger(__name__)

STATUS_BUF_SIZ = 16384
SHELL = "/bin/sh"
DEFAULT_ROUTE_PATH = "/proc/net/route"

_resolver_lock = threading.Lock()


def _exit_status(returncode: int) -> int:
    # A child killed by a signal carries no exit status; report it as 0.
    return returncode if returncode >= 0 else 0


def execute(cmd_line: str, quiet: bool = False) -> int:
    """Run ``cmd_line`` through the shell and return its exit status."""
    log.debug("Running shell command: %s", cmd_line)
    proc = subprocess.run(
        [SHELL, "-c", cmd_line],
        stderr=subprocess.DEVNULL if quiet else None,
        check=False,
    )
    log.debug("Shell command exited with %d", proc.returncode)
    return _exit_status(proc.returncode)


def execute_argv(cmd_line: str, cmd_argv: str, quiet: bool = False) -> int:
    """Run ``cmd_line`` through the shell with ``cmd_argv`` as its ``$0``."""
    log.debug("Running shell command: %s (%s)", cmd_line, cmd_argv)
    proc = subprocess.run(
        [SHELL, "-c", cmd_line, cmd_argv],
        stderr=subprocess.DEVNULL if quiet else None,
        check=False,
    )
    log.debug("Shell command exited with %d", proc.returncode)
    return _exit_status(proc.returncode)


class ConnectivityTracker:
    """Guesses whether the internet and the auth server are reachable."""

    def __init__(self, check_interval: int, clock: Callable[[], float] = time.time):
        self.check_interval = check_interval
        self._clock = clock
        self._last_online: Optional[float] = None
        self._last_offline: float = 0
        self._last_auth_online: Optional[float] = None
        self._last_auth_offline: float = 0

    def _log_change(self, label: str, before: bool, after: bool) -> None:
        if before != after:
            log.info("%s status became %s", label, "ON" if after else "OFF")

    def mark_online(self) -> None:
        """Record that an action over the WAN succeeded."""
        before = self.is_online()
        self._last_online = self._clock()
        self._log_change("ONLINE", before, self.is_online())

    def mark_offline(self) -> None:
        """Record that an action over the WAN failed; the auth server is offline too."""
        before = self.is_online()
        self._last_offline = self._clock()
        self._log_change("ONLINE", before, self.is_online())
        self.mark_auth_offline()

    def is_online(self) -> bool:
        if self._last_online is None:
            return False
        return (self._last_offline - self._last_online) < self.check_interval * 2

    def mark_auth_online(self) -> None:
        """Record that the auth server answered; this also means we are online."""
        before = self.is_auth_online()
        self._last_auth_online = self._clock()
        self._log_change("AUTH_ONLINE", before, self.is_auth_online())
        self.mark_online()

    def mark_auth_offline(self) -> None:
        """Record that talking to the auth server failed."""
        before = self.is_auth_online()
        self._last_auth_offline = self._clock()
        self._log_change("AUTH_ONLINE", before, self.is_auth_online())

    def is_auth_online(self) -> bool:
        if not self.is_online() or self._last_auth_online is None:
            return False
        return (
            self._last_auth_offline - self._last_auth_online
        ) < self.check_interval * 2


def resolve_host(name: str, tracker: Optional[ConnectivityTracker] = None) -> Optional[str]:
    """Resolve ``name`` to an IPv4 address string, or None if it cannot be resolved."""
    with _resolver_lock:
        try:
            address = socket.gethostbyname(name)
        except OSError:
            return None
    if tracker is not None:
        tracker.mark_online()
    return address


def find_default_interface(route_text: str) -> Optional[str]:
    """Return the interface of the default route in routing-table text, if any."""
    for line in route_text.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[1] == "00000000":
            return fields[0]
    return None


def get_ext_iface(
    route_path: str = DEFAULT_ROUTE_PATH,
    retries: int = 0,
    interval: float = 1,
) -> str:
    """Detect the external interface, retrying ``retries`` times (0 means forever).

    Raises LookupError when no default route is found within the retry limit.
    """
    attempt = 1
    while True:
        try:
            with open(route_path, encoding="ascii", errors="replace") as fh:
                device = find_default_interface(fh.read())
        except OSError:
            device = None
        if device is not None:
            log.info("Detected %s as the default interface after try %d", device, attempt)
            return device
        log.error(
            "Failed to detect the external interface after try %d. Retry limit: %d",
            attempt,
            retries,
        )
        time.sleep(interval)
        if retries != 0 and attempt > retries:
            break
        attempt += 1
    raise LookupError(
        f"failed to detect the external interface after {attempt} tries"
    )


@dataclass
class Client:
    """A connected client as shown in the status text."""

    ip: str
    mac: str
    token: str
    incoming: int = 0
    outgoing: int = 0


@dataclass
class AuthServer:
    """An authentication server and the address it last resolved to."""

    hostname: str
    last_ip: Optional[str] = None


@dataclass
class StatusSnapshot:
    """Everything the status text reports."""

    version: str
    uptime: int
    restart_orig_pid: Optional[int] = None
    online: bool = False
    auth_online: bool = False
    served_this_session: int = 0
    clients: Sequence[Client] = field(default_factory=list)
    trusted_macs: Sequence[str] = field(default_factory=list)
    auth_servers: Sequence[AuthServer] = field(default_factory=list)


def format_uptime(seconds: int) -> str:
    """Format a duration in seconds as ``<d>d <h>h <m>m <s>s``."""
    days, rest = divmod(int(seconds), 24 * 60 * 60)
    hours, rest = divmod(rest, 60 * 60)
    minutes, secs = divmod(rest, 60)
    return f"{days}d {hours}h {minutes}m {secs}s"


def get_status_text(snapshot: StatusSnapshot) -> str:
    """Build the human-readable status report."""
    online = "yes" if snapshot.online else "no"
    auth_online = "yes" if snapshot.auth_online else "no"
    parts = [
        "WiFiDog status\n\n",
        f"Version: {snapshot.version}\n",
        f"Uptime: {format_uptime(snapshot.uptime)}\n",
        "Has been restarted: ",
        f"yes (from PID {snapshot.restart_orig_pid})\n" if snapshot.restart_orig_pid else "no\n",
        f"Internet Connectivity: {online}\n",
        f"Auth server reachable: {auth_online}\n",
        f"Clients served this session: {snapshot.served_this_session}\n\n",
        f"{len(snapshot.clients)} clients connected.\n",
    ]
    for number, client in enumerate(snapshot.clients):
        parts.append(
            f"\nClient {number}\n"
            f"  IP: {client.ip} MAC: {client.mac}\n"
            f"  Token: {client.token}\n"
            f"  Downloaded: {client.incoming}\n"
            f"  Uploaded: {client.outgoing}\n"
        )
    if snapshot.trusted_macs:
        parts.append("\nTrusted MAC addresses:\n")
        parts.extend(f"  {mac}\n" for mac in snapshot.trusted_macs)
    parts.append("\nAuthentication servers:\n")
    for server in snapshot.auth_servers:
        last_ip = server.last_ip if server.last_ip is not None else "(null)"
        parts.append(f"  Host: {server.hostname} ({last_ip})\n")
    return "".join(parts)[: STATUS_BUF_SIZ - 1]