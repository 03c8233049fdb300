"""Heartbeat to the authentication server, so it knows the gateway is up."""

from __future__ import annotations

import enum
import logging
import os
import re
import socket
import time
from dataclasses import dataclass
from typing import Callable, Optional

log = logging.getLogger(__name__)

MAX_BUF = 4096
MINIMUM_STARTED_TIME = 1041379200  # 2003-01-01
RESPONSE_TIMEOUT = 30
WAN_IP = "192.168.10.1"
WAN_PROTO = "static"
VERSION = "1.0"
PROC_DIR = "/proc"


@dataclass
class SystemStats:
    """Uptime, free memory and load average of the gateway."""

    uptime: int = 0
    memfree: int = 0
    load: float = 0.0


class PingReply(enum.Enum):
    """What the auth server answered to a heartbeat."""

    PONG = "pong"
    TASK = "task"
    UNKNOWN = "unknown"


@dataclass
class PingTarget:
    """The auth server the heartbeat goes to."""

    hostname: str
    path: str
    ping_script_path_fragment: str


def _first_token(path: str) -> Optional[str]:
    try:
        with open(path, encoding="ascii", errors="replace") as fh:
            tokens = fh.read().split()
    except OSError:
        return None
    return tokens[0] if tokens else None


def read_uptime(path: str = os.path.join(PROC_DIR, "uptime")) -> int:
    """Whole seconds of system uptime, or 0 when unavailable."""
    token = _first_token(path)
    if token is None:
        return 0
    match = re.match(r"\d+", token)
    if match is None:
        log.critical("Failed to read uptime")
        return 0
    return int(match.group())


def read_memfree(path: str = os.path.join(PROC_DIR, "meminfo")) -> int:
    """The MemFree figure of a meminfo file, or 0 when absent."""
    try:
        with open(path, encoding="ascii", errors="replace") as fh:
            for line in fh:
                if not line.startswith("MemFree:"):
                    continue
                fields = line[len("MemFree:"):].split()
                if fields and fields[0].isdigit():
                    return int(fields[0])
    except OSError:
        pass
    return 0


def read_loadavg(path: str = os.path.join(PROC_DIR, "loadavg")) -> float:
    """The one-minute load average, or 0.0 when unavailable."""
    token = _first_token(path)
    if token is None:
        return 0.0
    try:
        return float(token)
    except ValueError:
        log.critical("Failed to read loadavg")
        return 0.0


def read_system_stats(proc_dir: str = PROC_DIR) -> SystemStats:
    """Collect uptime, free memory and load from a proc directory."""
    return SystemStats(
        uptime=read_uptime(os.path.join(proc_dir, "uptime")),
        memfree=read_memfree(os.path.join(proc_dir, "meminfo")),
        load=read_loadavg(os.path.join(proc_dir, "loadavg")),
    )


def build_ping_request(
    target: PingTarget,
    gw_id: str,
    dev_id: str,
    stats: SystemStats,
    uptime: int,
    ssid: str,
    version: str = VERSION,
) -> str:
    """Build the heartbeat HTTP request."""
    request = (
        f"GET {target.path}{target.ping_script_path_fragment}"
        f"gw_id={gw_id}&dev_id={dev_id}&wan_ip={WAN_IP}&wan_proto={WAN_PROTO}"
        f"&sys_uptime={stats.uptime}&sys_memfree={stats.memfree}"
        f"&sys_load={stats.load:.2f}&uptime={uptime}&ssid={ssid}"
        "&hard_ver=1&soft_ver=1 HTTP/1.0\r\n"
        f"User-Agent: WiFiDog {version}\r\n"
        f"Host: {target.hostname}\r\n"
        "\r\n"
    )
    return request[: MAX_BUF - 2]


def read_response(sock: socket.socket, timeout: float = RESPONSE_TIMEOUT) -> str:
    """Read until the peer closes, at most MAX_BUF-1 bytes.

    Raises TimeoutError when nothing arrives within ``timeout`` seconds.
    """
    sock.settimeout(timeout)
    chunks = []
    total = 0
    while total < MAX_BUF - 1:
        data = sock.recv(MAX_BUF - 1 - total)
        if not data:
            break
        chunks.append(data)
        total += len(data)
        log.debug("Read %d bytes, total now %d", len(data), total)
    log.debug("Done reading reply, total %d bytes", total)
    return b"".join(chunks).decode("latin-1")


def classify_reply(response: str) -> PingReply:
    """Tell a Pong from a Task from anything else."""
    if "Pong" in response:
        return PingReply.PONG
    if "Task" in response:
        return PingReply.TASK
    return PingReply.UNKNOWN


class Pinger:
    """Sends heartbeats to the auth server and reacts to its replies."""

    def __init__(
        self,
        target: PingTarget,
        connect: Callable[[], socket.socket],
        gw_id: str,
        dev_id: str,
        ssid: str,
        started_time: float,
        on_task: Optional[Callable[[], object]] = None,
        proc_dir: str = PROC_DIR,
        clock: Callable[[], float] = time.time,
    ):
        self.target = target
        self.connect = connect
        self.gw_id = gw_id
        self.dev_id = dev_id
        self.ssid = ssid
        self.started_time = started_time
        self.on_task = on_task
        self.proc_dir = proc_dir
        self.clock = clock
        self.version = VERSION

    def ping(self) -> Optional[PingReply]:
        """Send one heartbeat; return the kind of reply, or None if it failed."""
        try:
            sock = self.connect()
        except OSError as exc:
            log.debug("No auth server reachable: %s", exc)
            return None
        try:
            stats = read_system_stats(self.proc_dir)
            uptime = int(self.clock() - self.started_time)
            request = build_ping_request(
                self.target, self.gw_id, self.dev_id, stats, uptime, self.ssid, self.version
            )
            log.debug("HTTP Request to Server: [%s]", request)
            sock.sendall(request.encode("latin-1", errors="replace"))
            response = read_response(sock)
        except OSError as exc:
            log.error("Error reading data from auth server: %s", exc)
            return None
        finally:
            sock.close()
        log.debug("HTTP Response from Server: [%s]", response)
        reply = classify_reply(response)
        if reply is PingReply.PONG:
            log.debug("Auth Server Says: Pong")
        elif reply is PingReply.TASK:
            log.debug("Auth Server Says Task")
            if self.on_task is not None:
                self.on_task()
        else:
            log.warning("Auth server did NOT say pong!")
        return reply

    def run_forever(self, interval: float) -> None:
        """Ping now and then every ``interval`` seconds."""
        while True:
            self.ping()
            time.sleep(interval)