"""Gateway start-up helpers: inheriting clients on restart, timing and signal housekeeping."""

from __future__ import annotations

import logging
import os
import re
import socket
import time
from typing import Callable, Iterable, Optional, Sequence

from portalgw.ping import MINIMUM_STARTED_TIME

log = logging.getLogger(__name__)

CLIENT_COMMAND = "CLIENT"
_RECV_SIZE = 4096
_LEADING_INT = re.compile(r"\s*[+-]?\d+")


def _atoi(text: str) -> int:
    """Leading integer of ``text``, 0 when there is none."""
    match = _LEADING_INT.match(text)
    return int(match.group()) if match else 0


def _new_client() -> dict:
    return {
        "ip": None,
        "mac": None,
        "token": None,
        "fw_connection_state": 0,
        "fd": 0,
        "incoming": 0,
        "outgoing": 0,
        "incoming_history": 0,
        "outgoing_history": 0,
        "last_updated": 0,
    }


def _assign(client: dict, key: str, value: str) -> None:
    if key in ("ip", "mac", "token"):
        client[key] = value
    elif key in ("fw_connection_state", "fd"):
        client[key] = _atoi(value)
    elif key == "counters_incoming":
        client["incoming_history"] = client["incoming"] = _atoi(value)
    elif key == "counters_outgoing":
        client["outgoing_history"] = client["outgoing"] = _atoi(value)
    elif key == "counters_last_updated":
        client["last_updated"] = _atoi(value)
    else:
        log.info("I don't know how to inherit key [%s] value [%s] from parent", key, value)


def parse_client_line(line: str) -> Optional[dict]:
    """Parse one ``CLIENT|key=value|...`` line sent by a restarting parent.

    Returns a dict describing the client, or None when the line is not a client.
    """
    line = line.removesuffix("\n")
    log.debug("Received from parent: [%s]", line)
    command, *pairs = line.split("|")
    if command != CLIENT_COMMAND:
        return None
    client = _new_client()
    for pair in pairs:
        parts = pair.split("=")
        if len(parts) < 2:
            continue
        _assign(client, parts[0], parts[1])
    return client


def read_clients(lines: Iterable[str]) -> list:
    """Parse every client line in ``lines``, keeping their order."""
    return [client for client in map(parse_client_line, lines) if client is not None]


def fetch_clients_from_parent(socket_path: str) -> list:
    """Download the client list from the parent over its internal socket.

    Returns an empty list when the parent cannot be reached.
    """
    log.info("Connecting to parent to download clients")
    chunks = []
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.connect(socket_path)
            log.info("Connected to parent.  Downloading clients")
            while True:
                data = sock.recv(_RECV_SIZE)
                if not data:
                    break
                chunks.append(data)
    except OSError as exc:
        log.error("Failed to connect to parent (%s) - client list not downloaded", exc)
        return []
    text = b"".join(chunks).replace(b"\0", b"\n").decode("latin-1")
    # Only lines ended by a terminator are complete entries.
    complete = text.split("\n")[:-1]
    clients = read_clients(complete)
    log.info("Client list downloaded successfully from parent")
    return clients


def append_restart_argv(argv: Sequence[str], pid: int) -> list:
    """Arguments for a restarted gateway: ``argv`` followed by ``-x <pid>``."""
    return [*argv, "-x", str(pid)]


def resolve_started_time(started_time: Optional[float], now: float) -> float:
    """Keep a plausible start time; otherwise (unset or clock skew) use ``now``."""
    if not started_time:
        log.info("Setting started_time")
        return now
    if started_time < MINIMUM_STARTED_TIME:
        log.warning("Detected possible clock skew - re-setting started_time")
        return now
    return started_time


def wait_for_parent_exit(pid: int, sleep: Callable[[float], object] = time.sleep) -> int:
    """Wait, one second at a time, until process ``pid`` is gone; return the waits made."""
    waits = 0
    while True:
        try:
            os.kill(pid, 0)
        except OSError:
            break
        log.info("Waiting for parent PID %d to die before continuing loading", pid)
        sleep(1)
        waits += 1
    log.info("Parent PID %d seems to be dead. Continuing loading.", pid)
    return waits


def reap_children() -> Optional[int]:
    """Reap one exited child without blocking.

    Returns its pid, 0 when children exist but none has exited, None when there are none.
    """
    try:
        pid, _ = os.waitpid(-1, os.WNOHANG)
    except ChildProcessError:
        log.debug("No child to reap")
        return None
    log.debug("Reaped child PID %d", pid)
    return pid


def termination_exit_code(signum: int) -> int:
    """Exit status after a termination: 1 for an internal failure (0), else 0."""
    log.info("Handler for termination caught signal %d", signum)
    if signum == 0:
        log.error("Terminating after an internal failure")
        code = 1
    else:
        log.info("Cleaning up and exiting")
        code = 0
    log.warning("Exiting with status %d", code)
    return code