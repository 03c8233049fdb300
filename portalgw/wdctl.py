"""Command-line client that monitors and controls a running gateway over its control socket."""

from __future__ import annotations

import contextlib
import enum
import getopt
import logging
import socket
import sys
from dataclasses import dataclass
from typing import Optional, Sequence

log = logging.getLogger(__name__)

DEFAULT_SOCK = "/tmp/wdctl.sock"
READ_SIZE = 4096
REPLY_TERMINATOR = "\r\n\r\n"

_USAGE = (
    "Usage: wdctl [options] command [arguments]\n"
    "\n"
    "options:\n"
    "  -s <path>         Path to the socket\n"
    "  -h                Print usage\n"
    "\n"
    "commands:\n"
    "  reset [mac|ip]    Reset the specified mac or ip connection\n"
    "  status            Obtain the status of wifidog\n"
    "  stop              Stop the running wifidog\n"
    "  restart           Re-start the running wifidog (without disconnecting active users!)\n"
    "\n"
)


class Command(enum.Enum):
    """Commands the control client can send."""

    UNDEF = 0
    STATUS = 1
    STOP = 2
    KILL = 3
    RESTART = 4
    CLEAN = 5


_COMMAND_NAMES = {
    "status": Command.STATUS,
    "clean": Command.CLEAN,
    "stop": Command.STOP,
    "reset": Command.KILL,
    "restart": Command.RESTART,
}


@dataclass
class WdctlConfig:
    """Settings taken from the command line."""

    socket: str = DEFAULT_SOCK
    command: Command = Command.UNDEF
    param: Optional[str] = None


class UsageError(Exception):
    """The command line could not be used; the message, if any, says why."""


def usage() -> str:
    """The usage text."""
    return _USAGE


def parse_commandline(argv: Sequence[str]) -> WdctlConfig:
    """Parse the arguments (without the program name) into a WdctlConfig.

    Raises UsageError on -h, an unknown option, a missing or unknown command,
    or a reset without its target.
    """
    config = WdctlConfig()
    try:
        options, rest = getopt.gnu_getopt(list(argv), "s:h")
    except getopt.GetoptError as exc:
        raise UsageError(str(exc)) from exc
    for option, value in options:
        if option == "-h":
            raise UsageError("")
        if option == "-s" and value:
            config.socket = value
    if not rest:
        raise UsageError("")
    name = rest[0]
    command = _COMMAND_NAMES.get(name)
    if command is None:
        raise UsageError(f'Invalid command "{name}"')
    config.command = command
    if command is Command.KILL:
        if len(rest) < 2:
            raise UsageError("You must specify an IP or a Mac address to reset")
        config.param = rest[1]
    return config


def send_request(sock: socket.socket, request: str) -> int:
    """Write the whole request to ``sock``; return the number of bytes written."""
    data = request.encode("latin-1", errors="replace")
    sock.sendall(data)
    return len(data)


class WdctlClient:
    """Talks to the gateway's control socket, one connection per command."""

    def __init__(self, socket_path: str = DEFAULT_SOCK):
        self.socket_path = socket_path

    def _exchange(self, request: str, limit: Optional[int] = None) -> str:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self.socket_path)
            send_request(sock, request)
            chunks = []
            total = 0
            while limit is None or total < limit:
                size = READ_SIZE if limit is None else min(READ_SIZE, limit - total)
                data = sock.recv(size)
                if not data:
                    break
                chunks.append(data)
                total += len(data)
            with contextlib.suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
        finally:
            sock.close()
        return b"".join(chunks).decode("latin-1")

    def _simple(self, name: str) -> str:
        return self._exchange(name + REPLY_TERMINATOR)

    def status(self) -> str:
        """The gateway's status report."""
        return self._simple("status")

    def stop(self) -> str:
        """Ask the gateway to stop; return its reply."""
        return self._simple("stop")

    def clean(self) -> str:
        """Ask the gateway to clean up; return its reply."""
        return self._simple("clean")

    def restart(self) -> str:
        """Ask the gateway to restart without dropping clients; return its reply."""
        return self._simple("restart")

    def reset(self, param: str) -> bool:
        """Reset the connection of a MAC or IP address.

        Returns True if it was reset, False if it was not active.
        Raises ValueError on any other reply.
        """
        reply = self._exchange(f"reset {param}{REPLY_TERMINATOR}", limit=READ_SIZE)
        if reply == "Yes":
            return True
        if reply == "No":
            return False
        raise ValueError(f"abnormal reply: {reply!r}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the control client; return the exit status."""
    if argv is None:
        argv = sys.argv[1:]
    try:
        config = parse_commandline(argv)
    except UsageError as exc:
        if str(exc):
            print(f"wdctl: Error: {exc}", file=sys.stderr)
        sys.stdout.write(usage())
        return 1

    client = WdctlClient(config.socket)
    try:
        if config.command is Command.KILL:
            try:
                was_active = client.reset(config.param or "")
            except ValueError:
                print("wdctl: Error: WiFiDog sent an abnormal reply.", file=sys.stderr)
            else:
                if was_active:
                    print(f"Connection {config.param} successfully reset.")
                else:
                    print(f"Connection {config.param} was not active.")
            return 0
        actions = {
            Command.STATUS: client.status,
            Command.STOP: client.stop,
            Command.CLEAN: client.clean,
            Command.RESTART: client.restart,
        }
        action = actions.get(config.command)
        if action is None:
            print("Oops", file=sys.stderr)
            return 1
        sys.stdout.write(action())
    except (FileNotFoundError, ConnectionError) as exc:
        print(f"wdctl: wifidog probably not started (Error: {exc})", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"Write to wifidog failed: {exc}", file=sys.stderr)
        return 1
    return 0