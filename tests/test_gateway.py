import os
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import threading
import time

import pytest

from portalgw.gateway import (
    append_restart_argv,
    fetch_clients_from_parent,
    parse_client_line,
    read_clients,
    reap_children,
    resolve_started_time,
    termination_exit_code,
    wait_for_parent_exit,
)
from portalgw.ping import MINIMUM_STARTED_TIME

FULL_LINE = (
    "CLIENT|ip=10.0.0.5|mac=02:00:00:00:00:01|token=token"
    "|fw_connection_state=1|fd=7|counters_incoming=100"
    "|counters_outgoing=200|counters_last_updated=1234"
)


def test_parse_full_client_line():
    client = parse_client_line(FULL_LINE)
    assert client["ip"] == "10.0.0.5"
    assert client["mac"] == "02:00:00:00:00:01"
    assert client["token"] == "token"
    assert client["fw_connection_state"] == 1
    assert client["fd"] == 7
    assert client["incoming"] == client["incoming_history"] == 100
    assert client["outgoing"] == client["outgoing_history"] == 200
    assert client["last_updated"] == 1234


def test_parse_non_client_line_is_none():
    assert parse_client_line("OTHER|ip=10.0.0.5") is None
    assert parse_client_line("") is None


def test_parse_ignores_unknown_and_valueless_keys():
    client = parse_client_line("CLIENT|bogus=1|ip|mac=02:00:00:00:00:02")
    assert client["ip"] is None
    assert client["mac"] == "02:00:00:00:00:02"
    assert "bogus" not in client


def test_parse_numeric_fields_use_leading_digits():
    client = parse_client_line("CLIENT|fd=12abc|counters_incoming=x")
    assert client["fd"] == 12
    assert client["incoming"] == 0


def test_parse_extra_equals_keeps_second_part():
    client = parse_client_line("CLIENT|token=a=b")
    assert client["token"] == "a"


def test_read_clients_keeps_order_and_skips_others():
    clients = read_clients(["CLIENT|ip=10.0.0.1", "NOISE", "CLIENT|ip=10.0.0.2\n"])
    assert [c["ip"] for c in clients] == ["10.0.0.1", "10.0.0.2"]


@pytest.fixture
def short_dir():
    path = tempfile.mkdtemp(prefix="gw")
    yield path
    shutil.rmtree(path, ignore_errors=True)


def _serve_once(path, payload):
    server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    server.bind(path)
    server.listen(1)

    def run():
        conn, _ = server.accept()
        with conn:
            conn.sendall(payload)
        server.close()

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


def test_fetch_clients_from_parent(short_dir):
    path = os.path.join(short_dir, "s")
    payload = (
        FULL_LINE + "\nCLIENT|ip=10.0.0.9\nCLIENT|ip=10.0.0.10"
    ).encode()
    thread = _serve_once(path, payload)
    clients = fetch_clients_from_parent(path)
    thread.join(5)
    # The last line has no terminator and is therefore incomplete.
    assert [c["ip"] for c in clients] == ["10.0.0.5", "10.0.0.9"]
    assert clients[0] == parse_client_line(FULL_LINE)


def test_fetch_clients_without_parent_is_empty(short_dir):
    assert fetch_clients_from_parent(os.path.join(short_dir, "missing")) == []


def test_append_restart_argv():
    argv = ["gateway", "-c", "conf"]
    result = append_restart_argv(argv, 4321)
    assert result == ["gateway", "-c", "conf", "-x", "4321"]
    assert argv == ["gateway", "-c", "conf"]


def test_resolve_started_time():
    now = MINIMUM_STARTED_TIME + 500
    assert resolve_started_time(None, now) == now
    assert resolve_started_time(0, now) == now
    assert resolve_started_time(MINIMUM_STARTED_TIME - 1, now) == now
    assert resolve_started_time(MINIMUM_STARTED_TIME + 10, now) == MINIMUM_STARTED_TIME + 10


def test_wait_for_parent_exit_waits_until_gone():
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    calls = []

    def sleep(seconds):
        calls.append(seconds)
        proc.kill()
        proc.wait()

    assert wait_for_parent_exit(proc.pid, sleep) == 1
    assert calls == [1]


def test_wait_for_dead_parent_does_not_sleep():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    assert wait_for_parent_exit(proc.pid, lambda s: pytest.fail("slept")) == 0


def test_reap_children_reaps_exited_child():
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    deadline = time.monotonic() + 10
    reaped = []
    while time.monotonic() < deadline:
        pid = reap_children()
        if pid:
            reaped.append(pid)
        if proc.pid in reaped or pid is None:
            break
        time.sleep(0.05)
    assert proc.pid in reaped


def test_termination_exit_code():
    assert termination_exit_code(0) == 1
    assert termination_exit_code(signal.SIGTERM) == 0
    assert termination_exit_code(signal.SIGINT) == 0