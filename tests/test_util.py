import socket
from unittest import mock

import pytest

from portalgw.util import (
    STATUS_BUF_SIZ,
    AuthServer,
    Client,
    ConnectivityTracker,
    StatusSnapshot,
    execute,
    execute_argv,
    find_default_interface,
    format_uptime,
    get_ext_iface,
    get_status_text,
    resolve_host,
)

ROUTE_TEXT = (
    "Iface\tDestination\tGateway \tFlags\tRefCnt\tUse\tMetric\tMask\t\tMTU\tWindow\tIRTT\n"
    "br-lan\t0A00A8C0\t00000000\t0001\t0\t0\t0\t00FFFFFF\t0\t0\t0\n"
    "eth1\t00000000\t0101A8C0\t0003\t0\t0\t0\t00000000\t0\t0\t0\n"
)


class FakeClock:
    def __init__(self, now=100):
        self.now = now

    def __call__(self):
        return self.now


def test_tracker_starts_offline():
    tracker = ConnectivityTracker(60, FakeClock())
    assert tracker.is_online() is False
    assert tracker.is_auth_online() is False


def test_mark_online_makes_online():
    tracker = ConnectivityTracker(60, FakeClock())
    tracker.mark_online()
    assert tracker.is_online() is True
    assert tracker.is_auth_online() is False


def test_offline_only_after_two_intervals():
    clock = FakeClock(100)
    tracker = ConnectivityTracker(60, clock)
    tracker.mark_online()
    clock.now = 200
    tracker.mark_offline()
    assert tracker.is_online() is True
    clock.now = 220
    tracker.mark_offline()
    assert tracker.is_online() is False


def test_mark_auth_online_implies_online():
    tracker = ConnectivityTracker(60, FakeClock())
    tracker.mark_auth_online()
    assert tracker.is_online() is True
    assert tracker.is_auth_online() is True


def test_auth_offline_after_two_intervals():
    clock = FakeClock(100)
    tracker = ConnectivityTracker(60, clock)
    tracker.mark_auth_online()
    clock.now = 300
    tracker.mark_auth_offline()
    assert tracker.is_online() is True
    assert tracker.is_auth_online() is False


def test_mark_offline_takes_auth_down():
    clock = FakeClock(100)
    tracker = ConnectivityTracker(60, clock)
    tracker.mark_auth_online()
    clock.now = 500
    tracker.mark_offline()
    assert tracker.is_online() is False
    assert tracker.is_auth_online() is False


def test_execute_exit_status():
    assert execute("true") == 0
    assert execute("exit 3", quiet=True) == 3


def test_execute_quiet_hides_nothing_of_status():
    assert execute("echo oops 1>&2; exit 1", quiet=True) == 1


def test_execute_argv_passes_dollar_zero():
    assert execute_argv('test "$0" = marker', "marker") == 0
    assert execute_argv('test "$0" = marker', "other") == 1


def test_resolve_host_literal_address_marks_online():
    tracker = ConnectivityTracker(60, FakeClock())
    assert resolve_host("127.0.0.1", tracker) == "127.0.0.1"
    assert tracker.is_online() is True


def test_resolve_host_failure_returns_none():
    tracker = ConnectivityTracker(60, FakeClock())
    with mock.patch("portalgw.util.socket.gethostbyname", side_effect=socket.gaierror):
        assert resolve_host("unresolvable.example.com", tracker) is None
    assert tracker.is_online() is False


def test_find_default_interface():
    assert find_default_interface(ROUTE_TEXT) == "eth1"


def test_find_default_interface_none():
    header_only = ROUTE_TEXT.splitlines()[0] + "\n" + ROUTE_TEXT.splitlines()[1]
    assert find_default_interface(header_only) is None
    assert find_default_interface("") is None


def test_get_ext_iface_reads_file(tmp_path):
    route = tmp_path / "route"
    route.write_text(ROUTE_TEXT)
    assert get_ext_iface(str(route), retries=1, interval=0) == "eth1"


def test_get_ext_iface_gives_up(tmp_path):
    route = tmp_path / "route"
    route.write_text(ROUTE_TEXT.splitlines()[0] + "\n")
    with pytest.raises(LookupError):
        get_ext_iface(str(route), retries=2, interval=0)


def test_format_uptime_zero():
    assert format_uptime(0) == "0d 0h 0m 0s"


def test_format_uptime_components_recombine():
    total = 3 * 86400 + 5 * 3600 + 7 * 60 + 9
    days, hours, minutes, secs = (int(p[:-1]) for p in format_uptime(total).split())
    assert days * 86400 + hours * 3600 + minutes * 60 + secs == total
    assert hours < 24 and minutes < 60 and secs < 60


def test_status_text_contents():
    snapshot = StatusSnapshot(
        version="1.0",
        uptime=0,
        restart_orig_pid=42,
        online=True,
        auth_online=False,
        served_this_session=7,
        clients=[Client("10.0.0.2", "00:00:5E:00:53:01", "token", 10, 20)],
        trusted_macs=["00:00:5E:00:53:02"],
        auth_servers=[AuthServer("auth.example.com", None)],
    )
    text = get_status_text(snapshot)
    assert text.startswith("WiFiDog status\n\nVersion: 1.0\n")
    assert "Has been restarted: yes (from PID 42)\n" in text
    assert "Internet Connectivity: yes\n" in text
    assert "Auth server reachable: no\n" in text
    assert "Clients served this session: 7\n\n" in text
    assert "1 clients connected.\n" in text
    assert "\nClient 0\n  IP: 10.0.0.2 MAC: 00:00:5E:00:53:01\n" in text
    assert "  Token: token\n  Downloaded: 10\n  Uploaded: 20\n" in text
    assert "\nTrusted MAC addresses:\n  00:00:5E:00:53:02\n" in text
    assert text.endswith("\nAuthentication servers:\n  Host: auth.example.com ((null))\n")


def test_status_text_without_restart_or_trusted():
    text = get_status_text(StatusSnapshot(version="1.0", uptime=0))
    assert "Has been restarted: no\n" in text
    assert "Trusted MAC addresses" not in text
    assert "0 clients connected.\n" in text


def test_status_text_is_bounded():
    clients = [Client("10.0.0.2", "mac", "token") for _ in range(500)]
    text = get_status_text(StatusSnapshot(version="1.0", uptime=0, clients=clients))
    assert len(text) == STATUS_BUF_SIZ - 1