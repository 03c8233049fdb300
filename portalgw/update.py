"""Automatic firmware update: fetch the update URL, download, install and reboot."""

from __future__ import annotations

import logging
import os
import socket
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

from portalgw.util import execute

log = logging.getLogger(__name__)

MAX_BUF = 4096
DELAY_TIME = 1200
INTERVAL_TIME = 300
UPDATE_FILE = "/tmp/ctbri.bin"
VER_LENGTH = 20
NET_DEV_PATH = "/proc/net/dev"
UPDATE_URL_PREFIX = "http://apupgrade.51awifi.com/upload"
MAX_ATTEMPTS = 3
BUSY_RATE_KBPS = 10
WINDOW_START_HOUR = 2
WINDOW_END_HOUR = 5

MODEL = "HG261GS"
HARDWARE_VERSION = "HS.V2.0"
APPLY_ID = "1289820708"
REQUEST_MD5 = "a8381eb16324fc69647a19aaeda7b406"


class UpdateError(Exception):
    """An update attempt failed."""


@dataclass
class UpdateServer:
    """Where update requests are sent."""

    hostname: str
    path: str
    update_script_path_fragment: str


def _now(now: Optional[datetime]) -> datetime:
    return datetime.now() if now is None else now


def in_update_time_period(delay_time: float = 0, now: Optional[datetime] = None) -> bool:
    """Tell whether ``now`` plus ``delay_time`` seconds falls between 2:00 and 5:59."""
    moment = _now(now) + timedelta(seconds=delay_time)
    if WINDOW_START_HOUR <= moment.hour <= WINDOW_END_HOUR:
        return True
    log.debug("Current time is not in the period 2:00 - 5:00")
    return False


def seconds_until_next_window(now: Optional[datetime] = None) -> int:
    """Whole hours, in seconds, from the current hour until 2 o'clock."""
    hours = (24 + WINDOW_START_HOUR - _now(now).hour) % 24
    return hours * 3600


def delay_to_next_day(
    sleep: Callable[[float], object] = time.sleep, now: Optional[datetime] = None
) -> int:
    """Sleep until the next 2 o'clock; return the seconds slept."""
    seconds = seconds_until_next_window(now)
    sleep(seconds)
    return seconds


def _c_rand(seed: int) -> Iterator[int]:
    """Yield the values the C library's ``rand()`` gives after ``srand(seed)``."""
    seed &= 0xFFFFFFFF
    if seed == 0:
        seed = 1
    word = seed - (1 << 32) if seed >= 1 << 31 else seed
    state = [seed]
    for _ in range(1, 31):
        hi = abs(word) // 127773 * (1 if word >= 0 else -1)
        lo = word - hi * 127773
        word = 16807 * lo - 2836 * hi
        if word < 0:
            word += 2147483647
        state.append(word & 0xFFFFFFFF)
    state.extend(state[i - 31] for i in range(31, 34))
    i = 34
    while True:
        state.append((state[i - 31] + state[i - 3]) & 0xFFFFFFFF)
        if i >= 344:
            yield state[i] >> 1
        i += 1


def random_delay_time(mac: str) -> int:
    """Pseudo-random delay in [0, 3600) seconds seeded by the last two MAC characters."""
    if len(mac) < 2:
        raise ValueError("MAC address needs at least two characters")
    seed = int(f"{ord(mac[-2])}{ord(mac[-1])}")
    return next(_c_rand(seed)) % 3600


def build_update_request(
    server: UpdateServer, dev_id: str, version: str, supplier: str, postcode: str
) -> str:
    """Build the HTTP request asking the update server for an update URL."""
    request = (
        f"GET {server.path}{server.update_script_path_fragment}"
        f"devid={dev_id}&version={version}&model={MODEL}&HDversion={HARDWARE_VERSION}"
        f"&supplier={supplier}&city={postcode}&applyid={APPLY_ID}&rdMD5={REQUEST_MD5}"
        " HTTP/1.0\r\n"
        "User-Agent: SmartWiFi 1.1 \r\n"
        f"Host: {server.hostname} \r\n"
        "\r\n"
    )
    return request[: MAX_BUF - 2]


def send_request(sock: socket.socket, request: str) -> str:
    """Send ``request`` and read the reply until the peer closes (at most MAX_BUF-1 bytes)."""
    chunks = []
    total = 0
    try:
        sock.sendall(request.encode("latin-1", errors="replace"))
        log.debug("Reading response")
        while total < MAX_BUF - 1:
            data = sock.recv(MAX_BUF - 1 - total)
            if not data:
                break
            chunks.append(data)
            total += len(data)
            log.debug("Read %d bytes, total now %d", len(data), total)
    except OSError as exc:
        raise UpdateError(f"error reading from update server: {exc}") from exc
    log.debug("Done reading reply, total %d bytes", total)
    return b"".join(chunks).decode("latin-1")


def find_update_url(response: str) -> Optional[str]:
    """Return the update file URL and everything after it, or None."""
    index = response.find(UPDATE_URL_PREFIX)
    return None if index < 0 else response[index:]


def get_update_ver(update_url: str) -> str:
    """Take the version from the update file name: its last path part minus the suffix."""
    name = update_url[1:].rpartition("/")[2]
    version = name[:-4] if len(name) >= 4 else ""
    log.debug("Update version is: %s", version)
    return version


def parse_received_bytes(dev_text: str, interface: str) -> int:
    """Return the received-bytes counter of ``interface`` in network-device text, or 0."""
    label = f"{interface}:"
    for line in dev_text.splitlines():
        stripped = line.lstrip()
        if not stripped.startswith(label):
            continue
        fields = stripped[len(label):].split()
        if fields and fields[0].isdigit():
            return int(fields[0])
    return 0


def get_network_traffic(interface: str, path: str = NET_DEV_PATH) -> int:
    """Read the bytes received so far on ``interface``; 0 when unavailable."""
    try:
        with open(path, encoding="ascii", errors="replace") as fh:
            text = fh.read()
    except OSError:
        return 0
    traffic = parse_received_bytes(text, interface)
    log.debug("Received bytes on %s: %d", interface, traffic)
    return traffic


def check_network_traffic(
    read_traffic: Callable[[], int],
    interval_time: float = INTERVAL_TIME,
    delay_time: float = DELAY_TIME,
    sleep: Callable[[float], object] = time.sleep,
) -> int:
    """Return the incoming rate in KB/s once it is at most 10 KB/s.

    The rate is measured up to three times, waiting ``delay_time`` after each busy
    measurement; UpdateError is raised when the network stays busy.
    """
    for _ in range(MAX_ATTEMPTS):
        before = read_traffic()
        sleep(interval_time)
        after = read_traffic()
        rate = int(((after - before) % (1 << 64)) // interval_time) // 1024
        log.debug("Network traffic now is: %d KB/s", rate)
        if rate <= BUSY_RATE_KBPS:
            return rate
        sleep(delay_time)
    raise UpdateError("network traffic stayed above 10 KB/s for 3 checks")


def retrieve_update_file(
    url: str, update_file: str = UPDATE_FILE, run: Callable[[str], int] = execute
) -> None:
    """Download ``url`` into ``update_file``, removing any previous copy first."""
    if os.path.exists(update_file):
        rm_cmd = f"rm {update_file}"
        if run(rm_cmd) == 0:
            log.debug("Removed old update file: %s", rm_cmd)
        else:
            log.debug("Could not remove old update file")
    cmd = f"wget -c -O {update_file} {url}"
    if run(cmd) != 0:
        raise UpdateError(f"retrieving update file failed: {cmd}")
    log.debug("Retrieved update file: [%s]", cmd)


def do_update(update_file: str = UPDATE_FILE, run: Callable[[str], int] = execute) -> None:
    """Install the update package and reboot."""
    cmd = f"opkg install --force-overwrite {update_file}"
    if run(cmd) != 0:
        raise UpdateError(f"update command failed: {cmd}")
    if run("reboot") != 0:
        raise UpdateError("reboot command failed")


class Updater:
    """Runs the daily update procedure against an update server."""

    def __init__(
        self,
        server: UpdateServer,
        connect: Callable[[], socket.socket],
        dev_id: str,
        interface: str,
        version: str,
        supplier: str,
        postcode: str,
        on_version: Callable[[str], object],
        run: Callable[[str], int] = execute,
        sleep: Callable[[float], object] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.server = server
        self.connect = connect
        self.dev_id = dev_id
        self.interface = interface
        self.version = version
        self.supplier = supplier
        self.postcode = postcode
        self.on_version = on_version
        self.run = run
        self.sleep = sleep
        self.clock = clock
        self.update_file = UPDATE_FILE
        self.dev_path = NET_DEV_PATH
        # Text whose last two characters seed the random start delay (the gateway MAC).
        self.gw_mac = dev_id

    def _fetch_update_url(self, request: str) -> str:
        for _ in range(MAX_ATTEMPTS):
            try:
                sock = self.connect()
            except OSError as exc:
                raise UpdateError(f"cannot connect to update server: {exc}") from exc
            with sock:
                try:
                    response = send_request(sock, request)
                except UpdateError as exc:
                    log.error("%s", exc)
                    response = ""
            if ".bin" in response:
                url = find_update_url(response)
                if url is None:
                    raise UpdateError("reply names no update file URL")
                return url
            if not in_update_time_period(DELAY_TIME, self.clock()):
                raise UpdateError("no update URL and the update window is closing")
            self.sleep(DELAY_TIME)
        raise UpdateError("no update URL after 3 attempts")

    def update(self) -> str:
        """Run one update; return the installed version or raise UpdateError."""
        log.debug("Entering main procedure of update")
        request = build_update_request(
            self.server, self.dev_id, self.version, self.supplier, self.postcode
        )
        log.debug("HTTP Request to Server: [%s]", request)
        url = self._fetch_update_url(request)
        log.debug("Update url is: %s", url)
        retrieve_update_file(url, self.update_file, self.run)
        check_network_traffic(
            lambda: get_network_traffic(self.interface, self.dev_path),
            sleep=self.sleep,
        )
        do_update(self.update_file, self.run)
        new_version = get_update_ver(url)
        if not new_version:
            raise UpdateError("could not determine the update version")
        self.on_version(new_version)
        return new_version

    def run_forever(self) -> None:
        """Try an update once a day inside the 2:00 - 5:00 window."""
        while True:
            if not in_update_time_period(0, self.clock()):
                log.debug("Delay update procedure to next day")
                delay_to_next_day(self.sleep, self.clock())
                continue
            delay = random_delay_time(self.gw_mac)
            log.debug("Update procedure will execute after %d seconds", delay)
            self.sleep(delay)
            try:
                version = self.update()
            except UpdateError as exc:
                log.debug("Update failed: %s", exc)
            else:
                log.debug("Updated successfully to %s at %s", version, self.clock())
            delay_to_next_day(self.sleep, self.clock())