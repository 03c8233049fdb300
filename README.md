# portalgw

Building blocks for a captive-portal gateway running on a small Linux router.

## Modules

- `portalgw.util`
  - Runs shell commands through `/bin/sh` and returns their exit status: `execute` and `execute_argv`.
  - `ConnectivityTracker` guesses whether the internet and the auth server are reachable. It works from the `mark_online`, `mark_offline`, `mark_auth_online` and `mark_auth_offline` calls.
  - `resolve_host` resolves a host name to an IPv4 address.
  - `find_default_interface` and `get_ext_iface` find the default-route interface in `/proc/net/route`.
  - `get_status_text` renders a plain-text status report from a `StatusSnapshot` holding `Client` and `AuthServer` entries. `format_uptime` formats the uptime line.
- `portalgw.ping`
  - `Pinger` sends the heartbeat to the auth server. The request carries uptime, free memory and load average, read from a proc directory by `read_system_stats`.
  - `classify_reply` sorts the reply into `PingReply.PONG`, `TASK` or `UNKNOWN`. A `TASK` reply calls the `on_task` callback.
- `portalgw.retrieve`
  - `TaskRetriever` connects over TLS with a client certificate (`make_ssl_context`) and requests a task.
  - `parse_task_response` reads the JSON body. When `result` is `"OK"` and a task is present, the retriever confirms the task and runs its command.
- `portalgw.update` provides the nightly auto-update through `Updater`:
  - `run_forever` waits for the 02:00–05:59 window, then waits a further delay seeded from the text in the updater's `gw_mac` attribute.
  - `update` asks the update server for a `.bin` URL, with up to 3 attempts. It downloads the file with `wget`, then checks that incoming traffic is at most 10 KB/s.
  - It then installs the file with `opkg`, reboots, and hands the version taken from the file name to `on_version`.
  - Failures raise `UpdateError`.
- `portalgw.gateway` holds restart hand-off helpers:
  - `fetch_clients_from_parent` reads `CLIENT|key=value|...` lines from the parent's Unix socket. `parse_client_line` and `read_clients` turn them into dicts.
  - `append_restart_argv` adds `-x <pid>` to the arguments.
  - Other helpers: `resolve_started_time`, `wait_for_parent_exit`, `reap_children` and `termination_exit_code`.
- `portalgw.wdctl` is the control client for a running gateway: `WdctlClient` and the `wdctl` command.

## Installation

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## The `wdctl` command

```
wdctl [options] command [arguments]

options:
  -s <path>         Path to the control socket (default /tmp/wdctl.sock)
  -h                Print usage

commands:
  reset <mac|ip>    Reset the specified mac or ip connection
  status            Print the gateway's status report
  stop              Ask the gateway to stop
  restart           Ask the gateway to restart without disconnecting clients
  clean             Ask the gateway to clean up
```

The command exits with status 1 in these cases:

- a usage error;
- when the socket cannot be reached.

Examples:

```
wdctl status
wdctl -s /var/run/gw.sock reset 192.168.10.23
```

## Using the library

```python
from portalgw.wdctl import WdctlClient

client = WdctlClient("/tmp/wdctl.sock")
print(client.status())
was_active = client.reset("192.168.10.23")  # True, False, or ValueError on an odd reply
```

```python
from portalgw.update import get_update_ver

get_update_ver("http://updates.example.com/upload/fw-1.2.3.bin")  # "fw-1.2.3"
```

## What this package does not do

This package provides the parts listed above, not a complete gateway daemon. It does not include:

- the gateway's main loop;
- its captive-portal web server;
- firewall rule management;
- the control-socket server that `wdctl` talks to;
- reading the gateway configuration.

The socket connections used by `Pinger`, `Updater` and `TaskRetriever` are supplied by the caller as `connect` callables.