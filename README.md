# hadaemon

The core parts of a high-availability cluster daemon for Linux. It needs nothing outside
the standard library.

## Modules

- `hadaemon.halog`: the daemon's private log.
  - `HaLog(path, use_syslog)` appends lines to a file. Each line starts with a timestamp
    and a priority, for example `Jan 05 12:00:00 UTC 2024 [info] `. Messages go to syslog
    as well when `use_syslog` is true.
  - It has `open`, `reopen`, `close`, `message`, `binary` (a hex dump), `log_mask`,
    `status`, `fsync`, `thread_id` and `backtrace`.
  - `HaLog` is also a context manager.
  - The module also provides `Priority`, `format_header` and `hex_dump`.
- `hadaemon.hostweight`: the host-weight table.
  - `HostWeights` holds up to 16 named classes, each weighing 0 to 65535.
  - `total()` returns the sum of the class weights plus the built-in `native` weight of 1.
  - `update(entries)` replaces the table and returns the changes as
    `(class, old, new)` tuples.
  - `reload(loader, state)` calls `loader()` for new entries. It updates `state.weight`
    when the total changes. It raises `HostWeightError` if loading fails or the entries
    are invalid.
- `hadaemon.lock_mgr`: a distributed lock kept in the shared state file.
  - Every host publishes a request flag and a set of grants (`LockEntry`, `StateFileView`).
  - A host holds the lock when it is online and every online host grants it. A lower
    index means a higher priority.
  - `LockManager` provides:
    - `request_lock(master_uuid)` and `cancel_lock()`;
    - the callbacks `state_file_updated(view)` and `liveset_updated(liveset)`;
    - `process_once()`, which the background thread run by `start()`/`stop()` also calls;
    - the queries `lock_holder`, `is_locked`, `is_online` and `ready_to_request`.
  - `initialize_lock_fields(view, my_index)` resets a state-file image.
- `hadaemon.fist`: `FistRegistry`, a fixed set of named fault-insertion points.
  - `enable` and `disable` raise `KeyError` for unknown names.
  - `is_on(name)` is never true for an unknown name.
- `hadaemon.protocol`: the binary format spoken by the administration scripts.
  - `Header` packs and unpacks the four 32-bit header fields.
  - `validate_request_header` checks a header and raises `ProtocolError` if it is invalid.
  - `ScriptType` and `SocketIndex` list the request types and the sockets.
  - `socket_index_for` gives the socket that serves a request type, and `socket_names`
    gives the names of the sockets.
  - Helpers: `pack_u32`, `unpack_u32`, `pack_buildid`, `pack_fist_request` and
    `unpack_fist_request`.
- `hadaemon.server`: `ScriptServer`, the script service.
  - It listens on one abstract-namespace Unix socket per `SocketIndex` and reads each
    request.
  - It passes the request body to the service registered for its type and writes the
    response back.
  - `build_dispatch_table` selects the services that each socket serves.
  - `excluded_hook`, if set, is called after a successful set-excluded response has been
    sent.
- `hadaemon.daemon`: `Daemon` handles the daemon's life cycle.
  - It takes a single-instance lock file, or raises `DaemonExists` if another process
    holds it.
  - It runs the components through phase 0 and then phase 1, and rolls back the started
    ones on failure.
  - It records signals and shuts the components down in reverse order.

## Installation

```
pip install .
```

For the tests:

```
pip install .[test]
pytest
```

## Running the daemon

```
hadaemon CONFIG_PATH [FIST_POINT ...]
```

The command takes the lock file `/var/run/xhad.lock` and writes its process id into it.
Exit codes:

| Code | Meaning |
| ---- | ------- |
| 3 | Another instance holds the lock file. |
| 4 | `CONFIG_PATH` is not a file. |
| 2 | No arguments were given. |
| 1 | Initialisation failed. |

Once running, the daemon:

- logs to `/var/log/xha.log`;
- enables the named fault points it knows (`sc.socket`, `sc.pthread`);
- serves three request types on the script sockets: `PID`, `GETLOGMASK` and `FIST`.

SIGTERM starts shutdown and SIGHUP reopens the log file.

## What the package does not do

- The daemon command only checks that the configuration file exists. It does not read it.
- There is no heartbeat and no state-file storage.
- There are no watchdog or fencing handlers, and no liveset query, master proposal,
  pool-state or exclusion services.
- `LockManager` needs a state-file store supplied by the caller.
- `HostWeights.reload` needs a loader supplied by the caller. The package does not read a
  weight file itself.

## Example

```python
from hadaemon.halog import HaLog, Priority
from hadaemon.hostweight import HostWeights

with HaLog("/tmp/ha.log", use_syslog=False) as log:
    log.message(Priority.INFO, "hello\n")
    weights = HostWeights(log)
    weights.update({"gpu": 5, "storage": 3})
    print(weights.total())  # 9: the built-in weight of 1 plus 5 and 3
```