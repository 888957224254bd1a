# localdisks

Find the local block devices on a Linux node, decide which of them are free
to be used for storage, and keep a record of what was found.

The package calls `lsblk`, `blkid`, `find` and `udevadm` (through `stdbuf`),
so those tools must be on the `PATH` of the host it runs on. It has no
dependencies outside the standard library.

## Modules

- **`localdisks.diskutil`**: `list_block_devices` runs `lsblk --pairs` and
  returns `(devices, bad_rows)`, joining in filesystem types from
  `get_device_fs_map` (`blkid -s TYPE`). The text parsers are also available
  on their own as `parse_lsblk_output` and `parse_blkid_output`. Each
  `BlockDevice` offers `is_read_only()`, `is_rotational()`, `is_removable()`,
  `size_bytes()`, `has_children()`, `find_bind_mount()`, `dev_path()` and
  `path_by_id()`. `path_by_id()` picks a `/dev/disk/by-id/` link that resolves
  to the device, preferring `wwn`, then `scsi`, then `nvme` links, and raises
  `IDPathNotFoundError` when there is none. `ExclusiveFileLock` opens a device
  with `O_EXCL` and works as a context manager; `get_pv_creation_lock` takes
  that lock and lists existing symlinks to the device via `find -L
  -samefile`. `get_orphaned_symlinks` lists links in a directory that point to
  none of a given set of devices. Failures raise `DiskUtilError` (and
  `CommandError` for failed commands).
- **`localdisks.discovery`**: `DeviceDiscovery` leaves out read-only,
  suspended, partitioned and unsupported devices (supported types are `disk`,
  `part`, `lvm` and `mpath`), marks each remaining device `Available`,
  `NotAvailable` or `Unknown` with `get_device_status`, removes duplicates and
  writes the list into a `LocalVolumeDiscoveryResult` through a
  `DiscoveryApiClient`. Errors are raised as `DiscoveryError`.
- **`localdisks.results`**: the data types `DiscoveredDevice`,
  `DeviceStatus`, `LocalVolumeDiscoveryResult` and their enums,
  `NotFoundError`, the `DiscoveryApiClient` protocol,
  `new_discovery_result_instance`, and `truncate_node_name`, which replaces a
  node name by a 32-character hash when the formatted name would exceed 253
  characters.
- **`localdisks.udev`**: `match_udev_event` filters `udevadm monitor` lines;
  `udev_block_monitor` yields at most one add/remove event per period
  (5 seconds by default) so that a burst of changes causes a single rescan.
- **`localdisks.events`**: `DiskEvent`, `new_event` (warning),
  `new_success_event` (normal) and `EventReporter`, which passes each distinct
  event (by reason, type and disk) to its recorder only once.
- **`localdisks.metrics`**: labelled `Gauge` values, a `MetricsRegistry` that
  renders them in the Prometheus text format, setter functions such as
  `set_discovered_devices_metric`, and `MetricsServerBuilder`, which serves a
  registry over HTTP from a background thread.

## Examples

List devices:

```python
from localdisks.diskutil import list_block_devices

devices, bad_rows = list_block_devices([])
for device in devices:
    if not device.is_read_only():
        print(device.name, device.dev_path(), device.size_bytes())
```

Filter udev events:

```python
from localdisks.udev import match_udev_event

line = "KERNEL[1008.734088] add /devices/pci0000:00/virtio5/block/vdc (block)"
match_udev_event(line, ["(?i)add", "(?i)remove"], ["(?i)dm-[0-9]+"])  # True
```

Name a discovery result:

```python
from localdisks.results import truncate_node_name

truncate_node_name("discovery-result-%s", "k8s01")  # "discovery-result-k8s01"
```

Serve metrics:

```python
from localdisks.metrics import LVD_METRICS, MetricsServerBuilder, set_discovered_devices_metric

server = (
    MetricsServerBuilder()
    .with_port("8383")
    .with_path("metrics")
    .with_collectors(LVD_METRICS)
    .build()
)
set_discovered_devices_metric("node1", 3)
# GET http://localhost:8383/metrics now includes lso_discovery_disk_count
server.shutdown()
```

`build()` raises `OSError` if the port is already in use and `ValueError` if
a collector is registered twice.

## Running discovery

`DeviceDiscovery(api_client, local_volume_discovery, environ)` reads
`MY_NODE_NAME`, `WATCH_NAMESPACE`, `DISCOVERY_OBJECT_UID` and
`DISCOVERY_OBJECT_NAME` from `environ` (the process environment by default).
`ensure_discovery_result()` creates the node's result if the client reports
it missing; `discover_devices()` scans once and calls `update_status()` only
when the device list changed. `start()` does both, then rescans on udev
events and every five minutes until it receives `SIGTERM` (the handler is
only installed when `start()` runs in the main thread).

## What it does not do

- It ships no `DiscoveryApiClient` implementation: storing results and
  recording events is left to a client you supply that follows the protocol
  in `localdisks.results`.
- It has no command-line entry point; discovery is started from Python code.

## Tests

The test suite uses pytest and is installed with the `test` extra:

```
pip install -e .[test]
pytest
```