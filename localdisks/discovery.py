"""Discover the usable block devices on a node and publish them as a discovery result."""

from __future__ import annotations

import errno
import logging
import os
import queue
import signal
import threading
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from .diskutil import (
    STATE_SUSPENDED,
    BlockDevice,
    DiskUtilError,
    ExclusiveFileLock,
    list_block_devices,
)
from .events import (
    CREATED_DISCOVERY_RESULT_OBJECT,
    ERROR_CREATING_DISCOVERY_RESULT_OBJECT,
    ERROR_LISTING_BLOCK_DEVICES,
    ERROR_UPDATING_DISCOVERY_RESULT_OBJECT,
    UPDATED_DISCOVERED_DEVICE_LIST,
    DiskEvent,
    EventReporter,
    new_event,
    new_success_event,
)
from .metrics import set_discovered_devices_metric
from .results import (
    RESULT_NAME_FORMAT,
    DeviceMechanicalProperty,
    DeviceState,
    DeviceStatus,
    DiscoveredDevice,
    DiscoveredDeviceType,
    DiscoveryApiClient,
    NotFoundError,
    new_discovery_result_instance,
    truncate_node_name,
)
from .udev import UDEV_EVENT_PERIOD, udev_block_monitor

log = logging.getLogger(__name__)

LOCAL_VOLUME_DISCOVERY_COMPONENT = "auto-discover-devices"
PROBE_INTERVAL = 5 * 60.0
SUPPORTED_DEVICE_TYPES = frozenset({"disk", "part", "lvm", "mpath"})

_BIOS_BOOT_MARKERS = ("bios", "boot")
_POLL_INTERVAL = 1.0
_UDEV_CLOSED = object()


class DiscoveryError(Exception):
    """Raised when devices cannot be discovered or published."""


class DeviceDiscovery:
    """Keeps the discovery result of one node in step with its block devices."""

    def __init__(
        self,
        api_client: DiscoveryApiClient,
        local_volume_discovery: Any = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.api_client = api_client
        self.local_volume_discovery = local_volume_discovery
        self.environ = os.environ if environ is None else environ
        self.disks: list[DiscoveredDevice] = []
        self._events = EventReporter(api_client)

    def _report(self, event: DiskEvent) -> None:
        self._events.report(event, self.local_volume_discovery)

    def _env(self, name: str) -> str:
        return self.environ.get(name, "")

    def start(self) -> None:
        """Publish devices, then rediscover on udev events and periodically until SIGTERM."""
        log.info("starting device discovery")
        try:
            self.ensure_discovery_result()
        except Exception as exc:
            message = "failed to start device discovery"
            self._report(new_event(ERROR_CREATING_DISCOVERY_RESULT_OBJECT, f"{message}. Error: {exc}"))
            raise DiscoveryError(f"{message}: {exc}") from exc

        try:
            self.discover_devices()
        except DiscoveryError as exc:
            log.error("failed to discover devices: %s", exc)

        stop = threading.Event()
        previous_handler = None
        in_main_thread = threading.current_thread() is threading.main_thread()
        if in_main_thread:
            previous_handler = signal.signal(signal.SIGTERM, lambda *_: stop.set())

        events: "queue.Queue[object]" = queue.Queue()

        def pump() -> None:
            try:
                for event in udev_block_monitor(UDEV_EVENT_PERIOD):
                    events.put(event)
            finally:
                events.put(_UDEV_CLOSED)

        threading.Thread(target=pump, name="udev-monitor", daemon=True).start()
        udev_open = True

        try:
            while not stop.is_set():
                deadline = time.monotonic() + PROBE_INTERVAL
                source = "probe interval"
                while not stop.is_set():
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    if not udev_open:
                        stop.wait(min(remaining, _POLL_INTERVAL))
                        continue
                    try:
                        item = events.get(timeout=min(remaining, _POLL_INTERVAL))
                    except queue.Empty:
                        continue
                    if item is _UDEV_CLOSED:
                        log.warning("disabling udev monitoring")
                        udev_open = False
                        continue
                    log.info("trigger probe from udev event")
                    source = "udev event"
                    break
                if stop.is_set():
                    break
                try:
                    self.discover_devices()
                except DiscoveryError as exc:
                    log.error("failed to discover devices triggered from %s. %s", source, exc)
        finally:
            if in_main_thread and previous_handler is not None:
                signal.signal(signal.SIGTERM, previous_handler)
        log.info("shutdown signal received, exiting...")

    def discover_devices(self) -> None:
        """List usable devices and publish them if they changed."""
        try:
            valid_devices = get_valid_block_devices()
        except DiscoveryError as exc:
            message = "failed to discover devices"
            self._report(new_event(ERROR_LISTING_BLOCK_DEVICES, f"{message}. Error: {exc}"))
            raise DiscoveryError(f"{message}: {exc}") from exc

        log.info("valid block devices: %s", valid_devices)
        discovered = get_discovered_devices(valid_devices)
        log.info("discovered devices: %s", discovered)

        set_discovered_devices_metric(self._env("MY_NODE_NAME"), len(discovered))

        if self.disks == discovered:
            return
        log.info("device list updated. Updating LocalVolumeDiscoveryResult status...")
        self.disks = discovered
        try:
            self.update_status()
        except DiscoveryError as exc:
            message = "failed to update LocalVolumeDiscoveryResult status"
            self._report(new_event(ERROR_UPDATING_DISCOVERY_RESULT_OBJECT, f"{message}. Error: {exc}"))
            raise DiscoveryError(f"{message}: {exc}") from exc
        self._report(
            new_success_event(
                UPDATED_DISCOVERED_DEVICE_LIST,
                "successfully updated discovered device details in the LocalVolumeDiscoveryResult resource",
            )
        )

    def ensure_discovery_result(self) -> None:
        """Create the node's discovery result if it does not exist yet."""
        node_name = self._env("MY_NODE_NAME")
        namespace = self._env("WATCH_NAMESPACE")
        parent_uid = self._env("DISCOVERY_OBJECT_UID")
        parent_name = self._env("DISCOVERY_OBJECT_NAME")
        if not (node_name and namespace and parent_uid and parent_name):
            raise DiscoveryError(
                "failed to create LocalVolumeDiscoveryResult resource. missing required env variables"
            )
        result = new_discovery_result_instance(node_name, namespace, parent_name, parent_uid)
        try:
            self.api_client.get_discovery_result(result.name, result.namespace)
        except NotFoundError:
            try:
                self.api_client.create_discovery_result(result)
            except Exception as exc:
                raise DiscoveryError(
                    f"failed to create LocalVolumeDiscoveryResult resource: {exc}"
                ) from exc
            message = "successfully created LocalVolumeDiscoveryResult resource"
            self._report(new_success_event(CREATED_DISCOVERY_RESULT_OBJECT, message))
            log.info(message)

    def update_status(self) -> None:
        """Store the current device list and discovery time in the result."""
        name = truncate_node_name(RESULT_NAME_FORMAT, self._env("MY_NODE_NAME"))
        try:
            result = self.api_client.get_discovery_result(name, self._env("WATCH_NAMESPACE"))
        except NotFoundError:
            log.warning("result resource not found. Ignoring since object must be deleted.")
            return
        except Exception as exc:
            raise DiscoveryError(
                f"failed to retrieve LocalVolumeDiscoveryResult resource to update status: {exc}"
            ) from exc

        result.discovered_devices = list(self.disks)
        result.discovered_timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        try:
            self.api_client.update_discovery_result_status(result)
        except Exception as exc:
            raise DiscoveryError(
                f"failed to update the device status in the LocalVolumeDiscoveryResult resource: {exc}"
            ) from exc


def get_valid_block_devices() -> list[BlockDevice]:
    """All block devices on the node that are suitable for discovery."""
    try:
        devices, _ = list_block_devices([])
    except DiskUtilError as exc:
        raise DiscoveryError(f"failed to list all the block devices in the node: {exc}") from exc
    return [device for device in devices if not ignore_device(device)]


def get_discovered_devices(block_devices: Iterable[BlockDevice]) -> list[DiscoveredDevice]:
    """Describe block devices as discovered devices, dropping duplicates."""
    discovered: list[DiscoveredDevice] = []
    for device in block_devices:
        try:
            device_id = device.path_by_id()
        except DiskUtilError as exc:
            log.warning("failed to get persistent ID for the device %r. Error %s", device.name, exc)
            device_id = ""
        try:
            size = device.size_bytes()
        except DiskUtilError as exc:
            log.warning("failed to parse size for the device %r. Error %s", device.name, exc)
            size = 0
        try:
            path = device.dev_path()
        except DiskUtilError as exc:
            log.warning("failed to parse path for the device %r. Error %s", device.kname, exc)
            path = ""
        discovered.append(
            DiscoveredDevice(
                device_id=device_id,
                path=path,
                model=device.model,
                type=parse_device_type(device.type),
                vendor=device.vendor,
                serial=device.serial,
                size=size,
                property=parse_device_property(device.rotational),
                fs_type=device.fs_type,
                status=get_device_status(device),
            )
        )
    return unique_devices(discovered)


def unique_devices(devices: Iterable[DiscoveredDevice]) -> list[DiscoveredDevice]:
    """Keep one device per (device ID, path); a later duplicate replaces the earlier one in place."""
    unique: dict[tuple[str, str], DiscoveredDevice] = {}
    for device in devices:
        unique[(device.device_id, device.path)] = device
    return list(unique.values())


def ignore_device(device: BlockDevice) -> bool:
    """True if the device must be left out of discovery."""
    try:
        read_only = device.is_read_only()
    except DiskUtilError:
        read_only = True
    if read_only:
        log.info("ignoring read only device %r", device.name)
        return True

    try:
        has_children = device.has_children()
    except DiskUtilError:
        has_children = True
    if has_children:
        log.info("ignoring root device %r", device.name)
        return True

    if device.state == STATE_SUSPENDED:
        log.info("ignoring device %r with invalid state %r", device.name, device.state)
        return True

    if device.type not in SUPPORTED_DEVICE_TYPES:
        log.info("ignoring device %r with invalid type %r", device.name, device.type)
        return True

    return False


def _has_bios_boot_label(device: BlockDevice) -> bool:
    label = device.part_label.lower()
    return any(marker in label for marker in _BIOS_BOOT_MARKERS)


def _can_open_exclusively(device: BlockDevice) -> bool:
    lock = ExclusiveFileLock(device.dev_path())
    try:
        return lock.lock()
    finally:
        lock.unlock()


def get_device_status(device: BlockDevice) -> DeviceStatus:
    """Whether the device is Available, NotAvailable or Unknown."""
    if device.fs_type:
        log.info("device %r with filesystem %r is not available", device.name, device.fs_type)
        return DeviceStatus(DeviceState.NOT_AVAILABLE)

    if _has_bios_boot_label(device):
        log.info("device %r with part label %r is not available", device.name, device.part_label)
        return DeviceStatus(DeviceState.NOT_AVAILABLE)

    try:
        can_open = _can_open_exclusively(device)
    except (OSError, DiskUtilError):
        return DeviceStatus(DeviceState.UNKNOWN)
    if not can_open:
        log.info("device %r is not available as it can't be opened exclusively", device.name)
        return DeviceStatus(DeviceState.NOT_AVAILABLE)

    try:
        mount_point = device.find_bind_mount()
    except DiskUtilError:
        return DeviceStatus(DeviceState.UNKNOWN)
    if mount_point is not None:
        log.info("device %r with mount point %r is not available", device.name, mount_point)
        return DeviceStatus(DeviceState.NOT_AVAILABLE)

    log.info("device %r is available", device.name)
    return DeviceStatus(DeviceState.AVAILABLE)


def parse_device_property(value: str) -> Optional[DeviceMechanicalProperty]:
    """Map lsblk's ROTA column to a mechanical property; None if it is neither 0 nor 1."""
    if value == "1":
        return DeviceMechanicalProperty.ROTATIONAL
    if value == "0":
        return DeviceMechanicalProperty.NON_ROTATIONAL
    return None


def parse_device_type(value: str) -> Optional[DiscoveredDeviceType]:
    """Map lsblk's TYPE column to a supported device type, or None."""
    try:
        return DiscoveredDeviceType(value)
    except ValueError:
        return None


__all__ = [
    "DiscoveryError",
    "DeviceDiscovery",
    "get_valid_block_devices",
    "get_discovered_devices",
    "unique_devices",
    "ignore_device",
    "get_device_status",
    "parse_device_property",
    "parse_device_type",
    "errno",
]