import glob
import os
import subprocess

import pytest

from localdisks import metrics
from localdisks.diskutil import BlockDevice
from localdisks.discovery import (
    DeviceDiscovery,
    DiscoveryError,
    get_device_status,
    get_discovered_devices,
    get_valid_block_devices,
    ignore_device,
    parse_device_property,
    parse_device_type,
    unique_devices,
)
from localdisks.events import (
    CREATED_DISCOVERY_RESULT_OBJECT,
    ERROR_CREATING_DISCOVERY_RESULT_OBJECT,
    ERROR_UPDATING_DISCOVERY_RESULT_OBJECT,
    UPDATED_DISCOVERED_DEVICE_LIST,
)
from localdisks.results import (
    DeviceMechanicalProperty,
    DeviceState,
    DeviceStatus,
    DiscoveredDevice,
    DiscoveredDeviceType,
    LocalVolumeDiscoveryResult,
    NotFoundError,
)

ENV = {
    "MY_NODE_NAME": "node1",
    "WATCH_NAMESPACE": "ns",
    "DISCOVERY_OBJECT_UID": "uid",
    "DISCOVERY_OBJECT_NAME": "auto-discover-devices",
}


class FakeApiClient:
    def __init__(self, get_error=None, create_error=None, update_error=None):
        self.results = {}
        self.events = []
        self.created = []
        self.updated = []
        self.get_error = get_error
        self.create_error = create_error
        self.update_error = update_error

    def get_discovery_result(self, name, namespace):
        if self.get_error is not None:
            raise self.get_error
        try:
            return self.results[(name, namespace)]
        except KeyError:
            raise NotFoundError(name) from None

    def create_discovery_result(self, result):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(result)
        self.results[(result.name, result.namespace)] = result

    def update_discovery_result_status(self, result):
        if self.update_error is not None:
            raise self.update_error
        self.updated.append(result)

    def record_event(self, obj, event):
        self.events.append(event)


def existing_result_client(**kwargs):
    client = FakeApiClient(**kwargs)
    client.results[("discovery-result-node1", "ns")] = LocalVolumeDiscoveryResult(
        name="discovery-result-node1", namespace="ns", node_name="node1"
    )
    return client


def fake_commands(monkeypatch, lsblk_out, blkid_out=""):
    def run(args, **kwargs):
        out = {"lsblk": lsblk_out, "blkid": blkid_out}.get(args[0], "")
        return subprocess.CompletedProcess(args, 0, stdout=out, stderr=None)

    monkeypatch.setattr(subprocess, "run", run)


def fake_glob(monkeypatch, paths):
    monkeypatch.setattr(glob, "glob", lambda pattern, **kwargs: list(paths))


def fake_realpath(monkeypatch, target=None):
    def realpath(path, *args, **kwargs):
        if target is None:
            raise FileNotFoundError(path)
        return target

    monkeypatch.setattr(os.path, "realpath", realpath)


LSBLK_TWO = (
    'NAME="sda" KNAME="sda" ROTA="1" TYPE="disk" SIZE="62914560000" MODEL="VBOX HARDDISK" '
    'VENDOR="ATA" RO="0" RM="0" STATE="running" SERIAL=""\n'
    'NAME="sda1" KNAME="sda1" ROTA="1" TYPE="part" SIZE="62913494528" MODEL="" VENDOR="" '
    'RO="0" RM="0" STATE="" SERIAL=""'
)


def test_discover_devices_publishes_once(monkeypatch):
    fake_commands(monkeypatch, LSBLK_TWO)
    fake_glob(monkeypatch, ["removable", "subsytem", "sda"])
    fake_realpath(monkeypatch)
    client = existing_result_client()
    dd = DeviceDiscovery(client, object(), ENV)

    dd.discover_devices()
    assert len(client.updated) == 1
    assert [d.path for d in client.updated[0].discovered_devices] == ["/dev/sda1"]
    assert [e.reason for e in client.events] == [UPDATED_DISCOVERED_DEVICE_LIST]
    assert metrics.DISCOVERED_DEVICES_GAUGE.get(nodeName="node1") == 1

    dd.discover_devices()
    assert len(client.updated) == 1


def test_discover_devices_fail_on_update(monkeypatch):
    lsblk = (
        'NAME="sda" KNAME="sda" ROTA="1" TYPE="disk" SIZE="62914560000" MODEL="VBOX HARDDISK" '
        'VENDOR="ATA" RO="1" RM="0" STATE="running" FSTYPE="" SERIAL=""\n'
        'NAME="sda1" KNAME="sda1" ROTA="1" TYPE="part" SIZE="62913494528" MODEL="" VENDOR="" '
        'RO="0" RM="0" STATE="" SERIAL=""'
    )
    fake_commands(monkeypatch, lsblk)
    fake_glob(monkeypatch, ["removable", "subsytem"])
    fake_realpath(monkeypatch)
    client = existing_result_client(update_error=RuntimeError("failed to update status"))
    dd = DeviceDiscovery(client, object(), ENV)
    with pytest.raises(DiscoveryError):
        dd.discover_devices()
    assert [e.reason for e in client.events] == [ERROR_UPDATING_DISCOVERY_RESULT_OBJECT]


BASE_DEVICE = dict(name="sdb", kname="sdb", read_only="0", state="running", type="disk")


@pytest.mark.parametrize(
    "overrides, globbed, expected",
    [
        ({}, ["removable", "subsytem"], False),
        ({"type": "lvm"}, ["removable", "subsytem"], False),
        ({"name": "sdc", "kname": "dm-0", "type": "mpath"}, ["removable", "subsytem"], False),
        ({"read_only": "1"}, ["removable", "subsytem"], True),
        ({"state": "suspended"}, ["removable", "subsytem"], True),
        ({}, ["removable", "subsytem", "sdb"], True),
    ],
)
def test_ignore_device(monkeypatch, overrides, globbed, expected):
    fake_glob(monkeypatch, globbed)
    device = BlockDevice(**{**BASE_DEVICE, **overrides})
    assert ignore_device(device) is expected


@pytest.mark.parametrize(
    "lsblk, globbed",
    [
        (
            'NAME="sda" KNAME="sda" ROTA="1" TYPE="disk" SIZE="62914560000" MODEL="VBOX HARDDISK" VENDOR="ATA" RO="1" RM="0" STATE="running" SERIAL=""\n'
            'NAME="sda1" KNAME="sda1" ROTA="1" TYPE="part" SIZE="62913494528" MODEL="" VENDOR="" RO="0" RM="0" STATE=""  SERIAL=""',
            ["removable", "subsytem"],
        ),
        (LSBLK_TWO, ["removable", "subsytem", "sda"]),
        (
            'NAME="sda" KNAME="sda" ROTA="1" TYPE="loop" SIZE="62914560000" MODEL="VBOX HARDDISK" VENDOR="ATA" RO="0" RM="0" STATE="running" SERIAL=""\n'
            'NAME="sda1" KNAME="sda1" ROTA="1" TYPE="part" SIZE="62913494528" MODEL="" VENDOR="" RO="0" RM="0" STATE="" SERIAL=""',
            ["removable", "subsytem"],
        ),
        (
            'NAME="sda" KNAME="sda" ROTA="1" TYPE="disk" SIZE="62914560000" MODEL="VBOX HARDDISK" VENDOR="ATA" RO="0" RM="0" STATE="running"  SERIAL=""\n'
            'NAME="sda1" KNAME="sda1" ROTA="1" TYPE="part" SIZE="62913494528" MODEL="" VENDOR="" RO="0" RM="0" STATE="suspended" SERIAL=""',
            ["removable", "subsytem"],
        ),
    ],
)
def test_valid_block_devices(monkeypatch, lsblk, globbed):
    fake_commands(monkeypatch, lsblk)
    fake_glob(monkeypatch, globbed)
    assert len(get_valid_block_devices()) == 1


def _device(**kwargs):
    base = dict(model="", vendor="", serial="", removable="0", read_only="0", state="running")
    base.update(kwargs)
    return BlockDevice(**base)


@pytest.mark.parametrize(
    "device, globbed, target, expected",
    [
        (
            _device(name="sdb", kname="sdb", fs_type="ext4", type="disk", size="62914560000",
                    model="VBOX HARDDISK", vendor="ATA", serial="SERIAL-0000", rotational="1"),
            ["/dev/disk/by-id/sdb"],
            "/dev/disk/by-id/sdb",
            DiscoveredDevice("/dev/disk/by-id/sdb", "/dev/sdb", "VBOX HARDDISK", DiscoveredDeviceType.DISK,
                             "ATA", "SERIAL-0000", 62914560000, DeviceMechanicalProperty.ROTATIONAL, "ext4",
                             DeviceStatus(DeviceState.NOT_AVAILABLE)),
        ),
        (
            _device(name="sda1", kname="sda1", fs_type="ext4", type="part", size="62913494528", rotational="0"),
            ["/dev/disk/by-id/sda1"],
            "/dev/disk/by-id/sda1",
            DiscoveredDevice("/dev/disk/by-id/sda1", "/dev/sda1", "", DiscoveredDeviceType.PART, "", "",
                             62913494528, DeviceMechanicalProperty.NON_ROTATIONAL, "ext4",
                             DeviceStatus(DeviceState.NOT_AVAILABLE)),
        ),
        (
            _device(name="sda1", kname="sda1", type="part", size="62913494528", rotational="0",
                    part_label="BIOS-BOOT"),
            ["/dev/disk/by-id/sda1"],
            "/dev/disk/by-id/sda1",
            DiscoveredDevice("/dev/disk/by-id/sda1", "/dev/sda1", "", DiscoveredDeviceType.PART, "", "",
                             62913494528, DeviceMechanicalProperty.NON_ROTATIONAL, "",
                             DeviceStatus(DeviceState.NOT_AVAILABLE)),
        ),
        (
            _device(name="sda1", kname="sda1", fs_type="vfat", type="part", size="62913494528", rotational="0",
                    part_label="EFI-SYSTEM"),
            ["/dev/disk/by-id/sda1"],
            "/dev/disk/by-id/sda1",
            DiscoveredDevice("/dev/disk/by-id/sda1", "/dev/sda1", "", DiscoveredDeviceType.PART, "", "",
                             62913494528, DeviceMechanicalProperty.NON_ROTATIONAL, "vfat",
                             DeviceStatus(DeviceState.NOT_AVAILABLE)),
        ),
        (
            _device(name="sda", kname="dm-0", type="mpath", size="62913494528", rotational="0",
                    id_path="/dev/disk/by-id/dm-name-mpatha"),
            ["/dev/mapper/mpatha"],
            "/dev/dm-0",
            DiscoveredDevice("/dev/disk/by-id/dm-name-mpatha", "/dev/dm-0", "", DiscoveredDeviceType.MULTIPATH,
                             "", "", 62913494528, DeviceMechanicalProperty.NON_ROTATIONAL, "",
                             DeviceStatus(DeviceState.UNKNOWN)),
        ),
    ],
)
def test_get_discovered_devices(monkeypatch, device, globbed, target, expected):
    fake_glob(monkeypatch, globbed)
    fake_realpath(monkeypatch, target)
    assert get_discovered_devices([device]) == [expected]


def test_get_discovered_devices_unique_by_id(monkeypatch):
    fake_glob(monkeypatch, ["/dev/mapper/mpatha"])
    fake_realpath(monkeypatch, "/dev/dm-0")
    make = lambda: _device(name="mpatha", kname="dm-0", type="mpath", size="62913494528",  # noqa: E731
                           rotational="0", id_path="/dev/disk/by-id/dm-name-mpatha")
    actual = get_discovered_devices([make(), make()])
    assert len(actual) == 1
    assert actual[0].device_id == "/dev/disk/by-id/dm-name-mpatha"
    assert actual[0].path == "/dev/dm-0"
    assert actual[0].status == DeviceStatus(DeviceState.UNKNOWN)


def test_unique_devices_keeps_first_position_with_last_value():
    a = DiscoveredDevice(device_id="id-a", path="/dev/a", model="first")
    b = DiscoveredDevice(device_id="id-b", path="/dev/b")
    a2 = DiscoveredDevice(device_id="id-a", path="/dev/a", model="second")
    assert unique_devices([a, b, a2]) == [a2, b]


def test_device_status_filesystem_and_label():
    assert get_device_status(BlockDevice(name="x", kname="x", fs_type="xfs")).state is DeviceState.NOT_AVAILABLE
    assert get_device_status(BlockDevice(name="x", kname="x", part_label="BIOS-BOOT")).state is DeviceState.NOT_AVAILABLE


def test_device_status_unknown_when_device_cannot_be_opened():
    device = BlockDevice(name="nodev", kname="localdisks-test-missing-device0")
    assert get_device_status(device).state is DeviceState.UNKNOWN


@pytest.mark.parametrize(
    "value, expected",
    [("disk", DiscoveredDeviceType.DISK), ("part", DiscoveredDeviceType.PART),
     ("lvm", DiscoveredDeviceType.LVM), ("loop", None)],
)
def test_parse_device_type(value, expected):
    assert parse_device_type(value) is expected


@pytest.mark.parametrize(
    "value, expected",
    [("1", DeviceMechanicalProperty.ROTATIONAL), ("0", DeviceMechanicalProperty.NON_ROTATIONAL), ("2", None)],
)
def test_parse_device_property(value, expected):
    assert parse_device_property(value) is expected


def test_ensure_discovery_result_creates():
    client = FakeApiClient()
    dd = DeviceDiscovery(client, object(), ENV)
    dd.ensure_discovery_result()
    assert [r.name for r in client.created] == ["discovery-result-node1"]
    assert client.created[0].owner_references[0].uid == "uid"
    assert [e.reason for e in client.events] == [CREATED_DISCOVERY_RESULT_OBJECT]


def test_ensure_discovery_result_existing_is_left_alone():
    client = existing_result_client()
    DeviceDiscovery(client, object(), ENV).ensure_discovery_result()
    assert client.created == []


def test_ensure_discovery_result_no_env():
    dd = DeviceDiscovery(FakeApiClient(), object(), {})
    with pytest.raises(DiscoveryError, match="missing required env variables"):
        dd.ensure_discovery_result()


def test_ensure_discovery_result_get_failure():
    client = FakeApiClient(get_error=RuntimeError("failed to get result object"))
    dd = DeviceDiscovery(client, object(), ENV)
    with pytest.raises(RuntimeError) as info:
        dd.ensure_discovery_result()
    assert str(info.value) == "failed to get result object"


def test_update_status():
    client = existing_result_client()
    dd = DeviceDiscovery(client, object(), ENV)
    dd.disks = [DiscoveredDevice(device_id="id", path="/dev/sdz")]
    dd.update_status()
    assert client.updated[0].discovered_devices == dd.disks
    assert client.updated[0].discovered_timestamp.endswith("Z")


def test_update_status_missing_result_is_ignored():
    client = FakeApiClient()
    DeviceDiscovery(client, object(), ENV).update_status()
    assert client.updated == []


def test_update_status_failures():
    dd = DeviceDiscovery(FakeApiClient(get_error=RuntimeError("failed to get result object")), object(), ENV)
    with pytest.raises(DiscoveryError):
        dd.update_status()

    dd = DeviceDiscovery(existing_result_client(update_error=RuntimeError("failed to update status")), object(), ENV)
    with pytest.raises(DiscoveryError, match="failed to update status"):
        dd.update_status()


def test_start_fails_without_env():
    client = FakeApiClient()
    dd = DeviceDiscovery(client, object(), {})
    with pytest.raises(DiscoveryError, match="failed to start device discovery"):
        dd.start()
    assert [e.reason for e in client.events] == [ERROR_CREATING_DISCOVERY_RESULT_OBJECT]