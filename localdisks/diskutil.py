"""Block device inspection helpers built on lsblk, blkid and /dev symlinks."""

from __future__ import annotations

import errno
import glob
import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Iterable, Optional

log = logging.getLogger(__name__)

STATE_SUSPENDED = "suspended"
DISK_BY_ID_DIR = "/dev/disk/by-id/"
DISK_DM_DIR = "/dev/mapper/"
MOUNT_INFO_FILE = "/proc/1/mountinfo"

LSBLK_COLUMNS = "NAME,ROTA,TYPE,SIZE,MODEL,VENDOR,RO,RM,STATE,KNAME,SERIAL,PARTLABEL"
_PREFERRED_ID_PREFIXES = ("wwn", "scsi", "nvme", "")

# Lower-cased lsblk column names (and blkid's fsType) mapped to BlockDevice fields.
_LSBLK_FIELDS = {
    "name": "name",
    "kname": "kname",
    "type": "type",
    "model": "model",
    "vendor": "vendor",
    "state": "state",
    "fstype": "fs_type",
    "size": "size",
    "rota": "rotational",
    "ro": "read_only",
    "rm": "removable",
    "serial": "serial",
    "partlabel": "part_label",
    "pathbyid": "id_path",
}


class DiskUtilError(Exception):
    """Raised when a block device cannot be inspected."""


class CommandError(DiskUtilError):
    """Raised when an external command fails."""

    def __init__(self, args: list[str], returncode: Optional[int], output: str) -> None:
        self.command = list(args)
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"command {' '.join(self.command)!r} failed "
            f"(exit status {returncode}): {output.strip()}"
        )


class IDPathNotFoundError(DiskUtilError):
    """No symlink to the device was found in the by-id directory."""

    def __init__(self, device_name: str, dev_path: str = "") -> None:
        self.device_name = device_name
        self.dev_path = dev_path
        super().__init__(
            f"IDPathNotFoundError: a symlink to  {device_name!r} was not found in {DISK_BY_ID_DIR!r}"
        )


def parse_bit_bool(value: str) -> bool:
    """Parse an lsblk boolean column ("0", "1" or empty)."""
    if value in ("0", ""):
        return False
    if value == "1":
        return True
    raise DiskUtilError(f"lsblk bool value not 0 or 1: {value!r}")


def _glob(pattern: str) -> list[str]:
    try:
        return sorted(glob.glob(pattern))
    except OSError as exc:
        raise DiskUtilError(f"failed to list {pattern!r}: {exc}") from exc


def _run(args: list[str]) -> str:
    """Run a command and return its combined, stripped output."""
    try:
        proc = subprocess.run(
            args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise CommandError(args, None, str(exc)) from exc
    output = proc.stdout or ""
    if proc.returncode != 0:
        raise CommandError(args, proc.returncode, output)
    return output.strip()


@dataclass
class BlockDevice:
    """A block device as reported by lsblk."""

    name: str = ""
    kname: str = ""
    type: str = ""
    model: str = ""
    vendor: str = ""
    state: str = ""
    fs_type: str = ""
    size: str = ""
    rotational: str = ""
    read_only: str = ""
    removable: str = ""
    id_path: str = ""
    serial: str = ""
    part_label: str = ""

    def _flag(self, value: str, label: str) -> bool:
        try:
            return parse_bit_bool(value)
        except DiskUtilError as exc:
            raise DiskUtilError(f"failed to parse {label} property {value!r} as bool: {exc}") from exc

    def is_rotational(self) -> bool:
        return self._flag(self.rotational, "rotational")

    def is_read_only(self) -> bool:
        return self._flag(self.read_only, "readOnly")

    def is_removable(self) -> bool:
        return self._flag(self.removable, "removable")

    def size_bytes(self) -> int:
        try:
            return int(self.size, 10)
        except ValueError as exc:
            raise DiskUtilError(f"failed to parse size property {self.size!r} as int64") from exc

    def has_children(self) -> bool:
        """True if /sys/block/<kname> holds an entry named after the device (a partition)."""
        try:
            paths = _glob(os.path.join("/sys/block", self.kname, "*"))
        except DiskUtilError as exc:
            raise DiskUtilError(f"failed to check if device {self.kname!r} has partitions: {exc}") from exc
        return any(os.path.basename(path).startswith(self.kname) for path in paths)

    def find_bind_mount(self, mount_file: str = MOUNT_INFO_FILE) -> Optional[str]:
        """Return the mount point of the device found in a mountinfo file, or None."""
        try:
            with open(mount_file, encoding="utf-8") as handle:
                data = handle.read()
        except OSError as exc:
            raise DiskUtilError(f"failed to read file {mount_file}: {exc}") from exc

        for line in data.split("\n"):
            if self.kname not in line:
                continue
            fields = line.split(" ")
            if len(fields) < 10:
                continue
            # the device source is the 4th field for bind mounts and the 10th for regular mounts
            if fields[3] == f"/{self.kname}" or fields[9] == f"/dev/{self.kname}":
                return fields[4]
        return None

    def dev_path(self) -> str:
        """The /dev path of the device."""
        if not self.kname:
            raise DiskUtilError("empty KNAME")
        return os.path.join("/dev", self.kname)

    def path_by_id(self) -> str:
        """Find a persistent /dev/disk/by-id symlink for the device, caching it on success."""
        if self.id_path.startswith(DISK_BY_ID_DIR):
            try:
                if path_evals_to_disk_label(self.id_path, self.kname):
                    return self.id_path
            except DiskUtilError:
                pass
        self.id_path = ""

        try:
            all_links = _glob(os.path.join(DISK_BY_ID_DIR, "*"))
        except DiskUtilError as exc:
            raise DiskUtilError(f"error listing files in {DISK_BY_ID_DIR}: {exc}") from exc

        buckets: list[list[str]] = [[] for _ in _PREFERRED_ID_PREFIXES]
        for path in all_links:
            link_name = os.path.basename(path)
            for bucket, prefix in zip(buckets, _PREFERRED_ID_PREFIXES):
                if link_name.startswith(prefix):
                    bucket.append(path)
                    break

        for bucket in buckets:
            for path in bucket:
                if path_evals_to_disk_label(path, self.kname):
                    self.id_path = path
                    return path

        raise IDPathNotFoundError(self.kname, self.dev_path())


def path_evals_to_disk_label(path: str, dev_name: str) -> bool:
    """True if path resolves to a file named dev_name; False if it does not exist."""
    try:
        resolved = os.path.realpath(path, strict=True)
    except FileNotFoundError:
        return False
    except OSError as exc:
        raise DiskUtilError(f"could not eval symlink {path!r}: {exc}") from exc
    return os.path.basename(resolved) == dev_name


def parse_lsblk_output(output: str, fs_map: dict[str, str]) -> tuple[list[BlockDevice], list[str]]:
    """Parse `lsblk --pairs` output into devices, returning them with any unparsable rows."""
    devices: list[BlockDevice] = []
    bad_rows: list[str] = []
    rows = output.split("\n")
    for row in rows:
        if not row.strip(" "):
            break
        values: dict[str, str] = {}
        # split on `" ` so that spaces inside MODEL and VENDOR are kept
        for pair in row.split('" '):
            parts = pair.split("=")
            if len(parts) != 2:
                continue
            values[parts[0].lower()] = parts[1].replace('"', "").strip()

        name = values.get("name")
        if name is None or not name.strip(" "):
            bad_rows.append(row)
            break
        if bad_rows:
            log.warning("failed to parse all the lsblk rows. Bad rows: %s", bad_rows)

        fs_type = fs_map.get(f"/dev/{name}")
        if fs_type is not None:
            values["fstype"] = fs_type

        devices.append(
            BlockDevice(**{_LSBLK_FIELDS[key]: value for key, value in values.items() if key in _LSBLK_FIELDS})
        )

    if len(bad_rows) == len(rows):
        raise DiskUtilError("could not parse any of the lsblk rows")
    return devices, bad_rows


def list_block_devices(devices: Iterable[str] = ()) -> tuple[list[BlockDevice], list[str]]:
    """List block devices with lsblk, filling in filesystems from blkid."""
    try:
        fs_map = get_device_fs_map(devices)
    except DiskUtilError as exc:
        raise DiskUtilError(f"failed to list block devices: {exc}") from exc
    args = ["lsblk", "--pairs", "-b", "-o", LSBLK_COLUMNS]
    log.info("Executing command: %s", args)
    return parse_lsblk_output(_run(args), fs_map)


def parse_blkid_output(output: str) -> dict[str, str]:
    """Parse `blkid -s TYPE` output into a device-to-filesystem mapping."""
    result: dict[str, str] = {}
    for line in output.split("\n"):
        if not line:
            continue
        values = line.split(":")
        if len(values) != 2:
            continue
        fs = values[1].split("=")
        if len(fs) != 2:
            continue
        result[values[0]] = fs[1].strip().strip('"')
    return result


def get_device_fs_map(devices: Iterable[str] = ()) -> dict[str, str]:
    """Map devices to filesystem types; with no devices, every disk is scanned."""
    try:
        output = _run(["blkid", "-s", "TYPE", *devices])
    except CommandError as exc:
        # blkid exits with status 2 when no device is found
        if exc.returncode == 2:
            return {}
        raise
    return parse_blkid_output(output)


def get_matching_symlinks_in_dirs(path: str, *dirs: str) -> list[str]:
    """Return files in dirs that are the same file as path once symlinks are followed."""
    args = ["find", "-L", *dirs, "-samefile", path]
    try:
        output = _run(args)
    except CommandError as exc:
        raise DiskUtilError(
            f"failed to get symlinks in directories: {list(dirs)!r} for device path {path!r}. {exc}"
        ) from exc
    return [line.strip(" ") for line in output.strip(" \n").split("\n") if line.strip(" ")]


def get_pv_creation_lock(device: str, *symlink_dirs: str) -> tuple["ExclusiveFileLock", list[str]]:
    """Lock a device for PV creation and report symlinks to it that already exist.

    The returned lock must be released by the caller. The device counts as busy,
    and OSError(EBUSY) is raised, when it cannot be opened exclusively and no
    symlink to it exists yet.
    """
    lock = ExclusiveFileLock(device)
    locked = lock.lock()
    try:
        links = get_matching_symlinks_in_dirs(device, *symlink_dirs)
    except DiskUtilError:
        lock.unlock()
        raise
    if not links and not locked:
        raise OSError(errno.EBUSY, os.strerror(errno.EBUSY), device)
    return lock, links


def get_orphaned_symlinks(symlink_dir: str, valid_devices: Iterable[BlockDevice]) -> list[str]:
    """Return symlinks in symlink_dir that point to none of valid_devices."""
    devices = list(valid_devices)
    orphaned: list[str] = []
    for path in _glob(os.path.join(symlink_dir, "*")):
        if not any(path_evals_to_disk_label(path, device.kname) for device in devices):
            orphaned.append(path)
    return orphaned


@dataclass
class ExclusiveFileLock:
    """An exclusive open of a block device; other exclusive openers get EBUSY."""

    path: str
    locked: bool = field(default=False, init=False)
    _fd: int = field(default=-1, init=False, repr=False)

    def lock(self) -> bool:
        """Open the device exclusively. Returns False if it is busy."""
        try:
            self._fd = os.open(self.path, os.O_RDONLY | os.O_EXCL)
        except OSError as exc:
            self.locked = False
            if exc.errno == errno.EBUSY:
                return False
            raise
        self.locked = True
        return True

    def unlock(self) -> None:
        """Release the lock. Safe to call more than once."""
        if not self.locked:
            return
        try:
            os.close(self._fd)
        except OSError as exc:
            raise DiskUtilError(f"failed to unlock fd {self._fd}: {exc}") from exc
        self.locked = False
        self._fd = -1

    def __enter__(self) -> "ExclusiveFileLock":
        self.lock()
        return self

    def __exit__(self, *args) -> None:
        self.unlock()