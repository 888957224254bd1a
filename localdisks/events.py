"""Disk events and a reporter that records each distinct event only once."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

# LocalVolume event reasons
ERROR_RUNNING_BLOCK_LIST = "ErrorRunningBlockList"
ERROR_READING_BLOCK_LIST = "ErrorReadingBlockList"
ERROR_LISTING_DEVICE_ID = "ErrorListingDeviceID"
ERROR_FINDING_MATCHING_DISK = "ErrorFindingMatchingDisk"
SYMLINKED_ON_DEVICE_NAME = "SymlinkedOnDeivceName"
ERROR_PROVISIONING_DISK = "ErrorProvisioningDisk"
FOUND_MATCHING_DISK = "FoundMatchingDisk"
DEVICE_SYMLINK_EXISTS = "DeviceSymlinkExists"

# LocalVolumeDiscovery event reasons
ERROR_CREATING_DISCOVERY_RESULT_OBJECT = "ErrorCreatingDiscoveryResultObject"
ERROR_UPDATING_DISCOVERY_RESULT_OBJECT = "ErrorUpdatingDiscoveryResultObject"
ERROR_LISTING_BLOCK_DEVICES = "ErrorListingBlockDevices"
CREATED_DISCOVERY_RESULT_OBJECT = "CreatedDiscoveryResultObject"
UPDATED_DISCOVERED_DEVICE_LIST = "UpdatedDiscoveredDeviceList"


class EventType(str, Enum):
    """Severity of an event."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True)
class DiskEvent:
    """A single event about a disk."""

    event_type: EventType
    reason: str
    disk: str
    message: str

    @property
    def key(self) -> str:
        """Identity used to suppress repeated reports."""
        return f"{self.reason}:{self.event_type.value}:{self.disk}"


def new_event(reason: str, message: str, disk: str = "") -> DiskEvent:
    """A warning event."""
    return DiskEvent(EventType.WARNING, reason, disk, message)


def new_success_event(reason: str, message: str, disk: str = "") -> DiskEvent:
    """A normal event."""
    return DiskEvent(EventType.NORMAL, reason, disk, message)


class EventRecorder(Protocol):
    """Anything that can record an event against an object."""

    def record_event(self, obj: Any, event: DiskEvent) -> None:
        """Record event against obj."""


class EventReporter:
    """Forwards events to a recorder, dropping ones already reported."""

    def __init__(self, recorder: EventRecorder) -> None:
        self._recorder = recorder
        self._reported: set[str] = set()
        self._lock = threading.Lock()

    def report(self, event: DiskEvent, obj: Any) -> bool:
        """Record the event unless it was seen before; return whether it was recorded."""
        with self._lock:
            if event.key in self._reported:
                return False
            self._recorder.record_event(obj, event)
            self._reported.add(event.key)
            return True