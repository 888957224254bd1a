"""Discovery result records and the naming rules for them."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

log = logging.getLogger(__name__)

GROUP_VERSION = "local.storage.openshift.io/v1alpha1"
DISCOVERY_KIND = "LocalVolumeDiscovery"
DISCOVERY_NODE_LABEL = "discovery-result-node"
RESULT_NAME_FORMAT = "discovery-result-%s"
DNS1123_SUBDOMAIN_MAX_LENGTH = 253


class DeviceState(str, Enum):
    AVAILABLE = "Available"
    NOT_AVAILABLE = "NotAvailable"
    UNKNOWN = "Unknown"


class DeviceMechanicalProperty(str, Enum):
    ROTATIONAL = "Rotational"
    NON_ROTATIONAL = "NonRotational"


class DiscoveredDeviceType(str, Enum):
    DISK = "disk"
    PART = "part"
    LVM = "lvm"
    MULTIPATH = "mpath"


@dataclass
class DeviceStatus:
    state: Optional[DeviceState] = None


@dataclass
class DiscoveredDevice:
    """A device as published in a discovery result."""

    device_id: str = ""
    path: str = ""
    model: str = ""
    type: Optional[DiscoveredDeviceType] = None
    vendor: str = ""
    serial: str = ""
    size: int = 0
    property: Optional[DeviceMechanicalProperty] = None
    fs_type: str = ""
    status: DeviceStatus = field(default_factory=DeviceStatus)


@dataclass
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str


@dataclass
class LocalVolumeDiscoveryResult:
    """The per-node record of discovered devices."""

    name: str
    namespace: str
    node_name: str
    labels: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    discovered_devices: list[DiscoveredDevice] = field(default_factory=list)
    discovered_timestamp: str = ""


class NotFoundError(LookupError):
    """The requested object does not exist."""


class DiscoveryApiClient(Protocol):
    """Storage for discovery results and events."""

    def get_discovery_result(self, name: str, namespace: str) -> LocalVolumeDiscoveryResult:
        """Fetch a result; raise NotFoundError if it does not exist."""

    def create_discovery_result(self, result: LocalVolumeDiscoveryResult) -> None:
        """Create a new result."""

    def update_discovery_result_status(self, result: LocalVolumeDiscoveryResult) -> None:
        """Store the discovered devices and timestamp of a result."""

    def record_event(self, obj: Any, event: Any) -> None:
        """Record an event against obj."""


def hash_name(value: str) -> str:
    """A stable 32-character hex string derived from value."""
    return hashlib.sha256(value.encode("utf-8")).digest()[:16].hex()


def truncate_node_name(name_format: str, node_name: str) -> str:
    """Format the node name into a name, hashing it if the result would be too long."""
    if len(node_name) + len(name_format % "") > DNS1123_SUBDOMAIN_MAX_LENGTH:
        hashed = hash_name(node_name)
        log.info(
            "format and nodeName longer than %d chars, nodeName %s will be %s",
            DNS1123_SUBDOMAIN_MAX_LENGTH,
            node_name,
            hashed,
        )
        node_name = hashed
    return name_format % node_name


def new_discovery_result_instance(
    node_name: str, namespace: str, parent_name: str, parent_uid: str
) -> LocalVolumeDiscoveryResult:
    """A fresh result for a node, owned by the discovery object."""
    return LocalVolumeDiscoveryResult(
        name=truncate_node_name(RESULT_NAME_FORMAT, node_name),
        namespace=namespace,
        node_name=node_name,
        labels={DISCOVERY_NODE_LABEL: node_name},
        owner_references=[
            OwnerReference(
                api_version=GROUP_VERSION,
                kind=DISCOVERY_KIND,
                name=parent_name,
                uid=parent_uid,
            )
        ],
    )