"""Gauges for discovery and provisioning, and an HTTP server that exposes them."""

from __future__ import annotations

import errno
import logging
import math
import os
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable, Optional

log = logging.getLogger(__name__)

DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_METRICS_PORT = "8383"
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _format_value(value: float) -> str:
    if math.isfinite(value) and value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    return repr(value)


class Gauge:
    """A gauge with a fixed set of label names."""

    def __init__(self, name: str, help: str, label_names: Iterable[str] = ()) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._values: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: dict[str, object]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"metric {self.name} expects labels {list(self.label_names)}, got {sorted(labels)}"
            )
        return tuple(str(labels[name]) for name in self.label_names)

    def set(self, value: float, **kwargs: object) -> None:
        """Set the value for one label combination."""
        key = self._key(kwargs)
        with self._lock:
            self._values[key] = float(value)

    def get(self, **kwargs: object) -> float:
        """The value for one label combination; KeyError if it was never set."""
        key = self._key(kwargs)
        with self._lock:
            return self._values[key]

    def render(self) -> str:
        """The gauge in the Prometheus text format; empty if no value is set."""
        with self._lock:
            samples = sorted(self._values.items())
        if not samples:
            return ""
        lines = [f"# HELP {self.name} {_escape_help(self.help)}", f"# TYPE {self.name} gauge"]
        for key, value in samples:
            if self.label_names:
                labels = ",".join(
                    f'{name}="{_escape_label(val)}"' for name, val in zip(self.label_names, key)
                )
                lines.append(f"{self.name}{{{labels}}} {_format_value(value)}")
            else:
                lines.append(f"{self.name} {_format_value(value)}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    """A set of gauges rendered together."""

    def __init__(self) -> None:
        self._collectors: dict[str, Gauge] = {}
        self._lock = threading.Lock()

    def register(self, collector: Gauge) -> None:
        """Add a collector; a second one with the same name is refused."""
        with self._lock:
            if collector.name in self._collectors:
                raise ValueError(
                    f"duplicate metrics collector registration attempted: {collector.name}"
                )
            self._collectors[collector.name] = collector

    def render(self) -> str:
        with self._lock:
            collectors = sorted(self._collectors.values(), key=lambda c: c.name)
        return "".join(c.render() for c in collectors)


DEFAULT_REGISTRY = MetricsRegistry()

DISCOVERED_DEVICES_GAUGE = Gauge(
    "lso_discovery_disk_count",
    "Total disks discovered by the Local Volume Discovery controller per node",
    ["nodeName"],
)
LVS_PROVISIONED_PV_GAUGE = Gauge(
    "lso_lvset_provisioned_PV_count",
    "Total persistent volumes provisioned by the Local Volume Set controller per node",
    ["nodeName", "storageClass"],
)
LVS_UNMATCHED_DISK_GAUGE = Gauge(
    "lso_lvset_unmatched_disk_count",
    "Total disks that didn't match the Local Volume Set filter",
    ["nodeName", "storageClass"],
)
LVS_ORPHANED_SYMLINK_GAUGE = Gauge(
    "lso_lvset_orphaned_symlink_count",
    "Total symlinks that became orphan after updating the Local Volume Set filter",
    ["nodeName", "storageClass"],
)
LV_PROVISIONED_PV_GAUGE = Gauge(
    "lso_lv_provisioned_PV_count",
    "Total persistent volumes provisioned by the LocalVolume controller per node",
    ["nodeName", "storageClass"],
)
LV_ORPHANED_SYMLINK_GAUGE = Gauge(
    "lso_lv_orphaned_symlink_count",
    "Total symlinks that became orphan after updating the devicePaths in LocalVolume CR",
    ["nodeName", "storageClass"],
)

LVD_METRICS = [DISCOVERED_DEVICES_GAUGE]
LV_METRICS = [
    LVS_PROVISIONED_PV_GAUGE,
    LVS_UNMATCHED_DISK_GAUGE,
    LVS_ORPHANED_SYMLINK_GAUGE,
    LV_PROVISIONED_PV_GAUGE,
    LV_ORPHANED_SYMLINK_GAUGE,
]


def set_discovered_devices_metric(node_name: str, count: int) -> None:
    DISCOVERED_DEVICES_GAUGE.set(count, nodeName=node_name)


def set_lvs_provisioned_pv_metric(node_name: str, storage_class: str, count: int) -> None:
    LVS_PROVISIONED_PV_GAUGE.set(count, nodeName=node_name, storageClass=storage_class)


def set_lvs_unmatched_disk_metric(node_name: str, storage_class: str, count: int) -> None:
    LVS_UNMATCHED_DISK_GAUGE.set(count, nodeName=node_name, storageClass=storage_class)


def set_lvs_orphaned_symlinks_metric(node_name: str, storage_class: str, count: int) -> None:
    LVS_ORPHANED_SYMLINK_GAUGE.set(count, nodeName=node_name, storageClass=storage_class)


def set_lv_provisioned_pv_metric(node_name: str, storage_class: str, count: int) -> None:
    LV_PROVISIONED_PV_GAUGE.set(count, nodeName=node_name, storageClass=storage_class)


def set_lv_orphaned_symlinks_metric(node_name: str, storage_class: str, count: int) -> None:
    LV_ORPHANED_SYMLINK_GAUGE.set(count, nodeName=node_name, storageClass=storage_class)


def is_port_free(port: "str | int") -> bool:
    """True if a TCP listener could be bound to the port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("", int(port)))
        except OSError:
            return False
    return True


def _make_handler(registry: MetricsRegistry, path: str) -> type:
    class _Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            if self.path.split("?", 1)[0] != path:
                self.send_error(404)
                return
            body = registry.render().encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Type", CONTENT_TYPE)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, fmt: str, *args: object) -> None:
            log.debug(fmt, *args)

    return _Handler


class MetricsServerBuilder:
    """Configures and starts the metrics HTTP server."""

    def __init__(self, registry: Optional[MetricsRegistry] = None) -> None:
        self.registry = registry if registry is not None else DEFAULT_REGISTRY
        self.port = DEFAULT_METRICS_PORT
        self.path = DEFAULT_METRICS_PATH
        self.collectors: list[Gauge] = []

    def with_port(self, port: "str | int") -> "MetricsServerBuilder":
        self.port = str(port)
        return self

    def with_path(self, path: str) -> "MetricsServerBuilder":
        if not path.startswith("/"):
            path = f"/{path}"
        self.path = path
        return self

    def with_collectors(self, collectors: Iterable[Gauge]) -> "MetricsServerBuilder":
        self.collectors = list(collectors)
        return self

    def build(self) -> ThreadingHTTPServer:
        """Register the collectors and serve them in a background thread."""
        for collector in self.collectors:
            try:
                self.registry.register(collector)
            except ValueError as exc:
                raise ValueError(f"failed to register local metrics: {exc}") from exc

        log.info("Port: %s", self.port)
        if not is_port_free(self.port):
            raise OSError(errno.EADDRINUSE, f"port {self.port} is not free")

        server = ThreadingHTTPServer(("", int(self.port)), _make_handler(self.registry, self.path))
        server.daemon_threads = True
        threading.Thread(target=server.serve_forever, name="metrics-server", daemon=True).start()
        return server


__all__ = [name for name in dir() if not name.startswith("_") and name not in {"os"}]