"""Watch udev for block device changes, collapsing bursts of events."""

from __future__ import annotations

import logging
import queue
import re
import subprocess
import threading
import time
from typing import Iterable, Iterator, Sequence

log = logging.getLogger(__name__)

UDEV_EXCLUSION_FILTER = ["(?i)dm-[0-9]+", "(?i)rbd[0-9]", "(?i)nbd[0-9]+"]
UDEV_EVENT_MATCH = ["(?i)add", "(?i)remove"]
UDEV_EVENT_PERIOD = 5.0

_MONITOR_COMMAND = ["stdbuf", "-oL", "udevadm", "monitor", "-u", "-k", "-s", "block"]
_DONE = object()


def _search(pattern: str, text: str) -> bool:
    try:
        return re.search(pattern, text) is not None
    except re.error as exc:
        raise ValueError(f"failed to search string: {exc}") from exc


def match_udev_event(text: str, matches: Sequence[str], exclusions: Sequence[str]) -> bool:
    """True if text matches any pattern in matches and none in exclusions."""
    for match in matches:
        if not _search(match, text):
            continue
        if not any(_search(exclusion, text) for exclusion in exclusions):
            log.info("udevadm monitor: matched event: %s", text)
            return True
    return False


def raw_udev_block_monitor(matches: Sequence[str], exclusions: Sequence[str]) -> Iterator[str]:
    """Yield lines of `udevadm monitor` block output that pass the filters."""
    try:
        proc = subprocess.Popen(_MONITOR_COMMAND, stdout=subprocess.PIPE, text=True)
    except OSError as exc:
        log.warning("Cannot start udevadm monitoring: %s", exc)
        return
    try:
        for line in proc.stdout:
            text = line.rstrip("\r\n")
            log.info("udevadm monitor: %s", text)
            try:
                matched = match_udev_event(text, matches, exclusions)
            except ValueError as exc:
                log.warning("udevadm filtering failed: %s", exc)
                return
            if matched:
                yield text
        log.info("udevadm monitor finished")
    finally:
        if proc.poll() is None:
            proc.terminate()
        proc.wait()


def collapse_events(source: Iterable[str], period: float) -> Iterator[str]:
    """Yield at most one event per period, swallowing the ones that follow it.

    Each yielded event is held back for ``period`` seconds while later events
    are dropped. If the source ends during that wait, the held event is dropped too.
    """
    events: "queue.Queue[object]" = queue.Queue()

    def pump() -> None:
        try:
            for item in source:
                events.put(item)
        finally:
            events.put(_DONE)

    threading.Thread(target=pump, name="udev-events", daemon=True).start()

    while True:
        event = events.get()
        if event is _DONE:
            return
        deadline = time.monotonic() + period
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                extra = events.get(timeout=remaining)
            except queue.Empty:
                break
            if extra is _DONE:
                return
        yield event


def udev_block_monitor(period: float = UDEV_EVENT_PERIOD) -> Iterator[str]:
    """Collapsed add/remove block device events from udev."""
    log.info("regex for matching udev events - %s", UDEV_EVENT_MATCH)
    log.info("regex for list of devices to be ignored for udev events - %s", UDEV_EXCLUSION_FILTER)
    return collapse_events(
        raw_udev_block_monitor(UDEV_EVENT_MATCH, UDEV_EXCLUSION_FILTER), period
    )