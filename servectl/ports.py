"""Port probing, persistence and allocation."""

from __future__ import annotations

import logging
import pathlib
import socket
import sys
from typing import Callable, Optional

from servectl.errors import ExhaustedRangeError

log = logging.getLogger(__name__)

WILDCARD_HOST = "0.0.0.0"


def is_port_available(port: int, host: str = WILDCARD_HOST) -> bool:
    """Try binding a listening socket to *port*; release it immediately.

    SO_REUSEADDR matches what uvicorn sets when the server binds, so a socket
    lingering in TIME_WAIT does not count as busy.  Any bind failure,
    including an out-of-range port number, reports False.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            if sys.platform != "win32":
                s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
            s.listen(1)
        return True
    except (OSError, OverflowError, TypeError):
        return False


def is_port_listening(port: int, host: str = WILDCARD_HOST, timeout: float = 0.5) -> bool:
    """True if something accepts TCP connections on *port*.

    Connects instead of binding, so it never competes with the server for
    the port while the server is starting.
    """
    if host in ("", WILDCARD_HOST):
        host = "127.0.0.1"
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except (OSError, OverflowError, TypeError):
        return False


class PortRegistry:
    """The last chosen port, persisted as plain decimal text."""

    def __init__(self, path: pathlib.Path, range_start: int, range_end: int) -> None:
        self.path = path
        self.range_start = range_start
        self.range_end = range_end

    def read(self) -> Optional[int]:
        """Return the persisted port, or None if missing, unparsable or out of range."""
        try:
            port = int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None
        if not self.range_start <= port <= self.range_end:
            log.info("Ignoring persisted port %d outside %d-%d", port, self.range_start, self.range_end)
            return None
        return port

    def write(self, port: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(port), encoding="utf-8")


class PortAllocator:
    def __init__(
        self,
        range_start: int,
        range_end: int,
        probe: Callable[[int], bool] = is_port_available,
    ) -> None:
        self.range_start = range_start
        self.range_end = range_end
        self.probe = probe

    @property
    def size(self) -> int:
        return self.range_end - self.range_start + 1

    def candidates(self, first: Optional[int] = None):
        """Every port of the range exactly once, from *first* with wraparound."""
        if first is None or not self.range_start <= first <= self.range_end:
            first = self.range_start
        offset = first - self.range_start
        for i in range(self.size):
            yield self.range_start + (offset + i) % self.size

    def allocate(self) -> int:
        """Lowest bindable port in the range; ExhaustedRangeError after size probes."""
        for port in self.candidates():
            if self.probe(port):
                return port
            log.debug("Port %d busy", port)
        raise ExhaustedRangeError(self.range_start, self.range_end)
