"""Reachability probes and local network discovery.

``DeviceProbe`` answers two questions before a full connection is attempted:

1. Is a configured address answering right now? (:meth:`DeviceProbe.probe`)
2. Which hosts on a subnet look like BantayBot controllers?
   (:meth:`DeviceProbe.scan_range`, :meth:`DeviceProbe.quick_scan`,
   :meth:`DeviceProbe.smart_discover`)

Every failure is folded into "not found"; nothing here raises for an
unreachable or misbehaving host.

Usage:
    probe = DeviceProbe(timeout=2.0)
    endpoints = await probe.quick_scan("192.168.1")
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import aiohttp

from . import constants
from .core.models import DeviceAddress, DeviceEndpoint

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[float, int, int], None]


@dataclass(frozen=True, slots=True)
class ProbeTarget:
    """A well-known endpoint that identifies one kind of controller."""

    port: int
    path: str
    kind: str


DEFAULT_TARGETS: Tuple[ProbeTarget, ...] = (
    ProbeTarget(constants.DEFAULT_CAMERA_PORT, constants.DEFAULT_STREAM_PATH, "camera"),
    ProbeTarget(constants.DEFAULT_MAIN_PORT, constants.DEFAULT_STATUS_PATH, "main"),
)

QUICK_SCAN_RANGES: Tuple[Tuple[int, int], ...] = ((1, 50), (100, 150), (200, 254))

COMMON_BASE_ADDRESSES: Tuple[str, ...] = ("192.168.1", "192.168.0", "10.0.0", "172.24.26")

HOSTNAME_TARGETS: Tuple[Tuple[str, ProbeTarget], ...] = (
    (constants.MAIN_MDNS_HOSTNAME, DEFAULT_TARGETS[1]),
    (constants.CAMERA_MDNS_HOSTNAME, DEFAULT_TARGETS[0]),
)


def base_address_of(host: str) -> Optional[str]:
    """Return the first three octets of an IPv4 address, e.g. ``192.168.1``."""

    parts = host.strip().split(".")
    if len(parts) != 4 or not all(part.isdigit() for part in parts):
        return None
    return ".".join(parts[:3])


class DeviceProbe:
    """Bounded-time reachability checks and batched subnet scans."""

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 2.0,
        batch_size: int = 10,
        targets: Sequence[ProbeTarget] = DEFAULT_TARGETS,
    ) -> None:
        self.timeout = timeout
        self.batch_size = max(1, batch_size)
        self.targets = tuple(targets)

        self._session = session
        self._owns_session = session is None
        self._stop_requested = False
        self._found: List[DeviceEndpoint] = []

    @property
    def found_devices(self) -> List[DeviceEndpoint]:
        return list(self._found)

    def main_board(self) -> Optional[DeviceEndpoint]:
        return next((item for item in self._found if item.kind == "main"), None)

    def camera(self) -> Optional[DeviceEndpoint]:
        return next((item for item in self._found if item.kind == "camera"), None)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def stop_scanning(self) -> None:
        """Abort a running scan before its next batch starts."""

        self._stop_requested = True

    async def probe(self, address: DeviceAddress, timeout: Optional[float] = None) -> bool:
        """Return ``True`` only if ``address`` answers 2xx within ``timeout``."""

        session = await self._ensure_session()
        url = address.http_url()
        limit = timeout if timeout is not None else self.timeout

        try:
            async with asyncio.timeout(limit):
                async with session.get(url) as response:
                    if 200 <= response.status < 300:
                        LOGGER.debug("Probe successful: %s", url)
                        return True
                    LOGGER.debug("Probe failed: %s (status %d)", url, response.status)
                    return False
        except asyncio.TimeoutError:
            LOGGER.debug("Probe timed out: %s", url)
            return False
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.debug("Probe failed: %s (%s)", url, exc)
            return False

    async def scan_host(
        self, host: str, timeout: Optional[float] = None
    ) -> List[DeviceEndpoint]:
        """Probe every well-known endpoint of ``host`` concurrently."""

        return await self._scan_targets(
            [(host, target) for target in self.targets], timeout
        )

    async def scan_range(
        self,
        base_address: str,
        start_host: int,
        end_host: int,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[DeviceEndpoint]:
        """Scan ``base_address.start_host`` .. ``base_address.end_host``.

        ``on_progress`` receives ``(fraction, scanned, total)`` after each
        host, with ``fraction`` between 0 and 1.
        """

        self._stop_requested = False
        self._found = []
        hosts = [f"{base_address}.{index}" for index in range(start_host, end_host + 1)]
        await self._scan_hosts(hosts, _ProgressTracker(len(hosts), on_progress))
        LOGGER.info(
            "Scan of %s.%d-%d complete, found %d endpoints",
            base_address,
            start_host,
            end_host,
            len(self._found),
        )
        return list(self._found)

    async def quick_scan(
        self, base_address: str, on_progress: Optional[ProgressCallback] = None
    ) -> List[DeviceEndpoint]:
        """Scan the host ranges routers usually hand out, stopping at the first hit."""

        self._stop_requested = False
        self._found = []
        total = sum(end - start + 1 for start, end in QUICK_SCAN_RANGES)
        tracker = _ProgressTracker(total, on_progress)

        for start, end in QUICK_SCAN_RANGES:
            if self._stop_requested:
                break
            hosts = [f"{base_address}.{index}" for index in range(start, end + 1)]
            if await self._scan_hosts(hosts, tracker):
                break

        return list(self._found)

    async def discover_hostnames(self) -> List[DeviceEndpoint]:
        """Look for controllers advertising the well-known ``.local`` names."""

        return await self._scan_targets(list(HOSTNAME_TARGETS), self.timeout)

    async def smart_discover(
        self,
        base_address: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[DeviceEndpoint]:
        """Try hostnames first, then quick scans of the likely subnets."""

        found = await self.discover_hostnames()
        if found:
            self._found = found
            return list(found)

        bases: Iterable[str] = (base_address,) if base_address else COMMON_BASE_ADDRESSES
        for base in bases:
            found = await self.quick_scan(base, on_progress)
            if found or self._stop_requested:
                break
        return list(self._found)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=None)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _scan_targets(
        self,
        pairs: Sequence[Tuple[str, ProbeTarget]],
        timeout: Optional[float],
    ) -> List[DeviceEndpoint]:
        addresses = [
            DeviceAddress(host, target.port, target.path) for host, target in pairs
        ]
        results = await asyncio.gather(
            *(self.probe(address, timeout) for address in addresses)
        )
        return [
            DeviceEndpoint(address=address, kind=target.kind)
            for address, (_, target), ok in zip(addresses, pairs, results)
            if ok
        ]

    async def _scan_hosts(self, hosts: Sequence[str], tracker: "_ProgressTracker") -> bool:
        hits_before = len(self._found)

        for offset in range(0, len(hosts), self.batch_size):
            if self._stop_requested:
                LOGGER.info("Scan stopped after %d hosts", tracker.scanned)
                break

            batch = hosts[offset : offset + self.batch_size]
            results = await asyncio.gather(
                *(self._scan_with_progress(host, tracker) for host in batch)
            )
            for endpoints in results:
                self._found.extend(endpoints)

        return len(self._found) > hits_before

    async def _scan_with_progress(
        self, host: str, tracker: "_ProgressTracker"
    ) -> List[DeviceEndpoint]:
        try:
            return await self.scan_host(host)
        finally:
            tracker.advance()


class _ProgressTracker:
    def __init__(self, total: int, callback: Optional[ProgressCallback]) -> None:
        self.total = total
        self.scanned = 0
        self._callback = callback

    def advance(self) -> None:
        self.scanned += 1
        if self._callback is None or self.total <= 0:
            return
        try:
            self._callback(self.scanned / self.total, self.scanned, self.total)
        except Exception:
            LOGGER.exception("Scan progress callback failed")
