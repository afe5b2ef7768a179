"""Cloud relay channel built on the document store contract."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from .command_names import CommandNames
from .core.models import ChannelHealth, TelemetrySnapshot
from .core.observers import EventStream, Observer, Subscription
from .core.protocols import DocumentStore
from .events import ChannelStatusChanged, PresenceChanged
from .telemetry import TelemetryParseError, parse_snapshot

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def telemetry_path(device_id: str) -> str:
    return f"devices/{device_id}/status"


def presence_path(device_id: str) -> str:
    return f"devices/{device_id}"


def pending_commands_path(device_id: str) -> str:
    return f"commands/{device_id}/pending"


def parse_last_seen(value: Any) -> Optional[datetime]:
    """Interpret epoch seconds, epoch milliseconds or an ISO-8601 string."""

    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed

    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    return None


async def _invoke(callback: Observer[Any], event: Any) -> None:
    result = callback(event)
    if asyncio.iscoroutine(result):
        await result


class _PresenceTracker:
    """Derives online/offline from a ``last_seen`` field and expires it."""

    def __init__(
        self,
        device_id: str,
        callback: Observer[PresenceChanged],
        *,
        stale_seconds: float,
        clock: Clock,
    ) -> None:
        self.device_id = device_id
        self._callback = callback
        self._stale_seconds = stale_seconds
        self._clock = clock
        self._online: Optional[bool] = None
        self._last_seen: Optional[datetime] = None
        self._expiry: Optional[asyncio.Task[None]] = None

    async def handle(self, document: Optional[dict[str, Any]]) -> None:
        raw = None
        if document is not None:
            raw = document.get("last_seen", document.get("lastSeen"))
        last_seen = parse_last_seen(raw)
        self._cancel_expiry()

        if last_seen is None:
            await self._update(False, None)
            return

        age = (self._clock() - last_seen).total_seconds()
        online = age < self._stale_seconds
        await self._update(online, last_seen)
        if online:
            remaining = self._stale_seconds - max(age, 0.0)
            self._expiry = asyncio.create_task(self._expire_after(remaining))

    def cancel(self) -> None:
        self._cancel_expiry()

    def _cancel_expiry(self) -> None:
        task, self._expiry = self._expiry, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _expire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        LOGGER.info("Device %s presence expired", self.device_id)
        await self._update(False, self._last_seen)

    async def _update(self, online: bool, last_seen: Optional[datetime]) -> None:
        if last_seen is not None:
            self._last_seen = last_seen
        if online == self._online:
            return
        self._online = online
        try:
            await _invoke(
                self._callback,
                PresenceChanged(self.device_id, online, self._last_seen),
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Presence subscriber for %s failed", self.device_id)


class CloudChannel:
    """Commands and telemetry through the remote document-sync service."""

    name = "cloud"

    def __init__(
        self,
        store: DocumentStore,
        *,
        device_id: str,
        read_timeout: float = 5.0,
        presence_stale_seconds: float = 30.0,
        clock: Clock = _utcnow,
    ) -> None:
        self.store = store
        self.device_id = device_id
        self.read_timeout = read_timeout
        self.presence_stale_seconds = presence_stale_seconds

        self.status: EventStream[ChannelStatusChanged] = EventStream("cloud.status")

        self._clock = clock
        self._health = ChannelHealth()
        self._subscriptions: List[Subscription] = []

    @property
    def connected(self) -> bool:
        return self._health.connected

    @property
    def health(self) -> ChannelHealth:
        return self._health.copy()

    async def connect(self) -> bool:
        """Initialise the store and prove it answers with a test read."""

        try:
            await self.store.connect()
            await self.store.read(telemetry_path(self.device_id), timeout=self.read_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            self._health.last_error = error
            LOGGER.warning("Cloud connection failed: %s", error)
            await self._close_store()
            return False

        self._health.last_error = None
        if not self._health.connected:
            self._health.connected = True
            LOGGER.info("Cloud relay connected for device %s", self.device_id)
            await self.status.emit(ChannelStatusChanged(self.name, True))
        return True

    async def disconnect(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()
        self._subscriptions.clear()
        await self._close_store()

        if self._health.connected:
            self._health.connected = False
            await self.status.emit(ChannelStatusChanged(self.name, False))

    async def _close_store(self) -> None:
        try:
            await self.store.close()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.debug("Closing cloud store failed: %s", exc)

    async def send_command(self, name: str, value: Any = None) -> bool:
        """Append a pending-command document. No retries are made."""

        document = {
            "action": name,
            "params": self._params_for(name, value),
            "status": "pending",
            "created_at": self._clock().isoformat(timespec="milliseconds"),
        }
        try:
            document_id = await self.store.append(
                pending_commands_path(self.device_id), document
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._health.last_error = str(exc) or type(exc).__name__
            LOGGER.warning("Cloud command %s failed: %s", name, exc)
            return False

        LOGGER.debug("Cloud command %s queued as %s", name, document_id)
        return True

    def subscribe_to_telemetry(
        self, device_id: str, callback: Observer[TelemetrySnapshot]
    ) -> Subscription:
        path = telemetry_path(device_id)

        async def _on_document(document: Optional[dict[str, Any]]) -> None:
            if document is None:
                return
            try:
                snapshot = parse_snapshot(document, source="cloud")
            except TelemetryParseError as exc:
                LOGGER.warning("Dropping cloud telemetry for %s: %s", device_id, exc)
                return
            await _invoke(callback, snapshot)

        return self._track(self.store.subscribe(path, _on_document))

    def subscribe_to_presence(
        self, device_id: str, callback: Observer[PresenceChanged]
    ) -> Subscription:
        tracker = _PresenceTracker(
            device_id,
            callback,
            stale_seconds=self.presence_stale_seconds,
            clock=self._clock,
        )
        inner = self.store.subscribe(presence_path(device_id), tracker.handle)

        def _cancel() -> None:
            inner.unsubscribe()
            tracker.cancel()

        return self._track(Subscription(_cancel))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _track(self, inner: Subscription) -> Subscription:
        handle: Subscription

        def _cancel() -> None:
            inner.unsubscribe()
            with contextlib.suppress(ValueError):
                self._subscriptions.remove(handle)

        handle = Subscription(_cancel)
        self._subscriptions.append(handle)
        return handle

    @staticmethod
    def _params_for(name: str, value: Any) -> Dict[str, Any]:
        if value is None:
            return {}
        if isinstance(value, Mapping):
            return dict(value)
        return {CommandNames.CLOUD_PARAM_KEYS.get(name, "value"): value}
