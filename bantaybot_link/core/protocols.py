"""Protocol definitions for transports and the cloud document store."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from .observers import Subscription

DocumentCallback = Callable[[Optional[dict[str, Any]]], Awaitable[None] | None]


class DocumentStore(Protocol):
    """Minimal read/write/subscribe contract of the cloud sync service.

    Paths are slash-separated (``devices/BANTAY/status``). The store's own
    consistency guarantees are not relied upon beyond this contract.
    """

    async def connect(self) -> None:
        """Initialise the underlying client.

        Raises:
            DocumentStoreError: If the service cannot be reached.
        """
        ...

    async def close(self) -> None:
        """Release the client and drop every live subscription."""
        ...

    async def read(self, path: str, timeout: float = 5.0) -> Optional[dict[str, Any]]:
        """Return the document at ``path`` or ``None`` when it does not exist."""
        ...

    async def write(self, path: str, data: Mapping[str, Any]) -> None:
        """Replace the document at ``path``."""
        ...

    async def append(self, collection: str, data: Mapping[str, Any]) -> str:
        """Add a new document to ``collection`` and return its id."""
        ...

    def subscribe(self, path: str, callback: DocumentCallback) -> Subscription:
        """Invoke ``callback`` with the document on every remote change."""
        ...
