"""Adapter modules for external integrations."""

from .document_store import DocumentStoreError, MqttDocumentStore
from .mainboard import MainBoardClient
from .mqtt import MQTTClient, MQTTConnectionError

__all__ = [
    "DocumentStoreError",
    "MainBoardClient",
    "MQTTClient",
    "MQTTConnectionError",
    "MqttDocumentStore",
]
