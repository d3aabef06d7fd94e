# Services package

from .chat_driver import ChatSessionDriver
from .chat_model import ChatConfigError, ChatModelService
from .chat_storage import ChatSessionNotFoundError, ChatStorage, ChatStorageError
from .json_store import JsonStateStore, JsonStoreError
from .negotiator import McpNegotiator
from .probe import TransportProbe
from .registry import (
    NegotiationInProgressError,
    RegistryError,
    ServerNotFoundError,
    ServerRegistry,
)
from .stream_decoder import StreamDecoder

__all__ = [
    "ChatConfigError",
    "ChatModelService",
    "ChatSessionDriver",
    "ChatSessionNotFoundError",
    "ChatStorage",
    "ChatStorageError",
    "JsonStateStore",
    "JsonStoreError",
    "McpNegotiator",
    "NegotiationInProgressError",
    "RegistryError",
    "ServerNotFoundError",
    "ServerRegistry",
    "StreamDecoder",
    "TransportProbe",
]
