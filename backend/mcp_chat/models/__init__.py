# Data models package

from .negotiation import FailureKind, NegotiationOutcome, NegotiationState
from .servers import ServerRecord, ServerStatus, TransportKind
from .stream import Delta, Done, Error, StreamEvent

__all__ = [
    "Delta",
    "Done",
    "Error",
    "FailureKind",
    "NegotiationOutcome",
    "NegotiationState",
    "ServerRecord",
    "ServerStatus",
    "StreamEvent",
    "TransportKind",
]
