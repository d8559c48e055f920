"""
Polyfetch core: protocol dispatch, module loading and runtime lifecycle.
"""

from .errors import (
    AlreadyClosedError,
    DuplicateSchemeError,
    InvalidURLError,
    NotInitializedError,
    PolyfetchError,
    SourceFetchFailedError,
    UnknownSchemeError,
)
from .protocol_registry import LazyHandler, ProtocolRegistry
from .response import BufferedResponse, FetchResponse
from .single_flight import SingleFlight
from .teardown import TeardownRegistry

__all__ = [
    "AlreadyClosedError",
    "BufferedResponse",
    "DuplicateSchemeError",
    "FetchResponse",
    "InvalidURLError",
    "LazyHandler",
    "NotInitializedError",
    "PolyfetchError",
    "ProtocolRegistry",
    "SingleFlight",
    "SourceFetchFailedError",
    "TeardownRegistry",
    "UnknownSchemeError",
]
