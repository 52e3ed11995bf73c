__version__ = "0.1.0"

from .errors import (
    DirectURLUnavailable,
    ExtractionFailed,
    ProcessSpawnError,
    StreamBusy,
    StreamError,
    StreamInitTimeout,
    SubscriberDropped,
)
from .process_runner import ProcessRunner
from .proxy import ProxyController
from .quality import BestStrategy, FastStrategy, QualityStrategy, select_strategy
from .registry import StreamRegistry
from .runtime import get_runtime_info
from .url_cache import URLCache

__all__ = [
    "BestStrategy",
    "DirectURLUnavailable",
    "ExtractionFailed",
    "FastStrategy",
    "ProcessRunner",
    "ProcessSpawnError",
    "ProxyController",
    "QualityStrategy",
    "StreamBusy",
    "StreamError",
    "StreamInitTimeout",
    "StreamRegistry",
    "SubscriberDropped",
    "URLCache",
    "get_runtime_info",
    "select_strategy",
]
