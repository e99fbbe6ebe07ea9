"""gasprices package initialization."""

from .db import PriceStore
from .decomposer import decompose
from .errors import DecodeError, FetchError, FetchErrorKind, GasPricesError, StoreError
from .fetcher import FeedFetcher
from .models import (
    CityRecord,
    CycleResult,
    CycleState,
    CycleStatus,
    RefreshMetadata,
    Snapshot,
    WidgetSelection,
)
from .runner import RefreshCycle
from .scheduler import RefreshScheduler, next_refresh_time

__all__ = [
    "CityRecord",
    "CycleResult",
    "CycleState",
    "CycleStatus",
    "DecodeError",
    "FeedFetcher",
    "FetchError",
    "FetchErrorKind",
    "GasPricesError",
    "PriceStore",
    "RefreshCycle",
    "RefreshMetadata",
    "RefreshScheduler",
    "Snapshot",
    "StoreError",
    "WidgetSelection",
    "decompose",
    "next_refresh_time",
]
