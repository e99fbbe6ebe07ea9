"""Core data models for the gas prices refresh agent."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping


class CycleStatus(str, Enum):
    """Outcome of a refresh attempt."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FETCH_FAILED = "fetch_failed"
    DECODE_FAILED = "decode_failed"


class CycleState(Enum):
    """Phases a refresh cycle moves through."""

    IDLE = "idle"
    CHECKING = "checking"
    FETCHING = "fetching"
    DECOMPOSING = "decomposing"
    COMMITTING = "committing"
    SCHEDULING = "scheduling"


@dataclass(frozen=True)
class CityRecord:
    """A single city's entry from the feed."""

    city_id: int
    name: str
    fields: Mapping[str, Any]
    payload: str


@dataclass(frozen=True)
class Snapshot:
    """One complete retrieved-and-parsed feed payload."""

    retrieved_at: dt.datetime
    raw: str
    payload: Dict[str, Any]
    cities: Dict[int, CityRecord]

    @property
    def city_ids(self) -> List[int]:
        return list(self.cities)


@dataclass
class RefreshMetadata:
    """Bookkeeping written after every refresh attempt."""

    last_updated: dt.datetime | None = None
    next_refresh: dt.datetime | None = None
    last_status: CycleStatus | None = None


@dataclass(frozen=True)
class WidgetSelection:
    """City chosen for one widget instance."""

    widget_id: int
    city_id: int
    city_name: str


@dataclass
class CycleResult:
    """Aggregated result returned by a refresh cycle."""

    executed_at: dt.datetime
    status: CycleStatus
    next_refresh: dt.datetime
    city_count: int = 0
    error: str | None = None
