"""Split a gas prices feed into a snapshot and per-city records."""

from __future__ import annotations

import datetime as dt
import json
from typing import Any, Dict

from .errors import DecodeError
from .models import CityRecord, Snapshot

PRICES_FIELD = "gasprices"
CITY_ID_FIELD = "city_id"
RAW_INDENT = 3


def decompose(raw: str, retrieved_at: dt.datetime | None = None) -> Snapshot:
    """Parse the feed text into a Snapshot.

    Any structural problem raises DecodeError; a partial snapshot is never
    returned.
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"feed is not valid JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise DecodeError(
            f"expected a JSON object, got {type(payload).__name__}")

    entries = payload.get(PRICES_FIELD)
    if not isinstance(entries, list):
        raise DecodeError(f"feed has no {PRICES_FIELD!r} array")

    cities: Dict[int, CityRecord] = {}
    for index, entry in enumerate(entries):
        record = _build_city_record(entry, index)
        # First occurrence of a duplicated id wins.
        cities.setdefault(record.city_id, record)

    return Snapshot(
        retrieved_at=retrieved_at or dt.datetime.now(),
        raw=json.dumps(payload, indent=RAW_INDENT, ensure_ascii=False),
        payload=payload,
        cities=cities,
    )


def _build_city_record(entry: Any, index: int) -> CityRecord:
    if not isinstance(entry, dict):
        raise DecodeError(f"{PRICES_FIELD}[{index}] is not an object")
    if CITY_ID_FIELD not in entry:
        raise DecodeError(f"{PRICES_FIELD}[{index}] has no {CITY_ID_FIELD!r}")

    city_id = _parse_city_id(entry[CITY_ID_FIELD], index)
    name = entry.get("name") or entry.get("city_name") or ""
    return CityRecord(
        city_id=city_id,
        name=str(name),
        fields=entry,
        payload=json.dumps(entry, separators=(",", ":"), ensure_ascii=False),
    )


def _parse_city_id(value: Any, index: int) -> int:
    if isinstance(value, bool):
        raise DecodeError(f"{PRICES_FIELD}[{index}].{CITY_ID_FIELD} is not numeric")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise DecodeError(
        f"{PRICES_FIELD}[{index}].{CITY_ID_FIELD} is not an integer: {value!r}")
