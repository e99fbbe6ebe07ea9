"""SQLite-backed key-value store for the cached gas prices."""

from __future__ import annotations

import datetime as dt
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from openpyxl import Workbook

from .errors import StoreError
from .models import CycleStatus, RefreshMetadata, Snapshot, WidgetSelection

logger = logging.getLogger(__name__)

SQLITE_PREFIX = "sqlite://"

RAW_SNAPSHOT_KEY = "jsondata"
CITY_KEY_PREFIX = "city:"
LAST_UPDATED_KEY = "last_updated"
NEXT_REFRESH_KEY = "next_refresh"
LAST_STATUS_KEY = "last_status"
SELECTED_CITY_KEY = "selected_city_id"

Observer = Callable[[], None]


def resolve_sqlite_path(database_url: str) -> Path:
    """Translate a DATABASE_URL into a filesystem path."""
    if not database_url:
        raise ValueError("DATABASE_URL must not be empty")

    if database_url.startswith(SQLITE_PREFIX):
        raw_path = database_url[len(SQLITE_PREFIX) :]
        # Allow sqlite:///path/to/file and sqlite://path/to/file styles.
        if raw_path.startswith("/"):
            raw_path = raw_path[1:]
        path = Path(raw_path)
    else:
        path = Path(database_url)

    if not path.is_absolute():
        path = Path.cwd() / path

    return path.expanduser().resolve()


def city_key(city_id: int) -> str:
    return f"{CITY_KEY_PREFIX}{city_id}"


def _parse_timestamp(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    return dt.datetime.fromisoformat(value)


@dataclass
class PriceStore:
    """Key-value persistence for snapshots, city records and refresh metadata.

    Snapshot commits are serialized by a writer lock and applied in a single
    SQLite transaction. Readers see either the state before or after a
    commit. Registered observers are called once after every commit.
    """

    path: Path
    _write_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )
    _observers: List[Observer] = field(
        default_factory=list, init=False, repr=False, compare=False
    )

    def connect(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; transactions are opened explicitly below.
        return sqlite3.connect(self.path, timeout=30, isolation_level=None)

    @contextmanager
    def transaction(self, mode: str = "DEFERRED") -> Iterator[sqlite3.Connection]:
        """Yield a connection inside BEGIN ... COMMIT, rolling back on error."""
        try:
            conn = self.connect()
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"cannot open {self.path}: {exc}") from exc
        try:
            conn.execute(f"BEGIN {mode}")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise StoreError(f"store operation on {self.path} failed: {exc}") from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        try:
            conn = self.connect()
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"cannot open {self.path}: {exc}") from exc
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS widget_selections (
                    widget_id INTEGER PRIMARY KEY,
                    city_id INTEGER NOT NULL,
                    city_name TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    executed_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    notes TEXT
                )
                """
            )
        except sqlite3.Error as exc:
            raise StoreError(f"cannot initialize {self.path}: {exc}") from exc
        finally:
            conn.close()

    # -- observers -----------------------------------------------------------

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register a no-argument "data changed" observer.

        Returns a callable that removes the observer again.
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify_observers(self) -> None:
        for observer in list(self._observers):
            try:
                observer()
            except Exception:  # noqa: BLE001
                logger.exception("Store observer %r failed", observer)

    # -- snapshot ------------------------------------------------------------

    def commit_snapshot(self, snapshot: Snapshot) -> None:
        """Replace the cached snapshot and every city record atomically."""
        rows = [(RAW_SNAPSHOT_KEY, snapshot.raw)]
        rows.extend(
            (city_key(city_id), record.payload)
            for city_id, record in snapshot.cities.items()
        )
        rows.append((LAST_UPDATED_KEY, snapshot.retrieved_at.isoformat()))

        with self._write_lock:
            with self.transaction("IMMEDIATE") as conn:
                conn.execute(
                    "DELETE FROM kv WHERE key LIKE ?", (f"{CITY_KEY_PREFIX}%",)
                )
                conn.executemany(
                    """
                    INSERT INTO kv (key, value) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    rows,
                )
        logger.info(
            "Committed snapshot with %d cities retrieved at %s",
            len(snapshot.cities),
            snapshot.retrieved_at.isoformat(),
        )
        self._notify_observers()

    def get_raw_snapshot(self) -> Optional[str]:
        return self._get(RAW_SNAPSHOT_KEY)

    def get_city_record(self, city_id: int) -> Optional[str]:
        return self._get(city_key(city_id))

    def get_city_ids(self) -> List[int]:
        with self.transaction() as conn:
            cursor = conn.execute(
                "SELECT key FROM kv WHERE key LIKE ?", (f"{CITY_KEY_PREFIX}%",)
            )
            ids = [int(row[0][len(CITY_KEY_PREFIX) :]) for row in cursor.fetchall()]
        return sorted(ids)

    def read_snapshot_view(self) -> Tuple[Optional[str], Dict[int, str]]:
        """Read the raw snapshot and all city records from one transaction."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT value FROM kv WHERE key = ?", (RAW_SNAPSHOT_KEY,)
            ).fetchone()
            cursor = conn.execute(
                "SELECT key, value FROM kv WHERE key LIKE ?", (f"{CITY_KEY_PREFIX}%",)
            )
            cities = {
                int(key[len(CITY_KEY_PREFIX) :]): value
                for key, value in cursor.fetchall()
            }
        return (row[0] if row else None), cities

    # -- metadata ------------------------------------------------------------

    def get_last_updated(self) -> Optional[dt.datetime]:
        return _parse_timestamp(self._get(LAST_UPDATED_KEY))

    def get_metadata(self) -> RefreshMetadata:
        with self.transaction() as conn:
            cursor = conn.execute(
                "SELECT key, value FROM kv WHERE key IN (?, ?, ?)",
                (LAST_UPDATED_KEY, NEXT_REFRESH_KEY, LAST_STATUS_KEY),
            )
            values = dict(cursor.fetchall())
        status = values.get(LAST_STATUS_KEY)
        return RefreshMetadata(
            last_updated=_parse_timestamp(values.get(LAST_UPDATED_KEY)),
            next_refresh=_parse_timestamp(values.get(NEXT_REFRESH_KEY)),
            last_status=CycleStatus(status) if status else None,
        )

    def record_attempt(
        self,
        executed_at: dt.datetime,
        status: CycleStatus,
        next_refresh: dt.datetime,
        notes: str | None = None,
    ) -> None:
        """Persist the outcome of a refresh attempt and the next window."""
        with self.transaction("IMMEDIATE") as conn:
            conn.executemany(
                """
                INSERT INTO kv (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                [
                    (NEXT_REFRESH_KEY, next_refresh.isoformat()),
                    (LAST_STATUS_KEY, status.value),
                ],
            )
            conn.execute(
                "INSERT INTO runs (executed_at, status, notes) VALUES (?, ?, ?)",
                (executed_at.isoformat(), status.value, notes),
            )

    def recent_runs(self, limit: int = 10) -> Iterable[Tuple[str, str, str | None]]:
        with self.transaction() as conn:
            cursor = conn.execute(
                "SELECT executed_at, status, notes FROM runs ORDER BY id DESC LIMIT ?",
                (limit,),
            )
            rows = cursor.fetchall()
        yield from rows

    # -- selections ----------------------------------------------------------

    def set_selected_city_id(self, city_id: int) -> None:
        self._put(SELECTED_CITY_KEY, str(city_id))

    def get_selected_city_id(self) -> Optional[int]:
        value = self._get(SELECTED_CITY_KEY)
        return int(value) if value is not None else None

    def set_widget_selection(self, widget_id: int, city_id: int, city_name: str) -> None:
        with self.transaction("IMMEDIATE") as conn:
            conn.execute(
                """
                INSERT INTO widget_selections (widget_id, city_id, city_name)
                VALUES (?, ?, ?)
                ON CONFLICT(widget_id) DO UPDATE SET
                    city_id = excluded.city_id,
                    city_name = excluded.city_name
                """,
                (widget_id, city_id, city_name),
            )

    def clear_widget_selection(self, *widget_ids: int) -> None:
        with self.transaction("IMMEDIATE") as conn:
            conn.executemany(
                "DELETE FROM widget_selections WHERE widget_id = ?",
                [(widget_id,) for widget_id in widget_ids],
            )

    def get_widget_selection(self, widget_id: int) -> Optional[WidgetSelection]:
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT widget_id, city_id, city_name FROM widget_selections WHERE widget_id = ?",
                (widget_id,),
            ).fetchone()
        if not row:
            return None
        return WidgetSelection(widget_id=row[0], city_id=row[1], city_name=row[2])

    def list_widget_selections(self) -> Dict[int, WidgetSelection]:
        """Return widget selections keyed by widget_id."""
        with self.transaction() as conn:
            cursor = conn.execute(
                "SELECT widget_id, city_id, city_name FROM widget_selections ORDER BY widget_id"
            )
            rows = cursor.fetchall()
        return {
            row[0]: WidgetSelection(widget_id=row[0], city_id=row[1], city_name=row[2])
            for row in rows
        }

    # -- export --------------------------------------------------------------

    def export_cities_to_xlsx(self, export_path: Path) -> int:
        """Write the cached city records to an Excel workbook.

        Returns the number of exported cities.
        """
        _, cities = self.read_snapshot_view()
        records = [json.loads(cities[city_id]) for city_id in sorted(cities)]
        extra_columns = sorted(
            {key for record in records for key in record} - {"city_id", "name"}
        )
        headers = ["city_id", "name", *extra_columns]

        workbook = Workbook()
        worksheet = workbook.active
        worksheet.title = "cities"
        worksheet.append(headers)
        for record in records:
            worksheet.append([_cell_value(record.get(column)) for column in headers])

        export_path.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(export_path)
        return len(records)

    # -- helpers -------------------------------------------------------------

    def _get(self, key: str) -> Optional[str]:
        with self.transaction() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def _put(self, key: str, value: str) -> None:
        with self.transaction("IMMEDIATE") as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )


def _cell_value(value):
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value
